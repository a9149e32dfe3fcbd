from __future__ import annotations

import contextlib
import re
import shutil
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ExtractionFailed, WorkspaceBusy
from .schema import DESCRIPTOR_SOURCE_ENTRY

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


def _sanitize_name(name: str, *, fallback: str = "archive", max_len: int = 80) -> str:
    s = (name or "").strip()
    s = _UNSAFE_NAME_RE.sub("_", s)
    s = s.strip("._")
    if not s:
        s = fallback
    if len(s) > int(max_len):
        s = s[: int(max_len)].rstrip("._")
    if not s:
        s = fallback
    return s


def remove_tree(path: Path) -> None:
    """Remove a file or directory tree; missing paths are not an error."""

    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=True)
        return
    path.unlink(missing_ok=True)


@dataclass
class Workspace:
    root: Path
    archive_name: str
    _builds: int = field(default=0, repr=False)

    @property
    def classes_dir(self) -> Path:
        return self.root / "classes"

    @property
    def analyzer_dir(self) -> Path:
        return self.root / "generated"

    @property
    def descriptor_source(self) -> Path:
        return self.root / DESCRIPTOR_SOURCE_ENTRY

    @property
    def staged_archive(self) -> Path:
        # Same file name as the target: the analyzer derives the module name from it.
        return self.root / "staged" / self.archive_name

    def new_build_dir(self) -> Path:
        self._builds += 1
        out = self.root / f"build_{self._builds:02d}"
        out.mkdir(parents=True, exist_ok=False)
        return out


def workspace_root(
    base_dir: Path, archive_name: str, *, scratch_dir_name: str = "tmpClassPath"
) -> Path:
    return base_dir / scratch_dir_name / _sanitize_name(archive_name)


def release(ws: Workspace) -> None:
    remove_tree(ws.root)
    with contextlib.suppress(OSError):
        ws.root.parent.rmdir()


@contextlib.contextmanager
def acquire(
    base_dir: Path, archive_name: str, *, scratch_dir_name: str = "tmpClassPath"
) -> Iterator[Workspace]:
    """Allocate the per-archive scratch tree and always remove it on exit.

    The directory name is derived from the archive name, so a second run
    against the same archive collides here and fails with WorkspaceBusy
    instead of sharing the tree.
    """

    root = workspace_root(base_dir, archive_name, scratch_dir_name=scratch_dir_name)
    try:
        root.parent.mkdir(parents=True, exist_ok=True)
        root.mkdir(exist_ok=False)
    except FileExistsError as exc:
        raise WorkspaceBusy(
            f"Scratch directory already exists (another run in progress or a stale leftover; remove it to continue): {root}"
        ) from exc
    except OSError as exc:
        raise ExtractionFailed(f"Could not create scratch directory {root}: {exc}") from exc

    ws = Workspace(root=root, archive_name=archive_name)
    try:
        ws.classes_dir.mkdir()
        ws.analyzer_dir.mkdir()
        ws.staged_archive.parent.mkdir()
        yield ws
    finally:
        release(ws)
