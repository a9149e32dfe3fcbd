"""Zip/JAR container access.

Every mutation goes through a rename-aside rewrite: the original file is
moved to a hidden sibling, the new archive is streamed to the original path,
and the sibling is removed only after the new archive is complete. Any
failure after the rename puts the original back.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
import zipfile
import zlib
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path

from .errors import (
    ArchiveUnreadable,
    EntryNotFound,
    ExtractionFailed,
    PatchFailed,
    UnsafeEntryPath,
)
from .schema import MANIFEST_ENTRY

_COPY_CHUNK = 1024 * 1024
_SUPPORTED_COMPRESSION = frozenset(
    {zipfile.ZIP_STORED, zipfile.ZIP_DEFLATED, zipfile.ZIP_BZIP2, zipfile.ZIP_LZMA}
)
# NotImplementedError: unsupported compression method; RuntimeError: encrypted entry.
_READ_ERRORS = (
    OSError,
    EOFError,
    zipfile.BadZipFile,
    zlib.error,
    NotImplementedError,
    RuntimeError,
)


def _open_archive(archive: Path) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(archive, "r")
    except FileNotFoundError as exc:
        raise ArchiveUnreadable(f"Archive does not exist: {archive}") from exc
    except (OSError, zipfile.BadZipFile) as exc:
        raise ArchiveUnreadable(f"Not a readable archive: {archive}: {exc}") from exc


def list_entries(archive: Path) -> list[str]:
    with _open_archive(archive) as zf:
        return zf.namelist()


def has_entry(archive: Path, name: str) -> bool:
    return name in list_entries(archive)


def read_entry_text(archive: Path, name: str) -> str:
    """Return the decoded text of `name`, or "" when the entry is absent."""

    with _open_archive(archive) as zf:
        try:
            info = zf.getinfo(name)
        except KeyError:
            return ""
        try:
            data = zf.read(info)
        except _READ_ERRORS as exc:
            raise ArchiveUnreadable(
                f"Could not read entry {name!r} from {archive}: {exc}"
            ) from exc
    return data.decode("utf-8", errors="replace")


def _member_dest(dest_root: Path, info: zipfile.ZipInfo) -> Path:
    name = info.filename
    rel = name.replace("\\", "/")
    if not rel or rel.startswith("/") or (len(rel) > 1 and rel[1] == ":"):
        raise UnsafeEntryPath(f"Refusing absolute or empty entry name: {name!r}")
    target = (dest_root / rel).resolve()
    if not target.is_relative_to(dest_root):
        raise UnsafeEntryPath(
            f"Refusing to extract outside destination: entry={name!r} base={dest_root}"
        )
    if target == dest_root and not info.is_dir():
        raise UnsafeEntryPath(f"Entry resolves to the destination itself: {name!r}")
    return target


def extract_all(archive: Path, dest_dir: Path) -> int:
    """Extract every entry below `dest_dir` and return the number of files.

    All entry names are checked before anything is written, so an unsafe
    name aborts the extraction with nothing on disk.
    """

    dest_root = dest_dir.resolve()
    with _open_archive(archive) as zf:
        planned: list[tuple[zipfile.ZipInfo, Path]] = [
            (info, _member_dest(dest_root, info)) for info in zf.infolist()
        ]
        written = 0
        try:
            dest_root.mkdir(parents=True, exist_ok=True)
            for info, target in planned:
                if info.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, target.open("wb") as dst:
                    shutil.copyfileobj(src, dst, _COPY_CHUNK)
                written += 1
        except _READ_ERRORS as exc:
            raise ExtractionFailed(
                f"Extraction of {archive} into {dest_root} failed: {type(exc).__name__}: {exc}"
            ) from exc
    return written


def _clone_info(info: zipfile.ZipInfo) -> zipfile.ZipInfo:
    out = zipfile.ZipInfo(info.filename, date_time=info.date_time)
    out.compress_type = (
        info.compress_type
        if info.compress_type in _SUPPORTED_COMPRESSION
        else zipfile.ZIP_DEFLATED
    )
    out.external_attr = info.external_attr
    out.create_system = info.create_system
    out.comment = info.comment
    return out


def _copy_entry(src: zipfile.ZipFile, info: zipfile.ZipInfo, dst: zipfile.ZipFile) -> None:
    out = _clone_info(info)
    if info.is_dir():
        dst.writestr(out, b"")
        return
    force_zip64 = info.file_size >= zipfile.ZIP64_LIMIT
    with src.open(info) as r, dst.open(out, "w", force_zip64=force_zip64) as w:
        shutil.copyfileobj(r, w, _COPY_CHUNK)


def _reserve_sibling(path: Path, *, suffix: str) -> Path:
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=suffix, dir=path.parent)
    os.close(fd)
    return Path(tmp)


def _restore_aside(archive: Path, aside: Path) -> None:
    try:
        archive.unlink(missing_ok=True)
        os.replace(aside, archive)
    except OSError as exc:
        raise PatchFailed(
            f"Could not restore {archive}; the original is preserved at {aside}: {exc}"
        ) from exc


def _rewrite_archive(
    archive: Path,
    *,
    drop: frozenset[str],
    additions: Sequence[tuple[str, Path]],
) -> None:
    if not archive.is_file():
        raise ArchiveUnreadable(f"Archive does not exist: {archive}")

    aside = _reserve_sibling(archive, suffix=".orig")
    try:
        aside.unlink()
        archive.rename(aside)
    except OSError as exc:
        aside.unlink(missing_ok=True)
        raise PatchFailed(f"Could not move {archive} aside: {exc}") from exc

    try:
        with zipfile.ZipFile(aside, "r") as src, zipfile.ZipFile(archive, "x") as dst:
            dst.comment = src.comment
            for info in src.infolist():
                if info.filename in drop:
                    continue
                _copy_entry(src, info, dst)
            for name, source in additions:
                dst.write(source, arcname=name, compress_type=zipfile.ZIP_DEFLATED)
        shutil.copymode(aside, archive)
    except Exception as exc:
        _restore_aside(archive, aside)
        raise PatchFailed(
            f"Rewriting {archive} failed; original restored: {type(exc).__name__}: {exc}"
        ) from exc

    with contextlib.suppress(OSError):
        aside.unlink()


def remove_entry(archive: Path, name: str) -> None:
    if name not in list_entries(archive):
        raise EntryNotFound(f"Entry {name!r} not found in {archive}")
    _rewrite_archive(archive, drop=frozenset({name}), additions=())


def replace_entries(
    archive: Path,
    new_entries: Mapping[str, Path] | Iterable[tuple[str, Path]],
) -> None:
    """Rewrite `archive` with `new_entries` shadowing same-named originals.

    Original entries whose names appear in `new_entries` are dropped, every
    other original entry is copied unchanged, then the new files are
    appended. Nothing is merged.
    """

    pairs = list(new_entries.items() if isinstance(new_entries, Mapping) else new_entries)
    additions: dict[str, Path] = {}
    for name, source in pairs:
        if not Path(source).is_file():
            raise PatchFailed(f"Replacement source for {name!r} is missing: {source}")
        additions[name] = Path(source)

    _rewrite_archive(
        archive,
        drop=frozenset(additions),
        additions=list(additions.items()),
    )


def rebuild_from_directory(dest_archive: Path, source_dir: Path) -> int:
    """Write a new archive holding every file under `source_dir`."""

    if not source_dir.is_dir():
        raise PatchFailed(f"Rebuild source directory is missing: {source_dir}")

    members = [
        (p.relative_to(source_dir).as_posix(), p)
        for p in sorted(source_dir.rglob("*"))
        if p.is_file()
    ]
    members.sort(key=lambda item: (item[0] != MANIFEST_ENTRY, item[0]))

    dest_archive.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = _reserve_sibling(dest_archive, suffix=".new")
    try:
        with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for name, path in members:
                zf.write(path, arcname=name)
        if dest_archive.is_file():
            shutil.copymode(dest_archive, tmp_path)
        os.replace(tmp_path, dest_archive)
    except OSError as exc:
        tmp_path.unlink(missing_ok=True)
        raise PatchFailed(
            f"Rebuilding {dest_archive} from {source_dir} failed: {exc}"
        ) from exc
    return len(members)
