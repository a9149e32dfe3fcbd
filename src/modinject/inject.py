from __future__ import annotations

import shutil
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Protocol, cast

from .archive import (
    extract_all,
    list_entries,
    read_entry_text,
    rebuild_from_directory,
    remove_entry,
    replace_entries,
)
from .config import InjectorConfig, PatchMode
from .descriptor import synthesize_descriptor
from .errors import (
    ExtractionFailed,
    InjectionError,
    MissingDependencies,
    PatchFailed,
    TargetMissing,
)
from .repair import DescriptorRepairLoop, RepairOutcome
from .schema import DESCRIPTOR_CLASS_ENTRY, DESCRIPTOR_SOURCE_ENTRY, JsonValue
from .steps import StepRecorder, StepResult
from .tooling import append_log, resolve_tool
from .workspace import Workspace, acquire

InjectionStatus = Literal["ok", "failed", "skipped"]


class Collaborator(Protocol):
    def confirm_overwrite(self, existing_descriptor: str) -> bool: ...

    def report_success(self, result: InjectionResult) -> None: ...

    def report_failure(self, error: InjectionError) -> None: ...


@dataclass
class ScriptedCollaborator:
    """Non-interactive collaborator with a fixed overwrite answer."""

    overwrite: bool = False
    confirmations: list[str] = field(default_factory=list)
    successes: list[InjectionResult] = field(default_factory=list)
    failures: list[InjectionError] = field(default_factory=list)

    def confirm_overwrite(self, existing_descriptor: str) -> bool:
        self.confirmations.append(existing_descriptor)
        return self.overwrite

    def report_success(self, result: InjectionResult) -> None:
        self.successes.append(result)

    def report_failure(self, error: InjectionError) -> None:
        self.failures.append(error)


@dataclass(frozen=True)
class InjectionResult:
    status: InjectionStatus
    archive: Path
    backup_path: Path | None = None
    descriptor_text: str = ""
    removed_exports: list[str] = field(default_factory=list)
    compile_attempts: int = 0
    steps: list[StepResult] = field(default_factory=list)
    error_token: str | None = None
    error_message: str | None = None
    missing_dependencies: list[str] = field(default_factory=list)
    tool_output: str = ""

    def to_json(self) -> dict[str, JsonValue]:
        return {
            "status": self.status,
            "archive": str(self.archive),
            "backup_path": str(self.backup_path) if self.backup_path else None,
            "descriptor_text": self.descriptor_text,
            "removed_exports": cast(list[JsonValue], list(self.removed_exports)),
            "compile_attempts": self.compile_attempts,
            "steps": cast(list[JsonValue], [s.to_json() for s in self.steps]),
            "error": (
                {"token": self.error_token, "message": self.error_message}
                if self.error_token
                else None
            ),
            "missing_dependencies": cast(
                list[JsonValue], list(self.missing_dependencies)
            ),
            "tool_output": self.tool_output,
        }


def create_backup(archive: Path, *, max_tries: int = 10_000) -> Path:
    """Copy `archive` to the first unused `<name>.bak` / `<name><n>.bak`."""

    for i in range(max_tries):
        suffix = ".bak" if i == 0 else f"{i}.bak"
        candidate = archive.with_name(archive.name + suffix)
        try:
            dst = candidate.open("xb")
        except FileExistsError:
            continue
        try:
            with dst, archive.open("rb") as src:
                shutil.copyfileobj(src, dst, 1024 * 1024)
            shutil.copystat(archive, candidate)
        except OSError:
            candidate.unlink(missing_ok=True)
            raise
        return candidate

    raise FileExistsError(
        f"Unable to find an unused backup name for '{archive}' after {max_tries} attempts"
    )


def should_inject(archive: Path, collaborator: Collaborator) -> bool:
    if not archive.is_file():
        collaborator.report_failure(
            TargetMissing(f"Target archive does not exist: {archive}")
        )
        return False

    if DESCRIPTOR_CLASS_ENTRY not in list_entries(archive):
        return True

    # Empty when the existing descriptor was not written by this tool.
    existing = read_entry_text(archive, DESCRIPTOR_SOURCE_ENTRY)
    return bool(collaborator.confirm_overwrite(existing))


def _stage_clean_copy(archive: Path, ws: Workspace) -> None:
    staged = ws.staged_archive
    try:
        _ = shutil.copyfile(archive, staged)
    except OSError as exc:
        raise ExtractionFailed(f"Could not stage a copy of {archive}: {exc}") from exc

    entries = set(list_entries(staged))
    for name in (DESCRIPTOR_CLASS_ENTRY, DESCRIPTOR_SOURCE_ENTRY):
        if name in entries:
            remove_entry(staged, name)


def _backup(archive: Path) -> Path:
    try:
        return create_backup(archive)
    except OSError as exc:
        raise PatchFailed(f"Could not back up {archive}: {exc}") from exc


def _patch(archive: Path, ws: Workspace, outcome: RepairOutcome, mode: PatchMode) -> None:
    if mode == "replace":
        replace_entries(
            archive,
            {
                DESCRIPTOR_CLASS_ENTRY: outcome.compiled_descriptor,
                DESCRIPTOR_SOURCE_ENTRY: outcome.descriptor_source,
            },
        )
        return

    try:
        _ = shutil.copyfile(
            outcome.compiled_descriptor, ws.classes_dir / DESCRIPTOR_CLASS_ENTRY
        )
        _ = shutil.copyfile(
            outcome.descriptor_source, ws.classes_dir / DESCRIPTOR_SOURCE_ENTRY
        )
    except OSError as exc:
        raise PatchFailed(f"Could not stage the descriptor for rebuild: {exc}") from exc
    _ = rebuild_from_directory(archive, ws.classes_dir)


def inject(
    archive: Path | str,
    dependencies: Sequence[Path | str] = (),
    collaborator: Collaborator | None = None,
    *,
    config: InjectorConfig | None = None,
    module_name: str | None = None,
    exports: Sequence[str] = (),
) -> InjectionResult:
    """Inject a compiled module descriptor into `archive`.

    Without `module_name` the descriptor is generated by the dependency
    analyzer; with it, the descriptor is synthesized from `module_name` and
    `exports`. Either way the archive is only touched after the descriptor
    compiled and a backup exists. Failures are reported to `collaborator`
    and returned, never raised. Invalid `module_name`/`exports` raise
    ValueError before any work starts.
    """

    cfg = config or InjectorConfig()
    collab: Collaborator = collaborator or ScriptedCollaborator()
    target = Path(archive)
    deps = tuple(Path(d) for d in dependencies)
    export_list = [e for e in exports if e.strip()]
    if module_name is not None:
        _ = synthesize_descriptor(module_name, export_list)

    recorder = StepRecorder(log_path=cfg.log_path)
    backup_path: Path | None = None
    append_log(
        cfg.log_path,
        f"inject target={target} dependencies={[str(d) for d in deps]} mode={cfg.patch_mode}",
    )

    def failed(exc: InjectionError, *, report: bool = True) -> InjectionResult:
        if report:
            collab.report_failure(exc)
        append_log(cfg.log_path, f"inject failed: {exc.token}: {exc}")
        return InjectionResult(
            status="failed",
            archive=target,
            backup_path=backup_path,
            steps=list(recorder.results),
            error_token=exc.token,
            error_message=str(exc),
            missing_dependencies=(
                list(exc.names) if isinstance(exc, MissingDependencies) else []
            ),
            tool_output=exc.output,
        )

    try:
        proceed = recorder.run("check", lambda: should_inject(target, collab))
    except InjectionError as exc:
        return failed(exc)

    if not proceed:
        if not target.is_file():
            return failed(
                TargetMissing(f"Target archive does not exist: {target}"), report=False
            )
        recorder.skip("inject", "existing module descriptor kept")
        return InjectionResult(status="skipped", archive=target, steps=list(recorder.results))

    try:
        with acquire(
            target.parent, target.name, scratch_dir_name=cfg.scratch_dir_name
        ) as ws:
            jdeps = ""
            if not module_name:
                jdeps = recorder.run("resolve-analyzer", lambda: resolve_tool(cfg.jdeps))
            javac = recorder.run("resolve-compiler", lambda: resolve_tool(cfg.javac))
            recorder.run("stage", lambda: _stage_clean_copy(target, ws))
            recorder.run("extract", lambda: extract_all(ws.staged_archive, ws.classes_dir))

            loop = DescriptorRepairLoop(
                config=cfg,
                workspace=ws,
                dependencies=deps,
                jdeps=jdeps,
                javac=javac,
            )
            outcome = recorder.run(
                "repair",
                lambda: loop.run(
                    ws.staged_archive, module_name=module_name, exports=export_list
                ),
            )
            backup_path = recorder.run("backup", lambda: _backup(target))
            recorder.run("patch", lambda: _patch(target, ws, outcome, cfg.patch_mode))
    except InjectionError as exc:
        return failed(exc)

    result = InjectionResult(
        status="ok",
        archive=target,
        backup_path=backup_path,
        descriptor_text=outcome.descriptor_text,
        removed_exports=list(outcome.removed_exports),
        compile_attempts=outcome.compile_attempts,
        steps=list(recorder.results),
    )
    append_log(cfg.log_path, f"inject ok: backup={backup_path}")
    collab.report_success(result)
    return result
