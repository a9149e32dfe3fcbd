from __future__ import annotations

from collections.abc import Sequence


class InjectionError(ValueError):
    """Base for every failure that aborts an injection run."""

    token: str = "INJECTION_FAILED"

    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output: str = output


class TargetMissing(InjectionError):
    token = "TARGET_MISSING"


class ArchiveUnreadable(InjectionError):
    token = "ARCHIVE_UNREADABLE"


class ExtractionFailed(InjectionError):
    token = "EXTRACTION_FAILED"


class UnsafeEntryPath(ExtractionFailed):
    token = "UNSAFE_ENTRY_PATH"


class EntryNotFound(InjectionError):
    token = "ENTRY_NOT_FOUND"


class WorkspaceBusy(InjectionError):
    token = "WORKSPACE_BUSY"


class ToolNotFound(InjectionError):
    token = "TOOL_NOT_FOUND"


class ToolTimeout(InjectionError):
    token = "TOOL_TIMEOUT"


class MissingDependencies(InjectionError):
    token = "MISSING_DEPENDENCIES"

    def __init__(self, names: Sequence[str], *, output: str = "") -> None:
        self.names: list[str] = list(names)
        super().__init__(
            f"Unresolved dependencies: {', '.join(self.names)}", output=output
        )


class AnalyzerError(InjectionError):
    token = "ANALYZER_ERROR"


class CompileError(InjectionError):
    token = "COMPILE_ERROR"


class DescriptorRepairLoopExceeded(InjectionError):
    token = "DESCRIPTOR_REPAIR_LOOP_EXCEEDED"


class PatchFailed(InjectionError):
    token = "PATCH_FAILED"
