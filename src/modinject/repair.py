"""Descriptor generation, compilation and repair.

The analyzer and compiler print free text; the markers below are the whole
contract with them and are only matched here. Anything that does not fit
the expected shape is reported as an analyzer or compile error carrying the
raw output.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Literal

from .config import InjectorConfig
from .descriptor import count_exports, is_qualified_name, remove_export, synthesize_descriptor
from .errors import (
    AnalyzerError,
    CompileError,
    DescriptorRepairLoopExceeded,
    MissingDependencies,
)
from .schema import DESCRIPTOR_CLASS_ENTRY
from .tooling import (
    ToolInvocationResult,
    analyzer_argv,
    append_log,
    compiler_argv,
    run_tool,
)
from .workspace import Workspace

MISSING_DEPENDENCY_MARKER = "Missing dependen"
NOT_FOUND_MARKER = "not found"
ARROW_TOKEN = "->"
WRITING_MARKER = "writing to "
EMPTY_EXPORT_MARKER = "package is empty or does not exist"

_EXPORTS_KEYWORD_RE = re.compile(r"\bexports\b")

AnalyzerVerdict = Literal["generated", "missing_dependencies", "error"]
CompileVerdict = Literal["compiled", "empty_export", "error"]


@dataclass(frozen=True)
class AnalyzerClassification:
    verdict: AnalyzerVerdict
    descriptor_path: str = ""
    missing: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class CompileClassification:
    verdict: CompileVerdict
    export_token: str = ""


def parse_missing_dependencies(text: str) -> list[str]:
    names: list[str] = []
    for line in text.splitlines():
        if NOT_FOUND_MARKER not in line:
            continue
        tail = line.rsplit(ARROW_TOKEN, 1)[-1]
        name = tail.split(NOT_FOUND_MARKER, 1)[0].strip()
        if name and name not in names:
            names.append(name)
    return names


def parse_generated_path(text: str) -> str:
    for line in text.splitlines():
        idx = line.find(WRITING_MARKER)
        if idx < 0:
            continue
        path = line[idx + len(WRITING_MARKER) :].strip()
        if path:
            return path
    return ""


def classify_analyzer_output(text: str) -> AnalyzerClassification:
    if MISSING_DEPENDENCY_MARKER in text:
        names = parse_missing_dependencies(text)
        if names:
            return AnalyzerClassification("missing_dependencies", missing=names)
        return AnalyzerClassification("error")

    path = parse_generated_path(text)
    if path:
        return AnalyzerClassification("generated", descriptor_path=path)
    return AnalyzerClassification("error")


def parse_empty_export(text: str) -> str | None:
    """Return the rejected export package, "" if unrecoverable, None if absent."""

    idx = text.find(EMPTY_EXPORT_MARKER)
    if idx < 0:
        return None
    tail = text[idx + len(EMPTY_EXPORT_MARKER) :]

    kw = _EXPORTS_KEYWORD_RE.search(tail)
    if kw:
        token = tail[kw.end() :].split(";", 1)[0].strip()
        if is_qualified_name(token):
            return token

    first_line = tail.split("\n", 1)[0]
    if ":" in first_line:
        token = first_line.split(":", 1)[1].strip()
        if is_qualified_name(token):
            return token
    return ""


def classify_compiler_output(text: str, class_file: Path) -> CompileClassification:
    if class_file.is_file():
        return CompileClassification("compiled")
    token = parse_empty_export(text)
    if token:
        return CompileClassification("empty_export", export_token=token)
    return CompileClassification("error")


def format_missing_dependencies(names: Sequence[str]) -> str:
    lines = ["The archive depends on classes that were not found:"]
    lines.extend(f"  - {n}" for n in names)
    lines.append("Add the archives providing them to the dependency list and retry.")
    return "\n".join(lines)


@dataclass(frozen=True)
class RepairOutcome:
    compiled_descriptor: Path
    descriptor_source: Path
    descriptor_text: str
    removed_exports: list[str]
    compile_attempts: int
    analyzer_output: str = ""


@dataclass
class DescriptorRepairLoop:
    config: InjectorConfig
    workspace: Workspace
    dependencies: tuple[Path, ...]
    jdeps: str
    javac: str

    def _run(self, argv: list[str]) -> ToolInvocationResult:
        return run_tool(
            argv,
            timeout_s=self.config.tool_timeout_s,
            max_output_chars=self.config.max_output_chars,
            cwd=self.workspace.root,
            log_path=self.config.log_path,
        )

    def analyze(self, archive: Path) -> tuple[Path, str]:
        argv = analyzer_argv(
            self.jdeps,
            archive=archive,
            out_dir=self.workspace.analyzer_dir,
            dependencies=self.dependencies,
        )
        result = self._run(argv)
        verdict = classify_analyzer_output(result.output)

        if verdict.verdict == "missing_dependencies":
            append_log(
                self.config.log_path,
                f"analyzer reported {len(verdict.missing)} missing dependencies",
            )
            raise MissingDependencies(verdict.missing, output=result.output)
        if verdict.verdict == "error":
            raise AnalyzerError(
                f"Analyzer did not generate a module descriptor (exit status {result.exit_status})",
                output=result.output,
            )

        generated = Path(verdict.descriptor_path)
        if not generated.is_absolute():
            generated = self.workspace.root / generated
        if not generated.is_file():
            raise AnalyzerError(
                f"Analyzer reported {generated} but the file does not exist",
                output=result.output,
            )

        target = self.workspace.descriptor_source
        try:
            raw = generated.read_bytes()
            # Re-encoded as UTF-8; undecodable bytes become U+FFFD.
            _ = target.write_text(raw.decode("utf-8", errors="replace"), encoding="utf-8")
        except OSError as exc:
            raise AnalyzerError(
                f"Could not copy the generated descriptor {generated}: {exc}",
                output=result.output,
            ) from exc
        append_log(self.config.log_path, f"descriptor generated: {generated}")
        return target, result.output

    def synthesize(self, module_name: str, exports: Sequence[str]) -> Path:
        target = self.workspace.descriptor_source
        text = synthesize_descriptor(module_name, exports)
        try:
            _ = target.write_text(text, encoding="utf-8")
        except OSError as exc:
            raise CompileError(f"Could not write descriptor {target}: {exc}") from exc
        return target

    def compile(self, descriptor: Path) -> RepairOutcome:
        """Compile `descriptor`, dropping rejected empty exports until it builds.

        With N export statements at the start, at most N are removed and the
        compiler runs at most N + 1 times.
        """

        try:
            text = descriptor.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise CompileError(f"Could not read descriptor {descriptor}: {exc}") from exc
        budget = count_exports(text)
        removed: list[str] = []
        attempts = 0

        while True:
            attempts += 1
            if attempts > budget + 1:
                raise DescriptorRepairLoopExceeded(
                    f"Descriptor still rejected after {attempts - 1} compile attempts"
                )
            try:
                build_dir = self.workspace.new_build_dir()
            except OSError as exc:
                raise CompileError(f"Could not create a build directory: {exc}") from exc
            argv = compiler_argv(
                self.javac,
                descriptor=descriptor,
                out_dir=build_dir,
                dependencies=self.dependencies,
            )
            result = self._run(argv)
            class_file = build_dir / DESCRIPTOR_CLASS_ENTRY
            verdict = classify_compiler_output(result.output, class_file)

            if verdict.verdict == "compiled":
                return RepairOutcome(
                    compiled_descriptor=class_file,
                    descriptor_source=descriptor,
                    descriptor_text=text,
                    removed_exports=removed,
                    compile_attempts=attempts,
                )
            if verdict.verdict == "error":
                raise CompileError(
                    f"Compiler did not produce {DESCRIPTOR_CLASS_ENTRY} (exit status {result.exit_status})",
                    output=result.output,
                )

            token = verdict.export_token
            if token in removed:
                raise DescriptorRepairLoopExceeded(
                    f"Export {token} was rejected again after being removed",
                    output=result.output,
                )
            if len(removed) >= budget:
                raise DescriptorRepairLoopExceeded(
                    f"Removed all {budget} exports and the descriptor is still rejected",
                    output=result.output,
                )

            text, count = remove_export(text, token)
            if count == 0:
                raise CompileError(
                    f"Compiler rejected export {token} but the descriptor has no such statement",
                    output=result.output,
                )
            removed.append(token)
            try:
                _ = descriptor.write_text(text, encoding="utf-8")
            except OSError as exc:
                raise CompileError(
                    f"Could not rewrite descriptor {descriptor}: {exc}",
                    output=result.output,
                ) from exc
            append_log(
                self.config.log_path,
                f"removed empty export {token}; retrying compile ({len(removed)}/{budget})",
            )

    def run(
        self,
        archive: Path,
        *,
        module_name: str | None = None,
        exports: Sequence[str] = (),
    ) -> RepairOutcome:
        analyzer_output = ""
        if module_name:
            descriptor = self.synthesize(module_name, exports)
        else:
            descriptor, analyzer_output = self.analyze(archive)

        outcome = self.compile(descriptor)
        return replace(outcome, analyzer_output=analyzer_output)
