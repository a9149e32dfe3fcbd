from __future__ import annotations

import zipfile
from collections.abc import Iterator
from pathlib import Path

import pytest

from conftest import FakeToolchain
from modinject.config import InjectorConfig
from modinject.errors import (
    AnalyzerError,
    CompileError,
    DescriptorRepairLoopExceeded,
    MissingDependencies,
)
from modinject.repair import (
    DescriptorRepairLoop,
    classify_analyzer_output,
    classify_compiler_output,
    format_missing_dependencies,
    parse_empty_export,
    parse_missing_dependencies,
)
from modinject.workspace import Workspace, acquire

MISSING_OUTPUT = (
    "Missing dependence: .\\lib.jar\n"
    "   com.example.alpha.A -> org.slf4j.Logger   not found\n"
    "   com.example.alpha.B -> org.slf4j.Logger   not found\n"
    "   com.example.beta.C  -> com.google.common.base.Preconditions not found\n"
    "Error: missing dependencies\n"
)


@pytest.fixture
def ws(tmp_path: Path) -> Iterator[Workspace]:
    with acquire(tmp_path, "lib.jar") as workspace:
        yield workspace


def _loop(ws: Workspace, log: Path | None = None) -> DescriptorRepairLoop:
    return DescriptorRepairLoop(
        config=InjectorConfig(log_path=log),
        workspace=ws,
        dependencies=(),
        jdeps="/fake/bin/jdeps",
        javac="/fake/bin/javac",
    )


def _descriptor(ws: Workspace, packages: list[str]) -> Path:
    lines = ["module lib {"] + [f"    exports {p};" for p in packages] + ["}"]
    path = ws.descriptor_source
    _ = path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def _staged_jar(ws: Workspace) -> Path:
    with zipfile.ZipFile(ws.staged_archive, "w") as zf:
        zf.writestr("com/example/alpha/A.class", b"A")
    return ws.staged_archive


def test_parse_missing_dependencies_dedupes_in_order() -> None:
    assert parse_missing_dependencies(MISSING_OUTPUT) == [
        "org.slf4j.Logger",
        "com.google.common.base.Preconditions",
    ]


def test_classify_analyzer_output() -> None:
    missing = classify_analyzer_output(MISSING_OUTPUT)
    assert missing.verdict == "missing_dependencies"
    assert missing.missing == ["org.slf4j.Logger", "com.google.common.base.Preconditions"]

    generated = classify_analyzer_output("writing to /tmp/gen/lib/module-info.java\n")
    assert generated.verdict == "generated"
    assert generated.descriptor_path == "/tmp/gen/lib/module-info.java"

    assert classify_analyzer_output("Error: lib.jar is a multi-release jar\n").verdict == "error"


def test_classify_analyzer_output_marker_without_names_is_error() -> None:
    out = classify_analyzer_output("Missing dependencies detected\n")
    assert out.verdict == "error"
    assert out.missing == []


def test_parse_empty_export_variants() -> None:
    assert parse_empty_export("all good") is None
    assert (
        parse_empty_export(
            "module-info.java:3: error: package is empty or does not exist: com.example.beta\n"
            "    exports com.example.beta;\n"
            "                       ^\n"
        )
        == "com.example.beta"
    )
    assert (
        parse_empty_export("error: package is empty or does not exist: com.example.gamma\n")
        == "com.example.gamma"
    )
    assert parse_empty_export("error: package is empty or does not exist\n") == ""


def test_classify_compiler_output_prefers_class_file(tmp_path: Path) -> None:
    class_file = tmp_path / "module-info.class"
    text = "warning: package is empty or does not exist: com.example.x\n"
    assert classify_compiler_output(text, class_file).verdict == "empty_export"

    _ = class_file.write_bytes(b"\xca\xfe\xba\xbe")
    assert classify_compiler_output(text, class_file).verdict == "compiled"
    assert classify_compiler_output("boom", tmp_path / "absent.class").verdict == "error"


def test_format_missing_dependencies_lists_every_name() -> None:
    text = format_missing_dependencies(["org.slf4j.Logger", "com.google.Foo"])
    assert "  - org.slf4j.Logger" in text
    assert "  - com.google.Foo" in text


def test_analyze_copies_generated_descriptor(
    ws: Workspace, fake_toolchain: FakeToolchain
) -> None:
    descriptor, output = _loop(ws).analyze(_staged_jar(ws))

    assert descriptor == ws.descriptor_source
    assert descriptor.read_text(encoding="utf-8") == fake_toolchain.descriptor
    assert output.startswith("writing to ")
    call = fake_toolchain.tool_calls("jdeps")[0]
    assert "--module-path" not in call
    assert call[-1] == str(ws.staged_archive)


def test_analyze_raises_missing_dependencies(
    ws: Workspace, fake_toolchain: FakeToolchain
) -> None:
    fake_toolchain.analyzer_output = MISSING_OUTPUT

    with pytest.raises(MissingDependencies) as excinfo:
        _ = _loop(ws).analyze(_staged_jar(ws))

    assert excinfo.value.names == [
        "org.slf4j.Logger",
        "com.google.common.base.Preconditions",
    ]
    assert excinfo.value.output == MISSING_OUTPUT


def test_analyze_unrecognized_output_is_analyzer_error(
    ws: Workspace, fake_toolchain: FakeToolchain
) -> None:
    fake_toolchain.analyzer_output = "Error: something unexpected\n"

    with pytest.raises(AnalyzerError) as excinfo:
        _ = _loop(ws).analyze(_staged_jar(ws))
    assert "something unexpected" in excinfo.value.output


def test_analyze_reported_path_must_exist(
    ws: Workspace, fake_toolchain: FakeToolchain
) -> None:
    fake_toolchain.analyzer_output = "writing to generated/lib/nowhere.java\n"

    with pytest.raises(AnalyzerError):
        _ = _loop(ws).analyze(_staged_jar(ws))


def test_compile_first_try(ws: Workspace, fake_toolchain: FakeToolchain) -> None:
    descriptor = _descriptor(ws, ["com.example.alpha"])

    outcome = _loop(ws).compile(descriptor)

    assert outcome.compile_attempts == 1
    assert outcome.removed_exports == []
    assert outcome.compiled_descriptor.is_file()
    assert outcome.descriptor_source == descriptor
    assert len(fake_toolchain.tool_calls("javac")) == 1


def test_compile_removes_empty_exports_and_retries(
    ws: Workspace, fake_toolchain: FakeToolchain, tmp_path: Path
) -> None:
    fake_toolchain.empty_packages = {"com.example.beta", "com.example.gamma"}
    descriptor = _descriptor(ws, ["com.example.alpha", "com.example.beta", "com.example.gamma"])
    log = tmp_path / "repair.log"

    outcome = _loop(ws, log).compile(descriptor)

    assert outcome.compile_attempts == 3
    assert outcome.removed_exports == ["com.example.beta", "com.example.gamma"]
    assert outcome.descriptor_text == "module lib {\n    exports com.example.alpha;\n}\n"
    assert descriptor.read_text(encoding="utf-8") == outcome.descriptor_text
    assert "removed empty export com.example.beta" in log.read_text(encoding="utf-8")


def test_compile_can_remove_every_export(
    ws: Workspace, fake_toolchain: FakeToolchain
) -> None:
    packages = ["p.one", "p.two", "p.three"]
    fake_toolchain.empty_packages = set(packages)
    descriptor = _descriptor(ws, packages)

    outcome = _loop(ws).compile(descriptor)

    assert sorted(outcome.removed_exports) == sorted(packages)
    assert outcome.compile_attempts == len(packages) + 1
    assert len(fake_toolchain.tool_calls("javac")) <= len(packages) + 1
    assert outcome.descriptor_text == "module lib {\n}\n"


def test_compile_repeated_rejection_exceeds_loop(
    ws: Workspace, monkeypatch: pytest.MonkeyPatch, fake_toolchain: FakeToolchain
) -> None:
    descriptor = _descriptor(ws, ["com.example.alpha", "com.example.beta"])
    fake_toolchain.compile_output = (
        "error: package is empty or does not exist: com.example.alpha\n"
    )

    def remove_nothing_new(text: str, token: str) -> tuple[str, int]:
        return text, 1

    monkeypatch.setattr("modinject.repair.remove_export", remove_nothing_new)

    with pytest.raises(DescriptorRepairLoopExceeded) as excinfo:
        _ = _loop(ws).compile(descriptor)

    assert excinfo.value.token == "DESCRIPTOR_REPAIR_LOOP_EXCEEDED"
    assert len(fake_toolchain.tool_calls("javac")) <= 3


def test_compile_rejection_without_exports_exceeds_loop(
    ws: Workspace, fake_toolchain: FakeToolchain
) -> None:
    descriptor = _descriptor(ws, [])
    fake_toolchain.compile_output = (
        "error: package is empty or does not exist: com.example.ghost\n"
    )

    with pytest.raises(DescriptorRepairLoopExceeded):
        _ = _loop(ws).compile(descriptor)
    assert len(fake_toolchain.tool_calls("javac")) == 1


def test_compile_rejection_of_unknown_export_is_compile_error(
    ws: Workspace, fake_toolchain: FakeToolchain
) -> None:
    descriptor = _descriptor(ws, ["com.example.alpha"])
    fake_toolchain.compile_output = (
        "error: package is empty or does not exist: com.example.ghost\n"
    )

    with pytest.raises(CompileError):
        _ = _loop(ws).compile(descriptor)


def test_compile_other_failure_is_compile_error(
    ws: Workspace, fake_toolchain: FakeToolchain
) -> None:
    descriptor = _descriptor(ws, ["com.example.alpha"])
    fake_toolchain.compile_output = "module-info.java:1: error: expected '{'\n"

    with pytest.raises(CompileError) as excinfo:
        _ = _loop(ws).compile(descriptor)
    assert "expected '{'" in excinfo.value.output


def test_run_with_module_name_skips_analyzer(
    ws: Workspace, fake_toolchain: FakeToolchain
) -> None:
    outcome = _loop(ws).run(
        ws.staged_archive, module_name="com.example.lib", exports=["com.example.alpha"]
    )

    assert fake_toolchain.tool_calls("jdeps") == []
    assert outcome.analyzer_output == ""
    assert outcome.descriptor_text.startswith("module com.example.lib {")


def test_run_with_analyzer_keeps_its_output(
    ws: Workspace, fake_toolchain: FakeToolchain
) -> None:
    outcome = _loop(ws).run(_staged_jar(ws))

    assert outcome.analyzer_output.startswith("writing to ")
    assert outcome.compile_attempts == 1
    assert outcome.descriptor_text == fake_toolchain.descriptor


def test_compile_undecodable_descriptor_is_compile_error(
    ws: Workspace, fake_toolchain: FakeToolchain
) -> None:
    _ = ws.descriptor_source.write_bytes(b"module lib {\n    exports com.\xe9x;\n}\n")

    with pytest.raises(CompileError) as excinfo:
        _ = _loop(ws).compile(ws.descriptor_source)

    assert "Could not read descriptor" in str(excinfo.value)
    assert fake_toolchain.tool_calls("javac") == []


def test_analyze_replaces_undecodable_bytes(
    ws: Workspace, fake_toolchain: FakeToolchain
) -> None:
    fake_toolchain.descriptor = "module lib {\n    exports com.\xe9x;\n}\n"
    fake_toolchain.descriptor_encoding = "latin-1"

    descriptor, _output = _loop(ws).analyze(_staged_jar(ws))

    assert descriptor.read_text(encoding="utf-8") == (
        "module lib {\n    exports com.\ufffdx;\n}\n"
    )
