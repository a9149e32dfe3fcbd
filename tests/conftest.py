from __future__ import annotations

import re
import subprocess
import zipfile
from dataclasses import dataclass, field
from pathlib import Path

import pytest

DEFAULT_DESCRIPTOR = (
    "module lib {\n"
    "    exports com.example.alpha;\n"
    "    exports com.example.beta;\n"
    "}\n"
)

FAKE_CLASS_BYTES = b"\xca\xfe\xba\xbe\x00\x00\x00\x41fake-module-info"


@dataclass
class FakeToolchain:
    """Stands in for jdeps/javac behind `subprocess.run`."""

    descriptor: str = DEFAULT_DESCRIPTOR
    descriptor_encoding: str = "utf-8"
    analyzer_output: str | None = None
    empty_packages: set[str] = field(default_factory=set)
    compile_output: str | None = None
    calls: list[list[str]] = field(default_factory=list)
    analyzed_entries: list[list[str]] = field(default_factory=list)
    compiled_sources: list[str] = field(default_factory=list)

    def tool_calls(self, name: str) -> list[list[str]]:
        return [c for c in self.calls if Path(c[0]).name == name]

    def run(self, args: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = kwargs
        argv = [str(a) for a in args]
        self.calls.append(argv)
        tool = Path(argv[0]).name
        if tool == "jdeps":
            return self._jdeps(argv)
        if tool == "javac":
            return self._javac(argv)
        raise AssertionError(f"unexpected subprocess args: {argv}")

    def _jdeps(self, argv: list[str]) -> subprocess.CompletedProcess[str]:
        i = argv.index("--generate-module-info")
        out_dir = Path(argv[i + 1])
        archive = Path(argv[i + 2])
        with zipfile.ZipFile(archive) as zf:
            self.analyzed_entries.append(zf.namelist())

        if self.analyzer_output is not None:
            return subprocess.CompletedProcess(
                args=argv, returncode=1, stdout=self.analyzer_output, stderr=""
            )

        generated = out_dir / "lib" / "module-info.java"
        generated.parent.mkdir(parents=True, exist_ok=True)
        _ = generated.write_text(self.descriptor, encoding=self.descriptor_encoding)
        return subprocess.CompletedProcess(
            args=argv, returncode=0, stdout=f"writing to {generated}\n", stderr=""
        )

    def _javac(self, argv: list[str]) -> subprocess.CompletedProcess[str]:
        out_dir = Path(argv[argv.index("-d") + 1])
        source = Path(argv[-1])
        text = source.read_text(encoding="utf-8")
        self.compiled_sources.append(text)

        for pkg in sorted(self.empty_packages):
            if re.search(rf"^\s*exports\s+{re.escape(pkg)}\s*;", text, re.MULTILINE):
                stderr = (
                    f"{source}:2: error: package is empty or does not exist: {pkg}\n"
                    f"    exports {pkg};\n"
                    "                   ^\n"
                    "1 error\n"
                )
                return subprocess.CompletedProcess(
                    args=argv, returncode=1, stdout="", stderr=stderr
                )

        if self.compile_output is not None:
            return subprocess.CompletedProcess(
                args=argv, returncode=1, stdout="", stderr=self.compile_output
            )

        _ = (out_dir / "module-info.class").write_bytes(FAKE_CLASS_BYTES)
        return subprocess.CompletedProcess(args=argv, returncode=0, stdout="", stderr="")


@pytest.fixture
def fake_toolchain(monkeypatch: pytest.MonkeyPatch) -> FakeToolchain:
    toolchain = FakeToolchain()

    def fake_which(name: str) -> str | None:
        return f"/fake/bin/{Path(name).name}"

    monkeypatch.setattr("modinject.tooling.shutil.which", fake_which)
    monkeypatch.setattr("modinject.tooling.subprocess.run", toolchain.run)
    return toolchain
