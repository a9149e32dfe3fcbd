from __future__ import annotations

import os
import re
import shutil
import subprocess
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

from .config import InjectorConfig
from .errors import ToolNotFound, ToolTimeout
from .schema import JsonValue


def append_log(log_path: Path | None, line: str) -> None:
    if log_path is None:
        return
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("a", encoding="utf-8") as f:
            _ = f.write(line)
            if not line.endswith("\n"):
                _ = f.write("\n")
    except Exception:
        return


def _truncate_text(s: str, *, max_chars: int) -> str:
    if len(s) <= max_chars:
        return s
    if max_chars <= 3:
        return s[:max_chars]
    return s[: max_chars - 3] + "..."


def _decode(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


_VERSION_RE = re.compile(r"\b(\d+\.)+\d+\b|\b\d+\b")


def _extract_version(text: str) -> str:
    m = _VERSION_RE.search(text)
    return m.group(0) if m else ""


@dataclass(frozen=True)
class ToolInvocationResult:
    argv: list[str]
    exit_status: int
    output: str
    duration_s: float


def module_path(dependencies: Sequence[Path]) -> str:
    return os.pathsep.join(str(p) for p in dependencies)


def resolve_tool(name: str) -> str:
    resolved = shutil.which(name)
    if not resolved:
        raise ToolNotFound(f"Required tool is not on PATH: {name}")
    return resolved


def run_tool(
    argv: Sequence[str],
    *,
    timeout_s: float,
    max_output_chars: int = 65536,
    cwd: Path | None = None,
    log_path: Path | None = None,
) -> ToolInvocationResult:
    """Run one external tool to completion.

    Output is stdout followed by stderr. The exit status is returned as-is;
    callers decide success from the text.
    """

    argv_list = [str(a) for a in argv]
    if not argv_list:
        raise ToolNotFound("empty command line")
    tool = Path(argv_list[0]).name
    append_log(log_path, f"{tool} argv: {argv_list}")

    t0 = time.monotonic()
    try:
        res = subprocess.run(
            argv_list,
            cwd=str(cwd) if cwd is not None else None,
            text=True,
            encoding="utf-8",
            errors="replace",
            capture_output=True,
            check=False,
            timeout=float(timeout_s),
        )
    except subprocess.TimeoutExpired as exc:
        partial = _decode(exc.stdout) + _decode(exc.stderr)
        append_log(log_path, f"{tool} timed out after {timeout_s}s")
        raise ToolTimeout(
            f"{tool} did not finish within {timeout_s}s and was terminated",
            output=_truncate_text(partial, max_chars=max_output_chars),
        ) from exc
    except FileNotFoundError as exc:
        raise ToolNotFound(f"Executable not found: {argv_list[0]}") from exc
    except PermissionError as exc:
        raise ToolNotFound(f"Executable not runnable: {argv_list[0]}: {exc}") from exc

    duration_s = max(0.0, time.monotonic() - t0)
    output = (res.stdout or "") + (res.stderr or "")
    append_log(log_path, f"{tool} returncode: {res.returncode}")
    if output:
        append_log(log_path, f"--- {tool} output (trunc) ---")
        append_log(log_path, _truncate_text(output, max_chars=max_output_chars))

    return ToolInvocationResult(
        argv=argv_list,
        exit_status=int(res.returncode),
        output=output,
        duration_s=duration_s,
    )


def analyzer_argv(
    jdeps: str,
    *,
    archive: Path,
    out_dir: Path,
    dependencies: Sequence[Path],
) -> list[str]:
    argv = [jdeps, "-verbose:class"]
    if dependencies:
        argv += [
            "--module-path",
            module_path(dependencies),
            "--add-modules",
            "ALL-MODULE-PATH",
        ]
    argv += ["--generate-module-info", str(out_dir), str(archive)]
    return argv


def compiler_argv(
    javac: str,
    *,
    descriptor: Path,
    out_dir: Path,
    dependencies: Sequence[Path],
) -> list[str]:
    argv = [javac]
    if dependencies:
        argv += ["--module-path", module_path(dependencies)]
    argv += ["-d", str(out_dir), str(descriptor)]
    return argv


@dataclass(frozen=True)
class _ToolProbe:
    key: str
    candidates: list[list[str]]


def _probe_one(
    *, argv: list[str], timeout_s: float, max_output_chars: int
) -> dict[str, JsonValue]:
    try:
        res = subprocess.run(
            list(argv),
            text=True,
            capture_output=True,
            check=False,
            timeout=float(timeout_s),
        )
        return {
            "exit_code": int(res.returncode),
            "output": _truncate_text(
                (res.stdout or "") + (res.stderr or ""), max_chars=max_output_chars
            ),
        }
    except subprocess.TimeoutExpired as e:
        return {
            "exit_code": None,
            "output": _truncate_text(
                _decode(e.stdout) + _decode(e.stderr), max_chars=max_output_chars
            ),
        }
    except OSError:
        return {"exit_code": None, "output": ""}


def probe_toolchain(
    config: InjectorConfig, *, timeout_s: float = 10.0, max_output_chars: int = 1024
) -> dict[str, JsonValue]:
    """Report availability and version of the analyzer and compiler."""

    probes = [
        _ToolProbe("jdeps", [[config.jdeps, "--version"], [config.jdeps, "-version"]]),
        _ToolProbe("javac", [[config.javac, "-version"], [config.javac, "--version"]]),
    ]

    tools: dict[str, JsonValue] = {}
    for p in probes:
        command = p.candidates[0][0]
        resolved = shutil.which(command)
        tool_obj: dict[str, JsonValue] = {
            "command": command,
            "available": bool(resolved),
            "resolved": resolved or "",
            "argv": [],
            "exit_code": None,
            "version": "",
            "output": "",
        }
        if resolved:
            for cand in p.candidates:
                argv = [resolved] + cand[1:]
                tool_obj["argv"] = cast(JsonValue, list(argv))
                result = _probe_one(
                    argv=argv, timeout_s=timeout_s, max_output_chars=max_output_chars
                )
                tool_obj["exit_code"] = result.get("exit_code")
                tool_obj["output"] = result.get("output")
                if tool_obj["exit_code"] == 0:
                    break
            tool_obj["version"] = _extract_version(cast(str, tool_obj["output"] or ""))
        tools[p.key] = tool_obj

    missing = [
        p.key
        for p in probes
        if not cast(dict[str, JsonValue], tools[p.key])["available"]
    ]
    return {"tools": tools, "missing_tools": cast(JsonValue, missing)}
