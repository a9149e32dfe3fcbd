from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Literal, cast

PatchMode = Literal["replace", "rebuild"]

_PATCH_MODES: tuple[str, ...] = ("replace", "rebuild")


@dataclass(frozen=True)
class InjectorConfig:
    jdeps: str = "jdeps"
    javac: str = "javac"
    tool_timeout_s: float = 300.0
    max_output_chars: int = 65536
    scratch_dir_name: str = "tmpClassPath"
    patch_mode: PatchMode = "replace"
    log_path: Path | None = None

    def __post_init__(self) -> None:
        if self.patch_mode not in _PATCH_MODES:
            raise ValueError(
                f"patch_mode must be one of {'/'.join(_PATCH_MODES)}: {self.patch_mode!r}"
            )
        if float(self.tool_timeout_s) <= 0.0:
            raise ValueError("tool_timeout_s must be positive")
        if int(self.max_output_chars) <= 0:
            raise ValueError("max_output_chars must be positive")
        name = self.scratch_dir_name.strip()
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise ValueError(f"invalid scratch_dir_name: {self.scratch_dir_name!r}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> InjectorConfig:
        env = os.environ if environ is None else environ
        cfg = cls()

        jdeps = env.get("MODINJECT_JDEPS", "").strip()
        if jdeps:
            cfg = replace(cfg, jdeps=jdeps)
        javac = env.get("MODINJECT_JAVAC", "").strip()
        if javac:
            cfg = replace(cfg, javac=javac)

        timeout_raw = env.get("MODINJECT_TOOL_TIMEOUT_S", "").strip()
        if timeout_raw:
            try:
                timeout_s = float(timeout_raw)
            except ValueError:
                raise ValueError(
                    f"MODINJECT_TOOL_TIMEOUT_S is not a number: {timeout_raw!r}"
                ) from None
            cfg = replace(cfg, tool_timeout_s=timeout_s)

        mode = env.get("MODINJECT_PATCH_MODE", "").strip()
        if mode:
            cfg = replace(cfg, patch_mode=cast(PatchMode, mode))

        log_raw = env.get("MODINJECT_LOG", "").strip()
        if log_raw:
            cfg = replace(cfg, log_path=Path(log_raw).expanduser())

        return cfg
