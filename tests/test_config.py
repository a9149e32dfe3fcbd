from __future__ import annotations

from pathlib import Path

import pytest

from modinject.config import InjectorConfig


def test_defaults() -> None:
    cfg = InjectorConfig()
    assert cfg.jdeps == "jdeps"
    assert cfg.javac == "javac"
    assert cfg.patch_mode == "replace"
    assert cfg.scratch_dir_name == "tmpClassPath"
    assert cfg.log_path is None


def test_from_env_overlays_values() -> None:
    cfg = InjectorConfig.from_env(
        {
            "MODINJECT_JDEPS": "/opt/jdk/bin/jdeps",
            "MODINJECT_JAVAC": " /opt/jdk/bin/javac ",
            "MODINJECT_TOOL_TIMEOUT_S": "12.5",
            "MODINJECT_PATCH_MODE": "rebuild",
            "MODINJECT_LOG": "/tmp/modinject.log",
        }
    )
    assert cfg.jdeps == "/opt/jdk/bin/jdeps"
    assert cfg.javac == "/opt/jdk/bin/javac"
    assert cfg.tool_timeout_s == 12.5
    assert cfg.patch_mode == "rebuild"
    assert cfg.log_path == Path("/tmp/modinject.log")


def test_from_env_ignores_blank_values() -> None:
    assert InjectorConfig.from_env({"MODINJECT_JDEPS": "  "}) == InjectorConfig()


@pytest.mark.parametrize(
    "env",
    [
        {"MODINJECT_TOOL_TIMEOUT_S": "soon"},
        {"MODINJECT_TOOL_TIMEOUT_S": "0"},
        {"MODINJECT_PATCH_MODE": "merge"},
    ],
)
def test_from_env_rejects_invalid_values(env: dict[str, str]) -> None:
    with pytest.raises(ValueError):
        _ = InjectorConfig.from_env(env)


@pytest.mark.parametrize("name", ["", "a/b", "..", "."])
def test_invalid_scratch_dir_name(name: str) -> None:
    with pytest.raises(ValueError):
        _ = InjectorConfig(scratch_dir_name=name)
