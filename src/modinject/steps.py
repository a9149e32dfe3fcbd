"""Timed records of the orchestrator's steps.

A failing step is recorded and its exception re-raised; the orchestrator
decides what a failure means.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, TypeVar, cast

from .schema import JsonValue
from .tooling import append_log

StepStatus = Literal["ok", "failed", "skipped"]

T = TypeVar("T")


def _iso_utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class StepResult:
    step: str
    status: StepStatus
    started_at: str
    finished_at: str
    duration_s: float
    error: str | None = None

    def to_json(self) -> dict[str, JsonValue]:
        return {
            "step": self.step,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_s": round(self.duration_s, 6),
            "error": self.error,
        }


@dataclass
class StepRecorder:
    log_path: Path | None = None
    results: list[StepResult] = field(default_factory=list)

    def run(self, name: str, fn: Callable[[], T]) -> T:
        started_at = _iso_utc_now()
        t0 = time.monotonic()
        append_log(self.log_path, f"[{started_at}] step {name}: start")
        try:
            value = fn()
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            self._record(name, "failed", started_at, t0, error=error)
            append_log(self.log_path, f"step {name}: failed: {error}")
            raise
        self._record(name, "ok", started_at, t0)
        append_log(self.log_path, f"step {name}: ok")
        return value

    def skip(self, name: str, reason: str) -> None:
        now = _iso_utc_now()
        self.results.append(
            StepResult(
                step=name,
                status="skipped",
                started_at=now,
                finished_at=now,
                duration_s=0.0,
                error=reason,
            )
        )
        append_log(self.log_path, f"step {name}: skipped: {reason}")

    def _record(
        self,
        name: str,
        status: StepStatus,
        started_at: str,
        t0: float,
        *,
        error: str | None = None,
    ) -> None:
        self.results.append(
            StepResult(
                step=name,
                status=status,
                started_at=started_at,
                finished_at=_iso_utc_now(),
                duration_s=max(0.0, time.monotonic() - t0),
                error=error,
            )
        )

    def to_json(self) -> list[JsonValue]:
        return cast(list[JsonValue], [r.to_json() for r in self.results])
