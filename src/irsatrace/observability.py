"""In-process stage metrics: latency and outcome per pipeline stage."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from dataclasses import field
from threading import Lock
from time import perf_counter

logger = logging.getLogger(__name__)


@dataclass
class StageSummary:
    """Aggregated metrics for one pipeline stage."""

    count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0
    last_ms: float = 0.0
    outcomes: dict[str, int] = field(default_factory=dict)


class _StageRecorder:
    def __init__(self) -> None:
        self._lock = Lock()
        self._stats: dict[str, StageSummary] = {}

    def record(self, *, stage: str, duration_ms: float, outcome: str) -> None:
        elapsed = max(float(duration_ms), 0.0)
        with self._lock:
            summary = self._stats.setdefault(stage, StageSummary())
            summary.count += 1
            summary.total_ms += elapsed
            summary.last_ms = elapsed
            summary.max_ms = max(summary.max_ms, elapsed)
            summary.outcomes[outcome] = summary.outcomes.get(outcome, 0) + 1

        logger.info(
            "stage=%s duration_ms=%.3f outcome=%s",
            stage,
            elapsed,
            outcome,
        )

    def snapshot(self) -> dict[str, dict]:
        with self._lock:
            return {
                stage: {
                    "count": summary.count,
                    "avg_ms": round(
                        summary.total_ms / summary.count if summary.count else 0.0, 3
                    ),
                    "max_ms": round(summary.max_ms, 3),
                    "last_ms": round(summary.last_ms, 3),
                    "outcomes": dict(sorted(summary.outcomes.items())),
                }
                for stage, summary in sorted(self._stats.items())
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()


_RECORDER = _StageRecorder()


def record_stage(*, stage: str, duration_ms: float, outcome: str = "ok") -> None:
    """Record one stage execution."""
    _RECORDER.record(stage=stage, duration_ms=duration_ms, outcome=outcome)


@contextmanager
def timed_stage(stage: str) -> Iterator[None]:
    """Time the enclosed block; the outcome is the exception class name, if any."""
    start = perf_counter()
    outcome = "ok"
    try:
        yield
    except BaseException as exc:
        outcome = type(exc).__name__
        raise
    finally:
        record_stage(
            stage=stage,
            duration_ms=(perf_counter() - start) * 1000.0,
            outcome=outcome,
        )


def stage_metrics_snapshot() -> dict[str, dict]:
    """Return current in-process stage aggregates."""
    return _RECORDER.snapshot()


def reset_stage_metrics() -> None:
    """Clear all stage aggregates (test helper)."""
    _RECORDER.reset()
