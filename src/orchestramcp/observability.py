"""In-process dispatch metrics.

Aggregates latency, attempt counts and short-circuits per operation key
(``<server>.<operation>`` for dispatches, ``mcp.<tool>`` for tools).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock

logger = logging.getLogger(__name__)


@dataclass
class OperationStats:
    """Aggregated metrics for one operation key."""

    calls: int = 0
    failures: int = 0
    attempts: int = 0
    retries: int = 0
    short_circuits: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0
    last_ms: float = 0.0


class _MetricsRecorder:
    def __init__(self) -> None:
        self._lock = Lock()
        self._stats: dict[str, OperationStats] = {}

    def record(
        self,
        *,
        operation: str,
        duration_ms: float,
        ok: bool,
        attempts: int,
        short_circuited: bool,
    ) -> None:
        elapsed = max(float(duration_ms), 0.0)
        with self._lock:
            stats = self._stats.setdefault(operation, OperationStats())
            stats.calls += 1
            stats.attempts += attempts
            stats.retries += max(attempts - 1, 0)
            if not ok:
                stats.failures += 1
            if short_circuited:
                stats.short_circuits += 1
            stats.total_ms += elapsed
            stats.last_ms = elapsed
            stats.max_ms = max(stats.max_ms, elapsed)

        logger.debug(
            "operation=%s duration_ms=%.3f ok=%s attempts=%d short_circuited=%s",
            operation,
            elapsed,
            ok,
            attempts,
            short_circuited,
        )

    def snapshot(self) -> dict[str, dict[str, float | int]]:
        with self._lock:
            return {
                operation: {
                    "calls": stats.calls,
                    "failures": stats.failures,
                    "attempts": stats.attempts,
                    "retries": stats.retries,
                    "short_circuits": stats.short_circuits,
                    "avg_ms": round(
                        stats.total_ms / stats.calls if stats.calls else 0.0, 3
                    ),
                    "max_ms": round(stats.max_ms, 3),
                    "last_ms": round(stats.last_ms, 3),
                }
                for operation, stats in sorted(self._stats.items())
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()


_RECORDER = _MetricsRecorder()


def record_operation(
    *,
    operation: str,
    duration_ms: float,
    ok: bool = True,
    attempts: int = 1,
    short_circuited: bool = False,
) -> None:
    """Record one completed call of *operation*."""
    _RECORDER.record(
        operation=operation,
        duration_ms=duration_ms,
        ok=ok,
        attempts=attempts,
        short_circuited=short_circuited,
    )


def metrics_snapshot() -> dict[str, dict[str, float | int]]:
    """Return current in-process aggregates keyed by operation."""
    return _RECORDER.snapshot()


def reset_metrics() -> None:
    """Clear all aggregates (test helper)."""
    _RECORDER.reset()
