"""Server health state machine.

Two events drive transitions: a failure threshold being reached, and a
successful attempt.  Recovery moves one step at a time so that a single
lucky call never jumps an unreachable server straight back to healthy.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from orchestramcp.registry.schemas import HealthStatus


class HealthEvent(str, Enum):
    failure_threshold = "failure_threshold"
    success = "success"


TRANSITIONS: dict[tuple[HealthStatus, HealthEvent], HealthStatus] = {
    (HealthStatus.healthy, HealthEvent.failure_threshold): HealthStatus.degraded,
    (HealthStatus.degraded, HealthEvent.failure_threshold): HealthStatus.unreachable,
    (HealthStatus.unreachable, HealthEvent.failure_threshold): HealthStatus.unreachable,
    (HealthStatus.healthy, HealthEvent.success): HealthStatus.healthy,
    (HealthStatus.degraded, HealthEvent.success): HealthStatus.healthy,
    (HealthStatus.unreachable, HealthEvent.success): HealthStatus.degraded,
}


@dataclass(frozen=True)
class HealthUpdate:
    """Result of applying one outcome to a server's health counters."""

    status: HealthStatus
    consecutive_failures: int
    changed: bool


def apply_outcome(
    status: HealthStatus,
    consecutive_failures: int,
    *,
    success: bool,
    failure_threshold: int,
) -> HealthUpdate:
    """Return the health state after one attempt outcome.

    The failure counter resets on every success and on every threshold
    transition, so each health step needs its own run of failures.
    """
    if success:
        new_status = TRANSITIONS[(status, HealthEvent.success)]
        return HealthUpdate(new_status, 0, new_status != status)

    failures = consecutive_failures + 1
    if failures < failure_threshold:
        return HealthUpdate(status, failures, False)

    new_status = TRANSITIONS[(status, HealthEvent.failure_threshold)]
    if new_status == status:
        # Already at the floor; keep counting for diagnostics.
        return HealthUpdate(status, failures, False)
    return HealthUpdate(new_status, 0, True)
