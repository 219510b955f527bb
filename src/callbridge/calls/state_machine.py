"""
Pure call status transition rules.

Status callbacks arrive out of order and more than once. The rules here decide
what a reported status does to a call, without touching storage:

- nothing leaves a terminal status;
- a terminal status is reachable from any non-terminal status;
- transient statuses only move forward
  (initiated -> ringing -> in-progress); a late transient status is
  accepted as ``stale`` and leaves the call where it is.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from callbridge.calls.models import TERMINAL_STATUSES, CallStatus

_RANK = {
    CallStatus.INITIATED: 0,
    CallStatus.RINGING: 1,
    CallStatus.IN_PROGRESS: 2,
}


class TransitionKind(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    STALE = "stale"
    REJECTED = "rejected"


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of applying a reported status to a call."""

    kind: TransitionKind
    previous: CallStatus
    current: CallStatus
    reason: str | None = None

    @property
    def changed(self) -> bool:
        return self.kind == TransitionKind.APPLIED


def rank(status: CallStatus) -> int:
    if status in TERMINAL_STATUSES:
        return 3
    return _RANK[status]


def plan_transition(current: CallStatus, reported: CallStatus) -> TransitionResult:
    """Decide what ``reported`` does to a call currently in ``current``."""
    if current in TERMINAL_STATUSES:
        if reported == current:
            return TransitionResult(TransitionKind.NOOP, current, current)
        return TransitionResult(
            TransitionKind.REJECTED,
            current,
            current,
            reason=f"call already {current.value}",
        )

    if reported == current:
        return TransitionResult(TransitionKind.NOOP, current, current)

    if reported in TERMINAL_STATUSES or rank(reported) > rank(current):
        return TransitionResult(TransitionKind.APPLIED, current, reported)

    return TransitionResult(
        TransitionKind.STALE,
        current,
        current,
        reason=f"{reported.value} arrived after {current.value}",
    )


def compute_duration(
    end_time: datetime,
    answered_at: datetime | None,
    start_time: datetime | None,
    reported: int | None = None,
) -> int:
    """Call duration in whole seconds, never negative.

    A provider-reported duration wins over the local clock.
    """
    if reported is not None:
        return max(0, int(reported))
    begin = answered_at or start_time
    if begin is None:
        return 0
    return max(0, int((end_time - begin).total_seconds()))


__all__ = [
    "TransitionKind",
    "TransitionResult",
    "compute_duration",
    "plan_transition",
    "rank",
]
