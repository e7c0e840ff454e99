"""
Call status state machine.

PENDING -> IN_PROGRESS -> {COMPLETED | FAILED | CANCELED}

Transitions only move forward by rank. Stale or duplicate provider
deliveries therefore resolve to "no change" rather than an error, and the
recorded status is always the highest-ranked one seen. Everything here is
pure; the store applies the result as a conditional update.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from callpilot.schemas.call import CallStatus

# Twilio CallStatus values we act on; queued/initiated/ringing are ignored.
PROVIDER_STATUS_MAP: dict[str, CallStatus] = {
    "in-progress": CallStatus.IN_PROGRESS,
    "completed": CallStatus.COMPLETED,
    "failed": CallStatus.FAILED,
    "no-answer": CallStatus.FAILED,
    "busy": CallStatus.FAILED,
    "canceled": CallStatus.CANCELED,
}


@dataclass(frozen=True)
class StatusChange:
    status: CallStatus
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


def map_provider_status(provider_status: Optional[str]) -> Optional[CallStatus]:
    if not provider_status:
        return None
    return PROVIDER_STATUS_MAP.get(provider_status.strip().lower())


def can_transition(current: CallStatus, target: CallStatus) -> bool:
    return target.rank > current.rank


def statuses_below(target: CallStatus) -> list[CallStatus]:
    """Statuses a call may be in for ``target`` to be accepted."""
    return [s for s in CallStatus if s.rank < target.rank]


def plan_status_change(target: CallStatus, now: datetime) -> StatusChange:
    """Timestamps stamped alongside a transition into ``target``."""
    if target.is_terminal:
        return StatusChange(target, ended_at=now)
    if target == CallStatus.IN_PROGRESS:
        return StatusChange(target, started_at=now)
    return StatusChange(target)


def next_status(current: CallStatus, target: Optional[CallStatus]) -> CallStatus:
    """The status after applying ``target`` to a call in ``current``."""
    if target is not None and can_transition(current, target):
        return target
    return current
