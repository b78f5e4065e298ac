"""Rally lifecycle resolution.

The lifecycle state of a rally is always derived from the current time and
its two timestamps. The ``status`` column stored with a rally is advisory:
only an administrative ``cancelled`` is honoured, everything else is
recomputed on read so that stored and actual state cannot drift apart.
"""

from __future__ import annotations

import enum
import math
import os
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from .models import Rally, parse_instant


class RallyState(str, enum.Enum):
    UPCOMING = "upcoming"
    REGISTRATION_OPEN = "registration_open"
    REGISTRATION_CLOSED = "registration_closed"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Display labels used by the portal front end.
STATE_LABELS: Dict[RallyState, str] = {
    RallyState.UPCOMING: "Tulemas",
    RallyState.REGISTRATION_OPEN: "Registreerimine avatud",
    RallyState.REGISTRATION_CLOSED: "Registreerimine suletud",
    RallyState.ACTIVE: "Käimasolev",
    RallyState.COMPLETED: "Lõppenud",
    RallyState.CANCELLED: "Tühistatud",
}


@dataclass(frozen=True)
class RallyStatus:
    state: RallyState
    can_register: bool
    days_until_event: Optional[int]
    days_until_deadline: Optional[int]

    @property
    def label(self) -> str:
        return STATE_LABELS[self.state]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "label": self.label,
            "can_register": self.can_register,
            "days_until_event": self.days_until_event,
            "days_until_deadline": self.days_until_deadline,
        }


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def active_grace() -> timedelta:
    """Width of the "happening now" window after the competition instant.

    Zero unless ``RALLY_ACTIVE_GRACE_MINUTES`` says otherwise, which makes
    ``active`` reachable only at the competition instant itself.
    """
    try:
        minutes = int(os.environ.get("RALLY_ACTIVE_GRACE_MINUTES", "0"))
    except ValueError:
        minutes = 0
    return timedelta(minutes=max(minutes, 0))


def _local_date(value: datetime, now: datetime) -> date:
    if now.tzinfo is not None:
        return value.astimezone(now.tzinfo).date()
    return value.date()


def days_until(target: Any, now: datetime) -> Optional[int]:
    """Signed whole calendar days from ``now`` to ``target``.

    Days are counted between calendar dates in the timezone of ``now``, so an
    event at 08:00 tomorrow is one day away even when fewer than 24 hours
    remain. Returns ``None`` when ``target`` is unusable.
    """
    when = parse_instant(target)
    if when is None:
        return None
    now = parse_instant(now) or utcnow()
    return (_local_date(when, now) - _local_date(now, now)).days


def format_days_until(days: Optional[int]) -> str:
    if days is None:
        return ""
    if days < 0:
        return "Past event"
    if days == 0:
        return "Today"
    if days == 1:
        return "Tomorrow"
    if days < 7:
        return f"{days} days"
    if days < 30:
        return f"{math.ceil(days / 7)} weeks"
    return f"{math.ceil(days / 30)} months"


def registration_allowed(
    status: RallyStatus,
    max_participants: Optional[int] = None,
    registered_count: Optional[int] = None,
) -> bool:
    """Return whether a new registration fits both the window and the cap."""
    if status.state is not RallyState.REGISTRATION_OPEN:
        return False
    if not max_participants or registered_count is None:
        return True
    return registered_count < max_participants


def resolve_state(
    now: datetime,
    competition_date: Optional[datetime],
    registration_deadline: Optional[datetime],
    cancelled: bool = False,
    grace: Optional[timedelta] = None,
) -> RallyState:
    if cancelled:
        return RallyState.CANCELLED
    if competition_date is None:
        return RallyState.REGISTRATION_CLOSED
    if grace is None:
        grace = active_grace()
    if now > competition_date + grace:
        return RallyState.COMPLETED
    if competition_date <= now:
        return RallyState.ACTIVE
    # A missing deadline reads as already passed.
    if registration_deadline is None or now > registration_deadline:
        return RallyState.REGISTRATION_CLOSED
    if registration_deadline > now and competition_date > now:
        return RallyState.REGISTRATION_OPEN
    return RallyState.UPCOMING


def resolve_status(
    rally: Any,
    now: Optional[datetime] = None,
    *,
    registered_count: Optional[int] = None,
    grace: Optional[timedelta] = None,
) -> RallyStatus:
    """Resolve the lifecycle state of ``rally`` at ``now``.

    ``rally`` may be a :class:`Rally` or a datastore row. When
    ``registered_count`` is supplied the rally's ``max_participants`` cap is
    folded into ``can_register``.
    """
    if not isinstance(rally, Rally):
        rally = Rally.from_row(rally)
    now = parse_instant(now) or utcnow()
    state = resolve_state(
        now,
        rally.competition_date,
        rally.registration_deadline,
        cancelled=rally.cancelled,
        grace=grace,
    )
    status = RallyStatus(
        state=state,
        can_register=state is RallyState.REGISTRATION_OPEN,
        days_until_event=days_until(rally.competition_date, now),
        days_until_deadline=days_until(rally.registration_deadline, now),
    )
    if status.can_register and registered_count is not None:
        allowed = registration_allowed(status, rally.max_participants, registered_count)
        if not allowed:
            status = RallyStatus(
                state=status.state,
                can_register=False,
                days_until_event=status.days_until_event,
                days_until_deadline=status.days_until_deadline,
            )
    return status


def plan_status_sync(rows: Iterable[Dict[str, Any]], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Return stored-status updates needed to match the derived state.

    Each row needs ``id``, ``name``, ``status`` and the two timestamps.
    Cancelled rallies are never rewritten.
    """
    now = parse_instant(now) or utcnow()
    updates: List[Dict[str, Any]] = []
    for row in rows:
        rally = Rally.from_row(row)
        if rally.cancelled:
            continue
        state = resolve_status(rally, now).state
        if state.value != (rally.status or ""):
            updates.append(
                {
                    "rally_id": rally.id,
                    "name": rally.name,
                    "old_status": rally.status,
                    "new_status": state.value,
                }
            )
    return updates


__all__ = [
    "RallyState",
    "RallyStatus",
    "STATE_LABELS",
    "utcnow",
    "active_grace",
    "days_until",
    "format_days_until",
    "registration_allowed",
    "resolve_state",
    "resolve_status",
    "plan_status_sync",
]
