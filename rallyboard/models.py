"""Domain records shared by the lifecycle, results and scoring modules.

Rows coming back from the datastore are plain dicts; the ``from_row``
constructors here turn them into typed records so the engine never branches
on nullable columns directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union


def parse_instant(value: Any) -> Optional[datetime]:
    """Return an aware ``datetime`` for ``value`` or ``None`` when unusable.

    Accepts datetimes and ISO-8601 strings (a trailing ``Z`` is understood).
    Naive values are taken to be UTC. Never raises.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _opt_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _opt_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class Rally:
    id: str
    name: str
    competition_date: Optional[datetime]
    registration_deadline: Optional[datetime]
    max_participants: Optional[int] = None
    is_active: bool = True
    # Stored advisory status; only "cancelled" is authoritative.
    status: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return (self.status or "").strip().lower() == "cancelled"

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Rally":
        return cls(
            id=str(row.get("id")),
            name=row.get("name") or "",
            competition_date=parse_instant(row.get("competition_date")),
            registration_deadline=parse_instant(row.get("registration_deadline")),
            max_participants=_opt_int(row.get("max_participants")),
            is_active=bool(row.get("is_active", True)),
            status=row.get("status"),
        )


@dataclass(frozen=True)
class ResultsStatus:
    results_completed: bool = False
    results_approved: bool = False
    completed_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Optional[Dict[str, Any]]) -> Optional["ResultsStatus"]:
        """Return ``None`` when no status row exists for the rally."""
        if not row:
            return None
        return cls(
            results_completed=bool(row.get("results_completed")),
            results_approved=bool(row.get("results_approved")),
            completed_at=parse_instant(row.get("completed_at")),
            approved_at=parse_instant(row.get("approved_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results_completed": self.results_completed,
            "results_approved": self.results_approved,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
        }


def status_or_default(status: Optional[ResultsStatus]) -> ResultsStatus:
    """An absent status row reads as neither completed nor approved."""
    return status if status is not None else ResultsStatus()


@dataclass(frozen=True)
class RegisteredParticipant:
    user_id: str
    player_name: str = ""

    kind = "registered"

    @property
    def name(self) -> str:
        return self.player_name or self.user_id

    @property
    def key(self) -> str:
        return f"user:{self.user_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "user_id": self.user_id, "name": self.name}


@dataclass(frozen=True)
class ManualParticipant:
    name: str

    kind = "manual"

    @property
    def key(self) -> str:
        return f"manual:{self.name}"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "user_id": None, "name": self.name}


Participant = Union[RegisteredParticipant, ManualParticipant]


def participant_from_row(row: Dict[str, Any]) -> Participant:
    user_id = row.get("user_id")
    if user_id is not None:
        return RegisteredParticipant(str(user_id), row.get("player_name") or "")
    return ManualParticipant(row.get("participant_name") or "")


@dataclass(frozen=True)
class IndividualResult:
    rally_id: str
    participant: Participant
    class_name: str
    overall_position: Optional[int] = None
    class_position: Optional[int] = None
    total_points: Optional[float] = None
    extra_points: Optional[float] = None
    did_not_finish: bool = False
    team_id: Optional[str] = None
    team_name: Optional[str] = None
    result_id: Optional[int] = None

    @property
    def has_result(self) -> bool:
        return self.overall_position is not None or self.did_not_finish

    @property
    def points(self) -> float:
        return float(self.total_points or 0.0)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "IndividualResult":
        team_id = row.get("team_id")
        return cls(
            rally_id=str(row.get("rally_id")),
            participant=participant_from_row(row),
            class_name=row.get("class_name") or "",
            overall_position=_opt_int(row.get("overall_position")),
            class_position=_opt_int(row.get("class_position")),
            total_points=_opt_float(row.get("total_points")),
            extra_points=_opt_float(row.get("extra_points")),
            did_not_finish=bool(row.get("did_not_finish")),
            team_id=str(team_id) if team_id is not None else None,
            team_name=row.get("team_name"),
            result_id=_opt_int(row.get("result_id")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result_id": self.result_id,
            "participant": self.participant.to_dict(),
            "class_name": self.class_name,
            "overall_position": self.overall_position,
            "class_position": self.class_position,
            "total_points": self.total_points,
            "extra_points": self.extra_points,
            "did_not_finish": self.did_not_finish,
            "team_id": self.team_id,
            "team_name": self.team_name,
        }


@dataclass(frozen=True)
class TeamMemberResult:
    participant: Participant
    points: float
    class_position: Optional[int]
    contributed: bool
    rank: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participant": self.participant.to_dict(),
            "points": self.points,
            "class_position": self.class_position,
            "contributed": self.contributed,
            "rank": self.rank,
        }


@dataclass(frozen=True)
class TeamStanding:
    team_id: str
    team_name: str
    class_name: str
    total_points: float
    team_position: int
    members: List[TeamMemberResult] = field(default_factory=list)

    @property
    def member_count(self) -> int:
        return len(self.members)

    @property
    def contributing(self) -> List[TeamMemberResult]:
        return [m for m in self.members if m.contributed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "team_id": self.team_id,
            "team_name": self.team_name,
            "class_name": self.class_name,
            "member_count": self.member_count,
            "total_points": self.total_points,
            "team_position": self.team_position,
            "members": [m.to_dict() for m in self.members],
        }


__all__ = [
    "parse_instant",
    "Rally",
    "ResultsStatus",
    "status_or_default",
    "RegisteredParticipant",
    "ManualParticipant",
    "Participant",
    "participant_from_row",
    "IndividualResult",
    "TeamMemberResult",
    "TeamStanding",
]
