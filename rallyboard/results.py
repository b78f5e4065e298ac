"""Results workflow: pending -> completed -> approved.

The functions here read everything they need from :mod:`rallyboard.datastore`
up front and hand it to the pure lifecycle and scoring functions. The only
writes are the two status transitions, results entry and the regenerated
team totals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from . import datastore
from .errors import NotApprovedError, NotFoundError, ValidationError
from .lifecycle import RallyState, RallyStatus, resolve_status, utcnow
from .models import (
    IndividualResult,
    Rally,
    RegisteredParticipant,
    ResultsStatus,
    TeamStanding,
    parse_instant,
    status_or_default,
)
from .scoring import aggregate_team_standings, calculate_class_positions, results_progress

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RallySummary:
    rally: Rally
    status: RallyStatus
    # None when the rally has no results-status row yet
    results_status: Optional[ResultsStatus] = None
    participant_count: int = 0

    @property
    def results(self) -> ResultsStatus:
        return status_or_default(self.results_status)

    def to_dict(self) -> Dict[str, Any]:
        rally = self.rally
        return {
            "id": rally.id,
            "name": rally.name,
            "competition_date": rally.competition_date.isoformat() if rally.competition_date else None,
            "registration_deadline": rally.registration_deadline.isoformat() if rally.registration_deadline else None,
            "status": self.status.to_dict(),
            "participant_count": self.participant_count,
            **self.results.to_dict(),
        }


def _load_rally(rally_id: str) -> Rally:
    row = datastore.get_rally(rally_id)
    if not row:
        raise NotFoundError(f"Unknown rally: {rally_id}")
    return Rally.from_row(row)


def load_results_status(rally_id: str) -> Optional[ResultsStatus]:
    return ResultsStatus.from_row(datastore.get_results_status(rally_id))


def load_participants(rally_id: str) -> List[IndividualResult]:
    return [IndividualResult.from_row(row) for row in datastore.list_rally_participants(rally_id)]


def missing_results(participants: Iterable[IndividualResult]) -> List[str]:
    """Names of participants with neither a position nor a DNF marker."""
    return [p.participant.name for p in participants if not p.has_result]


def mark_results_completed(rally_id: str, now: Optional[datetime] = None) -> ResultsStatus:
    """Mark a finished rally's results as completely entered.

    Raises:
        NotFoundError: the rally does not exist.
        ValidationError: the rally has not finished yet, or some participants
            still lack a result (listed in ``missing``).
    """
    rally = _load_rally(rally_id)
    current = status_or_default(load_results_status(rally_id))
    if current.results_approved:
        return current

    state = resolve_status(rally, now).state
    if state is not RallyState.COMPLETED:
        raise ValidationError(f"Rally '{rally.name}' has not finished yet (state: {state.value}).")

    missing = missing_results(load_participants(rally_id))
    if missing:
        raise ValidationError(
            f"{len(missing)} participant(s) in '{rally.name}' have no result yet.",
            missing=missing,
        )
    row = datastore.upsert_results_completed(rally_id)
    logger.info("results_completed rally=%s", rally_id)
    return ResultsStatus.from_row(row) or ResultsStatus(results_completed=True)


def mark_results_approved(rally_id: str) -> ResultsStatus:
    """Approve completed results and regenerate team totals.

    Approving an already-approved rally is a no-op.

    Raises:
        NotFoundError: the rally does not exist.
        ValidationError: the results have not been marked completed.
    """
    _load_rally(rally_id)
    current = status_or_default(load_results_status(rally_id))
    if current.results_approved:
        return current
    if not current.results_completed:
        raise ValidationError("Results must be marked completed before they can be approved.")

    changed = datastore.approve_results_status(rally_id)
    status = status_or_default(load_results_status(rally_id))
    if changed:
        logger.info("results_approved rally=%s", rally_id)
        refresh_team_totals(rally_id)
    elif not status.results_approved:
        raise ValidationError("Results must be marked completed before they can be approved.")
    return status


def _summaries(now: Optional[datetime]) -> List[RallySummary]:
    now = parse_instant(now) or utcnow()
    out: List[RallySummary] = []
    for row in datastore.list_rallies_with_results_status():
        rally = Rally.from_row(row)
        if not rally.is_active:
            continue
        results_status = ResultsStatus.from_row(row) if row.get("has_status_row") else None
        out.append(
            RallySummary(
                rally=rally,
                status=resolve_status(rally, now),
                results_status=results_status,
                participant_count=int(row.get("participant_count") or 0),
            )
        )
    return out


def _most_recent_first(summaries: List[RallySummary]) -> List[RallySummary]:
    return sorted(
        summaries,
        key=lambda s: (s.rally.competition_date is not None, s.rally.competition_date or datetime.min, s.rally.id),
        reverse=True,
    )


def list_pending_results_rallies(now: Optional[datetime] = None) -> List[RallySummary]:
    """Active, non-cancelled rallies that have taken place but whose results are not approved."""
    now = parse_instant(now) or utcnow()
    pending = [
        s
        for s in _summaries(now)
        if s.rally.competition_date is not None
        and s.rally.competition_date < now
        and s.status.state is not RallyState.CANCELLED
        and not s.results.results_approved
    ]
    return _most_recent_first(pending)


def list_approved_results_rallies(now: Optional[datetime] = None) -> List[RallySummary]:
    """Active rallies whose results are approved and public."""
    return _most_recent_first([s for s in _summaries(now) if s.results.results_approved])


def _require_approved(rally_id: str) -> Rally:
    rally = _load_rally(rally_id)
    if not status_or_default(load_results_status(rally_id)).results_approved:
        raise NotApprovedError(f"Results for '{rally.name}' are not approved yet.")
    return rally


def compute_team_standings(rally_id: str) -> List[TeamStanding]:
    """Team standings for an approved rally.

    Raises:
        NotFoundError: the rally does not exist.
        NotApprovedError: the rally's results are not approved.
    """
    _require_approved(rally_id)
    return aggregate_team_standings(load_participants(rally_id))


def approved_individual_results(rally_id: str) -> List[IndividualResult]:
    _require_approved(rally_id)
    return load_participants(rally_id)


def _team_total_row(standing: TeamStanding) -> Dict[str, Any]:
    return {
        "team_id": standing.team_id,
        "team_name": standing.team_name,
        "class_name": standing.class_name,
        "total_points": standing.total_points,
        "team_position": standing.team_position,
        "member_count": standing.member_count,
        "scoring_members": sum(1 for m in standing.contributing if m.points > 0),
    }


def refresh_team_totals(rally_id: str) -> List[TeamStanding]:
    """Regenerate the stored team totals of one rally from its results."""
    standings = aggregate_team_standings(load_participants(rally_id))
    datastore.replace_team_rally_totals(rally_id, [_team_total_row(s) for s in standings])
    logger.info("team_totals_refreshed rally=%s teams=%d", rally_id, len(standings))
    return standings


def _result_row(result: IndividualResult) -> Dict[str, Any]:
    participant = result.participant.to_dict()
    return {
        "result_id": result.result_id,
        "user_id": participant["user_id"],
        "participant_name": (participant["name"] or None) if participant["user_id"] is None else None,
        "class_name": result.class_name,
        "overall_position": result.overall_position,
        "class_position": result.class_position,
        "total_points": result.total_points,
        "extra_points": result.extra_points,
        "did_not_finish": result.did_not_finish,
    }


def _stored_key(result: IndividualResult) -> Optional[str]:
    if isinstance(result.participant, RegisteredParticipant):
        return result.participant.key
    if result.result_id is not None:
        return f"result:{result.result_id}"
    return None


def _rank_with_stored(rally_id: str, submitted: List[IndividualResult]) -> List[IndividualResult]:
    """Rank submitted rows together with the rally's stored results.

    Submitted rows replace the stored rows of the same participant.
    Participants with nothing entered yet stay unranked. Returns the
    submitted rows followed by every stored row whose positions moved.
    """
    submitted_keys = {key for key in map(_stored_key, submitted) if key}
    stored = [
        r for r in load_participants(rally_id)
        if r.has_result and _stored_key(r) not in submitted_keys
    ]
    ranked = calculate_class_positions(submitted + stored)
    moved = [
        new
        for old, new in zip(stored, ranked[len(submitted):])
        if (old.class_position, old.overall_position) != (new.class_position, new.overall_position)
    ]
    return ranked[:len(submitted)] + moved


def save_results(rally_id: str, rows: List[Dict[str, Any]], recalculate_positions: bool = False) -> Dict[str, Any]:
    """Store entered results; regenerate team totals for approved rallies.

    Each row names a registered participant (``user_id``) or a manual one
    (``participant_name``, plus ``result_id`` when editing). With
    ``recalculate_positions`` class and overall positions are derived from
    points across the whole rally, and stored rows whose positions moved are
    written too.
    """
    _load_rally(rally_id)
    for row in rows:
        registered = row.get("user_id") is not None
        manual = bool(row.get("participant_name")) or (not registered and row.get("result_id") is not None)
        if registered == manual:
            raise ValidationError("Each result needs either a user_id or a participant_name.")

    results = [IndividualResult.from_row({**row, "rally_id": rally_id}) for row in rows]
    if recalculate_positions:
        results = _rank_with_stored(rally_id, results)
    written = datastore.save_individual_results(rally_id, [_result_row(r) for r in results])

    refreshed = False
    if status_or_default(load_results_status(rally_id)).results_approved:
        refresh_team_totals(rally_id)
        refreshed = True
    return {"saved": written, "team_totals_refreshed": refreshed}


def results_overview(rally_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Participants, entry progress and workflow flags for the admin screen."""
    rally = _load_rally(rally_id)
    participants = load_participants(rally_id)
    status = status_or_default(load_results_status(rally_id))
    return {
        "rally_id": rally.id,
        "name": rally.name,
        "status": resolve_status(rally, now).to_dict(),
        **status.to_dict(),
        **results_progress(participants),
        "missing": missing_results(participants),
        "participants": [p.to_dict() for p in participants],
    }


__all__ = [
    "RallySummary",
    "load_results_status",
    "load_participants",
    "missing_results",
    "mark_results_completed",
    "mark_results_approved",
    "list_pending_results_rallies",
    "list_approved_results_rallies",
    "compute_team_standings",
    "approved_individual_results",
    "refresh_team_totals",
    "save_results",
    "results_overview",
]
