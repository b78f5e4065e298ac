"""Scoring utilities: class positions, team aggregation and entry progress."""

from __future__ import annotations

import math
import os
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Tuple

from .classes import UNKNOWN_CLASS, group_and_order_by_class
from .models import IndividualResult, TeamMemberResult, TeamStanding

DEFAULT_TEAM_CONTRIBUTORS = 3


def team_contributors() -> int:
    """Return N for best-N-of-M team scoring (``TEAM_CONTRIBUTORS``)."""
    try:
        value = int(os.environ.get("TEAM_CONTRIBUTORS", DEFAULT_TEAM_CONTRIBUTORS))
    except ValueError:
        return DEFAULT_TEAM_CONTRIBUTORS
    return value if value > 0 else DEFAULT_TEAM_CONTRIBUTORS


def _position_or_inf(position: Optional[int]) -> float:
    return float(position) if position is not None else math.inf


def _name_key(name: str) -> Tuple[str, str]:
    return (name.casefold(), name)


def _member_sort_key(result: IndividualResult):
    return (-result.points, _position_or_inf(result.class_position), _name_key(result.participant.name))


def rank_team_members(results: Iterable[IndividualResult], contributors: int) -> Tuple[List[TeamMemberResult], float]:
    """Order a team's members and mark the top ``contributors`` as scoring.

    Args:
        results: Individual results of one team in one class.
        contributors: How many members count toward the team total.

    Returns:
        ``(members, total_points)`` where members are ranked 1..M and only
        the first ``contributors`` carry ``contributed=True``.
    """
    ordered = sorted(results, key=_member_sort_key)
    members: List[TeamMemberResult] = []
    total = 0.0
    for rank, res in enumerate(ordered, start=1):
        contributed = rank <= contributors
        if contributed:
            total += res.points
        members.append(
            TeamMemberResult(
                participant=res.participant,
                points=res.points,
                class_position=res.class_position,
                contributed=contributed,
                rank=rank,
            )
        )
    return members, total


def _team_sort_key(entry: Dict):
    # Zero-point teams go last regardless of their position sums.
    position_sum = sum(_position_or_inf(m.class_position) for m in entry["members"] if m.contributed)
    return (
        entry["total_points"] <= 0,
        -entry["total_points"],
        position_sum,
        _name_key(entry["team_name"]),
        entry["team_id"],
    )


def aggregate_team_standings(
    results: Iterable[IndividualResult],
    contributors: Optional[int] = None,
) -> List[TeamStanding]:
    """Aggregate individual results into ranked team standings.

    Results without a team are skipped. A team whose members raced in more
    than one class gets one standing per class. Standings are returned in
    class display order and by ``team_position`` inside each class.
    """
    if contributors is None:
        contributors = team_contributors()

    by_team: Dict[Tuple[str, str], List[IndividualResult]] = {}
    team_names: Dict[str, str] = {}
    for res in results:
        if res.team_id is None:
            continue
        class_name = res.class_name or UNKNOWN_CLASS
        by_team.setdefault((res.team_id, class_name), []).append(res)
        if res.team_name and res.team_id not in team_names:
            team_names[res.team_id] = res.team_name

    entries: List[Dict] = []
    for (team_id, class_name), team_results in by_team.items():
        members, total = rank_team_members(team_results, contributors)
        entries.append(
            {
                "team_id": team_id,
                "team_name": team_names.get(team_id, ""),
                "class_name": class_name,
                "total_points": total,
                "members": members,
            }
        )

    standings: List[TeamStanding] = []
    for class_name, class_entries in group_and_order_by_class(entries, lambda e: e["class_name"]).items():
        class_entries.sort(key=_team_sort_key)
        for position, entry in enumerate(class_entries, start=1):
            standings.append(TeamStanding(team_position=position, **entry))
    return standings


def calculate_class_positions(results: Iterable[IndividualResult]) -> List[IndividualResult]:
    """Derive class and overall positions from points.

    Inside each class, finishers with points are ranked by points
    (descending) and finishers without points follow alphabetically.
    Non-finishers get no positions and zero points. Overall positions run
    across all finishers by points. Results come back in input order.
    """
    rows = list(results)
    by_class: Dict[str, List[int]] = {}
    for idx, res in enumerate(rows):
        by_class.setdefault(res.class_name or UNKNOWN_CLASS, []).append(idx)

    class_positions: Dict[int, int] = {}
    for indices in by_class.values():
        scored = [i for i in indices if not rows[i].did_not_finish and rows[i].points > 0]
        unscored = [i for i in indices if not rows[i].did_not_finish and rows[i].points <= 0]
        scored.sort(key=lambda i: -rows[i].points)
        unscored.sort(key=lambda i: _name_key(rows[i].participant.name))
        for position, idx in enumerate(scored + unscored, start=1):
            class_positions[idx] = position

    finishers = sorted(class_positions, key=lambda i: -rows[i].points)
    overall = {idx: position for position, idx in enumerate(finishers, start=1)}

    ranked: List[IndividualResult] = []
    for idx, res in enumerate(rows):
        if res.did_not_finish:
            ranked.append(replace(res, overall_position=None, class_position=None, total_points=0.0))
        else:
            ranked.append(replace(res, overall_position=overall[idx], class_position=class_positions[idx]))
    return ranked


def results_progress(results: Iterable[IndividualResult]) -> Dict[str, int]:
    """Return entry progress for the admin results screen."""
    rows = list(results)
    total = len(rows)
    with_results = sum(1 for r in rows if r.has_result)
    percentage = int(round(with_results * 100 / total)) if total else 0
    return {
        "participants_total": total,
        "participants_with_results": with_results,
        "progress_percentage": percentage,
    }


def individual_board(results: Iterable[IndividualResult]) -> Dict[str, List[IndividualResult]]:
    """Group results by class, each class ordered by class position."""
    ordered = sorted(
        results,
        key=lambda r: (
            r.did_not_finish,
            _position_or_inf(r.class_position),
            -r.points,
            _name_key(r.participant.name),
        ),
    )
    return group_and_order_by_class(ordered, lambda r: r.class_name)


__all__ = [
    "DEFAULT_TEAM_CONTRIBUTORS",
    "team_contributors",
    "rank_team_members",
    "aggregate_team_standings",
    "calculate_class_positions",
    "results_progress",
    "individual_board",
]
