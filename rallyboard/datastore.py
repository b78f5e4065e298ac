from typing import Any, Dict, List, Optional

# Results record store used by the engine and the routes.
# Every call delegates to datastore_pg at call time so tests can patch the
# PostgreSQL functions with in-memory stand-ins.

from . import datastore_pg as _pg


def get_rally(rally_id: str) -> Optional[Dict[str, Any]]:
    return _pg.get_rally(str(rally_id))


def list_rallies(active_only: bool = True) -> List[Dict[str, Any]]:
    return _pg.list_rallies(active_only=active_only)


def list_rallies_with_results_status() -> List[Dict[str, Any]]:
    return _pg.list_rallies_with_results_status()


def get_results_status(rally_id: str) -> Optional[Dict[str, Any]]:
    return _pg.get_results_status(str(rally_id))


def upsert_results_completed(rally_id: str) -> Dict[str, Any]:
    return _pg.upsert_results_completed(str(rally_id))


def approve_results_status(rally_id: str) -> bool:
    return _pg.approve_results_status(str(rally_id))


def list_rally_participants(rally_id: str) -> List[Dict[str, Any]]:
    return _pg.list_rally_participants(str(rally_id))


def count_registrations(rally_id: str) -> int:
    return _pg.count_registrations(str(rally_id))


def save_individual_results(rally_id: str, rows: List[Dict[str, Any]]) -> int:
    return _pg.save_individual_results(str(rally_id), rows)


def replace_team_rally_totals(rally_id: str, totals: List[Dict[str, Any]]) -> int:
    return _pg.replace_team_rally_totals(str(rally_id), totals)


def update_rally_statuses(updates: List[Dict[str, Any]]) -> int:
    return _pg.update_rally_statuses(updates)
