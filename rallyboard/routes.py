from flask import Blueprint, abort, current_app, request
import os
import time

from . import results as results_service
from .classes import group_and_order_by_class
from .errors import NotFoundError, RallyEngineError
from .lifecycle import format_days_until, plan_status_sync, resolve_status
from .models import Rally, parse_instant
from .scoring import individual_board
from .datastore import (
    get_rally as ds_get_rally,
    list_rallies as ds_list_rallies,
    count_registrations as ds_count_registrations,
    update_rally_statuses as ds_update_rally_statuses,
)


bp = Blueprint('main', __name__)

# Simple in-process cache for team standings of approved rallies
_TEAM_STANDINGS_CACHE: dict[str, tuple[float, list[dict]]] = {}
_STANDINGS_TTL = int(os.environ.get('CACHE_TTL_STANDINGS', '180'))  # seconds


def _cache_get_team_standings(rally_id: str) -> list[dict] | None:
    entry = _TEAM_STANDINGS_CACHE.get(rally_id)
    if not entry:
        return None
    exp, value = entry
    if exp < time.time():
        _TEAM_STANDINGS_CACHE.pop(rally_id, None)
        return None
    return value


def _cache_set_team_standings(rally_id: str, groups: list[dict]) -> None:
    _TEAM_STANDINGS_CACHE[rally_id] = (time.time() + _STANDINGS_TTL, groups)


def _cache_delete_rally(rally_id: str) -> None:
    _TEAM_STANDINGS_CACHE.pop(rally_id, None)


def _cache_clear_all() -> None:
    _TEAM_STANDINGS_CACHE.clear()


def _requested_now():
    """Optional ``at`` query parameter (ISO-8601) used as the current instant."""
    raw = request.args.get('at')
    if raw is None:
        return None
    at = parse_instant(raw)
    if at is None:
        abort(400, description=f"Invalid 'at' timestamp '{raw}'. Expected ISO-8601.")
    return at


@bp.errorhandler(RallyEngineError)
def handle_engine_error(err: RallyEngineError):
    return err.to_dict(), err.status_code


@bp.route('/health/db')
def health_db():
    """Database connectivity health check.

    Always returns HTTP 200 with a JSON body describing connection status.
    """
    url = os.environ.get('DATABASE_URL')
    if not url:
        return {
            'connected': False,
            'status': 'no_database_url',
            'message': 'DATABASE_URL is not set.',
        }
    try:
        import psycopg2  # type: ignore
        with psycopg2.connect(url, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute('SELECT current_user, current_database(), version()')
                user, db, ver = cur.fetchone()
        return {
            'connected': True,
            'status': 'ok',
            'user': user,
            'database': db,
            'server_version': (ver or '').split('\n')[0],
        }
    except Exception as e:  # pragma: no cover - best-effort health output
        return {'connected': False, 'status': 'error', 'error': str(e)}


@bp.route('/api/rallies/<rally_id>/status')
def rally_status(rally_id):
    row = ds_get_rally(rally_id)
    if not row:
        raise NotFoundError(f"Unknown rally: {rally_id}")
    rally = Rally.from_row(row)
    registered = ds_count_registrations(rally_id)
    status = resolve_status(rally, _requested_now(), registered_count=registered)
    return {
        'rally_id': rally.id,
        'name': rally.name,
        **status.to_dict(),
        'event_in': format_days_until(status.days_until_event),
        'deadline_in': format_days_until(status.days_until_deadline),
        'max_participants': rally.max_participants,
        'registered_participants': registered,
    }


@bp.route('/api/rallies/sync-statuses', methods=['POST'])
def sync_statuses():
    """Write derived lifecycle states back to the stored rally status."""
    token = os.environ.get('CRON_SECRET_TOKEN')
    if token and request.headers.get('Authorization') != f'Bearer {token}':
        current_app.logger.warning("status_sync unauthorized request")
        return {'error': 'Unauthorized'}, 401
    return run_status_sync(_requested_now())


def run_status_sync(now=None) -> dict:
    rows = ds_list_rallies(active_only=True)
    updates = plan_status_sync(rows, now)
    updated = ds_update_rally_statuses(updates) if updates else 0
    current_app.logger.info("status_sync updated=%d planned=%d total=%d", updated, len(updates), len(rows))
    return {'updated': updated, 'total': len(rows), 'updates': updates}


@bp.route('/api/results/pending')
def pending_results():
    rallies = results_service.list_pending_results_rallies(_requested_now())
    return {'rallies': [s.to_dict() for s in rallies]}


@bp.route('/api/results/approved')
def approved_results():
    rallies = results_service.list_approved_results_rallies(_requested_now())
    return {'rallies': [s.to_dict() for s in rallies]}


@bp.route('/api/rallies/<rally_id>/results')
def rally_results(rally_id):
    return results_service.results_overview(rally_id, _requested_now())


@bp.route('/api/rallies/<rally_id>/results', methods=['POST'])
def save_rally_results(rally_id):
    """Store entered results.

    Body: ``{"results": [{"user_id" | "participant_name", "result_id"?,
    "class_name", "overall_position", "class_position", "total_points",
    "extra_points", "did_not_finish"}], "recalculate_positions": bool}``
    """
    payload = request.get_json() or {}
    rows = payload.get('results')
    if not isinstance(rows, list):
        abort(400, description="Expected a 'results' list.")
    outcome = results_service.save_results(
        rally_id, rows, recalculate_positions=bool(payload.get('recalculate_positions'))
    )
    current_app.logger.info(
        "results_saved rally=%s rows=%d saved=%d", rally_id, len(rows), outcome['saved']
    )
    _cache_delete_rally(rally_id)
    return {'status': 'ok', **outcome}


@bp.route('/api/rallies/<rally_id>/results/complete', methods=['POST'])
def complete_results(rally_id):
    status = results_service.mark_results_completed(rally_id, _requested_now())
    return {'status': 'ok', 'rally_id': rally_id, **status.to_dict()}


@bp.route('/api/rallies/<rally_id>/results/approve', methods=['POST'])
def approve_results(rally_id):
    status = results_service.mark_results_approved(rally_id)
    _cache_delete_rally(rally_id)
    return {'status': 'ok', 'rally_id': rally_id, **status.to_dict()}


@bp.route('/api/rallies/<rally_id>/standings')
def individual_standings(rally_id):
    board = individual_board(results_service.approved_individual_results(rally_id))
    return {
        'rally_id': rally_id,
        'classes': [
            {'class_name': name, 'results': [r.to_dict() for r in rows]}
            for name, rows in board.items()
        ],
    }


@bp.route('/api/rallies/<rally_id>/team-standings')
def team_standings(rally_id):
    cached = _cache_get_team_standings(rally_id)
    if cached is None:
        standings = results_service.compute_team_standings(rally_id)
        grouped = group_and_order_by_class(standings, lambda s: s.class_name)
        cached = [
            {'class_name': name, 'teams': [s.to_dict() for s in teams]}
            for name, teams in grouped.items()
        ]
        _cache_set_team_standings(rally_id, cached)
    return {'rally_id': rally_id, 'classes': cached}
