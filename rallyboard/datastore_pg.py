import os
import logging
from typing import Any, Dict, List, Optional, Tuple

import psycopg2
from psycopg2 import pool as pg_pool
from psycopg2.extras import RealDictCursor, execute_values
from contextlib import contextmanager


logger = logging.getLogger(__name__)

_POOL: Optional[pg_pool.AbstractConnectionPool] = None

# Registration states that still count as taking part in a rally
ACTIVE_REGISTRATION_STATES = ("registered", "confirmed")


def _env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _connect_kwargs() -> Dict[str, Any]:
    """Common connection kwargs: connect_timeout + TCP keepalives.

    Defaults:
      - connect_timeout: 10 seconds (overridable via DB_CONNECT_TIMEOUT)
      - keepalives: enabled by default; can be disabled by DB_KEEPALIVES=0
      - keepalive tunables applied if provided (IDLE/INTERVAL/COUNT)
    """
    kwargs: Dict[str, Any] = {}
    ct_env = _env_int("DB_CONNECT_TIMEOUT")
    kwargs["connect_timeout"] = ct_env if ct_env is not None else 10

    ka_env = os.environ.get("DB_KEEPALIVES")
    if ka_env is None:
        kwargs["keepalives"] = 1
    else:
        kwargs["keepalives"] = 0 if str(ka_env).lower() in ("0", "false") else 1

    for env_name, key in (
        ("DB_KEEPALIVES_IDLE", "keepalives_idle"),
        ("DB_KEEPALIVES_INTERVAL", "keepalives_interval"),
        ("DB_KEEPALIVES_COUNT", "keepalives_count"),
    ):
        value = _env_int(env_name)
        if value is not None:
            kwargs[key] = value
    return kwargs


def init_pool(minconn: int = 1, maxconn: int = 10) -> None:
    """Initialize a global connection pool using DATABASE_URL.

    Safe to call multiple times; subsequent calls are ignored once a pool exists.
    """
    global _POOL
    if _POOL is not None:
        return
    url = os.environ.get("DATABASE_URL")
    if not url:
        return
    _POOL = pg_pool.ThreadedConnectionPool(minconn, maxconn, dsn=url, **_connect_kwargs())


def _is_healthy(conn) -> bool:
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT 1")
        if not getattr(conn, "autocommit", False):
            conn.rollback()
    except (psycopg2.OperationalError, psycopg2.InterfaceError):
        return False
    return True


def _checkout():
    """Take a healthy connection from the pool, retrying once on a stale one."""
    for attempt in range(2):
        conn = _POOL.getconn()
        if _is_healthy(conn):
            return conn
        logger.warning("Discarding unhealthy pooled connection (attempt %d)", attempt + 1)
        _POOL.putconn(conn, close=True)
    raise psycopg2.OperationalError("Failed to acquire healthy DB connection after retry")


def _release(conn) -> None:
    try:
        # status 0 = idle, 1 = active, 2 = intrans, 3 = inerror
        if getattr(conn, "closed", 0) == 0 and not getattr(conn, "autocommit", False):
            if getattr(conn, "status", 0) in (1, 2, 3):
                conn.rollback()
    finally:
        _POOL.putconn(conn)


@contextmanager
def _get_conn():
    """Yield a database connection from the pool if available, else direct.

    Any exception raised inside the block rolls the transaction back before
    propagating.
    """
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set; configure a PostgreSQL connection string")
    pooled = _POOL is not None
    conn = _checkout() if pooled else psycopg2.connect(url, **_connect_kwargs())
    try:
        yield conn
    except Exception:
        conn.rollback()
        raise
    finally:
        if pooled:
            _release(conn)
        else:
            conn.close()


_RALLY_COLUMNS = """
    r.id, r.name, r.competition_date, r.registration_deadline,
    r.max_participants, r.is_active, r.status
"""


def get_rally(rally_id: str) -> Optional[Dict[str, Any]]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(f"SELECT {_RALLY_COLUMNS} FROM rallies r WHERE r.id = %s", (rally_id,))
        row = cur.fetchone()
    return dict(row) if row else None


def list_rallies(active_only: bool = True) -> List[Dict[str, Any]]:
    sql = f"SELECT {_RALLY_COLUMNS} FROM rallies r"
    if active_only:
        sql += " WHERE r.is_active"
    sql += " ORDER BY r.competition_date DESC NULLS LAST, r.id"
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(sql)
        return [dict(r) for r in cur.fetchall() or []]


def list_rallies_with_results_status() -> List[Dict[str, Any]]:
    """Return active rallies joined with their (possibly absent) status row.

    ``has_status_row`` is false when no ``rally_results_status`` row exists;
    the status columns are then NULL. ``participant_count`` counts active
    registrations plus manually entered participants.
    """
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            SELECT {_RALLY_COLUMNS},
                   (s.rally_id IS NOT NULL) AS has_status_row,
                   s.results_completed, s.results_approved,
                   s.completed_at, s.approved_at,
                   (
                     SELECT COUNT(*) FROM rally_registrations g
                     WHERE g.rally_id = r.id AND g.status = ANY(%s)
                   ) + (
                     SELECT COUNT(*) FROM rally_results m
                     WHERE m.rally_id = r.id AND m.user_id IS NULL
                   ) AS participant_count
            FROM rallies r
            LEFT JOIN rally_results_status s ON s.rally_id = r.id
            WHERE r.is_active
            ORDER BY r.competition_date DESC NULLS LAST, r.id
            """,
            (list(ACTIVE_REGISTRATION_STATES),),
        )
        return [dict(r) for r in cur.fetchall() or []]


def get_results_status(rally_id: str) -> Optional[Dict[str, Any]]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT rally_id, results_completed, results_approved, completed_at, approved_at
            FROM rally_results_status
            WHERE rally_id = %s
            """,
            (rally_id,),
        )
        row = cur.fetchone()
    return dict(row) if row else None


def upsert_results_completed(rally_id: str) -> Dict[str, Any]:
    """Atomically mark a rally's results completed, creating the row if absent."""
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            INSERT INTO rally_results_status (rally_id, results_completed, results_approved, completed_at, updated_at)
            VALUES (%s, TRUE, FALSE, now(), now())
            ON CONFLICT (rally_id) DO UPDATE SET
                results_completed = TRUE,
                completed_at = COALESCE(rally_results_status.completed_at, EXCLUDED.completed_at),
                updated_at = now()
            RETURNING rally_id, results_completed, results_approved, completed_at, approved_at
            """,
            (rally_id,),
        )
        row = cur.fetchone()
        conn.commit()
    return dict(row)


def approve_results_status(rally_id: str) -> bool:
    """Flip ``results_approved`` if the rally is completed and not yet approved.

    Compare-and-set: returns True only for the caller whose update changed
    the row, so concurrent approvals trigger downstream work once.
    """
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            """
            UPDATE rally_results_status
            SET results_approved = TRUE, approved_at = now(), updated_at = now()
            WHERE rally_id = %s
              AND results_completed
              AND NOT results_approved
            RETURNING rally_id
            """,
            (rally_id,),
        )
        changed = cur.fetchone() is not None
        conn.commit()
    return changed


def list_rally_participants(rally_id: str) -> List[Dict[str, Any]]:
    """Return one row per participant with their result columns.

    Registered participants come from active registrations (result columns
    NULL when nothing was entered yet); manual participants come from result
    rows without a user.
    """
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT g.rally_id, g.user_id, u.player_name, NULL AS participant_name,
                   COALESCE(rr.class_name, g.class_name) AS class_name,
                   rr.id AS result_id, rr.overall_position, rr.class_position,
                   rr.total_points, rr.extra_points,
                   COALESCE(rr.did_not_finish, FALSE) AS did_not_finish,
                   t.id AS team_id, t.name AS team_name
            FROM rally_registrations g
            JOIN users u ON u.id = g.user_id
            LEFT JOIN teams t ON t.id = u.team_id
            LEFT JOIN rally_results rr ON rr.rally_id = g.rally_id AND rr.user_id = g.user_id
            WHERE g.rally_id = %s AND g.status = ANY(%s)
            UNION ALL
            SELECT m.rally_id, NULL, NULL, m.participant_name, m.class_name,
                   m.id, m.overall_position, m.class_position,
                   m.total_points, m.extra_points, m.did_not_finish,
                   NULL, NULL
            FROM rally_results m
            WHERE m.rally_id = %s AND m.user_id IS NULL
            ORDER BY class_name, overall_position NULLS LAST, player_name, participant_name
            """,
            (rally_id, list(ACTIVE_REGISTRATION_STATES), rally_id),
        )
        return [dict(r) for r in cur.fetchall() or []]


def count_registrations(rally_id: str) -> int:
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            "SELECT COUNT(*) FROM rally_registrations WHERE rally_id = %s AND status = ANY(%s)",
            (rally_id, list(ACTIVE_REGISTRATION_STATES)),
        )
        row = cur.fetchone()
    return int(row[0]) if row else 0


def save_individual_results(rally_id: str, rows: List[Dict[str, Any]]) -> int:
    """Upsert result rows for one rally; returns the number of rows written.

    Registered participants are keyed by ``(rally_id, user_id)``. Manual
    participants are updated by ``result_id`` or inserted when new.
    """
    written = 0
    with _get_conn() as conn, conn.cursor() as cur:
        for row in rows or []:
            values = (
                row.get("class_name"),
                row.get("overall_position"),
                row.get("class_position"),
                row.get("total_points"),
                row.get("extra_points"),
                bool(row.get("did_not_finish")),
            )
            if row.get("user_id") is not None:
                cur.execute(
                    """
                    INSERT INTO rally_results (rally_id, user_id, class_name, overall_position, class_position,
                                               total_points, extra_points, did_not_finish, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, now())
                    ON CONFLICT (rally_id, user_id) WHERE user_id IS NOT NULL DO UPDATE SET
                        class_name = EXCLUDED.class_name,
                        overall_position = EXCLUDED.overall_position,
                        class_position = EXCLUDED.class_position,
                        total_points = EXCLUDED.total_points,
                        extra_points = EXCLUDED.extra_points,
                        did_not_finish = EXCLUDED.did_not_finish,
                        updated_at = now()
                    """,
                    (rally_id, row.get("user_id")) + values,
                )
            elif row.get("result_id") is not None:
                cur.execute(
                    """
                    UPDATE rally_results
                    SET class_name = %s, overall_position = %s, class_position = %s,
                        total_points = %s, extra_points = %s, did_not_finish = %s,
                        participant_name = COALESCE(%s, participant_name), updated_at = now()
                    WHERE id = %s AND rally_id = %s AND user_id IS NULL
                    """,
                    values + (row.get("participant_name"), row.get("result_id"), rally_id),
                )
            else:
                cur.execute(
                    """
                    INSERT INTO rally_results (rally_id, participant_name, class_name, overall_position, class_position,
                                               total_points, extra_points, did_not_finish, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, now())
                    """,
                    (rally_id, row.get("participant_name")) + values,
                )
            written += cur.rowcount or 0
        conn.commit()
    return written


def replace_team_rally_totals(rally_id: str, totals: List[Dict[str, Any]]) -> int:
    """Replace the derived team totals of one rally."""
    rows: List[Tuple[Any, ...]] = [
        (
            rally_id,
            t.get("team_id"),
            t.get("team_name"),
            t.get("class_name"),
            t.get("total_points"),
            t.get("team_position"),
            t.get("member_count"),
            t.get("scoring_members"),
        )
        for t in totals or []
    ]
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute("DELETE FROM team_rally_totals WHERE rally_id = %s", (rally_id,))
        if rows:
            execute_values(
                cur,
                """
                INSERT INTO team_rally_totals (rally_id, team_id, team_name, class_name, total_points,
                                               team_position, participating_members, scoring_members)
                VALUES %s
                """,
                rows,
            )
        conn.commit()
    return len(rows)


def update_rally_statuses(updates: List[Dict[str, Any]]) -> int:
    """Write derived lifecycle states back to the advisory ``status`` column."""
    rows = [(u["rally_id"], u["new_status"]) for u in updates or []]
    if not rows:
        return 0
    with _get_conn() as conn, conn.cursor() as cur:
        execute_values(
            cur,
            """
            UPDATE rallies AS r
            SET status = v.status, updated_at = now()
            FROM (VALUES %s) AS v(id, status)
            WHERE r.id::text = v.id
              AND r.status IS DISTINCT FROM v.status
              AND r.status IS DISTINCT FROM 'cancelled'
            """,
            rows,
        )
        updated = cur.rowcount or 0
        conn.commit()
    return updated
