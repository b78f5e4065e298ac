import importlib
from contextlib import contextmanager

import pytest


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.rowcount = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.conn.statements.append((" ".join(sql.split()), params))
        self.rowcount = 1

    def fetchone(self):
        return self.conn.rows.pop(0) if self.conn.rows else None


class FakeConn:
    def __init__(self, rows=None):
        self.rows = list(rows or [])
        self.statements = []
        self.commits = 0

    def cursor(self, cursor_factory=None):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1


@pytest.fixture()
def pg():
    import rallyboard.datastore_pg as module
    return importlib.reload(module)


def _use(pg, monkeypatch, conn):
    @contextmanager
    def fake_get_conn():
        yield conn

    monkeypatch.setattr(pg, "_get_conn", fake_get_conn)
    return conn


def test_approve_is_a_compare_and_set(pg, monkeypatch):
    conn = _use(pg, monkeypatch, FakeConn(rows=[("7",)]))
    assert pg.approve_results_status("7") is True
    sql, params = conn.statements[0]
    assert sql.startswith("UPDATE rally_results_status")
    assert "AND results_completed AND NOT results_approved RETURNING rally_id" in sql
    assert params == ("7",)
    assert conn.commits == 1


def test_approve_reports_no_change_when_no_row_matches(pg, monkeypatch):
    _use(pg, monkeypatch, FakeConn(rows=[]))
    assert pg.approve_results_status("7") is False


def test_complete_is_a_single_upsert(pg, monkeypatch):
    row = {"rally_id": "7", "results_completed": True, "results_approved": False,
           "completed_at": None, "approved_at": None}
    conn = _use(pg, monkeypatch, FakeConn(rows=[row]))
    assert pg.upsert_results_completed("7") == row
    [(sql, params)] = conn.statements
    assert sql.startswith("INSERT INTO rally_results_status")
    assert "ON CONFLICT (rally_id) DO UPDATE SET results_completed = TRUE" in sql
    assert params == ("7",)


def test_save_results_picks_statement_per_identity(pg, monkeypatch):
    conn = _use(pg, monkeypatch, FakeConn())
    written = pg.save_individual_results("7", [
        {"user_id": "11", "total_points": 10},
        {"result_id": 5, "participant_name": "Külaline", "total_points": 3},
        {"participant_name": "Uus", "did_not_finish": True},
    ])
    assert written == 3
    kinds = [sql.split()[0] for sql, _ in conn.statements]
    assert kinds == ["INSERT", "UPDATE", "INSERT"]
    assert "ON CONFLICT (rally_id, user_id) WHERE user_id IS NOT NULL" in conn.statements[0][0]
    assert conn.statements[2][1][:2] == ("7", "Uus")
    assert conn.commits == 1


def test_status_sync_never_touches_cancelled(pg, monkeypatch):
    conn = _use(pg, monkeypatch, FakeConn())
    captured = {}

    def fake_execute_values(cur, sql, rows):
        captured["sql"] = " ".join(sql.split())
        captured["rows"] = rows
        cur.rowcount = len(rows)

    monkeypatch.setattr(pg, "execute_values", fake_execute_values)
    updated = pg.update_rally_statuses([{"rally_id": "1", "new_status": "completed"}])
    assert updated == 1
    assert captured["rows"] == [("1", "completed")]
    assert "r.status IS DISTINCT FROM 'cancelled'" in captured["sql"]
    assert conn.commits == 1
    assert pg.update_rally_statuses([]) == 0
