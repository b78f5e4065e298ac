import importlib

import psycopg2
import pytest


class _Cursor:
    def __init__(self, conn):
        self.conn = conn

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.conn.executed.append(sql)
        if self.conn.stale:
            raise psycopg2.OperationalError("SSL connection has been closed unexpectedly")


class _Conn:
    autocommit = False

    def __init__(self, stale=False, status=0):
        self.stale = stale
        self.status = status
        self.closed = 0
        self.rollbacks = 0
        self.executed = []

    def cursor(self, cursor_factory=None):
        return _Cursor(self)

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = 1


class _Pool:
    def __init__(self, *conns):
        self.conns = list(conns)
        self.put = []

    def getconn(self):
        return self.conns.pop(0)

    def putconn(self, conn, close=False):
        self.put.append((conn, close))
        if close:
            conn.close()


@pytest.fixture()
def pg():
    import rallyboard.datastore_pg as module
    return importlib.reload(module)


def test_checkout_replaces_stale_connection(pg, monkeypatch):
    bad, good = _Conn(stale=True), _Conn()
    pool = _Pool(bad, good)
    monkeypatch.setattr(pg, "_POOL", pool)

    with pg._get_conn() as conn:
        assert conn is good

    assert bad.closed == 1
    assert (bad, True) in pool.put
    assert (good, False) in pool.put


def test_checkout_gives_up_after_retry(pg, monkeypatch):
    pool = _Pool(_Conn(stale=True), _Conn(stale=True), _Conn())
    monkeypatch.setattr(pg, "_POOL", pool)

    with pytest.raises(psycopg2.OperationalError):
        with pg._get_conn():
            pass
    # The third, healthy connection was never taken
    assert len(pool.conns) == 1


def test_error_inside_block_rolls_back_and_returns_connection(pg, monkeypatch):
    conn = _Conn()
    pool = _Pool(conn)
    monkeypatch.setattr(pg, "_POOL", pool)

    with pytest.raises(ValueError):
        with pg._get_conn() as c:
            c.status = 2
            raise ValueError("boom")

    assert conn.rollbacks >= 2
    assert pool.put == [(conn, False)]


def test_get_conn_requires_database_url(pg, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError):
        with pg._get_conn():
            pass
