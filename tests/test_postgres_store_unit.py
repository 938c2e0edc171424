from contextlib import contextmanager

import pytest

from persistlogin.storage.errors import RotationConflict
from persistlogin.storage.postgres import PostgresStore


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, results):
        self.results = results
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        return self.results.pop(0) if self.results else FakeResult()


class FakePool:
    def __init__(self, *results):
        self.conn = FakeConnection(list(results))

    @contextmanager
    def connection(self):
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    return store


def _row(**overrides):
    row = {"user_id": 1, "series": "s1", "token": "h1", "fingerprint": None, "created": 100}
    row.update(overrides)
    return row


def test_grant_from_row_maps_columns():
    grant = PostgresStore._grant_from_row(_row(fingerprint="fp"))
    assert (grant.user_id, grant.series_id, grant.token_hash, grant.fingerprint, grant.created) == (
        1,
        "s1",
        "h1",
        "fp",
        100,
    )
    assert PostgresStore._grant_from_row(_row()).fingerprint == ""


def test_upsert_without_expected_hash_uses_on_conflict_insert():
    pool = FakePool(FakeResult([_row(token="h2", created=200)]))
    grant = _store(pool).upsert_grant(1, "s1", "h2", "", 200)
    sql, params = pool.conn.statements[0]
    assert sql.startswith("INSERT INTO persistent_login")
    assert "ON CONFLICT (user_id, series) DO UPDATE" in sql
    assert params == (1, "s1", "h2", "", 200)
    assert grant.token_hash == "h2"


def test_rotation_is_conditional_on_expected_token():
    pool = FakePool(FakeResult([_row(token="h2", created=200)]))
    _store(pool).upsert_grant(1, "s1", "h2", "fp", 200, expected_token_hash="h1")
    sql, params = pool.conn.statements[0]
    assert sql.startswith("UPDATE persistent_login")
    assert "token = %s RETURNING" in sql
    assert params == ("h2", "fp", 200, 1, "s1", "h1")


def test_rotation_without_matching_row_raises_conflict():
    pool = FakePool(FakeResult([]))
    with pytest.raises(RotationConflict):
        _store(pool).upsert_grant(1, "s1", "h2", "", 200, expected_token_hash="stale")


def test_prune_deletes_inclusive_cutoff():
    pool = FakePool(FakeResult(rowcount=3))
    removed = _store(pool).delete_grants_older_than(500)
    assert removed == 3
    assert pool.conn.statements == [
        ("DELETE FROM persistent_login WHERE created <= %s", (500,))
    ]


def test_delete_grant_reports_whether_row_existed():
    assert _store(FakePool(FakeResult(rowcount=1))).delete_grant(1, "s1") is True
    assert _store(FakePool(FakeResult(rowcount=0))).delete_grant(1, "s1") is False


def test_get_user_loads_roles():
    pool = FakePool(
        FakeResult([{"id": 4, "username": "carol", "is_active": True, "created_at": None}]),
        FakeResult([{"role": "admin"}, {"role": "editor"}]),
    )
    user = _store(pool).get_user(4)
    assert user.username == "carol"
    assert user.roles == {"admin", "editor"}


def test_missing_tables_are_reported():
    pool = FakePool(
        FakeResult([{"oid": "app_user"}]),
        FakeResult([{"oid": None}]),
        FakeResult([{"oid": "user_credential"}]),
        FakeResult([]),
    )
    with pytest.raises(RuntimeError) as exc_info:
        _store(pool)._verify_required_schema()
    assert "persistent_login, user_role" in str(exc_info.value)

