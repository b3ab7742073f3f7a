import os
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from sessionguard.storage.errors import DuplicateTokenValue, UnknownOwner
from sessionguard.storage.models import RefreshTokenRecord
from sessionguard.storage.postgres import _SCHEMA, PostgresStore

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


class _Result:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return [self._row] if self._row else []


class _Conn:
    def __init__(self, outcome):
        # a list gives one outcome per statement
        self.outcome = outcome
        self.statements = []
        self.transactions = 0

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        outcome = self.outcome.pop(0) if isinstance(self.outcome, list) else self.outcome
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield


class _Pool:
    def __init__(self, outcome):
        self.conn = _Conn(outcome)

    @contextmanager
    def connection(self):
        yield self.conn


def _stub_store(outcome) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = _Pool(outcome)
    return store


def _record():
    return RefreshTokenRecord.new("u1", T0 + timedelta(days=7), created_at=T0)


def test_revoke_is_conditional_on_active_row():
    store = _stub_store(_Result(row={"id": "r1"}))
    assert store.revoke_refresh_token("r1", T0) is True
    sql, params = store.pool.conn.statements[0]
    assert "WHERE id = %s AND revoked = FALSE" in sql
    assert params == (T0, "r1")


def test_revoke_reports_lost_race():
    store = _stub_store(_Result(row=None))
    assert store.revoke_refresh_token("r1", T0) is False


def test_owner_revoke_returns_rowcount():
    store = _stub_store(_Result(rowcount=3))
    assert store.revoke_owner_refresh_tokens("u1", T0) == 3
    sql, _ = store.pool.conn.statements[0]
    assert "WHERE owner_id = %s AND revoked = FALSE" in sql


def test_unique_violation_maps_to_duplicate_token():
    store = _stub_store(errors.UniqueViolation("duplicate key"))
    with pytest.raises(DuplicateTokenValue):
        store.create_refresh_token(_record())


def test_foreign_key_violation_maps_to_unknown_owner():
    store = _stub_store(errors.ForeignKeyViolation("missing owner"))
    with pytest.raises(UnknownOwner):
        store.create_refresh_token(_record())


def test_row_mapping_normalizes_naive_timestamps():
    naive = datetime(2026, 1, 1, 9, 0)
    store = _stub_store(
        _Result(
            row={
                "id": "r1",
                "token": "tok",
                "owner_id": "u1",
                "created_at": naive,
                "expires_at": naive + timedelta(days=7),
                "revoked": True,
                "revoked_at": naive + timedelta(hours=1),
            }
        )
    )
    record = store.get_refresh_token_by_value("tok")
    assert record.created_at.tzinfo is not None
    assert record.revoked_at == datetime(2026, 1, 1, 10, 0, tzinfo=timezone.utc)



def test_rotate_revokes_and_inserts_in_one_transaction():
    store = _stub_store([_Result(row={"id": "r1"}), _Result()])
    new = _record()
    assert store.rotate_refresh_token("r1", new, T0) is True
    conn = store.pool.conn
    assert conn.transactions == 1
    (update_sql, update_params), (insert_sql, insert_params) = conn.statements
    assert "WHERE id = %s AND revoked = FALSE" in update_sql
    assert update_params == (T0, "r1")
    assert insert_sql.startswith("INSERT INTO refresh_token")
    assert insert_params[:3] == (new.id, new.token, "u1")


def test_rotate_of_consumed_token_inserts_nothing():
    store = _stub_store([_Result(row=None)])
    assert store.rotate_refresh_token("r1", _record(), T0) is False
    assert len(store.pool.conn.statements) == 1


def test_rotate_maps_insert_violation_to_duplicate_token():
    store = _stub_store([_Result(row={"id": "r1"}), errors.UniqueViolation("duplicate key")])
    with pytest.raises(DuplicateTokenValue):
        store.rotate_refresh_token("r1", _record(), T0)


def test_deleting_a_user_keeps_token_history():
    ddl = " ".join(next(s for s in _SCHEMA if "refresh_token (" in s).split())
    assert "REFERENCES app_user(id) ON DELETE RESTRICT" in ddl
    assert "CASCADE" not in ddl

_DSN = os.environ.get("TEST_DATABASE_URL")


@pytest.mark.skipif(not _DSN, reason="TEST_DATABASE_URL not set")
def test_postgres_round_trip():
    store = PostgresStore(_DSN, min_size=1, max_size=2)
    try:
        owner = store.create_user(f"pg-{uuid.uuid4()}")
        now = datetime.now(timezone.utc)
        record = store.create_refresh_token(
            RefreshTokenRecord.new(owner.id, now + timedelta(days=1), created_at=now)
        )

        assert store.get_refresh_token_by_value(record.token).id == record.id
        assert store.revoke_refresh_token(record.id, now) is True
        assert store.revoke_refresh_token(record.id, now + timedelta(minutes=1)) is False
        assert store.get_refresh_token(record.id).revoked_at == now
        assert store.list_refresh_tokens(owner.id, active_only=True) == []

        fresh = store.create_refresh_token(
            RefreshTokenRecord.new(owner.id, now + timedelta(days=1), created_at=now)
        )
        successor = RefreshTokenRecord.new(owner.id, now + timedelta(days=1), created_at=now)
        assert store.rotate_refresh_token(fresh.id, successor, now) is True
        assert store.rotate_refresh_token(fresh.id, successor, now) is False
        assert [r.id for r in store.list_refresh_tokens(owner.id, active_only=True)] == [successor.id]
    finally:
        store.close()
