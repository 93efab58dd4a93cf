import contextlib
from contextvars import ContextVar

import pytest
from psycopg import errors

from citizenauth.logging import get_logger
from citizenauth.storage.errors import ConstraintViolation, TransactionTimeout
from citizenauth.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row

    def fetchall(self):
        return [self.row] if self.row else []


class FakeConnection:
    """Records SQL and replays canned rows; ``fail_with`` raises on the next statement."""

    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount
        self.statements = []
        self.fail_with = None
        self.transactions = 0

    def execute(self, sql, params=None):
        self.statements.append((sql, params))
        if self.fail_with is not None:
            exc, self.fail_with = self.fail_with, None
            raise exc
        return FakeCursor(self.row, self.rowcount)

    @contextlib.contextmanager
    def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.checkouts = 0

    @contextlib.contextmanager
    def connection(self):
        self.checkouts += 1
        yield self.conn


def _store(conn):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://test"
    store.logger = get_logger("test")
    store.pool = FakePool(conn)
    store._tx_conn = ContextVar("citizenauth_tx_test", default=None)
    return store


def test_for_update_reads_lock_the_row():
    conn = FakeConnection()
    store = _store(conn)

    store.get_account("acc-1", for_update=True)
    store.get_account("acc-1")

    assert conn.statements[0][0].endswith(" FOR UPDATE")
    assert "FOR UPDATE" not in conn.statements[1][0]


def test_transaction_sets_statement_timeout():
    conn = FakeConnection()
    store = _store(conn)

    with store.transaction(timeout=2.5):
        store.get_session("jti-1", for_update=True)

    sql, params = conn.statements[0]
    assert "statement_timeout" in sql
    assert params == ("2500",)


def test_transaction_reuses_one_connection_and_nests_savepoints():
    conn = FakeConnection()
    store = _store(conn)

    with store.transaction(timeout=1):
        store.get_account("acc-1", for_update=True)
        with store.transaction():
            store.revoke_account_sessions("acc-1", now=None, reason="logout_all")

    assert store.pool.checkouts == 1
    assert conn.transactions == 2
    assert store._tx_conn.get() is None


def test_query_canceled_becomes_transaction_timeout():
    conn = FakeConnection()
    store = _store(conn)

    with pytest.raises(TransactionTimeout):
        with store.transaction(timeout=0.5):
            conn.fail_with = errors.QueryCanceled("canceling statement due to statement timeout")
            store.get_account("acc-1", for_update=True)

    assert store._tx_conn.get() is None


def test_unique_violation_maps_to_constraint_violation():
    conn = FakeConnection()
    conn.fail_with = errors.UniqueViolation(
        'duplicate key value violates unique constraint "accounts_email_key"'
    )
    store = _store(conn)

    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_account("ana", "ana@example.com", "hash")

    assert exc_info.value.detail == {"field": "email"}


def test_revoke_reports_rowcount():
    store = _store(FakeConnection(rowcount=3))
    assert store.revoke_session_family("fam-1", now=None, reason="reuse_detected") == 3


def test_missing_tables_fail_fast():
    store = _store(FakeConnection(row={"oid": None}))
    with pytest.raises(RuntimeError) as exc_info:
        store._verify_required_schema()
    assert "accounts" in str(exc_info.value)
    assert "schema.sql" in str(exc_info.value)
