import contextlib
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from tenantguard.storage.models import RefreshToken, RotationOutcome, Severity
from tenantguard.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, row=None, rows=None, rowcount=0):
        self._row = row
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return self._rows


class FakeConnection:
    """Answers ``execute`` calls from a script and records what was sent."""

    def __init__(self, script):
        self.script = list(script)
        self.statements = []
        self.transactions = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    @contextlib.contextmanager
    def transaction(self):
        self.transactions += 1
        yield

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        return self.script.pop(0) if self.script else FakeCursor()


class ScriptedPool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


def _store(tmp_path: Path, pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.fs_root = tmp_path
    return store


def _successor():
    return RefreshToken.new("user-1", "hash-next", timedelta(days=1), chain_id="chain-1")


def test_row_mappers_normalize_timestamps(tmp_path: Path):
    store = _store(tmp_path, DummyPool())
    naive = datetime(2026, 4, 1, 9, 0)

    token = store._refresh_from_row(
        {
            "id": "r1",
            "user_id": "u1",
            "chain_id": "r1",
            "token_hash": "h",
            "issued_at": naive,
            "expires_at": naive + timedelta(days=1),
            "revoked_at": None,
        }
    )
    record = store._audit_from_row(
        {
            "id": "a1",
            "ts": naive,
            "action": "privileged-access",
            "severity": "elevated",
            "detail": json.dumps({"role": "platform_admin"}),
        }
    )

    assert token.issued_at.tzinfo == timezone.utc
    assert token.revoked_at is None
    assert record.severity == Severity.ELEVATED
    assert record.detail == {"role": "platform_admin"}


class TestRotation:
    def test_winning_update_inserts_successor_in_same_transaction(self, tmp_path: Path):
        conn = FakeConnection([FakeCursor(row={"id": "r0"})])
        store = _store(tmp_path, ScriptedPool(conn))
        successor = _successor()

        outcome = store.rotate_refresh_token("r0", successor)

        assert outcome == RotationOutcome.ROTATED
        assert conn.transactions == 1
        update_sql, update_params = conn.statements[0]
        assert update_sql.startswith("UPDATE refresh_token")
        assert "revoked_at IS NULL AND expires_at >" in update_sql
        assert update_params[1:4] == ("rotated", successor.id, "r0")
        insert_sql, insert_params = conn.statements[1]
        assert insert_sql.startswith("INSERT INTO refresh_token")
        assert insert_params[0] == successor.id

    @pytest.mark.parametrize(
        "lookup,expected",
        [
            (None, RotationOutcome.NOT_FOUND),
            ({"revoked_at": datetime.now(timezone.utc)}, RotationOutcome.ALREADY_REVOKED),
            ({"revoked_at": None}, RotationOutcome.EXPIRED),
        ],
    )
    def test_losing_update_reports_why(self, tmp_path: Path, lookup, expected):
        conn = FakeConnection([FakeCursor(row=None), FakeCursor(row=lookup)])
        store = _store(tmp_path, ScriptedPool(conn))

        assert store.rotate_refresh_token("r0", _successor()) == expected
        assert len(conn.statements) == 2
        assert not any(sql.startswith("INSERT") for sql, _ in conn.statements)


def test_revoke_chain_counts_rows(tmp_path: Path):
    conn = FakeConnection([FakeCursor(rowcount=3)])
    store = _store(tmp_path, ScriptedPool(conn))

    assert store.revoke_refresh_chain("chain-1", "reuse_detected") == 3
    sql, params = conn.statements[0]
    assert "WHERE chain_id = %s AND revoked_at IS NULL" in sql
    assert params[1:] == ("reuse_detected", "chain-1")


def test_consume_reset_token_is_conditional(tmp_path: Path):
    conn = FakeConnection([FakeCursor(row={"user_id": "u1"}), FakeCursor(row=None)])
    store = _store(tmp_path, ScriptedPool(conn))

    assert store.consume_password_reset_token("h1") == "u1"
    assert store.consume_password_reset_token("h1") is None
    assert "used_at IS NULL" in conn.statements[0][0]
