import contextlib
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace

import pytest

from migente_auth.storage.errors import ConstraintViolation
from migente_auth.storage.models import (
    CredentialChange,
    RefreshToken,
    TokenPurpose,
    UserIdentity,
    utcnow,
)
from migente_auth.storage.postgres import PostgresStore, _constraint_field


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = list(rows or [])
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Records statements and replays scripted results in order."""

    def __init__(self, results=None):
        self.results = list(results or [])
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
        return self.results.pop(0) if self.results else FakeCursor()


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


def _store(tmp_path: Path, conn: FakeConnection) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    store.fs_root = tmp_path
    return store


def test_constraint_field_from_constraint_name():
    def violation(name):
        return SimpleNamespace(diag=SimpleNamespace(constraint_name=name))

    assert _constraint_field(violation("app_user_email_key")) == "email"
    assert _constraint_field(violation("legacy_credential_user_id_key")) == "user_id"
    assert _constraint_field(violation("refresh_token_pkey")) == "token"
    assert _constraint_field(violation(None)) == "id"


def test_row_mappers():
    now = utcnow()
    user = PostgresStore._row_to_user(
        {
            "id": "u1",
            "email": "a@x.com",
            "password_hash": "h",
            "password_algo": None,
            "confirmed": True,
            "role": "contractor",
            "locked_out": False,
            "created_at": now,
        }
    )
    assert user.password_algo == "argon2id"
    assert user.confirmed is True

    legacy = PostgresStore._row_to_legacy(
        {"id": 4, "user_id": "u1", "email": "a@x.com", "password_hash": "b", "active": 1}
    )
    assert legacy.id == 4 and legacy.active is True

    token = PostgresStore._row_to_ephemeral(
        {
            "id": "e1",
            "purpose": "password_reset",
            "email": "a@x.com",
            "token": "123456",
            "created_at": now,
            "expires_at": now + timedelta(minutes=15),
            "user_id": None,
        }
    )
    assert token.purpose is TokenPurpose.PASSWORD_RESET
    assert token.user_id is None and token.is_usable(now)


def test_rotate_inserts_successor_in_same_transaction(tmp_path):
    conn = FakeConnection([FakeCursor(rows=[{"token": "old"}])])
    store = _store(tmp_path, conn)
    successor = RefreshToken.new("u1", ttl_minutes=5)

    assert store.rotate_refresh_token("old", successor, revoked_by_ip="10.0.0.1")
    assert conn.transactions == 1
    update_sql, update_params = conn.statements[0]
    assert "revoked_at IS NULL AND expires_at >" in update_sql
    assert update_params[2] == successor.token
    assert conn.statements[1][0].startswith("INSERT INTO refresh_token")


def test_rotate_lost_race_inserts_nothing(tmp_path):
    conn = FakeConnection([FakeCursor(rows=[])])
    store = _store(tmp_path, conn)
    assert not store.rotate_refresh_token("old", RefreshToken.new("u1", ttl_minutes=5))
    assert len(conn.statements) == 1


def test_revoke_reports_whether_row_changed(tmp_path):
    conn = FakeConnection([FakeCursor(rows=[{"token": "t"}]), FakeCursor(rows=[])])
    store = _store(tmp_path, conn)
    assert store.revoke_refresh_token("t", reason="logout")
    assert not store.revoke_refresh_token("t", reason="logout")
    assert conn.statements[0][1][2] == "logout"


def test_credential_change_touches_both_tables(tmp_path):
    conn = FakeConnection([FakeCursor(rowcount=1), FakeCursor(rowcount=1)])
    store = _store(tmp_path, conn)
    change = CredentialChange(
        confirmed=True, password_hash="p", password_algo="argon2id", legacy_password_hash="l"
    )

    assert store.apply_credential_change("u1", change)
    assert conn.transactions == 1
    user_sql, user_params = conn.statements[0]
    legacy_sql, legacy_params = conn.statements[1]
    assert user_sql.startswith("UPDATE app_user SET confirmed = %s, password_hash = %s")
    assert "locked_out" not in user_sql
    assert "password_hash = %s" in legacy_sql
    assert user_params[-1] == legacy_params[-1] == "u1"
    assert "l" in legacy_params and "p" not in legacy_params


def test_credential_change_missing_user(tmp_path):
    conn = FakeConnection([FakeCursor(rowcount=0), FakeCursor(rowcount=0)])
    store = _store(tmp_path, conn)
    assert not store.apply_credential_change("missing", CredentialChange(confirmed=False))


def test_consume_is_single_conditional_update(tmp_path):
    now = utcnow()
    row = {
        "id": "e1",
        "purpose": "activation",
        "email": "a@x.com",
        "token": "abc",
        "created_at": now,
        "expires_at": None,
        "user_id": "u1",
        "used_at": now,
    }
    conn = FakeConnection([FakeCursor(rows=[row])])
    store = _store(tmp_path, conn)

    consumed = store.consume_ephemeral_token(TokenPurpose.ACTIVATION, "A@x.com", "abc", at=now)
    assert consumed.used_at == now
    sql, params = conn.statements[0]
    assert "FOR UPDATE" in sql and sql.count("used_at IS NULL") == 2
    assert params[2] == "a@x.com"


def test_create_user_maps_unique_violation(tmp_path, monkeypatch):
    from psycopg import errors

    class Boom(FakeConnection):
        def execute(self, sql, params=None):
            raise errors.UniqueViolation("duplicate key")

    store = _store(tmp_path, Boom())
    monkeypatch.setattr(
        "migente_auth.storage.postgres._constraint_field", lambda exc: "email"
    )
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user(UserIdentity.new("a@x.com", "h"))
    assert exc_info.value.detail == {"field": "email"}


def test_lock_leaves_confirmation_alone(tmp_path):
    conn = FakeConnection([FakeCursor(rowcount=1), FakeCursor(rowcount=1)])
    store = _store(tmp_path, conn)

    assert store.apply_credential_change("u1", CredentialChange(locked_out=True))
    user_sql, user_params = conn.statements[0]
    legacy_sql, legacy_params = conn.statements[1]
    assert user_sql.startswith("UPDATE app_user SET locked_out = %s, updated_at = %s")
    assert "confirmed" not in user_sql
    assert "locked_out = %s" in legacy_sql and "active = %s" in legacy_sql
    assert legacy_params[0] is True
    assert legacy_params[-2] is False
