from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors

from otpgate.storage.errors import ConstraintViolation
from otpgate.storage.models import Challenge, IdentifierKind, Role, Session
from otpgate.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeResult:
    def __init__(self, rows):
        self._rows = rows

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def execute(self, query, params=None):
        self.pool.executed.append((" ".join(query.split()), params))
        if self.pool.raise_on_execute is not None:
            raise self.pool.raise_on_execute
        return FakeResult(self.pool.rows)


class FakePool:
    def __init__(self, rows=None):
        self.rows = rows or []
        self.executed = []
        self.raise_on_execute = None

    @contextmanager
    def connection(self):
        yield FakeConnection(self)


def _store(rows=None):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(rows)
    store.dsn = "postgresql://unused"
    return store


def _challenge_row(**overrides):
    row = {
        "id": "c1",
        "identifier": "+84912345678",
        "identifier_kind": "phone",
        "created_at": NOW,
        "expires_at": NOW,
        "hashed_code": "digest",
        "attempt_count": 3,
        "last_attempt_at": NOW,
        "used": False,
    }
    row.update(overrides)
    return row


def test_record_failed_attempt_is_single_conditional_update():
    store = _store([_challenge_row()])

    challenge = store.record_failed_attempt("c1", NOW)

    query, params = store.pool.executed[0]
    assert query.startswith("UPDATE otp_challenge SET attempt_count = attempt_count + 1")
    assert "WHERE id = %s AND NOT used RETURNING *" in query
    assert params == (NOW, "c1")
    assert challenge.attempt_count == 3
    assert challenge.identifier_kind == IdentifierKind.PHONE


def test_record_failed_attempt_on_used_challenge():
    assert _store([]).record_failed_attempt("c1", NOW) is None


def test_record_failed_attempt_with_limit_guards_count():
    store = _store([])

    assert store.record_failed_attempt("c1", NOW, 5) is None

    query, params = store.pool.executed[0]
    assert "WHERE id = %s AND NOT used AND attempt_count < %s RETURNING *" in query
    assert params == (NOW, "c1", 5)


def test_consume_challenge_with_limit_guards_count():
    store = _store([])

    assert store.consume_challenge("c1", 5) is False

    query, params = store.pool.executed[0]
    assert "WHERE id = %s AND NOT used AND attempt_count < %s RETURNING id" in query
    assert params == ("c1", 5)


def test_consume_challenge_reports_winner():
    assert _store([{"id": "c1"}]).consume_challenge("c1") is True
    loser = _store([])
    assert loser.consume_challenge("c1") is False
    assert "AND NOT used" in loser.pool.executed[0][0]


def test_deactivate_session_is_conditional():
    store = _store([])
    assert store.deactivate_session("s1") is False
    assert "WHERE id = %s AND active RETURNING id" in store.pool.executed[0][0]


def test_find_user_by_email_is_case_insensitive():
    store = _store([{"id": "u1", "email": "User@Example.com", "role": "admin"}])

    user = store.find_user("user@example.com", IdentifierKind.EMAIL)

    assert "lower(email) = lower(%s)" in store.pool.executed[0][0]
    assert user.role == Role.ADMIN
    assert user.locked is False


def test_unknown_role_rejected_on_load():
    store = _store([{"id": "u1", "phone": "1", "role": "owner"}])
    with pytest.raises(ValueError):
        store.get_user("u1")


def test_create_user_maps_unique_violation():
    store = _store()
    store.pool.raise_on_execute = errors.UniqueViolation("duplicate key")

    with pytest.raises(ConstraintViolation):
        store.create_user(phone="+84912345678")


def test_create_user_requires_identifier():
    with pytest.raises(ConstraintViolation):
        _store().create_user()


def test_add_session_maps_foreign_key_violation():
    store = _store()
    store.pool.raise_on_execute = errors.ForeignKeyViolation("missing user")

    with pytest.raises(ConstraintViolation):
        store.add_session(Session.new("missing", "a", "b"))


def test_add_challenge_writes_all_columns():
    store = _store()
    challenge = Challenge.new("a@example.com", IdentifierKind.EMAIL, "digest", now=NOW)

    store.add_challenge(challenge)

    _, params = store.pool.executed[0]
    assert params[0] == challenge.id
    assert params[2] == "email"
    assert params[5] == "digest"


def test_list_active_sessions_orders_by_age():
    row = {
        "id": "s1",
        "user_id": "u1",
        "created_at": NOW,
        "session_token_hash": "t",
        "refresh_token_hash": "r",
        "session_expires_at": NOW,
        "refresh_expires_at": NOW,
        "active": True,
        "device_info": "web",
        "ip_address": "10.0.0.1",
    }
    store = _store([row])

    sessions = store.list_active_sessions("u1")

    assert "ORDER BY created_at, id" in store.pool.executed[0][0]
    assert sessions[0].device_info == "web"


def test_update_user_identifier_targets_column():
    store = _store([{"id": "u1", "email": "new@example.com", "role": "user"}])

    user = store.update_user_identifier("u1", "new@example.com", IdentifierKind.EMAIL)

    query, params = store.pool.executed[0]
    assert query == "UPDATE app_user SET email = %s WHERE id = %s RETURNING *"
    assert params == ("new@example.com", "u1")
    assert user.email == "new@example.com"


def test_update_user_identifier_maps_unique_violation():
    store = _store()
    store.pool.raise_on_execute = errors.UniqueViolation("duplicate key")

    with pytest.raises(ConstraintViolation):
        store.update_user_identifier("u1", "+84912345678", IdentifierKind.PHONE)
