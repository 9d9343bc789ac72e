import uuid
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace

import pytest

from authmail.storage.errors import ConstraintViolation
from authmail.storage.models import EmailJobState, RefreshToken, UserRole, UserStatus, utcnow
from authmail.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class ScriptedResult:
    def __init__(self, row=None, rowcount=0):
        self._row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self._row

    def fetchall(self):
        return [self._row] if self._row else []


class ScriptedConnection:
    """Replays queued results and records every statement executed."""

    def __init__(self, results):
        self.results = list(results)
        self.statements = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, params=None):
        self.statements.append((" ".join(query.split()), params))
        return self.results.pop(0) if self.results else ScriptedResult()


class ScriptedPool:
    def __init__(self, *results):
        self.conn = ScriptedConnection(results)

    def connection(self):
        return self.conn


def _store(tmp_path: Path, pool=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool or DummyPool()
    store.fs_root = tmp_path
    return store


@pytest.mark.parametrize(
    "constraint,field",
    [
        ("app_user_username_key", "username"),
        ("app_user_email_key", "email"),
        ("refresh_token_token_hash_key", "token_hash"),
        (None, "email"),
    ],
)
def test_constraint_field_from_diag(constraint, field):
    exc = SimpleNamespace(diag=SimpleNamespace(constraint_name=constraint))

    assert PostgresStore._constraint_field(exc) == field


def test_user_from_row_applies_defaults():
    user_id = uuid.uuid4()
    row = {
        "id": user_id,
        "email": "row@example.com",
        "username": "row",
        "password_hash": "hash",
        "first_name": None,
        "role": "admin",
        "status": "active",
        "email_verified": True,
    }

    user = PostgresStore._user_from_row(row)

    assert user.id == str(user_id)
    assert user.first_name == ""
    assert user.role == UserRole.ADMIN
    assert user.status == UserStatus.ACTIVE
    assert user.login_attempts == 0
    assert user.deleted_at is None


def test_job_from_row_maps_recipients_column():
    now = utcnow()
    row = {
        "id": uuid.uuid4(),
        "recipients": ["a@example.com", "b@example.com"],
        "subject": "Hello",
        "template": "welcome",
        "context": {"first_name": "Ada"},
        "cc": None,
        "state": "failed",
        "run_at": now,
        "last_error": "boom",
    }

    job = PostgresStore._job_from_row(row)

    assert job.to == ["a@example.com", "b@example.com"]
    assert job.cc == []
    assert job.state == EmailJobState.FAILED
    assert job.max_attempts == 3
    assert job.context == {"first_name": "Ada"}


def test_find_user_excludes_deleted_by_default(tmp_path):
    pool = ScriptedPool(ScriptedResult(None), ScriptedResult(None))
    store = _store(tmp_path, pool)

    assert store.find_user_by_email("  Someone@Example.com ") is None
    store.find_user_by_email("someone@example.com", include_deleted=True)

    (first_sql, first_params), (second_sql, _) = pool.conn.statements
    assert "deleted_at IS NULL" in first_sql
    assert first_params == ("someone@example.com",)
    assert "deleted_at IS NULL" not in second_sql


def test_rotate_inactive_parent_raises_constraint_violation(tmp_path):
    expired_parent = {"is_revoked": False, "expires_at": utcnow() - timedelta(seconds=1)}
    pool = ScriptedPool(ScriptedResult(expired_parent))
    store = _store(tmp_path, pool)
    successor = RefreshToken.new(str(uuid.uuid4()), "new-hash", utcnow() + timedelta(days=7))

    with pytest.raises(ConstraintViolation):
        store.rotate_refresh_token("old-hash", successor)

    (select_sql, params), = pool.conn.statements
    assert "FOR UPDATE" in select_sql
    assert params == ("old-hash",)


def test_revoke_skips_already_revoked_row(tmp_path):
    revoked_at = utcnow() - timedelta(minutes=5)
    existing = {
        "id": uuid.uuid4(),
        "token_hash": "old-hash",
        "user_id": uuid.uuid4(),
        "expires_at": utcnow() + timedelta(days=7),
        "is_revoked": True,
        "revoked_at": revoked_at,
        "revoke_reason": "rotation",
        "replaced_by_token_hash": "new-hash",
    }
    pool = ScriptedPool(ScriptedResult(None), ScriptedResult(existing))
    store = _store(tmp_path, pool)

    token = store.revoke_refresh_token("old-hash", reason="User logout", ip="10.0.0.9")

    assert token.revoke_reason == "rotation"
    assert token.revoked_at == revoked_at
    (update_sql, _), (select_sql, select_params) = pool.conn.statements
    assert "is_revoked = FALSE" in update_sql
    assert select_sql.startswith("SELECT")
    assert select_params == ("old-hash",)


def test_revoke_unknown_hash_returns_none(tmp_path):
    pool = ScriptedPool(ScriptedResult(None), ScriptedResult(None))
    store = _store(tmp_path, pool)

    assert store.revoke_refresh_token("missing", reason="User logout") is None


def test_complete_email_job_reports_deletion(tmp_path):
    pool = ScriptedPool(ScriptedResult(rowcount=1), ScriptedResult(rowcount=0))
    store = _store(tmp_path, pool)

    assert store.complete_email_job("job-1") is True
    assert store.complete_email_job("job-1") is False


def test_unit_store_never_touches_pool(tmp_path):
    store = _store(tmp_path)

    with pytest.raises(AssertionError):
        store.get_email_job("job-1")
