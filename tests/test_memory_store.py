"""Tests for MemoryStore user records, lockout counters and persistence."""

import pytest

from authmail.storage.errors import ConstraintViolation
from authmail.storage.memory import MemoryStore
from authmail.storage.models import EmailJob, RefreshToken, User, UserRole, utcnow


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def _user(email="Person@Example.com", username="Person"):
    return User.new(email, "hash", username=username)


class TestUsers:
    def test_identifiers_normalized(self, store):
        saved = store.save_user(_user(email="  Person@Example.COM ", username=" Person "))

        assert saved.email == "person@example.com"
        assert saved.username == "person"
        assert store.find_user_by_email("PERSON@example.com").id == saved.id
        assert store.find_user_by_username("PERSON").id == saved.id

    def test_duplicate_email_rejected(self, store):
        store.save_user(_user())

        with pytest.raises(ConstraintViolation) as exc_info:
            store.save_user(_user(email="person@example.com", username="someone-else"))
        assert exc_info.value.field == "email"

    def test_duplicate_username_rejected(self, store):
        store.save_user(_user())

        with pytest.raises(ConstraintViolation) as exc_info:
            store.save_user(_user(email="other@example.com", username="PERSON"))
        assert exc_info.value.field == "username"

    def test_soft_delete_and_restore(self, store):
        user = store.save_user(_user())

        assert store.soft_delete_user(user.id)
        assert store.find_user_by_id(user.id) is None
        assert store.find_user_by_email(user.email, include_deleted=True).deleted_at
        assert not store.soft_delete_user(user.id)

        restored = store.restore_user(user.id)
        assert restored.deleted_at is None
        assert store.find_user_by_id(user.id) is not None

    def test_update_role(self, store):
        user = store.save_user(_user())

        assert store.update_user_role(user.id, "admin").role == UserRole.ADMIN
        assert store.update_user_role("missing", "admin") is None

    def test_returned_copies_are_detached(self, store):
        user = store.save_user(_user())
        found = store.find_user_by_id(user.id)
        found.first_name = "Changed"

        assert store.find_user_by_id(user.id).first_name == ""


class TestLoginAttempts:
    def test_lock_at_max_attempts(self, store):
        user = store.save_user(_user())

        for _ in range(2):
            updated = store.increment_login_attempts(user.id, max_attempts=3, lock_minutes=30)
            assert not updated.is_locked()
        locked = store.increment_login_attempts(user.id, max_attempts=3, lock_minutes=30)

        assert locked.is_locked()
        assert locked.login_attempts == 0
        assert locked.lock_minutes_left() == 30

    def test_record_login_clears_lock(self, store):
        user = store.save_user(_user())
        store.increment_login_attempts(user.id, max_attempts=1, lock_minutes=30)

        updated = store.record_login(user.id, "10.0.0.1")

        assert not updated.is_locked()
        assert updated.last_login_ip == "10.0.0.1"


class TestPersistence:
    def test_state_reloaded_from_disk(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.save_user(_user())
        token = store.create_refresh_token(
            RefreshToken.new(user.id, "hash-a", utcnow(), created_by_ip="10.0.0.1")
        )
        (job,) = store.enqueue_email_jobs([EmailJob.new("a@example.com", "Hi", "welcome")])

        reloaded = MemoryStore(fs_root=str(tmp_path))

        assert reloaded.find_user_by_id(user.id).email == user.email
        assert reloaded.get_refresh_token(token.id).created_by_ip == "10.0.0.1"
        assert reloaded.get_email_job(job.id).to == ["a@example.com"]

    def test_refresh_token_requires_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_refresh_token(RefreshToken.new("missing", "hash-a", utcnow()))
