import pytest

from authmail.service.runtime import get_runtime
from authmail.storage.models import UserRole, UserStatus
from scripts.bootstrap_admin import bootstrap_admin, validate_password


def test_validate_password():
    assert validate_password("SecurePassword123!")
    assert not validate_password("Short1!")
    assert not validate_password("nouppercase123!!")


@pytest.mark.asyncio
async def test_creates_verified_admin():
    result = await bootstrap_admin("admin@example.com", "SecurePassword123!")

    assert result["status"] == "created"
    user = get_runtime().store.find_user_by_email("admin@example.com")
    assert user.role == UserRole.ADMIN
    assert user.status == UserStatus.ACTIVE
    assert user.email_verified

    again = await bootstrap_admin("admin@example.com", "SecurePassword123!")
    assert again["status"] == "already_admin"


@pytest.mark.asyncio
async def test_dry_run_changes_nothing():
    result = await bootstrap_admin("admin@example.com", "SecurePassword123!", dry_run=True)

    assert result == {"user_id": None, "email": "admin@example.com", "status": "dry_run"}
    assert get_runtime().store.find_user_by_email("admin@example.com") is None
