from __future__ import annotations

import math
import re
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    """Access level attached to a user and carried in access tokens."""

    ADMIN = "admin"
    USER = "user"
    MODERATOR = "moderator"
    GUEST = "guest"


class UserStatus(str, Enum):
    """Account lifecycle state.

    - PENDING: registered, email not yet verified
    - ACTIVE: verified and allowed to log in
    - INACTIVE: disabled by the user or an operator
    - SUSPENDED: disabled by an operator
    - BLOCKED: disabled for security reasons
    """

    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"
    SUSPENDED = "suspended"
    BLOCKED = "blocked"


class EmailJobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    FAILED = "failed"


@dataclass
class User:
    id: str
    email: str
    username: str
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    role: UserRole = UserRole.USER
    status: UserStatus = UserStatus.PENDING
    email_verified: bool = False
    verified_at: Optional[datetime] = None
    login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        *,
        username: Optional[str] = None,
        first_name: str = "",
        last_name: str = "",
        phone: Optional[str] = None,
        role: UserRole = UserRole.USER,
        status: UserStatus = UserStatus.PENDING,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            username=username or generate_username(email),
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            role=role,
            status=status,
        )

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        return self.locked_until is not None and self.locked_until > (now or utcnow())

    def lock_minutes_left(self, now: Optional[datetime] = None) -> int:
        if not self.locked_until:
            return 0
        remaining = (self.locked_until - (now or utcnow())).total_seconds()
        return max(0, math.ceil(remaining / 60))

    def public_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "role": UserRole(self.role).value,
            "status": UserStatus(self.status).value,
            "email_verified": self.email_verified,
        }


def normalize_identifier(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def normalize_user(user: User) -> User:
    """Lower-case and trim email and username in place before persistence."""
    user.email = normalize_identifier(user.email)
    user.username = normalize_identifier(user.username)
    user.role = UserRole(user.role)
    user.status = UserStatus(user.status)
    return user


def generate_username(email: str, *, randomize: bool = False) -> str:
    """Derive a username from the email local part plus a 6-digit suffix.

    The suffix is time based unless ``randomize`` is set, which callers use
    after a collision.
    """
    prefix = normalize_identifier(email).split("@", 1)[0]
    prefix = re.sub(r"[^a-z0-9]", "", prefix)[:20] or "user"
    if randomize:
        suffix = f"{secrets.randbelow(1_000_000):06d}"
    else:
        suffix = str(time.time_ns() // 1_000_000)[-6:]
    return f"{prefix}{suffix}"


@dataclass
class RefreshToken:
    id: str
    token_hash: str
    user_id: str
    expires_at: datetime
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None
    revoked_by_ip: Optional[str] = None
    replaced_by_token_hash: Optional[str] = None
    replaced_at: Optional[datetime] = None
    created_by_ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        created_by_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "RefreshToken":
        return cls(
            id=str(uuid.uuid4()),
            token_hash=token_hash,
            user_id=user_id,
            expires_at=expires_at,
            created_by_ip=created_by_ip,
            user_agent=user_agent,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.is_revoked and not self.is_expired(now)

    def revoke(self, reason: str, ip: Optional[str] = None, now: Optional[datetime] = None) -> None:
        self.is_revoked = True
        self.revoked_at = now or utcnow()
        self.revoke_reason = reason
        self.revoked_by_ip = ip

    def replace_by(self, new_token_hash: str, ip: Optional[str] = None, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        self.replaced_by_token_hash = new_token_hash
        self.replaced_at = now
        self.revoke("rotation", ip, now)

    def days_until_expiration(self, now: Optional[datetime] = None) -> int:
        remaining = (self.expires_at - (now or utcnow())).total_seconds()
        return math.ceil(remaining / 86400)


@dataclass
class EmailJob:
    id: str
    to: List[str]
    subject: str
    template: str
    context: Dict[str, Any] = field(default_factory=dict)
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    attachments: List[Dict[str, Any]] = field(default_factory=list)
    priority: int = 0
    max_attempts: int = 3
    attempts_made: int = 0
    state: EmailJobState = EmailJobState.WAITING
    run_at: datetime = field(default_factory=utcnow)
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    failed_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        to: List[str] | str,
        subject: str,
        template: str,
        context: Optional[Dict[str, Any]] = None,
        *,
        cc: Optional[List[str]] = None,
        bcc: Optional[List[str]] = None,
        attachments: Optional[List[Dict[str, Any]]] = None,
        priority: int = 0,
        max_attempts: int = 3,
        delay_seconds: float = 0,
    ) -> "EmailJob":
        now = utcnow()
        recipients = [to] if isinstance(to, str) else list(to)
        return cls(
            id=str(uuid.uuid4()),
            to=recipients,
            subject=subject,
            template=template,
            context=dict(context or {}),
            cc=list(cc or []),
            bcc=list(bcc or []),
            attachments=list(attachments or []),
            priority=priority,
            max_attempts=max_attempts,
            run_at=now + timedelta(seconds=max(0.0, delay_seconds)),
            created_at=now,
            updated_at=now,
        )
