from __future__ import annotations

import asyncio
import hmac
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from authmail.config import Settings
from authmail.logging import get_logger
from authmail.service.errors import (
    AccountInactive,
    AccountLocked,
    AccountPending,
    AccountSuspended,
    AlreadyVerified,
    EmailExists,
    InvalidCredentials,
    InvalidResetCode,
    SessionNotFound,
    TokenInvalid,
    TokenNotFound,
    TokenRevoked,
    UserNotFound,
    UsernameExists,
    VerificationCodeIncorrect,
    VerificationCodeInvalid,
)
from authmail.service.notifications import NotificationDispatcher
from authmail.service.signer import TokenSigner
from authmail.service.tokens import RefreshTokenLedger, parse_duration
from authmail.storage.errors import ConstraintViolation
from authmail.storage.models import (
    RefreshToken,
    User,
    UserRole,
    UserStatus,
    generate_username,
    normalize_identifier,
    utcnow,
)

logger = get_logger(__name__)

VERIFICATION_KEY_PREFIX = "verification"
RESET_KEY_PREFIX = "reset"
USERNAME_ATTEMPTS = 5


class AuthStore(Protocol):
    def save_user(self, user: User) -> User: ...

    def find_user_by_id(self, user_id: str, *, include_deleted: bool = False) -> Optional[User]: ...

    def find_user_by_email(self, email: str, *, include_deleted: bool = False) -> Optional[User]: ...

    def find_user_by_username(
        self, username: str, *, include_deleted: bool = False
    ) -> Optional[User]: ...

    def increment_login_attempts(
        self, user_id: str, *, max_attempts: int, lock_minutes: int
    ) -> Optional[User]: ...

    def reset_login_attempts(self, user_id: str) -> None: ...

    def record_login(self, user_id: str, ip: Optional[str] = None) -> Optional[User]: ...


class CodeCache(Protocol):
    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> int: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: str


@dataclass
class AuthResult:
    user: User
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"
    refresh_record: Optional[RefreshToken] = field(default=None, repr=False)


def _require_verified(user: User, now: datetime) -> None:
    if user.status == UserStatus.PENDING or not user.email_verified:
        raise AccountPending()


def _require_usable_status(user: User, now: datetime) -> None:
    if user.status in (UserStatus.SUSPENDED, UserStatus.BLOCKED):
        raise AccountSuspended()
    if user.status == UserStatus.INACTIVE:
        raise AccountInactive()


def _require_unlocked(user: User, now: datetime) -> None:
    if user.is_locked(now):
        raise AccountLocked(user.lock_minutes_left(now))


# Evaluated in order; the first failing check raises.
ACCOUNT_CHECKS: Sequence[Callable[[User, datetime], None]] = (
    _require_verified,
    _require_usable_status,
    _require_unlocked,
)


def check_account(user: User, checks: Sequence[Callable[[User, datetime], None]] = ACCOUNT_CHECKS) -> None:
    now = utcnow()
    for check in checks:
        check(user, now)


def generate_numeric_code(digits: int = 6) -> str:
    return str(secrets.randbelow(10**digits)).zfill(digits)


class AuthService:
    """Registration, login, token rotation and account onboarding."""

    def __init__(
        self,
        store: AuthStore,
        cache: CodeCache,
        settings: Settings,
        notifier: NotificationDispatcher,
        *,
        ledger: Optional[RefreshTokenLedger] = None,
        signer: Optional[TokenSigner] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.notifier = notifier
        self.ledger = ledger or RefreshTokenLedger(store, settings)
        self.signer = signer or TokenSigner(settings.jwt_issuer, settings.jwt_audience)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger
        self._access_ttl = int(parse_duration(settings.jwt_expires_in).total_seconds())
        self._refresh_ttl = int(parse_duration(settings.jwt_refresh_expires_in).total_seconds())

    # -- passwords -------------------------------------------------------------

    async def hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self._pwd_hasher.hash, password)

    async def verify_password(self, user: User, password: str) -> bool:
        """Verify a user's password against the stored argon2id hash."""
        try:
            return await asyncio.to_thread(self._pwd_hasher.verify, user.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    # -- token issuance --------------------------------------------------------

    def _access_token(self, user: User) -> str:
        return self.signer.sign(
            {
                "sub": user.id,
                "email": user.email,
                "role": UserRole(user.role).value,
                "token_type": "access",
            },
            self.settings.jwt_secret,
            self._access_ttl,
        )

    def _refresh_token(self, user: User) -> str:
        return self.signer.sign(
            {"sub": user.id, "email": user.email, "token_type": "refresh"},
            self.settings.jwt_refresh_secret,
            self._refresh_ttl,
        )

    def _issue_tokens(
        self, user: User, ip: Optional[str], user_agent: Optional[str]
    ) -> AuthResult:
        refresh_token = self._refresh_token(user)
        record = self.ledger.create_token(user, refresh_token, ip=ip, user_agent=user_agent)
        return AuthResult(
            user=user,
            access_token=self._access_token(user),
            refresh_token=refresh_token,
            expires_in=self._access_ttl,
            refresh_record=record,
        )

    # -- codes -----------------------------------------------------------------

    async def _issue_code(self, prefix: str, email: str, ttl_seconds: int) -> str:
        code = generate_numeric_code()
        await self.cache.set_with_ttl(f"{prefix}:{email}", code, ttl_seconds)
        return code

    async def _stored_code(self, prefix: str, email: str) -> Optional[str]:
        return await self.cache.get(f"{prefix}:{email}")

    def _send_verification_code(self, user: User, code: str) -> Dict[str, bool]:
        return self.notifier.send_templated_email(
            user.email,
            "verification-code",
            {
                "first_name": user.first_name or user.username,
                "code": code,
                "expires_minutes": self.settings.verification_code_ttl_seconds // 60,
            },
        )

    def _send_password_changed(self, user: User) -> Dict[str, bool]:
        return self.notifier.send_templated_email(
            user.email,
            "password-changed",
            {"first_name": user.first_name or user.username},
        )

    # -- registration and login ------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Dict[str, Any]:
        email = normalize_identifier(email)
        if self.store.find_user_by_email(email, include_deleted=True):
            raise EmailExists()
        if username and self.store.find_user_by_username(username, include_deleted=True):
            raise UsernameExists()

        user = User.new(
            email,
            await self.hash_password(password),
            username=username or generate_username(email),
            first_name=first_name or "",
            last_name=last_name or "",
            phone=phone,
        )
        for attempt in range(USERNAME_ATTEMPTS):
            try:
                user = self.store.save_user(user)
                break
            except ConstraintViolation as exc:
                if exc.field != "username":
                    # lost a race with a concurrent registration
                    raise EmailExists() from exc
                if username or attempt == USERNAME_ATTEMPTS - 1:
                    raise UsernameExists() from exc
                user.username = generate_username(email, randomize=True)

        code = await self._issue_code(
            VERIFICATION_KEY_PREFIX, user.email, self.settings.verification_code_ttl_seconds
        )
        queued = self._send_verification_code(user, code)
        self.logger.info("user_registered", user_id=user.id, email_queued=queued["queued"])
        return {"message": "user.registered", "email": user.email}

    async def login(
        self,
        email: str,
        password: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        user = self.store.find_user_by_email(email)
        if not user:
            raise InvalidCredentials()

        now = utcnow()
        _require_verified(user, now)
        if user.is_locked(now):
            self.logger.warning(
                "login_locked", user_id=user.id, minutes_left=user.lock_minutes_left(now)
            )
            raise AccountLocked(user.lock_minutes_left(now))

        if not await self.verify_password(user, password):
            updated = self.store.increment_login_attempts(
                user.id,
                max_attempts=self.settings.login_max_attempts,
                lock_minutes=self.settings.login_lock_minutes,
            )
            self.logger.warning(
                "login_failed",
                user_id=user.id,
                locked=bool(updated and updated.is_locked()),
            )
            raise InvalidCredentials()

        _require_usable_status(user, now)

        user = self.store.record_login(user.id, ip) or user
        result = self._issue_tokens(user, ip, user_agent)
        self.logger.info("login_succeeded", user_id=user.id)
        return result

    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        """Resolve a bearer access token to the live account behind it."""
        payload = self.signer.verify(access_token, self.settings.jwt_secret)
        if payload.get("token_type") != "access":
            raise TokenInvalid()
        user = self.store.find_user_by_id(str(payload.get("sub")))
        if not user:
            raise TokenInvalid()
        check_account(user)
        return AuthContext(user_id=user.id, email=user.email, role=UserRole(user.role).value)

    # -- refresh tokens --------------------------------------------------------

    async def refresh(self, raw_refresh_token: str, ip: Optional[str] = None) -> Dict[str, Any]:
        payload = self.signer.verify(raw_refresh_token, self.settings.jwt_refresh_secret)
        if payload.get("token_type") != "refresh":
            raise TokenInvalid()
        stored = self.ledger.validate_token(raw_refresh_token)
        if stored.user_id != payload.get("sub"):
            raise TokenInvalid()
        user = self.store.find_user_by_id(stored.user_id)
        if not user:
            raise TokenInvalid()
        _require_usable_status(user, utcnow())

        new_refresh = self._refresh_token(user)
        self.ledger.rotate_token(raw_refresh_token, new_refresh, ip=ip)
        self.logger.info("tokens_refreshed", user_id=user.id)
        return {
            "access_token": self._access_token(user),
            "refresh_token": new_refresh,
            "token_type": "Bearer",
            "expires_in": self._access_ttl,
        }

    async def logout(self, raw_refresh_token: str, ip: Optional[str] = None) -> None:
        try:
            self.ledger.revoke_token(raw_refresh_token, "User logout", ip)
        except TokenNotFound:
            self.logger.info("logout_token_not_found")
            return
        except TokenRevoked:
            self.logger.info("logout_token_already_revoked")
            return
        self.logger.info("logout_succeeded")

    async def logout_all(self, user_id: str) -> int:
        return self.ledger.revoke_all_user_tokens(user_id, "User logout all")

    async def revoke_session(
        self, user_id: str, session_id: str, ip: Optional[str] = None
    ) -> None:
        revoked = self.ledger.revoke_by_id(user_id, session_id, "Session revoked", ip)
        if not revoked:
            raise SessionNotFound()
        self.logger.info("session_revoked", user_id=user_id, session_id=session_id)

    async def list_sessions(self, user_id: str) -> List[Dict[str, Any]]:
        now = utcnow()
        return [
            {
                "id": token.id,
                "created_at": token.created_at.isoformat(),
                "expires_at": token.expires_at.isoformat(),
                "created_by_ip": token.created_by_ip,
                "user_agent": token.user_agent,
                "days_until_expiration": token.days_until_expiration(now),
            }
            for token in self.ledger.get_active_tokens(user_id)
        ]

    # -- onboarding ------------------------------------------------------------

    async def verify_email(self, email: str, code: str) -> Dict[str, str]:
        email = normalize_identifier(email)
        stored = await self._stored_code(VERIFICATION_KEY_PREFIX, email)
        if not stored:
            raise VerificationCodeInvalid()
        if not hmac.compare_digest(stored, (code or "").strip()):
            raise VerificationCodeIncorrect()
        user = self.store.find_user_by_email(email)
        if not user:
            raise UserNotFound()
        if user.email_verified:
            raise AlreadyVerified()

        now = utcnow()
        user.email_verified = True
        user.verified_at = now
        user.status = UserStatus.ACTIVE
        user.updated_at = now
        user = self.store.save_user(user)
        await self.cache.delete(f"{VERIFICATION_KEY_PREFIX}:{email}")

        self.notifier.send_templated_email(
            user.email,
            "welcome",
            {"first_name": user.first_name or user.username},
        )
        self.logger.info("email_verified", user_id=user.id)
        return {"message": "verification.success"}

    async def resend_verification(self, email: str) -> Dict[str, str]:
        email = normalize_identifier(email)
        user = self.store.find_user_by_email(email)
        if not user:
            raise UserNotFound()
        if user.email_verified:
            raise AlreadyVerified()
        code = await self._issue_code(
            VERIFICATION_KEY_PREFIX, email, self.settings.verification_code_ttl_seconds
        )
        self._send_verification_code(user, code)
        return {"message": "verification.resent"}

    async def forgot_password(self, email: str) -> Dict[str, str]:
        email = normalize_identifier(email)
        response = {"message": "password.resetCodeSent"}
        user = self.store.find_user_by_email(email)
        if not user:
            self.logger.info("password_reset_unknown_email")
            return response
        code = await self._issue_code(RESET_KEY_PREFIX, email, self.settings.reset_code_ttl_seconds)
        self.notifier.send_templated_email(
            user.email,
            "reset-password",
            {
                "first_name": user.first_name or user.username,
                "code": code,
                "expires_minutes": self.settings.reset_code_ttl_seconds // 60,
            },
        )
        self.logger.info("password_reset_requested", user_id=user.id)
        return response

    async def reset_password(self, email: str, code: str, new_password: str) -> Dict[str, str]:
        email = normalize_identifier(email)
        stored = await self._stored_code(RESET_KEY_PREFIX, email)
        if not stored or not hmac.compare_digest(stored, (code or "").strip()):
            raise InvalidResetCode()
        user = self.store.find_user_by_email(email)
        if not user:
            raise UserNotFound()

        user.password_hash = await self.hash_password(new_password)
        user.updated_at = utcnow()
        user = self.store.save_user(user)
        await self.cache.delete(f"{RESET_KEY_PREFIX}:{email}")
        self.ledger.revoke_all_user_tokens(user.id, "Password reset")
        self.store.reset_login_attempts(user.id)
        self._send_password_changed(user)
        self.logger.info("password_reset_completed", user_id=user.id)
        return {"message": "password.changed"}

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> Dict[str, Any]:
        user = self.store.find_user_by_id(user_id)
        if not user:
            raise UserNotFound()
        if not await self.verify_password(user, current_password):
            self.logger.warning("password_change_rejected", user_id=user.id)
            raise InvalidCredentials()

        user.password_hash = await self.hash_password(new_password)
        user.updated_at = utcnow()
        user = self.store.save_user(user)
        revoked = self.ledger.revoke_all_user_tokens(user.id, "Password changed")
        self._send_password_changed(user)
        self.logger.info("password_changed", user_id=user.id, sessions_revoked=revoked)
        return {"message": "password.changed", "sessions_revoked": revoked}


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    return header.split(" ", 1)[1].strip() or None
