from __future__ import annotations

import hashlib
import hmac
from datetime import timedelta
from typing import List, Optional

from authmail.config import DURATION_PATTERN, Settings
from authmail.logging import get_logger
from authmail.service.errors import (
    InvalidFormat,
    TokenExpired,
    TokenInvalid,
    TokenNotFound,
    TokenReuseDetected,
    TokenRevoked,
)
from authmail.storage.errors import ConstraintViolation
from authmail.storage.models import RefreshToken, User, utcnow

logger = get_logger(__name__)

FAMILY_COMPROMISED_REASON = "family compromised"

_DURATION_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


def parse_duration(value: str) -> timedelta:
    """Parse ``<int><s|m|h|d>`` (``15m``, ``7d``) into a timedelta."""
    match = DURATION_PATTERN.match((value or "").strip())
    if not match:
        raise InvalidFormat(f"invalid duration {value!r}", detail={"value": value})
    amount, unit = match.groups()
    return timedelta(**{_DURATION_UNITS[unit]: int(amount)})


class RefreshTokenLedger:
    """Persistent record of issued refresh tokens.

    Raw tokens are never stored. Each row is keyed by an HMAC of the raw
    token under the refresh secret, and rotation links a revoked row to its
    successor so a replayed predecessor can revoke the whole chain.
    """

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._key = settings.jwt_refresh_secret.encode()
        self.logger = logger

    def hash_token(self, raw_token: str) -> str:
        return hmac.new(self._key, raw_token.encode(), hashlib.sha256).hexdigest()

    def _expires_at(self):
        return utcnow() + parse_duration(self.settings.jwt_refresh_expires_in)

    def create_token(
        self,
        user: User,
        raw_token: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RefreshToken:
        token = RefreshToken.new(
            user.id,
            self.hash_token(raw_token),
            self._expires_at(),
            created_by_ip=ip,
            user_agent=user_agent,
        )
        return self.store.create_refresh_token(token)

    def validate_token(self, raw_token: str) -> RefreshToken:
        token = self.store.get_refresh_token_by_hash(self.hash_token(raw_token))
        if not token:
            raise TokenInvalid()
        if token.is_revoked:
            if token.replaced_by_token_hash:
                revoked = self.revoke_token_family(token)
                self.logger.warning(
                    "refresh_token_reuse_detected",
                    user_id=token.user_id,
                    refresh_id=token.id,
                    descendants_revoked=revoked,
                )
                raise TokenReuseDetected()
            raise TokenRevoked()
        if token.is_expired():
            raise TokenExpired()
        return token

    def rotate_token(
        self, old_raw: str, new_raw: str, ip: Optional[str] = None
    ) -> RefreshToken:
        old = self.validate_token(old_raw)
        successor = RefreshToken.new(
            old.user_id,
            self.hash_token(new_raw),
            self._expires_at(),
            created_by_ip=ip,
            user_agent=old.user_agent,
        )
        try:
            return self.store.rotate_refresh_token(old.token_hash, successor, ip=ip)
        except ConstraintViolation as exc:
            # another request rotated or revoked the parent first
            self.logger.info(
                "refresh_token_rotation_lost",
                user_id=old.user_id,
                refresh_id=old.id,
                error=exc.message,
            )
            raise TokenRevoked() from exc

    def revoke_token(
        self, raw_token: str, reason: str, ip: Optional[str] = None
    ) -> RefreshToken:
        """Revoke one token. An already revoked row keeps its original audit fields."""
        token_hash = self.hash_token(raw_token)
        existing = self.store.get_refresh_token_by_hash(token_hash)
        if not existing:
            raise TokenNotFound()
        if existing.is_revoked:
            raise TokenRevoked()
        revoked = self.store.revoke_refresh_token(token_hash, reason=reason, ip=ip)
        if not revoked:
            raise TokenNotFound()
        return revoked

    def revoke_all_user_tokens(self, user_id: str, reason: str) -> int:
        count = self.store.revoke_user_refresh_tokens(user_id, reason=reason)
        self.logger.info(
            "refresh_tokens_revoked_for_user", user_id=user_id, count=count, reason=reason
        )
        return count

    def revoke_token_family(self, token: RefreshToken) -> int:
        return self.store.revoke_refresh_token_family(
            token.token_hash, reason=FAMILY_COMPROMISED_REASON
        )

    def get_active_tokens(self, user_id: str) -> List[RefreshToken]:
        return self.store.list_active_refresh_tokens(user_id)

    def count_user_sessions(self, user_id: str) -> int:
        return self.store.count_active_refresh_tokens(user_id)

    def delete_expired_tokens(self) -> int:
        deleted = self.store.delete_expired_refresh_tokens()
        if deleted:
            self.logger.info("expired_refresh_tokens_deleted", count=deleted)
        return deleted

    def revoke_by_id(
        self, user_id: str, token_id: str, reason: str, ip: Optional[str] = None
    ) -> Optional[RefreshToken]:
        """Revoke one of ``user_id``'s active tokens by row id; None if not active."""
        match = next((t for t in self.get_active_tokens(user_id) if t.id == token_id), None)
        if not match:
            return None
        return self.store.revoke_refresh_token(match.token_hash, reason=reason, ip=ip)
