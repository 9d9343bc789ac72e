from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Optional

from authmail.logging import get_logger
from authmail.service.errors import TokenExpired, TokenInvalid

logger = get_logger(__name__)

DEFAULT_CLOCK_SKEW_SECONDS = 120


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenSigner:
    """HS256 JWT encode/decode bound to an issuer and audience.

    The secret is passed per call so access and refresh tokens can be signed
    with different keys through the same signer.
    """

    def __init__(
        self,
        issuer: str,
        audience: str,
        *,
        leeway_seconds: int = DEFAULT_CLOCK_SKEW_SECONDS,
    ) -> None:
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds

    def sign(self, payload: dict[str, Any], secret: str, ttl_seconds: int) -> str:
        now = int(time.time())
        claims = {
            **payload,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + int(ttl_seconds),
            # unique per token so two tokens minted in the same second differ
            "jti": str(uuid.uuid4()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(claims, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{_encode_segment(signature)}"

    def verify(self, token: Optional[str], secret: str) -> dict[str, Any]:
        """Return the claims of a token signed with ``secret``.

        Raises TokenInvalid for malformed tokens, bad signatures or claim
        mismatches and TokenExpired once ``exp`` is past the leeway.
        """
        if not token:
            raise TokenInvalid()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid() from None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalid() from None
        if not isinstance(header, dict):
            raise TokenInvalid()
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenInvalid()

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalid()
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid() from None
        if not isinstance(payload, dict):
            raise TokenInvalid()

        if payload.get("iss") != self.issuer:
            raise TokenInvalid()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenInvalid()
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise TokenInvalid() from None
        if exp_ts <= time.time() - self.leeway_seconds:
            raise TokenExpired()
        return payload
