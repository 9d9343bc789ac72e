"""Unit tests for HS256 token signing and duration parsing."""

import base64
import json
from datetime import timedelta

import pytest

from authmail.service.errors import InvalidFormat, TokenExpired, TokenInvalid
from authmail.service.signer import TokenSigner
from authmail.service.tokens import parse_duration

SECRET = "signing-secret-for-unit-tests-0123456789"


@pytest.fixture
def signer():
    return TokenSigner("authmail", "authmail-clients")


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestSignAndVerify:
    def test_round_trip_carries_standard_claims(self, signer):
        token = signer.sign({"sub": "user-1", "token_type": "access"}, SECRET, 900)

        claims = signer.verify(token, SECRET)

        assert claims["sub"] == "user-1"
        assert claims["iss"] == "authmail"
        assert claims["aud"] == "authmail-clients"
        assert claims["exp"] - claims["iat"] == 900
        assert claims["jti"]

    def test_tokens_minted_together_differ(self, signer):
        """Two tokens for the same subject in the same second are distinct."""
        first = signer.sign({"sub": "user-1"}, SECRET, 60)
        second = signer.sign({"sub": "user-1"}, SECRET, 60)

        assert first != second

    def test_wrong_secret_rejected(self, signer):
        token = signer.sign({"sub": "user-1"}, SECRET, 60)

        with pytest.raises(TokenInvalid):
            signer.verify(token, "some-other-secret-entirely-0123456789")

    def test_alg_none_rejected(self, signer):
        token = signer.sign({"sub": "user-1"}, SECRET, 60)
        _, payload, signature = token.split(".")
        forged = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}.{signature}"

        with pytest.raises(TokenInvalid):
            signer.verify(forged, SECRET)

    def test_wrong_audience_rejected(self, signer):
        other = TokenSigner("authmail", "someone-else")
        token = other.sign({"sub": "user-1"}, SECRET, 60)

        with pytest.raises(TokenInvalid):
            signer.verify(token, SECRET)

    def test_wrong_issuer_rejected(self, signer):
        other = TokenSigner("not-authmail", "authmail-clients")
        token = other.sign({"sub": "user-1"}, SECRET, 60)

        with pytest.raises(TokenInvalid):
            signer.verify(token, SECRET)

    @pytest.mark.parametrize("token", [None, "", "abc", "a.b", "a.b.c.d"])
    def test_malformed_tokens_rejected(self, signer, token):
        with pytest.raises(TokenInvalid):
            signer.verify(token, SECRET)

    def test_expired_past_leeway(self, signer):
        token = signer.sign({"sub": "user-1"}, SECRET, -300)

        with pytest.raises(TokenExpired):
            signer.verify(token, SECRET)

    def test_recently_expired_within_leeway_accepted(self, signer):
        """Clock skew up to the leeway is tolerated."""
        token = signer.sign({"sub": "user-1"}, SECRET, -30)

        assert signer.verify(token, SECRET)["sub"] == "user-1"


class TestParseDuration:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("30s", timedelta(seconds=30)),
            ("15m", timedelta(minutes=15)),
            ("2h", timedelta(hours=2)),
            ("7d", timedelta(days=7)),
        ],
    )
    def test_valid_durations(self, value, expected):
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", ["", "15", "m15", "1w", "1.5h", "-5m"])
    def test_invalid_durations(self, value):
        with pytest.raises(InvalidFormat):
            parse_duration(value)
