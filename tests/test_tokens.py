"""Tests for token minting, verification and revocation."""

import base64
import json
from datetime import timedelta

import pytest

from identity_core.service.tokens import (
    ACCESS,
    REFRESH,
    RESET,
    RevocationList,
    TokenIssuer,
    revocation_key,
)


@pytest.fixture
def issuer(settings, config, clock):
    return TokenIssuer(settings, config, clock=clock)


@pytest.fixture
def revocations(cache, config, clock):
    return RevocationList(cache, config, clock=clock)


def _tamper(token: str, **changes) -> str:
    header, payload, signature = token.split(".")
    padded = payload + "=" * (-len(payload) % 4)
    claims = json.loads(base64.urlsafe_b64decode(padded))
    claims.update(changes)
    forged = base64.urlsafe_b64encode(json.dumps(claims).encode()).decode().rstrip("=")
    return f"{header}.{forged}.{signature}"


class TestTokenIssuer:
    def test_access_token_claims(self, issuer, make_user, clock):
        user = make_user()

        issued = issuer.issue_access(user, ["VIEWER", "ADMIN"], ["B", "A"])
        claims = issuer.decode(issued.token, ACCESS)

        assert claims["sub"] == user.id
        assert claims["username"] == "alice"
        assert claims["roles"] == ["ADMIN", "VIEWER"]
        assert claims["permissions"] == ["A", "B"]
        assert claims["jti"] == issued.jti
        assert issued.expires_at == clock.now + timedelta(minutes=15)

    def test_refresh_and_reset_lifetimes(self, issuer, make_user, clock):
        user = make_user()

        refresh = issuer.issue_refresh(user)
        reset = issuer.issue_reset(user.id, "OTP-1")

        assert refresh.expires_at == clock.now + timedelta(days=7)
        assert reset.expires_at == clock.now + timedelta(minutes=10)

    def test_type_mismatch_rejected(self, issuer, make_user):
        user = make_user()
        access = issuer.issue_access(user, [], []).token
        refresh = issuer.issue_refresh(user).token
        reset = issuer.issue_reset(user.id, "OTP-1").token

        assert issuer.decode(access, REFRESH) is None
        assert issuer.decode(refresh, ACCESS) is None
        assert issuer.decode(reset, ACCESS) is None
        assert issuer.decode(reset, RESET)["request_id"] == "OTP-1"

    def test_tampered_payload_rejected(self, issuer, make_user):
        token = issuer.issue_access(make_user(), [], []).token

        assert issuer.decode(_tamper(token, permissions=["ADMIN"]), ACCESS) is None

    def test_other_secret_rejected(self, issuer, settings, config, make_user):
        token = issuer.issue_access(make_user(), [], []).token
        other = TokenIssuer(
            settings.model_copy(update={"jwt_secret": "another-secret-value-of-sufficient-length"}),
            config,
        )

        assert other.decode(token, ACCESS) is None

    def test_expired_token_rejected(self, issuer, make_user, clock):
        token = issuer.issue_access(make_user(), [], []).token

        clock.advance(minutes=15)

        assert issuer.decode(token, ACCESS) is None

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c", "a.b.c.d"])
    def test_garbage_rejected(self, issuer, garbage):
        assert issuer.decode(garbage, ACCESS) is None

    def test_peek_expiry(self, issuer, make_user, clock):
        issued = issuer.issue_refresh(make_user())

        assert TokenIssuer.peek_expiry(issued.token) == issued.expires_at.replace(microsecond=0)
        assert TokenIssuer.peek_expiry("not-a-token") is None


class TestRevocationList:
    async def test_revoke_lasts_for_remaining_lifetime(self, issuer, revocations, cache, make_user, clock):
        token = issuer.issue_access(make_user(), [], []).token

        await revocations.revoke(token)
        assert await revocations.is_revoked(token) is True

        clock.advance(minutes=15)
        assert await cache.get(revocation_key(token)) is None

    async def test_fractional_clock_never_outlives_the_entry(
        self, issuer, revocations, make_user, clock
    ):
        clock.advance(microseconds=700_000)
        token = issuer.issue_access(make_user(), [], []).token

        await revocations.revoke(token)
        clock.advance(minutes=14, seconds=59, microseconds=100_000)

        assert issuer.decode(token, ACCESS) is not None
        assert await revocations.is_revoked(token) is True

    async def test_token_with_under_a_second_left_is_revoked(
        self, issuer, revocations, make_user, clock
    ):
        clock.advance(microseconds=700_000)
        token = issuer.issue_access(make_user(), [], []).token
        clock.advance(minutes=14, seconds=59, microseconds=100_000)

        await revocations.revoke(token)

        assert issuer.decode(token, ACCESS) is not None
        assert await revocations.is_revoked(token) is True

    async def test_already_expired_token_not_stored(self, issuer, revocations, cache, make_user, clock):
        token = issuer.issue_access(make_user(), [], []).token
        clock.advance(minutes=20)

        await revocations.revoke(token)

        assert await cache.get(revocation_key(token)) is None

    async def test_unreadable_token_uses_fallback_ttl(self, revocations, cache, clock):
        await revocations.revoke("opaque-token")
        assert await revocations.is_revoked("opaque-token") is True

        clock.advance(hours=23, minutes=59)
        assert await revocations.is_revoked("opaque-token") is True
        clock.advance(minutes=1)
        assert await revocations.is_revoked("opaque-token") is False

    async def test_key_is_token_digest(self, revocations):
        key = revocation_key("some-token")

        assert key.startswith("token:blacklist:")
        assert "some-token" not in key
        assert len(key) == len("token:blacklist:") + 64

    async def test_empty_token_ignored(self, revocations):
        await revocations.revoke(None)

        assert await revocations.is_revoked("") is False
