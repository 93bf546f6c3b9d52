from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

from identity_core.config import ConfigProvider, Settings
from identity_core.logging import get_logger
from identity_core.storage.cache import Cache
from identity_core.storage.models import User, utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
RESET = "reset"

REVOCATION_PREFIX = "token:blacklist:"


@dataclass
class IssuedToken:
    token: str
    expires_at: datetime
    jti: str


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """Mints and verifies HS256 tokens for access, refresh and password reset.

    ``decode`` returns the claims only when the signature, issuer, audience,
    expiry and ``token_type`` all check out; otherwise ``None``.
    """

    def __init__(
        self,
        settings: Settings,
        config: ConfigProvider,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.config = config
        self._clock = clock

    def _lifetime(self, token_type: str) -> timedelta:
        if token_type == ACCESS:
            return timedelta(
                minutes=self.config.get_int("JWT_ACCESS_TOKEN_EXPIRATION_MINUTES", 15)
            )
        if token_type == REFRESH:
            return timedelta(
                days=self.config.get_int("JWT_REFRESH_TOKEN_EXPIRATION_DAYS", 7)
            )
        return timedelta(
            minutes=self.config.get_int("JWT_RESET_TOKEN_EXPIRATION_MINUTES", 10)
        )

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _issue(self, subject: str, token_type: str, claims: dict[str, Any]) -> IssuedToken:
        now = self._clock()
        expires_at = now + self._lifetime(token_type)
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject,
            "token_type": token_type,
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            **claims,
        }
        return IssuedToken(token=self._encode(payload), expires_at=expires_at, jti=jti)

    def issue_access(
        self, user: User, roles: Iterable[str], permissions: Iterable[str]
    ) -> IssuedToken:
        return self._issue(
            user.id,
            ACCESS,
            {
                "username": user.username,
                "email": user.email,
                "roles": sorted(roles),
                "permissions": sorted(permissions),
            },
        )

    def issue_refresh(self, user: User) -> IssuedToken:
        return self._issue(user.id, REFRESH, {"username": user.username})

    def issue_reset(self, user_id: str, request_id: str) -> IssuedToken:
        return self._issue(user_id, RESET, {"request_id": request_id})

    def decode(self, token: str, expected_type: str) -> Optional[dict[str, Any]]:
        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        if payload.get("token_type") != expected_type:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self._clock().timestamp():
            return None
        return payload

    @staticmethod
    def peek_expiry(token: str) -> Optional[datetime]:
        """Read ``exp`` without verifying the token; None when unreadable."""
        try:
            _, payload_b64, _ = token.split(".")
            payload = json.loads(_decode_segment(payload_b64))
            return datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        except (ValueError, TypeError, KeyError, OverflowError):
            return None


def revocation_key(token: str) -> str:
    return REVOCATION_PREFIX + hashlib.sha256(token.encode()).hexdigest()


class RevocationList:
    """Cache-backed denylist; entries expire with the token they revoke."""

    def __init__(
        self,
        cache: Cache,
        config: ConfigProvider,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.config = config
        self._clock = clock

    async def revoke(self, token: Optional[str]) -> None:
        if not token:
            return
        expires_at = TokenIssuer.peek_expiry(token)
        if expires_at is None:
            ttl = self.config.get_int("REVOCATION_FALLBACK_TTL_HOURS", 24) * 3600
        else:
            remaining = (expires_at - self._clock()).total_seconds()
            if remaining <= 0:
                # already unusable
                return
            ttl = math.ceil(remaining)
        await self.cache.set(revocation_key(token), True, ttl)
        logger.info("token_revoked", ttl_seconds=ttl)

    async def is_revoked(self, token: str) -> bool:
        if not token:
            return False
        return bool(await self.cache.get(revocation_key(token)))
