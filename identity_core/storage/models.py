from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    LOCKED = "LOCKED"


class OtpStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    EXPIRED = "EXPIRED"


class DeliveryStatus(str, Enum):
    QUEUED = "QUEUED"
    SENT = "SENT"
    FAILED = "FAILED"


class TerminationReason(str, Enum):
    LOGOUT = "LOGOUT"
    TIMEOUT = "TIMEOUT"
    DUPLICATE_LOGIN = "DUPLICATE_LOGIN"
    ADMIN_ACTION = "ADMIN_ACTION"


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str
    status: UserStatus = UserStatus.ACTIVE
    failed_login_attempts: int = 0
    account_locked_until: Optional[datetime] = None
    first_login: bool = False
    current_session_id: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    session_id: str
    user_id: str
    access_token: str
    refresh_token: str
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: Optional[str] = None
    is_active: bool = True
    terminated_at: Optional[datetime] = None
    termination_reason: Optional[TerminationReason] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        access_token: str,
        refresh_token: str,
        *,
        ttl_minutes: int,
        now: Optional[datetime] = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device_type: str | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            session_id=f"sess-{uuid.uuid4()}",
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            created_at=now,
            last_activity_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            ip_address=ip_address,
            user_agent=user_agent,
            device_type=device_type,
        )


@dataclass
class OtpChallengeRecord:
    request_id: str
    user_id: str
    otp_hash: str
    purpose: str
    expires_at: datetime
    max_attempts: int
    destination: str
    status: OtpStatus = OtpStatus.PENDING
    attempt_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    verified_at: Optional[datetime] = None
    delivery_status: DeliveryStatus = DeliveryStatus.QUEUED
    delivery_id: Optional[str] = None

    @property
    def remaining_attempts(self) -> int:
        return max(0, self.max_attempts - self.attempt_count)


@dataclass
class Role:
    id: str
    code: str
    name: str
    description: Optional[str] = None


@dataclass
class Permission:
    id: str
    code: str
    name: str
    description: Optional[str] = None
