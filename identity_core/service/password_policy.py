from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from identity_core.config import ConfigProvider
from identity_core.logging import get_logger
from identity_core.service.errors import ValidationError
from identity_core.storage.models import User, UserStatus, utcnow

logger = get_logger(__name__)

DEFAULT_MAX_FAILED_ATTEMPTS = 5
DEFAULT_LOCKOUT_MINUTES = 30
DEFAULT_SPECIAL_CHARACTERS = "@$!%*?&"
MIN_PASSWORD_LENGTH = 8


@dataclass
class LockoutStatus:
    is_locked: bool
    failed_attempts: int
    locked_until: Optional[datetime]
    message: str


class PasswordPolicy:
    """Password hashing, strength rules and failed-login lockout.

    Lockout is healed lazily: a LOCKED account whose window has passed is
    unlocked the next time ``is_locked`` looks at it. Failed-attempt and lock
    writes commit in an independent unit of work so they survive the rollback
    of whatever operation observed the failure.
    """

    def __init__(
        self,
        store,
        config: ConfigProvider,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.config = config
        self._clock = clock
        self._hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    @property
    def max_failed_attempts(self) -> int:
        return self.config.get_int(
            "SECURITY_MAX_FAILED_LOGIN_ATTEMPTS", DEFAULT_MAX_FAILED_ATTEMPTS
        )

    @property
    def lockout_minutes(self) -> int:
        return self.config.get_int(
            "SECURITY_ACCOUNT_LOCKOUT_DURATION_MINUTES", DEFAULT_LOCKOUT_MINUTES
        )

    @property
    def special_characters(self) -> str:
        return self.config.get_string(
            "PASSWORD_SPECIAL_CHARACTERS", DEFAULT_SPECIAL_CHARACTERS
        )

    def hash(self, raw: str) -> str:
        return self._hasher.hash(raw)

    def verify(self, raw: str, stored_hash: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, raw)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def strength_message(self) -> str:
        return (
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long and "
            "contain at least one uppercase letter, one lowercase letter, one digit, "
            f"and one special character ({self.special_characters})"
        )

    def is_strong(self, raw: str) -> bool:
        specials = re.escape(self.special_characters)
        pattern = (
            rf"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[{specials}])"
            rf"[A-Za-z\d{specials}]{{{MIN_PASSWORD_LENGTH},}}$"
        )
        return bool(raw) and re.match(pattern, raw) is not None

    def validate_strength(self, raw: str) -> None:
        if not self.is_strong(raw):
            raise ValidationError(self.strength_message())

    def handle_failed_login(self, user: User) -> int:
        """Record a failed attempt; returns attempts left (0 once locked)."""
        max_attempts = self.max_failed_attempts
        with self.store.independent_transaction():
            current = self.store.find_user_by_id(user.id, for_update=True) or user
            current.failed_login_attempts += 1
            if current.failed_login_attempts >= max_attempts:
                current.status = UserStatus.LOCKED
                current.account_locked_until = self._clock() + timedelta(
                    minutes=self.lockout_minutes
                )
            self.store.save_user(current)
        _copy_lock_state(current, user)
        if user.status == UserStatus.LOCKED:
            self.logger.warning(
                "account_locked",
                user_id=user.id,
                failed_attempts=user.failed_login_attempts,
                locked_until=user.account_locked_until.isoformat(),
            )
            return 0
        remaining = max_attempts - user.failed_login_attempts
        self.logger.info(
            "login_failed", user_id=user.id, remaining_attempts=remaining
        )
        return remaining

    def lock_account(self, user: User) -> None:
        with self.store.independent_transaction():
            current = self.store.find_user_by_id(user.id, for_update=True) or user
            current.status = UserStatus.LOCKED
            current.account_locked_until = self._clock() + timedelta(
                minutes=self.lockout_minutes
            )
            self.store.save_user(current)
        _copy_lock_state(current, user)
        self.logger.warning(
            "account_locked",
            user_id=user.id,
            locked_until=user.account_locked_until.isoformat(),
        )

    def is_locked(self, user: User) -> bool:
        if user.status != UserStatus.LOCKED:
            return False
        until = user.account_locked_until
        if until is not None and until > self._clock():
            return True
        self._clear_lock(user)
        self.logger.info("account_lock_expired", user_id=user.id)
        return False

    def unlock_account(self, user: User) -> None:
        self._clear_lock(user)
        self.logger.info("account_unlocked", user_id=user.id)

    def reset_failed_attempts(self, user: User) -> None:
        if user.failed_login_attempts == 0:
            return
        user.failed_login_attempts = 0
        self.store.save_user(user)

    def remaining_lockout_minutes(self, user: User) -> int:
        until = user.account_locked_until
        if until is None:
            return 0
        seconds = (until - self._clock()).total_seconds()
        if seconds <= 0:
            return 0
        return max(1, math.ceil(seconds / 60))

    def lockout_status(self, user: User) -> LockoutStatus:
        locked = self.is_locked(user)
        if locked:
            message = (
                "Account is locked. Please try again after "
                f"{self.remaining_lockout_minutes(user)} minutes."
            )
        else:
            message = "Account is active"
        return LockoutStatus(
            is_locked=locked,
            failed_attempts=user.failed_login_attempts,
            locked_until=user.account_locked_until if locked else None,
            message=message,
        )

    def _clear_lock(self, user: User) -> None:
        user.status = UserStatus.ACTIVE
        user.failed_login_attempts = 0
        user.account_locked_until = None
        self.store.save_user(user)


def _copy_lock_state(source: User, target: User) -> None:
    target.failed_login_attempts = source.failed_login_attempts
    target.status = source.status
    target.account_locked_until = source.account_locked_until
