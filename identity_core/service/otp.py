from __future__ import annotations

import asyncio
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Set

from identity_core.config import ConfigProvider
from identity_core.logging import get_logger
from identity_core.service.errors import (
    OtpExpiredError,
    OtpInvalidError,
    OtpMaxAttemptsExceededError,
)
from identity_core.service.notifier import Notifier
from identity_core.service.password_policy import PasswordPolicy
from identity_core.service.tokens import TokenIssuer
from identity_core.storage.models import (
    DeliveryStatus,
    OtpChallengeRecord,
    OtpStatus,
    User,
    utcnow,
)

logger = get_logger(__name__)

DEFAULT_OTP_LENGTH = 6
DEFAULT_OTP_EXPIRY_MINUTES = 5
DEFAULT_OTP_MAX_ATTEMPTS = 3
INVALID_REQUEST_MESSAGE = "Invalid OTP request"


def mask_email(email: str) -> str:
    """``alice@x.io`` -> ``a***e@x.io``; local parts of two chars or less keep only the first."""
    if not email or "@" not in email:
        return email
    local, domain = email.split("@", 1)
    if len(local) <= 2:
        return f"{local[:1]}***@{domain}"
    return f"{local[0]}***{local[-1]}@{domain}"


@dataclass
class OtpRequestResult:
    request_id: str
    masked_destination: str
    expires_at: datetime
    remaining_attempts: int
    message: str = "OTP sent successfully to your registered email"


@dataclass
class OtpVerifyResult:
    request_id: str
    user_id: str
    reset_token: str
    reset_token_expires_at: datetime


class OtpLedger:
    """Durable OTP record access.

    Attempt increments commit in an independent unit of work so a failed
    verification stays counted even if the caller's transaction rolls back.
    """

    def __init__(self, store) -> None:
        self.store = store

    def find(self, request_id: str) -> Optional[OtpChallengeRecord]:
        return self.store.find_otp_by_request_id(request_id)

    def find_pending(self, user_id: str, purpose: str) -> Optional[OtpChallengeRecord]:
        return self.store.find_pending_otp(user_id, purpose)

    def save(self, record: OtpChallengeRecord) -> OtpChallengeRecord:
        return self.store.save_otp_record(record)

    def record_failed_attempt(self, request_id: str) -> OtpChallengeRecord:
        with self.store.independent_transaction():
            record = self.store.find_otp_by_request_id(request_id, for_update=True)
            if record.attempt_count < record.max_attempts:
                record.attempt_count += 1
                self.store.save_otp_record(record)
        return record

    def mark_expired(self, record: OtpChallengeRecord) -> None:
        record.status = OtpStatus.EXPIRED
        self.store.save_otp_record(record)

    def mark_verified(self, record: OtpChallengeRecord, now: datetime) -> None:
        record.status = OtpStatus.VERIFIED
        record.verified_at = now
        self.store.save_otp_record(record)

    def record_delivery(
        self,
        request_id: str,
        otp_hash: str,
        status: DeliveryStatus,
        delivery_id: Optional[str] = None,
    ) -> bool:
        """Store a delivery outcome unless the record has been reissued since."""
        with self.store.transaction():
            record = self.store.find_otp_by_request_id(request_id, for_update=True)
            if record is None or record.otp_hash != otp_hash:
                return False
            record.delivery_status = status
            record.delivery_id = delivery_id
            self.store.save_otp_record(record)
        return True


class OtpChallenge:
    """Issues, re-issues and verifies one-time codes.

    PENDING records are reused per (user, purpose); expiry is detected lazily
    on read. Delivery runs on detached tasks whose outcome lands in
    ``delivery_status`` and never fails the request itself.
    """

    def __init__(
        self,
        store,
        ledger: OtpLedger,
        policy: PasswordPolicy,
        issuer: TokenIssuer,
        notifier: Notifier,
        config: ConfigProvider,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.policy = policy
        self.issuer = issuer
        self.notifier = notifier
        self.config = config
        self._clock = clock
        self._deliveries: Set[asyncio.Task] = set()

    def _generate_code(self) -> str:
        length = self.config.get_int("OTP_LENGTH", DEFAULT_OTP_LENGTH)
        return "".join(str(secrets.randbelow(10)) for _ in range(length))

    def _expiry(self, now: datetime) -> datetime:
        return now + timedelta(
            minutes=self.config.get_int("OTP_EXPIRY_MINUTES", DEFAULT_OTP_EXPIRY_MINUTES)
        )

    def _rearm(self, record: OtpChallengeRecord, otp_hash: str, user: User, now: datetime) -> None:
        record.otp_hash = otp_hash
        record.attempt_count = 0
        record.expires_at = self._expiry(now)
        record.destination = user.email
        record.delivery_status = DeliveryStatus.QUEUED
        record.delivery_id = None

    async def request(self, user: User, purpose: str) -> OtpRequestResult:
        code = self._generate_code()
        otp_hash = self.policy.hash(code)
        now = self._clock()
        with self.store.transaction():
            record = self.ledger.find_pending(user.id, purpose)
            if record is not None:
                self._rearm(record, otp_hash, user, now)
                reused = True
            else:
                record = OtpChallengeRecord(
                    request_id=f"OTP-{uuid.uuid4()}",
                    user_id=user.id,
                    otp_hash=otp_hash,
                    purpose=purpose,
                    expires_at=self._expiry(now),
                    max_attempts=self.config.get_int(
                        "OTP_MAX_ATTEMPTS", DEFAULT_OTP_MAX_ATTEMPTS
                    ),
                    destination=user.email,
                    created_at=now,
                )
                reused = False
            self.ledger.save(record)
        self._dispatch(record, code)
        logger.info(
            "otp_requested",
            request_id=record.request_id,
            user_id=user.id,
            purpose=purpose,
            reused=reused,
        )
        return self._result(record)

    async def resend(self, request_id: str) -> OtpRequestResult:
        code = self._generate_code()
        otp_hash = self.policy.hash(code)
        now = self._clock()
        with self.store.transaction():
            record = self.ledger.find(request_id)
            if record is None or record.status != OtpStatus.PENDING:
                raise OtpInvalidError(0, INVALID_REQUEST_MESSAGE)
            user = self.store.find_user_by_id(record.user_id)
            if user is None:
                raise OtpInvalidError(0, INVALID_REQUEST_MESSAGE)
            self._rearm(record, otp_hash, user, now)
            self.ledger.save(record)
        self._dispatch(record, code)
        logger.info("otp_resent", request_id=request_id, user_id=record.user_id)
        return self._result(record)

    async def verify(self, request_id: str, code: str) -> OtpVerifyResult:
        record = self.ledger.find(request_id) if request_id else None
        if record is None or record.status == OtpStatus.VERIFIED:
            raise OtpInvalidError(0, INVALID_REQUEST_MESSAGE)
        if record.status == OtpStatus.EXPIRED:
            raise OtpExpiredError()
        now = self._clock()
        if record.expires_at <= now:
            self.ledger.mark_expired(record)
            logger.info("otp_expired", request_id=request_id)
            raise OtpExpiredError()
        user = self.store.find_user_by_id(record.user_id)
        if user is None:
            raise OtpInvalidError(0, INVALID_REQUEST_MESSAGE)

        if record.attempt_count >= record.max_attempts:
            if not self.policy.is_locked(user):
                self.policy.lock_account(user)
            logger.warning(
                "otp_max_attempts_exceeded", request_id=request_id, user_id=user.id
            )
            raise OtpMaxAttemptsExceededError(self.policy.remaining_lockout_minutes(user))

        if not code or not self.policy.verify(code, record.otp_hash):
            updated = self.ledger.record_failed_attempt(request_id)
            remaining = updated.remaining_attempts
            logger.warning(
                "otp_verification_failed",
                request_id=request_id,
                user_id=user.id,
                remaining_attempts=remaining,
            )
            if remaining == 0:
                self.policy.lock_account(user)
            raise OtpInvalidError(remaining)

        self.ledger.mark_verified(record, now)
        reset = self.issuer.issue_reset(user.id, request_id)
        logger.info("otp_verified", request_id=request_id, user_id=user.id)
        return OtpVerifyResult(
            request_id=request_id,
            user_id=user.id,
            reset_token=reset.token,
            reset_token_expires_at=reset.expires_at,
        )

    def _result(self, record: OtpChallengeRecord) -> OtpRequestResult:
        return OtpRequestResult(
            request_id=record.request_id,
            masked_destination=mask_email(record.destination),
            expires_at=record.expires_at,
            remaining_attempts=record.remaining_attempts,
        )

    def _dispatch(self, record: OtpChallengeRecord, code: str) -> None:
        task = asyncio.create_task(
            self._deliver(record.request_id, record.destination, record.otp_hash, code)
        )
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def _deliver(
        self, request_id: str, destination: str, otp_hash: str, code: str
    ) -> None:
        template_id = self.config.get_string("MSG91_OTP_TEMPLATE_ID", "global_otp")
        company = self.config.get_string("MSG91_FROM_NAME", "Identity Core")
        try:
            delivery_id = await self.notifier.send(
                destination, template_id, {"company_name": company, "otp": code}
            )
        except Exception as exc:
            logger.error(
                "otp_delivery_failed",
                request_id=request_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self._record_delivery(request_id, otp_hash, DeliveryStatus.FAILED)
            return
        logger.info("otp_sent", request_id=request_id, delivery_id=delivery_id)
        self._record_delivery(request_id, otp_hash, DeliveryStatus.SENT, delivery_id)

    def _record_delivery(
        self,
        request_id: str,
        otp_hash: str,
        status: DeliveryStatus,
        delivery_id: Optional[str] = None,
    ) -> None:
        try:
            self.ledger.record_delivery(request_id, otp_hash, status, delivery_id)
        except Exception as exc:
            logger.error(
                "otp_delivery_status_write_failed",
                request_id=request_id,
                status=status.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def drain(self) -> None:
        """Wait for in-flight deliveries."""
        if self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)
