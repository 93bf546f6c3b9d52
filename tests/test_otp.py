"""Unit tests for OTP challenges.

Tests for:
- Request / reuse of PENDING records
- Verification attempts, lockout and expiry
- Detached delivery and delivery status tracking
"""

from datetime import timedelta

import pytest

from identity_core.service.errors import (
    AccountLockedError,
    NotificationError,
    OtpExpiredError,
    OtpInvalidError,
    OtpMaxAttemptsExceededError,
)
from identity_core.service.otp import mask_email
from identity_core.service.tokens import RESET
from identity_core.storage.models import DeliveryStatus, OtpStatus, UserStatus

PURPOSE = "RESET_PASSWORD"


def last_code(runtime) -> str:
    return runtime.notifier.sent[-1][2]["otp"]


def wrong_code(code: str) -> str:
    return "".join(str((int(digit) + 1) % 10) for digit in code)


class FailingNotifier:
    async def send(self, destination, template_id, variables):
        raise NotificationError("gateway down")

    async def close(self):
        return None


class TestMaskEmail:
    def test_masks_local_part(self):
        assert mask_email("alice@example.com") == "a***e@example.com"

    def test_short_local_part(self):
        assert mask_email("al@example.com") == "a***@example.com"
        assert mask_email("a@example.com") == "a***@example.com"


class TestRequest:
    """Tests for issuing challenges."""

    async def test_request_creates_pending_record_and_delivers(self, runtime, make_user):
        user = make_user()

        result = await runtime.otp.request(user, PURPOSE)
        await runtime.otp.drain()

        assert result.request_id.startswith("OTP-")
        assert result.remaining_attempts == 3
        assert result.masked_destination == "a***e@example.com"
        assert result.expires_at == runtime.clock() + timedelta(minutes=5)

        destination, template_id, variables = runtime.notifier.sent[-1]
        assert destination == "alice@example.com"
        assert template_id == "global_otp"
        assert variables["company_name"] == "Identity Core"
        assert len(variables["otp"]) == 6 and variables["otp"].isdigit()

        record = runtime.store.find_otp_by_request_id(result.request_id)
        assert record.status == OtpStatus.PENDING
        assert record.delivery_status == DeliveryStatus.SENT
        assert record.delivery_id.startswith("log-")
        assert record.otp_hash != variables["otp"]

    async def test_second_request_reuses_pending_record(self, runtime, make_user):
        user = make_user()
        first = await runtime.otp.request(user, PURPOSE)
        await runtime.otp.drain()
        with pytest.raises(OtpInvalidError):
            await runtime.otp.verify(first.request_id, wrong_code(last_code(runtime)))

        second = await runtime.otp.request(user, PURPOSE)
        await runtime.otp.drain()

        assert second.request_id == first.request_id
        assert second.remaining_attempts == 3
        assert runtime.store.find_otp_by_request_id(first.request_id).attempt_count == 0

    async def test_resend_reuses_id_and_resets_attempts(self, runtime, make_user, clock):
        user = make_user()
        first = await runtime.otp.request(user, PURPOSE)
        await runtime.otp.drain()
        old_code = last_code(runtime)
        with pytest.raises(OtpInvalidError):
            await runtime.otp.verify(first.request_id, wrong_code(old_code))

        clock.advance(minutes=2)
        resent = await runtime.otp.resend(first.request_id)
        await runtime.otp.drain()

        assert resent.request_id == first.request_id
        assert resent.remaining_attempts == 3
        assert resent.expires_at == clock.now + timedelta(minutes=5)
        record = runtime.store.find_otp_by_request_id(first.request_id)
        assert record.attempt_count == 0
        assert runtime.policy.verify(last_code(runtime), record.otp_hash)

    async def test_resend_of_verified_record_rejected(self, runtime, make_user):
        user = make_user()
        result = await runtime.otp.request(user, PURPOSE)
        await runtime.otp.drain()
        await runtime.otp.verify(result.request_id, last_code(runtime))

        with pytest.raises(OtpInvalidError):
            await runtime.otp.resend(result.request_id)

    async def test_delivery_failure_is_recorded_not_raised(self, runtime, make_user):
        runtime.otp.notifier = FailingNotifier()
        user = make_user()

        result = await runtime.otp.request(user, PURPOSE)
        await runtime.otp.drain()

        record = runtime.store.find_otp_by_request_id(result.request_id)
        assert record.status == OtpStatus.PENDING
        assert record.delivery_status == DeliveryStatus.FAILED


    async def test_status_write_failure_does_not_escape_the_delivery_task(
        self, runtime, make_user, monkeypatch
    ):
        def broken_write(*args, **kwargs):
            raise RuntimeError("store offline")

        runtime.otp.notifier = FailingNotifier()
        monkeypatch.setattr(runtime.otp.ledger, "record_delivery", broken_write)
        user = make_user()

        await runtime.otp.request(user, PURPOSE)
        tasks = list(runtime.otp._deliveries)
        await runtime.otp.drain()

        assert len(tasks) == 1
        assert tasks[0].exception() is None

class TestVerify:
    """Tests for verification."""

    async def test_correct_code_verifies_and_mints_reset_token(self, runtime, make_user):
        user = make_user()
        result = await runtime.otp.request(user, PURPOSE)
        await runtime.otp.drain()

        verified = await runtime.otp.verify(result.request_id, last_code(runtime))

        record = runtime.store.find_otp_by_request_id(result.request_id)
        assert record.status == OtpStatus.VERIFIED
        assert record.verified_at == runtime.clock()
        claims = runtime.issuer.decode(verified.reset_token, RESET)
        assert claims["sub"] == user.id
        assert claims["request_id"] == result.request_id

        with pytest.raises(OtpInvalidError):
            await runtime.otp.verify(result.request_id, last_code(runtime))

    async def test_unknown_request_id(self, runtime):
        with pytest.raises(OtpInvalidError) as exc_info:
            await runtime.otp.verify("OTP-missing", "123456")

        assert exc_info.value.message == "Invalid OTP request"

    async def test_wrong_codes_count_down_and_lock_once(self, runtime, make_user, clock):
        user = make_user()
        result = await runtime.otp.request(user, PURPOSE)
        await runtime.otp.drain()
        bad = wrong_code(last_code(runtime))

        remaining = []
        for _ in range(3):
            with pytest.raises(OtpInvalidError) as exc_info:
                await runtime.otp.verify(result.request_id, bad)
            remaining.append(exc_info.value.remaining_attempts)

        assert remaining == [2, 1, 0]
        locked = runtime.store.find_user_by_id(user.id)
        assert locked.status == UserStatus.LOCKED
        locked_until = locked.account_locked_until

        clock.advance(minutes=1)
        with pytest.raises(OtpMaxAttemptsExceededError) as exc_info:
            await runtime.otp.verify(result.request_id, last_code(runtime))

        assert isinstance(exc_info.value, AccountLockedError)
        assert exc_info.value.status_code == 423
        assert exc_info.value.remaining_minutes == 29
        record = runtime.store.find_otp_by_request_id(result.request_id)
        assert record.attempt_count == 3
        assert record.status == OtpStatus.PENDING
        assert runtime.store.find_user_by_id(user.id).account_locked_until == locked_until

    async def test_expired_code_is_marked_lazily(self, runtime, make_user, clock):
        user = make_user()
        result = await runtime.otp.request(user, PURPOSE)
        await runtime.otp.drain()

        clock.advance(minutes=5)
        with pytest.raises(OtpExpiredError):
            await runtime.otp.verify(result.request_id, last_code(runtime))

        record = runtime.store.find_otp_by_request_id(result.request_id)
        assert record.status == OtpStatus.EXPIRED
        with pytest.raises(OtpExpiredError):
            await runtime.otp.verify(result.request_id, last_code(runtime))

    async def test_attempt_increment_survives_outer_rollback(self, runtime, make_user):
        user = make_user()
        result = await runtime.otp.request(user, PURPOSE)
        await runtime.otp.drain()

        with pytest.raises(RuntimeError):
            with runtime.store.transaction():
                runtime.ledger.record_failed_attempt(result.request_id)
                raise RuntimeError("rollback")

        assert runtime.store.find_otp_by_request_id(result.request_id).attempt_count == 1
