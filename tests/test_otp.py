"""
Tests for the OTP authority

Covers issuance, single-use verification, attempt exhaustion, lazy expiry,
status probes and fail-open delivery.
"""

import asyncio

import pytest

from banking_sync.audit import AuditEventType
from banking_sync.errors import Expired, Mismatch, NotFound, TooManyAttempts, ValidationError
from banking_sync.otp import (
    LocalOTPGateway, OTPAuthority, VerifyReason, normalize_address
)
from conftest import RecordingNotifier


WRONG_CODE = "000000"  # Issued codes are always 100000-999999


@pytest.fixture
def authority(notifier, audit_trail, clock):
    return OTPAuthority(notifier, audit_trail=audit_trail, clock=clock)


def issue(authority, address):
    async def _issue():
        result = await authority.issue(address)
        await authority.wait_for_deliveries()
        return result
    return asyncio.run(_issue())


class TestNormalizeAddress:

    def test_lowercases_and_trims(self):
        assert normalize_address("  User@Bank.TEST ") == "user@bank.test"

    def test_empty_address_rejected(self):
        with pytest.raises(ValidationError):
            normalize_address("   ")
        with pytest.raises(ValidationError):
            normalize_address(None)


class TestIssue:
    """Test code issuance"""

    def test_issue_returns_expiry_and_delivers_code(self, authority, notifier):
        result = issue(authority, "user@bank.test")

        assert result.expires_in == 600
        assert result.address == "user@bank.test"
        assert len(notifier.sent) == 1
        address, code = notifier.sent[0]
        assert address == "user@bank.test"
        assert len(code) == 6 and code.isdigit()
        assert 100000 <= int(code) <= 999999

    def test_issue_replaces_previous_record(self, authority, notifier):
        issue(authority, "user@bank.test")
        first = notifier.last_code()
        issue(authority, "USER@bank.test ")
        second = notifier.last_code()

        assert len(authority) == 1
        assert authority.peek_code("user@bank.test") == second
        if first != second:
            result = authority.verify("user@bank.test", first)
            assert result.reason == VerifyReason.MISMATCH

    def test_reissue_resets_attempts(self, authority, notifier):
        issue(authority, "user@bank.test")
        for _ in range(3):
            authority.verify("user@bank.test", WRONG_CODE)

        issue(authority, "user@bank.test")
        result = authority.verify("user@bank.test", WRONG_CODE)
        assert result.remaining_attempts == 4

    def test_custom_code_length(self, notifier, clock):
        authority = OTPAuthority(notifier, code_length=8, clock=clock)
        issue(authority, "user@bank.test")
        assert len(notifier.last_code()) == 8

    def test_issue_audited_without_code(self, authority, audit_trail, notifier):
        issue(authority, "user@bank.test")
        events = audit_trail.get_events_by_type(AuditEventType.OTP_ISSUED)

        assert len(events) == 1
        assert events[0].entity_id == "user@bank.test"
        assert notifier.last_code() not in str(events[0].metadata)


class TestVerify:
    """Test the verification state machine"""

    def test_verify_before_issue_is_not_found(self, authority):
        result = authority.verify("nobody@bank.test", "123456")
        assert not result.ok
        assert result.reason == VerifyReason.NOT_FOUND

    def test_issue_mismatch_success_then_not_found(self, authority, notifier):
        """Wrong code, then right code, then the same code again"""
        result = issue(authority, "user@bank.test")
        assert result.expires_in == 600
        code = notifier.last_code()

        wrong = authority.verify("user@bank.test", WRONG_CODE)
        assert wrong.reason == VerifyReason.MISMATCH
        assert wrong.message == "Invalid OTP. 4 attempts remaining."
        assert wrong.remaining_attempts == 4

        right = authority.verify("user@bank.test", code)
        assert right.ok
        assert right.message == "OTP verified successfully"

        again = authority.verify("user@bank.test", code)
        assert not again.ok
        assert again.reason == VerifyReason.NOT_FOUND

    def test_verify_trims_code_and_normalizes_address(self, authority, notifier):
        issue(authority, "user@bank.test")
        code = notifier.last_code()
        assert authority.verify(" User@Bank.Test", f" {code} ").ok

    def test_sixth_wrong_attempt_exhausts(self, authority, notifier, audit_trail):
        issue(authority, "user@bank.test")
        code = notifier.last_code()

        for expected_remaining in (4, 3, 2, 1, 0):
            result = authority.verify("user@bank.test", WRONG_CODE)
            assert result.reason == VerifyReason.MISMATCH
            assert result.remaining_attempts == expected_remaining

        sixth = authority.verify("user@bank.test", WRONG_CODE)
        assert sixth.reason == VerifyReason.TOO_MANY_ATTEMPTS
        assert sixth.message == "Too many failed attempts. Request a new OTP."

        after = authority.verify("user@bank.test", code)
        assert after.reason == VerifyReason.NOT_FOUND
        assert len(audit_trail.get_events_by_type(AuditEventType.OTP_EXHAUSTED)) == 1

    def test_exhausted_record_rejects_correct_code(self, authority, notifier):
        issue(authority, "user@bank.test")
        code = notifier.last_code()
        for _ in range(5):
            authority.verify("user@bank.test", WRONG_CODE)

        result = authority.verify("user@bank.test", code)
        assert result.reason == VerifyReason.TOO_MANY_ATTEMPTS

    def test_expired_record_is_deleted(self, authority, notifier, clock):
        issue(authority, "user@bank.test")
        code = notifier.last_code()
        clock.advance(minutes=10, seconds=1)

        expired = authority.verify("user@bank.test", code)
        assert expired.reason == VerifyReason.EXPIRED
        assert expired.message == "OTP expired. Request a new one."
        assert len(authority) == 0

        assert authority.verify("user@bank.test", code).reason == VerifyReason.NOT_FOUND

    def test_code_valid_at_exact_expiry(self, authority, notifier, clock):
        issue(authority, "user@bank.test")
        clock.advance(minutes=10)
        assert authority.verify("user@bank.test", notifier.last_code()).ok

    def test_raise_for_failure_maps_reasons(self, authority, notifier, clock):
        with pytest.raises(NotFound):
            authority.verify("user@bank.test", "123456").raise_for_failure()

        issue(authority, "user@bank.test")
        with pytest.raises(Mismatch) as exc_info:
            authority.verify("user@bank.test", WRONG_CODE).raise_for_failure()
        assert exc_info.value.remaining_attempts == 4

        for _ in range(4):
            authority.verify("user@bank.test", WRONG_CODE)
        with pytest.raises(TooManyAttempts):
            authority.verify("user@bank.test", WRONG_CODE).raise_for_failure()

        issue(authority, "user@bank.test")
        clock.advance(minutes=11)
        with pytest.raises(Expired):
            authority.verify("user@bank.test", notifier.last_code()).raise_for_failure()


class TestClearAndStatus:

    def test_clear_removes_record(self, authority, notifier):
        issue(authority, "user@bank.test")
        assert authority.clear("user@bank.test") is True
        assert authority.clear("user@bank.test") is False
        assert authority.verify("user@bank.test", notifier.last_code()).reason == VerifyReason.NOT_FOUND

    def test_status_reports_remaining_seconds(self, authority, clock):
        issue(authority, "user@bank.test")
        status = authority.status("user@bank.test")
        assert status.verified is False
        assert status.remaining_seconds == 600

        clock.advance(seconds=0.5)
        assert authority.status("user@bank.test").remaining_seconds == 600

        clock.advance(seconds=100)
        assert authority.status("user@bank.test").remaining_seconds == 500

    def test_status_after_verify_until_clear(self, authority, notifier):
        issue(authority, "user@bank.test")
        authority.verify("user@bank.test", notifier.last_code())
        assert authority.status("user@bank.test").verified is True

        authority.clear("user@bank.test")
        assert authority.status("user@bank.test").verified is False

    def test_status_deletes_expired_record(self, authority, clock):
        issue(authority, "user@bank.test")
        clock.advance(minutes=15)

        status = authority.status("user@bank.test")
        assert status.verified is False
        assert status.remaining_seconds == 0
        assert len(authority) == 0

    def test_status_without_record(self, authority):
        status = authority.status("user@bank.test")
        assert status.verified is False
        assert status.remaining_seconds == 0

    def test_purge_expired(self, authority, clock):
        issue(authority, "old@bank.test")
        clock.advance(minutes=8)
        issue(authority, "new@bank.test")
        clock.advance(minutes=3)

        assert authority.purge_expired() == 1
        assert authority.peek_code("old@bank.test") is None
        assert authority.peek_code("new@bank.test") is not None


class TestDeliveryFailure:
    """Delivery failures never invalidate the code"""

    def test_rejected_delivery_keeps_code_valid(self, audit_trail, clock):
        notifier = RecordingNotifier(should_succeed=False)
        authority = OTPAuthority(notifier, audit_trail=audit_trail, clock=clock)

        result = issue(authority, "user@bank.test")
        assert result.expires_in == 600

        code = authority.peek_code("user@bank.test")
        assert code == notifier.last_code()
        assert authority.verify("user@bank.test", code).ok
        assert len(audit_trail.get_events_by_type(AuditEventType.OTP_DELIVERY_FAILED)) == 1

    def test_raising_notifier_is_absorbed(self, audit_trail, clock):
        notifier = RecordingNotifier(error=RuntimeError("smtp down"))
        authority = OTPAuthority(notifier, audit_trail=audit_trail, clock=clock)

        issue(authority, "user@bank.test")
        assert authority.verify("user@bank.test", notifier.last_code()).ok
        failures = audit_trail.get_events_by_type(AuditEventType.OTP_DELIVERY_FAILED)
        assert "smtp down" in failures[0].metadata["failure"]

    def test_slow_delivery_does_not_block_issue(self, audit_trail, clock):
        class SlowNotifier(RecordingNotifier):
            async def send(self, address, code):
                self.sent.append((address, code))
                await asyncio.sleep(5)
                return True

        notifier = SlowNotifier()
        authority = OTPAuthority(notifier, audit_trail=audit_trail, delivery_timeout=0.05, clock=clock)

        async def run():
            result = await authority.issue("user@bank.test")
            issued_live = authority.peek_code("user@bank.test") is not None
            await authority.wait_for_deliveries()
            return result, issued_live

        result, issued_live = asyncio.run(run())
        assert result.expires_in == 600
        assert issued_live
        failures = audit_trail.get_events_by_type(AuditEventType.OTP_DELIVERY_FAILED)
        assert "timed out" in failures[0].metadata["failure"]


class TestLocalGateway:

    def test_gateway_round_trip(self, authority, notifier):
        gateway = LocalOTPGateway(authority)

        async def run():
            issued = await gateway.issue("user@bank.test")
            await authority.wait_for_deliveries()
            verified = await gateway.verify("user@bank.test", notifier.last_code())
            status = await gateway.status("user@bank.test")
            cleared = await gateway.clear("user@bank.test")
            return issued, verified, status, cleared

        issued, verified, status, cleared = asyncio.run(run())
        assert issued.expires_in == 600
        assert verified.ok
        assert status.verified
        assert cleared
