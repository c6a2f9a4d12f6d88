"""
OTP Authority Module

Issues, stores, expires and verifies short-lived numeric codes keyed by a
normalized address. At most one live record exists per address; issuing a
new code replaces the previous record. Expiry is evaluated lazily on access.

Per-address lifecycle:
    NoRecord -> Issued -> Verified | Expired | Exhausted
Only a new issue() leaves a terminal state; clear() (or consuming a verified
record) returns the address to NoRecord.
"""

import asyncio
import hmac
import math
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Optional, Set

from .audit import AuditTrail, AuditEventType
from .errors import ValidationError, NotFound, Expired, TooManyAttempts, Mismatch
from .logging_config import get_logger, log_action
from .notifier import Notifier


DEFAULT_OTP_LENGTH = 6
DEFAULT_OTP_EXPIRY = timedelta(minutes=10)
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_DELIVERY_TIMEOUT = 10.0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_address(address: Optional[str]) -> str:
    """Lowercase and trim an address; an empty address is a validation error"""
    normalized = (address or "").strip().lower()
    if not normalized:
        raise ValidationError("Address is required")
    return normalized


class VerifyReason(Enum):
    """Outcome of a verification attempt"""
    VERIFIED = "verified"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    MISMATCH = "mismatch"


@dataclass
class OTPRecord:
    """Live one-time password for one address"""
    address: str
    code: str
    created_at: datetime
    expires_at: datetime
    attempts: int = 0
    verified: bool = False

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def remaining_seconds(self, now: datetime) -> int:
        return max(0, math.ceil((self.expires_at - now).total_seconds()))


@dataclass
class IssueResult:
    address: str
    expires_in: int  # seconds
    message: str


@dataclass
class VerificationResult:
    ok: bool
    reason: VerifyReason
    message: str
    remaining_attempts: Optional[int] = None

    def raise_for_failure(self) -> None:
        """Raise the matching domain error when verification did not succeed"""
        if self.ok:
            return
        if self.reason == VerifyReason.NOT_FOUND:
            raise NotFound(self.message)
        if self.reason == VerifyReason.EXPIRED:
            raise Expired(self.message)
        if self.reason == VerifyReason.TOO_MANY_ATTEMPTS:
            raise TooManyAttempts(self.message)
        raise Mismatch(self.message, remaining_attempts=self.remaining_attempts)


@dataclass
class OTPStatus:
    verified: bool
    remaining_seconds: int
    message: Optional[str] = None


class OTPAuthority:
    """
    Owns the in-memory OTP records. Constructed once per process and injected
    into the HTTP layer and the login flow.
    """

    def __init__(
        self,
        notifier: Notifier,
        audit_trail: Optional[AuditTrail] = None,
        code_length: int = DEFAULT_OTP_LENGTH,
        expiry: timedelta = DEFAULT_OTP_EXPIRY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        delivery_timeout: float = DEFAULT_DELIVERY_TIMEOUT,
        dev_log_codes: bool = False,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.notifier = notifier
        self.audit_trail = audit_trail
        self.code_length = code_length
        self.expiry = expiry
        self.max_attempts = max_attempts
        self.delivery_timeout = delivery_timeout
        self.dev_log_codes = dev_log_codes
        self._clock = clock or utc_now
        self._records: Dict[str, OTPRecord] = {}
        self._lock = threading.RLock()
        self._deliveries: Set[asyncio.Task] = set()
        self.logger = get_logger("banking_sync.otp")

    def _generate_code(self) -> str:
        lower = 10 ** (self.code_length - 1)
        return str(lower + secrets.randbelow(9 * lower))

    def _audit(self, event_type: AuditEventType, address: str, **metadata) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(event_type, "otp", address, metadata=metadata)

    async def issue(self, address: str) -> IssueResult:
        """
        Create (or replace) the OTP record for address and hand the code to
        the notifier. Delivery runs in the background; its failure is logged
        and leaves the code valid.
        """
        normalized = normalize_address(address)
        now = self._clock()
        code = self._generate_code()
        record = OTPRecord(
            address=normalized,
            code=code,
            created_at=now,
            expires_at=now + self.expiry
        )

        with self._lock:
            replaced = normalized in self._records
            self._records[normalized] = record

        expires_in = int(self.expiry.total_seconds())
        if self.dev_log_codes:
            self.logger.info(f"OTP generated for {normalized}: {code} (expires in {expires_in // 60} minutes)")
        log_action(
            self.logger, "info", f"OTP issued for {normalized}",
            action="otp_issue", resource=f"otp:{normalized}",
            extra={"expires_in": expires_in, "replaced": replaced}
        )
        self._audit(AuditEventType.OTP_ISSUED, normalized, expires_at=record.expires_at, replaced=replaced)

        task = asyncio.create_task(self._deliver(normalized, code))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

        return IssueResult(
            address=normalized,
            expires_in=expires_in,
            message=f"OTP sent to {normalized}"
        )

    async def _deliver(self, address: str, code: str) -> bool:
        try:
            delivered = await asyncio.wait_for(
                self.notifier.send(address, code), timeout=self.delivery_timeout
            )
            failure = None if delivered else "provider rejected message"
        except asyncio.TimeoutError:
            delivered, failure = False, f"timed out after {self.delivery_timeout}s"
        except Exception as e:
            delivered, failure = False, f"{type(e).__name__}: {e}"

        if not delivered:
            log_action(
                self.logger, "warning",
                f"OTP delivery to {address} failed ({failure}); code remains valid",
                action="otp_delivery_failed", resource=f"otp:{address}"
            )
            self._audit(AuditEventType.OTP_DELIVERY_FAILED, address, failure=failure)
        return delivered

    async def wait_for_deliveries(self) -> None:
        """Wait until background deliveries started so far have finished"""
        if self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    def verify(self, address: str, code: str) -> VerificationResult:
        normalized = normalize_address(address)
        submitted = (code or "").strip()

        with self._lock:
            record = self._records.get(normalized)
            now = self._clock()

            if record is None:
                return VerificationResult(False, VerifyReason.NOT_FOUND, "No OTP found. Request a new one.")

            if record.is_expired(now):
                del self._records[normalized]
                self._audit(AuditEventType.OTP_EXPIRED, normalized)
                return VerificationResult(False, VerifyReason.EXPIRED, "OTP expired. Request a new one.")

            if record.verified:
                # Single use: a verified record is consumed by the next verify
                del self._records[normalized]
                return VerificationResult(False, VerifyReason.NOT_FOUND, "OTP already used. Request a new one.")

            if record.attempts >= self.max_attempts:
                del self._records[normalized]
                self._audit(AuditEventType.OTP_EXHAUSTED, normalized, attempts=record.attempts)
                return VerificationResult(
                    False, VerifyReason.TOO_MANY_ATTEMPTS,
                    "Too many failed attempts. Request a new OTP."
                )

            if not hmac.compare_digest(submitted.encode(), record.code.encode()):
                record.attempts += 1
                remaining = self.max_attempts - record.attempts
                self._audit(AuditEventType.OTP_VERIFY_FAILED, normalized, attempts=record.attempts)
                return VerificationResult(
                    False, VerifyReason.MISMATCH,
                    f"Invalid OTP. {remaining} attempts remaining.",
                    remaining_attempts=remaining
                )

            record.verified = True

        log_action(
            self.logger, "info", f"OTP verified for {normalized}",
            action="otp_verify", resource=f"otp:{normalized}"
        )
        self._audit(AuditEventType.OTP_VERIFIED, normalized)
        return VerificationResult(True, VerifyReason.VERIFIED, "OTP verified successfully")

    def clear(self, address: str) -> bool:
        """Delete the record unconditionally. Returns whether one existed."""
        normalized = normalize_address(address)
        with self._lock:
            existed = self._records.pop(normalized, None) is not None
        if existed:
            self._audit(AuditEventType.OTP_CLEARED, normalized)
        return existed

    def status(self, address: str) -> OTPStatus:
        """Read-only probe; an expired record is treated as absent and deleted"""
        normalized = normalize_address(address)
        with self._lock:
            record = self._records.get(normalized)
            now = self._clock()
            if record is None:
                return OTPStatus(verified=False, remaining_seconds=0, message="No OTP found")
            if record.is_expired(now):
                del self._records[normalized]
                return OTPStatus(verified=False, remaining_seconds=0, message="OTP expired")
            return OTPStatus(verified=record.verified, remaining_seconds=record.remaining_seconds(now))

    def peek_code(self, address: str) -> Optional[str]:
        """Operator side channel: the live code for address, if any"""
        normalized = normalize_address(address)
        with self._lock:
            record = self._records.get(normalized)
            if record is None or record.is_expired(self._clock()):
                return None
            return record.code

    def purge_expired(self) -> int:
        """Drop every expired record. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [address for address, record in self._records.items() if record.is_expired(now)]
            for address in expired:
                del self._records[address]
        if expired:
            self.logger.debug(f"Purged {len(expired)} expired OTP records")
        return len(expired)

    async def run_sweep_loop(self, interval: float, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                self.purge_expired()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class LocalOTPGateway:
    """Async facade over an in-process OTPAuthority"""

    def __init__(self, authority: OTPAuthority):
        self.authority = authority

    async def issue(self, address: str) -> IssueResult:
        return await self.authority.issue(address)

    async def verify(self, address: str, code: str) -> VerificationResult:
        return self.authority.verify(address, code)

    async def clear(self, address: str) -> bool:
        return self.authority.clear(address)

    async def status(self, address: str) -> OTPStatus:
        return self.authority.status(address)
