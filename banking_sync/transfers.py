"""
Transfer Authorizer Module

Orchestrates an OTP-gated transfer:

1. global policy must allow transfers
2. the user's policy must allow transfers
3. the request must be well formed for its type
4. a code is issued to the user's OTP address and the transfer waits
5. on a verified code, a draw against the user's success rate resolves the
   outcome (operator-configurable failure injection)
6. the outcome record, with its fee, is written through the transaction
   reconciler
7. the OTP is cleared whatever the outcome
"""

import random
import re
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .audit import AuditTrail, AuditEventType
from .credentials import CredentialStore
from .errors import (
    NotFound, SyncUnavailable, TransfersDisabled, UserTransfersDisabled, ValidationError
)
from .logging_config import get_logger, log_action
from .otp import VerifyReason


IBAN_PATTERN = re.compile(r"^[A-Z]{2}\d{2}[A-Z0-9]{11,30}$")
DEFAULT_CROSS_BORDER_FEE_RATE = Decimal("0.01")
CENT = Decimal("0.01")

TERMINAL_REASONS = (VerifyReason.NOT_FOUND, VerifyReason.EXPIRED, VerifyReason.TOO_MANY_ATTEMPTS)


class TransferType(Enum):
    DOMESTIC = "local"
    CROSS_BORDER = "international"


class TransferStatus(Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


@dataclass
class TransferRequest:
    transfer_type: TransferType
    recipient_name: str
    amount: Any
    currency: str = "USD"
    description: str = ""
    recipient_email: Optional[str] = None
    account_number: Optional[str] = None
    iban: Optional[str] = None

    @property
    def destination(self) -> str:
        if self.transfer_type == TransferType.DOMESTIC:
            return self.recipient_email
        return self.iban

    def validate(self) -> "TransferRequest":
        """Return a normalized copy, or raise ValidationError"""
        if not (self.recipient_name or "").strip():
            raise ValidationError("Recipient name is required")

        try:
            amount = Decimal(str(self.amount))
        except (InvalidOperation, ValueError):
            raise ValidationError("Please enter a valid amount")
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Please enter a valid amount")

        recipient_email = self.recipient_email
        account_number = self.account_number
        iban = self.iban

        if self.transfer_type == TransferType.DOMESTIC:
            recipient_email = (recipient_email or "").strip().lower()
            account_number = (account_number or "").strip()
            if not recipient_email:
                raise ValidationError("Recipient email is required")
            if not account_number:
                raise ValidationError("Account number is required")
        else:
            iban = (iban or "").replace(" ", "").upper()
            if not iban:
                raise ValidationError("IBAN is required")
            if not IBAN_PATTERN.match(iban):
                raise ValidationError("IBAN is not valid")

        return TransferRequest(
            transfer_type=self.transfer_type,
            recipient_name=self.recipient_name.strip(),
            amount=amount,
            currency=(self.currency or "USD").upper(),
            description=self.description or "",
            recipient_email=recipient_email,
            account_number=account_number,
            iban=iban
        )


@dataclass
class PendingTransfer:
    """A validated transfer waiting for its OTP"""
    id: str
    user: Dict[str, Any]
    request: TransferRequest
    otp_address: str
    expires_in: int
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def expires_at(self) -> datetime:
        return self.created_at + timedelta(seconds=self.expires_in)


@dataclass
class TransferOutcome:
    """Immutable record of a resolved transfer"""
    id: str
    transfer_type: TransferType
    from_email: str
    to: str
    recipient_name: str
    amount: Decimal
    currency: str
    description: str
    status: TransferStatus
    timestamp: datetime
    fee: Decimal
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.transfer_type.value,
            "from": self.from_email,
            "to": self.to,
            "recipientName": self.recipient_name,
            "amount": float(self.amount),
            "currency": self.currency,
            "description": self.description,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "fee": float(self.fee),
            "message": self.message,
        }


class TransferAuthorizer:
    """
    Runs transfers for one device. Policies are read from the reconciler
    caches; outcomes are written through the transaction reconciler.
    """

    def __init__(
        self,
        otp_gateway,
        global_policy,
        user_policies,
        transactions,
        audit_trail: Optional[AuditTrail] = None,
        rng: Optional[random.Random] = None,
        fee_rate: Decimal = DEFAULT_CROSS_BORDER_FEE_RATE,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.otp_gateway = otp_gateway
        self.global_policy = global_policy
        self.user_policies = user_policies
        self.transactions = transactions
        self.audit_trail = audit_trail
        self.rng = rng or random.Random()
        self.fee_rate = Decimal(fee_rate)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._pending: Dict[str, PendingTransfer] = {}
        self._lock = threading.Lock()
        self.logger = get_logger("banking_sync.transfers")

    def _audit(self, event_type: AuditEventType, transfer_id: str, user_id: Optional[str], **metadata) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(event_type, "transfer", transfer_id, metadata=metadata, user_id=user_id)

    def _log_rejection(self, user: Dict[str, Any], error: Exception) -> None:
        log_action(
            self.logger, "warning", f"Transfer rejected: {error}",
            user_id=user.get("id"), action="transfer_rejected", resource="transfer"
        )
        self._audit(AuditEventType.TRANSFER_REJECTED, "-", user.get("id"), reason=getattr(error, "reason", "error"))

    def _discard(self, pending: PendingTransfer, reason: str) -> None:
        log_action(
            self.logger, "info", f"Transfer {pending.id} discarded ({reason})",
            user_id=pending.user.get("id"), action="transfer_discarded", resource=f"transfer:{pending.id}"
        )
        self._audit(AuditEventType.TRANSFER_REJECTED, pending.id, pending.user.get("id"), reason=reason)

    def _purge_expired(self) -> None:
        now = self._clock()
        with self._lock:
            expired = [p for p in self._pending.values() if now > p.expires_at]
            for pending in expired:
                del self._pending[pending.id]
        for pending in expired:
            self._discard(pending, "expired")

    def fee_for(self, request: TransferRequest) -> Decimal:
        if request.transfer_type == TransferType.CROSS_BORDER:
            return (request.amount * self.fee_rate).quantize(CENT)
        return Decimal("0")

    async def request_transfer(self, user: Dict[str, Any], request: TransferRequest) -> PendingTransfer:
        """
        Check policies and input, then send a code to the user's OTP address.

        Raises TransfersDisabled, UserTransfersDisabled or ValidationError
        before any code is issued.
        """
        if not self.global_policy.policy.get("transfersEnabled", True):
            error = TransfersDisabled("Transfers are currently disabled by the administrator")
            self._log_rejection(user, error)
            raise error

        if not self.user_policies.get(user["id"]).get("transfersEnabled", True):
            error = UserTransfersDisabled("Transfers are not allowed for your account. Please contact support.")
            self._log_rejection(user, error)
            raise error

        try:
            normalized = request.validate()
        except ValidationError as e:
            self._log_rejection(user, e)
            raise

        self._purge_expired()

        otp_address = CredentialStore.otp_address(user)
        issued = await self.otp_gateway.issue(otp_address)

        pending = PendingTransfer(
            id=f"transfer_{uuid.uuid4().hex}",
            user=user,
            request=normalized,
            otp_address=issued.address,
            expires_in=issued.expires_in,
            created_at=self._clock()
        )
        # the new code replaced any earlier one sent to this address
        with self._lock:
            superseded = [p for p in self._pending.values() if p.otp_address == pending.otp_address]
            for old in superseded:
                del self._pending[old.id]
            self._pending[pending.id] = pending
        for old in superseded:
            self._discard(old, "superseded")

        log_action(
            self.logger, "info", f"Transfer {pending.id} awaiting OTP",
            user_id=user["id"], action="transfer_requested", resource=f"transfer:{pending.id}",
            extra={"type": normalized.transfer_type.value, "amount": str(normalized.amount)}
        )
        self._audit(
            AuditEventType.TRANSFER_REQUESTED, pending.id, user["id"],
            type=normalized.transfer_type.value, amount=normalized.amount, currency=normalized.currency
        )
        return pending

    def get_pending(self, transfer_id: str) -> Optional[PendingTransfer]:
        self._purge_expired()
        with self._lock:
            return self._pending.get(transfer_id)

    async def confirm_transfer(self, transfer_id: str, code: str) -> TransferOutcome:
        """
        Verify the code for a pending transfer and resolve it.

        A wrong code keeps the transfer pending while attempts remain; an
        expired, exhausted or missing OTP discards it.
        """
        with self._lock:
            pending = self._pending.get(transfer_id)
        if pending is None:
            raise NotFound("Transfer not found or already processed")

        result = await self.otp_gateway.verify(pending.otp_address, code)
        if not result.ok:
            if result.reason in TERMINAL_REASONS:
                with self._lock:
                    self._pending.pop(transfer_id, None)
                self._audit(
                    AuditEventType.TRANSFER_REJECTED, transfer_id, pending.user["id"],
                    reason=result.reason
                )
            result.raise_for_failure()

        with self._lock:
            self._pending.pop(transfer_id, None)

        try:
            return await self._resolve(pending)
        finally:
            try:
                await self.otp_gateway.clear(pending.otp_address)
            except SyncUnavailable as e:
                self.logger.warning(f"Could not clear OTP for {pending.otp_address}: {e}")

    async def _resolve(self, pending: PendingTransfer) -> TransferOutcome:
        user = pending.user
        request = pending.request
        success_rate = self.user_policies.get(user["id"]).get("successRate", 100)
        draw = self.rng.random() * 100
        succeeded = draw <= success_rate

        outcome = TransferOutcome(
            id=pending.id,
            transfer_type=request.transfer_type,
            from_email=user["email"],
            to=request.destination,
            recipient_name=request.recipient_name,
            amount=request.amount,
            currency=request.currency,
            description=request.description,
            status=TransferStatus.COMPLETED if succeeded else TransferStatus.FAILED,
            timestamp=self._clock(),
            fee=self.fee_for(request),
            message=(
                "Transfer completed successfully" if succeeded
                else "Transfer failed. Please try again or contact support."
            )
        )
        await self.transactions.record(outcome.to_dict())

        log_action(
            self.logger, "info" if succeeded else "warning",
            f"Transfer {outcome.id} {outcome.status.value}",
            user_id=user["id"], action=f"transfer_{outcome.status.value}", resource=f"transfer:{outcome.id}",
            extra={"draw": round(draw, 2), "success_rate": success_rate}
        )
        self._audit(
            AuditEventType.TRANSFER_COMPLETED if succeeded else AuditEventType.TRANSFER_FAILED,
            outcome.id, user["id"], amount=outcome.amount, fee=outcome.fee, to=outcome.to
        )
        return outcome
