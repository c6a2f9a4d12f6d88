"""
Error Taxonomy

User-correctable errors (validation, mismatch, expiry, attempt exhaustion,
policy rejection) propagate to the caller with an actionable message.
Infrastructure errors (delivery, sync) are absorbed by the component that
hits them and only logged.
"""

from typing import Optional


class BankSyncError(Exception):
    """Base class for all domain errors"""

    reason = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BankSyncError, ValueError):
    """Malformed input"""
    reason = "validation_error"


class NotFound(BankSyncError):
    """Missing OTP, record or pending transfer"""
    reason = "not_found"


class Expired(BankSyncError):
    reason = "expired"


class TooManyAttempts(BankSyncError):
    reason = "too_many_attempts"


class Mismatch(BankSyncError):
    """Wrong code; retry is allowed while attempts remain"""

    reason = "mismatch"

    def __init__(self, message: str, remaining_attempts: Optional[int] = None):
        super().__init__(message)
        self.remaining_attempts = remaining_attempts


class TransfersDisabled(BankSyncError):
    reason = "transfers_disabled"


class UserTransfersDisabled(BankSyncError):
    reason = "user_transfers_disabled"


class InvalidCredentials(BankSyncError):
    reason = "invalid_credentials"


class DeliveryFailure(BankSyncError):
    reason = "delivery_failure"


class SyncUnavailable(BankSyncError):
    """Authority unreachable or answered with a server error"""
    reason = "sync_unavailable"
