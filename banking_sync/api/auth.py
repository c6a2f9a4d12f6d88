"""
Authority system wiring and request dependencies
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..audit import AuditTrail
from ..authority import SyncAuthority
from ..config import SyncConfig, get_config
from ..credentials import CredentialStore
from ..errors import BankSyncError
from ..logging_config import get_logger
from ..login import LoginService
from ..notifier import Notifier, create_notifier
from ..otp import OTPAuthority
from ..storage import StorageInterface, create_storage


STATUS_CODES = {
    "validation_error": 400,
    "mismatch": 400,
    "expired": 400,
    "too_many_attempts": 400,
    "invalid_credentials": 401,
    "transfers_disabled": 403,
    "user_transfers_disabled": 403,
    "not_found": 404,
    "sync_unavailable": 503,
}


def http_error(error: BankSyncError) -> HTTPException:
    """Map a domain error to the HTTP status the API reports it with"""
    return HTTPException(status_code=STATUS_CODES.get(error.reason, 400), detail=error.message)


class AuthoritySystem:
    """Authority-side components, constructed once per process"""

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        storage: Optional[StorageInterface] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.storage_url)
        self.audit_trail = AuditTrail(self.storage)
        self.notifier = notifier or create_notifier(self.config)

        self.otp_authority = OTPAuthority(
            self.notifier,
            audit_trail=self.audit_trail,
            code_length=self.config.otp_length,
            expiry=timedelta(seconds=self.config.otp_expiry_seconds),
            max_attempts=self.config.otp_max_attempts,
            delivery_timeout=self.config.notifier_timeout,
            dev_log_codes=self.config.otp_dev_log_codes,
            clock=clock
        )
        self.authority = SyncAuthority(
            self.storage,
            audit_trail=self.audit_trail,
            flush_interval=self.config.flush_interval_seconds,
            clock=clock
        )
        self.credentials = CredentialStore(self.authority)
        self.login = LoginService(
            self.credentials,
            self.otp_authority,
            jwt_secret=self.config.jwt_secret,
            jwt_algorithm=self.config.jwt_algorithm,
            access_token_ttl=timedelta(minutes=self.config.access_token_minutes),
            refresh_token_ttl=timedelta(days=self.config.refresh_token_days),
            audit_trail=self.audit_trail
        )

        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []
        self.logger = get_logger("banking_sync.api")

    async def startup(self) -> None:
        """Restore the snapshot and start the background loops"""
        self.authority.restore()
        self._stop_event = asyncio.Event()
        self._tasks = [asyncio.create_task(self.authority.run_flush_loop(self._stop_event))]
        if self.config.otp_sweep_interval_seconds > 0:
            self._tasks.append(asyncio.create_task(
                self.otp_authority.run_sweep_loop(self.config.otp_sweep_interval_seconds, self._stop_event)
            ))
        self.logger.info("Authority started")

    async def shutdown(self) -> None:
        """Stop loops, flush once more, release the notifier"""
        if self._stop_event:
            self._stop_event.set()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
        await self.otp_authority.wait_for_deliveries()
        self.authority.flush(force=True)
        await self.notifier.close()
        self.logger.info("Authority stopped")


_system: Optional[AuthoritySystem] = None


def get_system() -> AuthoritySystem:
    global _system
    if _system is None:
        _system = AuthoritySystem()
    return _system


security = HTTPBearer(auto_error=False)


def get_current_account(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: AuthoritySystem = Depends(get_system)
) -> Dict:
    """Account for the bearer access token"""
    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        return system.login.current_account(credentials.credentials)
    except BankSyncError as e:
        raise http_error(e)
