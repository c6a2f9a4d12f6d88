"""
OTP-gated login.

Password check first, then a one-time code to the account's OTP address;
only a verified code yields session tokens. The code is cleared once the
session is issued so it cannot be replayed.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import jwt

from .audit import AuditTrail, AuditEventType
from .credentials import CredentialStore, public_view
from .errors import InvalidCredentials
from .logging_config import get_logger, log_action
from .otp import OTPAuthority


@dataclass
class LoginChallenge:
    email: str
    otp_address: str
    expires_in: int
    message: str


@dataclass
class LoginSession:
    account: Dict[str, Any]
    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "bearer"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.account,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.expires_at.isoformat(),
        }


class LoginService:
    """Two-step login: credentials, then OTP"""

    def __init__(
        self,
        credentials: CredentialStore,
        otp_authority: OTPAuthority,
        jwt_secret: str,
        jwt_algorithm: str = "HS256",
        access_token_ttl: timedelta = timedelta(minutes=15),
        refresh_token_ttl: timedelta = timedelta(days=7),
        audit_trail: Optional[AuditTrail] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.credentials = credentials
        self.otp_authority = otp_authority
        self.jwt_secret = jwt_secret
        self.jwt_algorithm = jwt_algorithm
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self.audit_trail = audit_trail
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = get_logger("banking_sync.login")

    def _audit(self, event_type: AuditEventType, email: str, user_id: Optional[str] = None, **metadata) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(event_type, "account", email, metadata=metadata, user_id=user_id)

    async def begin(self, email: str, password: str) -> LoginChallenge:
        """Check the password and send a code to the account's OTP address"""
        normalized = (email or "").strip().lower()
        try:
            account = self.credentials.authenticate(normalized, password)
        except InvalidCredentials as e:
            log_action(
                self.logger, "warning", f"Login rejected for {normalized}: {e.message}",
                action="login_failed", resource="auth"
            )
            self._audit(AuditEventType.LOGIN_FAILED, normalized, stage="password")
            raise

        address = CredentialStore.otp_address(account)
        issued = await self.otp_authority.issue(address)
        self._audit(AuditEventType.LOGIN_STARTED, normalized, user_id=account["id"])
        return LoginChallenge(
            email=normalized,
            otp_address=issued.address,
            expires_in=issued.expires_in,
            message=issued.message
        )

    def complete(self, email: str, code: str) -> LoginSession:
        """Verify the code, consume it, and issue access and refresh tokens"""
        normalized = (email or "").strip().lower()
        user = self.credentials.find(normalized)
        if user is None:
            raise InvalidCredentials("Invalid email or password")
        account = public_view(user)
        address = CredentialStore.otp_address(account)

        result = self.otp_authority.verify(address, code)
        if not result.ok:
            self._audit(AuditEventType.LOGIN_FAILED, normalized, user_id=account["id"], stage="otp", reason=result.reason)
            result.raise_for_failure()
        self.otp_authority.clear(address)

        now = self._clock()
        expires_at = now + self.access_token_ttl
        session = LoginSession(
            account=account,
            access_token=self._encode(account, "access", now, expires_at),
            refresh_token=self._encode(account, "refresh", now, now + self.refresh_token_ttl),
            expires_at=expires_at
        )

        log_action(
            self.logger, "info", "User authenticated successfully",
            user_id=account["id"], action="login", resource="auth"
        )
        self._audit(AuditEventType.LOGIN_COMPLETED, normalized, user_id=account["id"])
        return session

    def _encode(self, account: Dict[str, Any], token_type: str, issued_at: datetime, expires_at: datetime) -> str:
        payload = {
            "sub": account["id"],
            "email": account["email"],
            "type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": issued_at,
            "exp": expires_at,
        }
        return jwt.encode(payload, self.jwt_secret, algorithm=self.jwt_algorithm)

    def decode_token(self, token: str, expected_type: str = "access") -> Dict[str, Any]:
        try:
            payload = jwt.decode(token, self.jwt_secret, algorithms=[self.jwt_algorithm])
        except jwt.ExpiredSignatureError:
            raise InvalidCredentials("Token expired")
        except jwt.InvalidTokenError:
            raise InvalidCredentials("Invalid token")
        if payload.get("type") != expected_type:
            raise InvalidCredentials("Invalid token")
        return payload

    def current_account(self, token: str) -> Dict[str, Any]:
        payload = self.decode_token(token)
        user = self.credentials.find(payload.get("email", ""))
        if user is None or user.get("id") != payload.get("sub"):
            raise InvalidCredentials("Invalid token")
        return public_view(user)
