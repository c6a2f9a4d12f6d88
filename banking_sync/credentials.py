"""
Credential Store

Account identity and secret lookups over the authority's user registry.
Secrets are compared in plaintext; this store preserves the demo trust model
and is not a password vault.
"""

import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .authority import SyncAuthority
from .defaults import default_registry
from .errors import InvalidCredentials, NotFound, ValidationError
from .logging_config import get_logger


MIN_PASSWORD_LENGTH = 6


def public_view(user: Dict[str, Any]) -> Dict[str, Any]:
    """Account descriptor without its secret"""
    return {key: value for key, value in user.items() if key != "password"}


class CredentialStore:
    """Reads and rewrites the registry held by a SyncAuthority"""

    def __init__(self, authority: SyncAuthority):
        self.authority = authority
        self._lock = threading.Lock()
        self.logger = get_logger("banking_sync.credentials")

    def _users(self) -> List[Dict[str, Any]]:
        registry = self.authority.get_registry()
        if registry is None:
            self.logger.info("User registry empty; seeding default accounts")
            registry, _ = self.authority.replace_registry(default_registry())
        return registry

    def find(self, email: str) -> Optional[Dict[str, Any]]:
        """Registry entry (including secret) for email, matched case-insensitively"""
        normalized = (email or "").strip().lower()
        for user in self._users():
            if (user.get("email") or "").lower() == normalized:
                return user
        return None

    def authenticate(self, email: str, password: str) -> Dict[str, Any]:
        user = self.find(email)
        if user is None or user.get("password") != (password or "").strip():
            raise InvalidCredentials("Invalid email or password")
        if user.get("status", "active") != "active":
            raise InvalidCredentials(f"Account is {user['status']}")
        return public_view(user)

    def register(self, email: str, password: str, full_name: str, phone: str = "") -> Dict[str, Any]:
        normalized = (email or "").strip().lower()
        if not normalized or "@" not in normalized:
            raise ValidationError("A valid email is required")
        if len((password or "").strip()) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if not (full_name or "").strip():
            raise ValidationError("Full name is required")

        with self._lock:
            users = self._users()
            if any((u.get("email") or "").lower() == normalized for u in users):
                raise ValidationError("An account with this email already exists")

            user = {
                "id": f"user-{uuid.uuid4().hex[:12]}",
                "email": normalized,
                "fullName": full_name.strip(),
                "phone": phone,
                "password": password.strip(),
                "balance": 0,
                "status": "active",
                "joinDate": datetime.now(timezone.utc).date().isoformat(),
                "kycStatus": "pending",
            }
            self.authority.replace_registry(users + [user])

        self.authority.put_profile(normalized, {"fullName": user["fullName"], "balance": 0})
        self.logger.info(f"Registered account {user['id']} for {normalized}")
        return public_view(user)

    def _update(self, email: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        normalized = (email or "").strip().lower()
        with self._lock:
            users = self._users()
            for index, user in enumerate(users):
                if (user.get("email") or "").lower() == normalized:
                    users[index] = {**user, **changes}
                    self.authority.replace_registry(users)
                    return public_view(users[index])
        raise NotFound(f"Account {normalized} not found")

    def update_password(self, email: str, current_password: str, new_password: str) -> Dict[str, Any]:
        self.authenticate(email, current_password)
        if len((new_password or "").strip()) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        return self._update(email, {"password": new_password.strip()})

    def update_email(self, email: str, new_email: str) -> Dict[str, Any]:
        normalized = (new_email or "").strip().lower()
        if not normalized or "@" not in normalized:
            raise ValidationError("A valid email is required")
        if self.find(normalized) is not None:
            raise ValidationError("An account with this email already exists")
        return self._update(email, {"email": normalized})

    @staticmethod
    def otp_address(account: Dict[str, Any]) -> str:
        """Where one-time codes for this account are delivered"""
        return account.get("gmailAddress") or account["email"]
