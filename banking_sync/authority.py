"""
Sync Authority Module

Canonical server-side store for the synchronized record families:
per-user profile/balance, per-user transfer policy, global transfer policy,
the user registry and per-user transaction history.

Writes are applied to in-memory maps immediately, so reads within the process
are always consistent. A snapshot of all families is flushed to the storage
backend on a fixed interval and at shutdown; writes made after the last flush
are lost if the process is killed.
"""

import asyncio
import copy
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .audit import AuditTrail, AuditEventType
from .errors import ValidationError
from .logging_config import get_logger, log_action
from .otp import normalize_address
from .storage import StorageInterface


SNAPSHOT_TABLE = "authority_snapshots"
SNAPSHOT_ID = "current"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_policy(partial: Dict[str, Any], allow_daily_limit: bool = True) -> None:
    """Check the typed fields of a (partial) transfer policy"""
    if not isinstance(partial, dict):
        raise ValidationError("Policy must be an object")
    if "transfersEnabled" in partial and not isinstance(partial["transfersEnabled"], bool):
        raise ValidationError("transfersEnabled must be a boolean")
    if "successRate" in partial:
        rate = partial["successRate"]
        if not isinstance(rate, int) or isinstance(rate, bool) or not 0 <= rate <= 100:
            raise ValidationError("successRate must be an integer between 0 and 100")
    if "dailyLimit" in partial:
        if not allow_daily_limit:
            raise ValidationError("dailyLimit is only valid on the global policy")
        if not _is_number(partial["dailyLimit"]) or partial["dailyLimit"] < 0:
            raise ValidationError("dailyLimit must be a non-negative number")


class SyncAuthority:
    """
    Owns the authoritative record maps. Constructed once per process and
    injected into the HTTP layer.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        flush_interval: float = 30.0,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.flush_interval = flush_interval
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()

        self._profiles: Dict[str, Dict[str, Any]] = {}
        self._user_policies: Dict[str, Dict[str, Any]] = {}
        self._global_policy: Optional[Dict[str, Any]] = None
        self._registry: Optional[List[Dict[str, Any]]] = None
        self._registry_updated_at: Optional[str] = None
        self._transactions: Dict[str, List[Dict[str, Any]]] = {}

        self._dirty = False
        self.last_flushed_at: Optional[str] = None
        self.logger = get_logger("banking_sync.authority")

    def _now(self) -> str:
        return self._clock().isoformat()

    def _audit(self, event_type: AuditEventType, entity_type: str, entity_id: str, **metadata) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(event_type, entity_type, entity_id, metadata=metadata)

    def _mark_dirty(self) -> None:
        self._dirty = True

    @property
    def dirty(self) -> bool:
        return self._dirty

    # Profile / balance

    def get_profile(self, email: str) -> Optional[Dict[str, Any]]:
        key = normalize_address(email)
        with self._lock:
            profile = self._profiles.get(key)
            return copy.deepcopy(profile) if profile is not None else None

    def put_profile(self, email: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        """Shallow-merge partial into the profile and stamp lastUpdated"""
        key = normalize_address(email)
        if not isinstance(partial, dict):
            raise ValidationError("Profile data must be an object")
        if "balance" in partial and not _is_number(partial["balance"]):
            raise ValidationError("balance must be a number")

        with self._lock:
            merged = {**self._profiles.get(key, {}), **copy.deepcopy(partial), "lastUpdated": self._now()}
            self._profiles[key] = merged
            self._mark_dirty()
            result = copy.deepcopy(merged)

        log_action(
            self.logger, "info", f"Profile updated for {key}",
            action="profile_update", resource=f"profile:{key}",
            extra={"fields": sorted(partial.keys())}
        )
        self._audit(AuditEventType.PROFILE_UPDATED, "profile", key, fields=sorted(partial.keys()))
        return result

    def put_balance(self, email: str, balance: Any) -> Dict[str, Any]:
        """Narrow write path touching only the balance field"""
        if not _is_number(balance):
            raise ValidationError("balance must be a number")
        return self.put_profile(email, {"balance": balance})

    # Global policy

    def get_global_policy(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._global_policy) if self._global_policy is not None else None

    def put_global_policy(self, partial: Dict[str, Any]) -> Dict[str, Any]:
        validate_policy(partial)
        with self._lock:
            merged = {**(self._global_policy or {}), **partial, "lastUpdated": self._now()}
            self._global_policy = merged
            self._mark_dirty()
            result = copy.deepcopy(merged)

        self.logger.info(f"Global transfer policy updated: {partial}")
        self._audit(AuditEventType.GLOBAL_POLICY_UPDATED, "policy", "global", changes=partial)
        return result

    # Per-user policy

    def get_user_policy(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            policy = self._user_policies.get(user_id)
            return copy.deepcopy(policy) if policy is not None else None

    def get_all_user_policies(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._user_policies)

    def put_user_policy(self, user_id: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        if not user_id or not user_id.strip():
            raise ValidationError("User id is required")
        validate_policy(partial, allow_daily_limit=False)
        with self._lock:
            merged = {**self._user_policies.get(user_id, {}), **partial, "lastUpdated": self._now()}
            self._user_policies[user_id] = merged
            self._mark_dirty()
            result = copy.deepcopy(merged)

        self._audit(AuditEventType.USER_POLICY_UPDATED, "policy", user_id, changes=partial)
        return result

    def put_user_policies_bulk(self, policies: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        """Merge several per-user policies; all are validated before any is applied"""
        if not isinstance(policies, dict):
            raise ValidationError("policies must be an object keyed by user id")
        for user_id, partial in policies.items():
            if not user_id or not user_id.strip():
                raise ValidationError("User id is required")
            validate_policy(partial, allow_daily_limit=False)

        with self._lock:
            return {user_id: self.put_user_policy(user_id, partial) for user_id, partial in policies.items()}

    # User registry

    def get_registry(self) -> Optional[List[Dict[str, Any]]]:
        with self._lock:
            return copy.deepcopy(self._registry) if self._registry is not None else None

    @property
    def registry_updated_at(self) -> Optional[str]:
        return self._registry_updated_at

    def replace_registry(self, users: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], str]:
        """Replace the whole registry atomically. Ids must be unique."""
        if not isinstance(users, list):
            raise ValidationError("users must be a list")
        seen = set()
        for user in users:
            if not isinstance(user, dict) or not user.get("id"):
                raise ValidationError("Every user needs an id")
            if user["id"] in seen:
                raise ValidationError(f"Duplicate user id: {user['id']}")
            seen.add(user["id"])

        with self._lock:
            self._registry = copy.deepcopy(users)
            self._registry_updated_at = self._now()
            self._mark_dirty()
            result = copy.deepcopy(self._registry), self._registry_updated_at

        self.logger.info(f"User registry replaced ({len(users)} users)")
        self._audit(AuditEventType.REGISTRY_REPLACED, "registry", "users", user_count=len(users))
        return result

    # Transaction history

    def get_transactions(self, email: str) -> List[Dict[str, Any]]:
        key = normalize_address(email)
        with self._lock:
            return copy.deepcopy(self._transactions.get(key, []))

    def append_transaction(self, email: str, record: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        """
        Append an outcome record to the account's history.

        Records are immutable: appending an id that is already present leaves
        the stored record untouched. Returns (stored record, created).
        """
        key = normalize_address(email)
        if not isinstance(record, dict) or not record.get("id"):
            raise ValidationError("Transaction record needs an id")

        with self._lock:
            history = self._transactions.setdefault(key, [])
            for existing in history:
                if existing.get("id") == record["id"]:
                    return copy.deepcopy(existing), False
            history.append(copy.deepcopy(record))
            self._mark_dirty()

        self._audit(
            AuditEventType.TRANSACTION_RECORDED, "transaction", record["id"],
            email=key, status=record.get("status"), amount=record.get("amount")
        )
        return copy.deepcopy(record), True

    # Durability

    def snapshot(self) -> Dict[str, Any]:
        """Single document holding every family plus savedAt"""
        with self._lock:
            return {
                "profiles": copy.deepcopy(self._profiles),
                "userPolicies": copy.deepcopy(self._user_policies),
                "globalPolicy": copy.deepcopy(self._global_policy),
                "registry": copy.deepcopy(self._registry),
                "registryUpdatedAt": self._registry_updated_at,
                "transactions": copy.deepcopy(self._transactions),
                "savedAt": self._now(),
            }

    def flush(self, force: bool = False) -> bool:
        """Persist the snapshot if anything changed since the last flush"""
        with self._lock:
            if not self._dirty and not force:
                return False
            document = self.snapshot()
            self.storage.save(SNAPSHOT_TABLE, SNAPSHOT_ID, document)
            self._dirty = False
            self.last_flushed_at = document["savedAt"]

        self.logger.debug(f"Authority snapshot flushed at {document['savedAt']}")
        self._audit(AuditEventType.SNAPSHOT_FLUSHED, "snapshot", SNAPSHOT_ID, saved_at=document["savedAt"])
        return True

    def restore(self) -> bool:
        """Load the last flushed snapshot. Returns False when none exists."""
        document = self.storage.load(SNAPSHOT_TABLE, SNAPSHOT_ID)
        if not document:
            self.logger.info("No authority snapshot found; starting empty")
            return False

        with self._lock:
            self._profiles = document.get("profiles") or {}
            self._user_policies = document.get("userPolicies") or {}
            self._global_policy = document.get("globalPolicy")
            self._registry = document.get("registry")
            self._registry_updated_at = document.get("registryUpdatedAt")
            self._transactions = document.get("transactions") or {}
            self._dirty = False
            self.last_flushed_at = document.get("savedAt")

        self.logger.info(f"Authority snapshot restored (saved at {document.get('savedAt')})")
        self._audit(AuditEventType.SNAPSHOT_RESTORED, "snapshot", SNAPSHOT_ID, saved_at=document.get("savedAt"))
        return True

    async def run_flush_loop(self, stop_event: asyncio.Event) -> None:
        """Flush every flush_interval seconds until stop_event is set"""
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.flush_interval)
            except asyncio.TimeoutError:
                try:
                    self.flush()
                except Exception as e:
                    self.logger.error(f"Authority snapshot flush failed: {e}", exc_info=True)
