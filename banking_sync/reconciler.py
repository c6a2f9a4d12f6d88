"""
Client Reconciler Module

Device-side caches of the synchronized record families. Each family keeps a
local durable copy, polls the authority on a fixed interval, merges what it
finds (authority fields win) and forwards local mutations.

Pull and push for one family are serialized by a per-family asyncio lock.
A local write also bumps a version counter; a pull that started before the
write skips its merge so the optimistic local value is not clobbered by an
older authority copy.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .authority import validate_policy
from .client import AuthorityClient
from .defaults import default_global_policy, default_registry, default_user_policy
from .errors import SyncUnavailable, ValidationError
from .logging_config import get_logger
from .storage import StorageInterface


CACHE_TABLE = "client_cache"


def _without_timestamp(record: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in record.items() if key != "lastUpdated"}


class ClientReconciler(ABC):
    """Local cache of one record family kept converged with the authority"""

    family = "record"

    def __init__(self, client: AuthorityClient, cache: StorageInterface, poll_interval: float = 10.0):
        self.client = client
        self.cache = cache
        self.poll_interval = poll_interval
        self._value: Any = None
        self._version = 0
        self._lock = asyncio.Lock()
        self.last_synced_at: Optional[str] = None
        self.logger = get_logger(f"banking_sync.reconciler.{self.family}")

    @property
    def cache_key(self) -> str:
        return self.family

    @property
    def value(self) -> Any:
        return copy.deepcopy(self._value)

    @abstractmethod
    def defaults(self) -> Any:
        """Value a never-written cache is seeded with"""
        pass

    @abstractmethod
    async def fetch(self) -> Any:
        """Canonical value from the authority; None or empty when cold"""
        pass

    @abstractmethod
    async def push_all(self, value: Any) -> None:
        """Upload the whole local value to a cold authority"""
        pass

    @abstractmethod
    def apply(self, value: Any, mutation: Any) -> Any:
        """Local effect of a mutation"""
        pass

    @abstractmethod
    async def forward(self, mutation: Any) -> None:
        """Send a mutation to the authority"""
        pass

    def merge(self, local: Any, remote: Any) -> Any:
        """Shallow merge; authority fields win"""
        return {**(local or {}), **remote}

    def is_empty(self, value: Any) -> bool:
        return not value

    async def after_merge(self, local: Any, remote: Any) -> None:
        pass

    def load(self) -> Any:
        """Read the local cache, seeding family defaults when it is empty"""
        stored = self.cache.load(CACHE_TABLE, self.cache_key)
        if stored is None or self.is_empty(stored.get("value")):
            self._value = self.defaults()
            self._persist()
            self.logger.debug(f"Seeded {self.cache_key} cache with defaults")
        else:
            self._value = stored["value"]
        return self.value

    def _persist(self) -> None:
        self.cache.save(CACHE_TABLE, self.cache_key, {
            "family": self.family,
            "value": self._value,
            "savedAt": datetime.now(timezone.utc).isoformat(),
        })

    async def sync_pull(self) -> bool:
        """
        Fetch from the authority and merge into the local cache.

        A cold authority receives the local value instead. Returns False when
        the authority could not be reached; the cache is left unchanged.
        """
        async with self._lock:
            version = self._version
            try:
                remote = await self.fetch()
                if self._version != version:
                    self.logger.debug(f"Local write to {self.cache_key} during pull; merge skipped")
                    return True

                if self.is_empty(remote):
                    if not self.is_empty(self._value):
                        self.logger.info(f"Authority has no {self.cache_key}; pushing local copy")
                        await self.push_all(self.value)
                else:
                    local = self._value
                    self._value = self.merge(local, remote)
                    self._persist()
                    await self.after_merge(local, remote)
            except SyncUnavailable as e:
                self.logger.warning(f"Pull of {self.cache_key} failed, keeping local cache: {e}")
                return False

            self.last_synced_at = datetime.now(timezone.utc).isoformat()
            return True

    async def _push(self, mutation: Any, send: Callable[[], Awaitable[Any]]) -> bool:
        self._value = self.apply(self._value, mutation)
        self._version += 1
        self._persist()

        async with self._lock:
            try:
                await send()
            except SyncUnavailable as e:
                # Not retried here; the next scheduled pull reconciles
                self.logger.warning(f"Push of {self.cache_key} failed: {e}")
                return False
        return True

    async def sync_push(self, mutation: Any) -> bool:
        """Apply mutation locally, persist, then forward it to the authority"""
        return await self._push(mutation, lambda: self.forward(mutation))

    async def run(self, stop_event: asyncio.Event) -> None:
        """Poll until stop_event is set"""
        while not stop_event.is_set():
            try:
                await self.sync_pull()
            except Exception as e:
                self.logger.error(f"Sync of {self.cache_key} failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass


class ProfileReconciler(ClientReconciler):
    family = "profile"

    def __init__(self, client: AuthorityClient, cache: StorageInterface, email: str, poll_interval: float = 10.0):
        self.email = email.strip().lower()
        super().__init__(client, cache, poll_interval)

    @property
    def cache_key(self) -> str:
        return f"profile:{self.email}"

    def defaults(self) -> Dict[str, Any]:
        return {"email": self.email, "balance": 0}

    async def fetch(self) -> Optional[Dict[str, Any]]:
        return await self.client.get_profile(self.email)

    async def push_all(self, value: Dict[str, Any]) -> None:
        await self.client.put_profile(self.email, _without_timestamp(value))

    def apply(self, value: Dict[str, Any], mutation: Dict[str, Any]) -> Dict[str, Any]:
        return {**(value or {}), **mutation}

    async def forward(self, mutation: Dict[str, Any]) -> None:
        await self.client.put_profile(self.email, mutation)

    async def update(self, changes: Dict[str, Any]) -> bool:
        return await self.sync_push(changes)

    async def update_balance(self, balance: float) -> bool:
        """Write only the balance, through the narrow balance endpoint"""
        return await self._push({"balance": balance}, lambda: self.client.put_balance(self.email, balance))

    @property
    def balance(self) -> float:
        return (self._value or {}).get("balance", 0)


class GlobalPolicyReconciler(ClientReconciler):
    family = "global_policy"

    def defaults(self) -> Dict[str, Any]:
        return default_global_policy()

    async def fetch(self) -> Optional[Dict[str, Any]]:
        return await self.client.get_global_policy()

    async def push_all(self, value: Dict[str, Any]) -> None:
        await self.client.put_global_policy(_without_timestamp(value))

    def apply(self, value: Dict[str, Any], mutation: Dict[str, Any]) -> Dict[str, Any]:
        validate_policy(mutation)
        return {**(value or {}), **mutation}

    async def forward(self, mutation: Dict[str, Any]) -> None:
        await self.client.put_global_policy(mutation)

    async def update(self, changes: Dict[str, Any]) -> bool:
        return await self.sync_push(changes)

    @property
    def policy(self) -> Dict[str, Any]:
        return {**default_global_policy(), **(self._value or {})}


class UserPolicyReconciler(ClientReconciler):
    """Per-user policies, cached as one map keyed by user id"""

    family = "user_policies"

    def defaults(self) -> Dict[str, Dict[str, Any]]:
        return {}

    async def fetch(self) -> Dict[str, Dict[str, Any]]:
        return await self.client.get_user_policies()

    async def push_all(self, value: Dict[str, Dict[str, Any]]) -> None:
        await self.client.put_user_policies_bulk(
            {user_id: _without_timestamp(policy) for user_id, policy in value.items()}
        )

    def merge(self, local: Dict[str, Dict[str, Any]], remote: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        merged = dict(local or {})
        for user_id, policy in remote.items():
            merged[user_id] = {**merged.get(user_id, {}), **policy}
        return merged

    def apply(self, value: Dict[str, Dict[str, Any]], mutation: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        for partial in mutation.values():
            validate_policy(partial, allow_daily_limit=False)
        updated = dict(value or {})
        for user_id, partial in mutation.items():
            updated[user_id] = {**updated.get(user_id, {}), **partial}
        return updated

    async def forward(self, mutation: Dict[str, Dict[str, Any]]) -> None:
        if len(mutation) == 1:
            user_id, partial = next(iter(mutation.items()))
            await self.client.put_user_policy(user_id, partial)
        else:
            await self.client.put_user_policies_bulk(mutation)

    def get(self, user_id: str) -> Dict[str, Any]:
        """Effective policy for user_id; absent entries fall back to the default"""
        return {**default_user_policy(), **(self._value or {}).get(user_id, {})}

    async def update(self, user_id: str, changes: Dict[str, Any]) -> bool:
        return await self.sync_push({user_id: changes})

    async def update_many(self, policies: Dict[str, Dict[str, Any]]) -> bool:
        return await self.sync_push(policies)


class RegistryReconciler(ClientReconciler):
    """User registry; every write replaces the whole list"""

    family = "registry"

    def defaults(self) -> List[Dict[str, Any]]:
        return default_registry()

    async def fetch(self) -> Optional[List[Dict[str, Any]]]:
        return await self.client.get_registry()

    async def push_all(self, value: List[Dict[str, Any]]) -> None:
        await self.client.replace_registry(value)

    def merge(self, local: List[Dict[str, Any]], remote: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return copy.deepcopy(remote)

    def apply(self, value: List[Dict[str, Any]], mutation: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        ids = [user.get("id") for user in mutation]
        if not all(ids) or len(set(ids)) != len(ids):
            raise ValidationError("Registry users need unique ids")
        return copy.deepcopy(mutation)

    async def forward(self, mutation: List[Dict[str, Any]]) -> None:
        await self.client.replace_registry(mutation)

    async def replace(self, users: List[Dict[str, Any]]) -> bool:
        return await self.sync_push(users)

    async def upsert_user(self, user: Dict[str, Any]) -> bool:
        """Insert or update one user and push the resulting full list"""
        users = self.value or []
        for index, existing in enumerate(users):
            if existing.get("id") == user.get("id"):
                users[index] = {**existing, **user}
                break
        else:
            users.append(user)
        return await self.replace(users)

    async def remove_user(self, user_id: str) -> bool:
        users = [user for user in (self.value or []) if user.get("id") != user_id]
        return await self.replace(users)

    def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        normalized = email.strip().lower()
        for user in self._value or []:
            if (user.get("email") or "").lower() == normalized:
                return copy.deepcopy(user)
        return None


class TransactionReconciler(ClientReconciler):
    """
    Transfer outcome history for one account. Records are immutable, so the
    merge is a union by id; records only the device has are re-pushed.
    """

    family = "transactions"

    def __init__(self, client: AuthorityClient, cache: StorageInterface, email: str, poll_interval: float = 10.0):
        self.email = email.strip().lower()
        super().__init__(client, cache, poll_interval)

    @property
    def cache_key(self) -> str:
        return f"transactions:{self.email}"

    def defaults(self) -> List[Dict[str, Any]]:
        return []

    async def fetch(self) -> List[Dict[str, Any]]:
        return await self.client.get_transactions(self.email)

    async def push_all(self, value: List[Dict[str, Any]]) -> None:
        for record in value:
            await self.client.append_transaction(self.email, record)

    def merge(self, local: List[Dict[str, Any]], remote: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        remote_ids = {record["id"] for record in remote}
        return copy.deepcopy(remote) + [record for record in (local or []) if record["id"] not in remote_ids]

    async def after_merge(self, local: List[Dict[str, Any]], remote: List[Dict[str, Any]]) -> None:
        remote_ids = {record["id"] for record in remote}
        local_only = [record for record in (local or []) if record["id"] not in remote_ids]
        if local_only:
            self.logger.info(f"Re-pushing {len(local_only)} unsynced transactions for {self.email}")
            await self.push_all(local_only)

    def apply(self, value: List[Dict[str, Any]], mutation: Dict[str, Any]) -> List[Dict[str, Any]]:
        records = list(value or [])
        if not any(record["id"] == mutation["id"] for record in records):
            records.append(copy.deepcopy(mutation))
        return records

    async def forward(self, mutation: Dict[str, Any]) -> None:
        await self.client.append_transaction(self.email, mutation)

    async def record(self, outcome: Dict[str, Any]) -> bool:
        return await self.sync_push(outcome)


class ReconcilerSet:
    """Runs the polling loop of several reconcilers"""

    def __init__(self, reconcilers: List[ClientReconciler]):
        self.reconcilers = list(reconcilers)
        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []
        self.logger = get_logger("banking_sync.reconciler")

    def load_all(self) -> None:
        for reconciler in self.reconcilers:
            reconciler.load()

    async def sync_all(self) -> Dict[str, bool]:
        results = await asyncio.gather(*(r.sync_pull() for r in self.reconcilers))
        return {r.cache_key: ok for r, ok in zip(self.reconcilers, results)}

    def start(self) -> None:
        if self._tasks:
            return
        self._stop_event = asyncio.Event()
        self._tasks = [
            asyncio.create_task(r.run(self._stop_event), name=f"sync-{r.cache_key}")
            for r in self.reconcilers
        ]
        self.logger.info(f"Started {len(self._tasks)} sync loops")

    async def stop(self) -> None:
        if not self._tasks:
            return
        self._stop_event.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.logger.info("Sync loops stopped")
