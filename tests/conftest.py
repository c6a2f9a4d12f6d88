"""
Shared fixtures: a controllable clock, a notifier that records deliveries and
an authority client that calls a SyncAuthority in process.
"""

from datetime import datetime, timedelta, timezone

import pytest

from banking_sync.audit import AuditTrail
from banking_sync.authority import SyncAuthority
from banking_sync.errors import SyncUnavailable
from banking_sync.notifier import Notifier
from banking_sync.storage import InMemoryStorage


class FakeClock:
    """Callable clock that only moves when told to"""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier(Notifier):
    """Notifier that remembers every (address, code) it was asked to send"""

    def __init__(self, should_succeed: bool = True, error: Exception = None):
        self.should_succeed = should_succeed
        self.error = error
        self.sent = []
        self.closed = False

    async def send(self, address: str, code: str) -> bool:
        self.sent.append((address, code))
        if self.error:
            raise self.error
        return self.should_succeed

    async def close(self) -> None:
        self.closed = True

    def last_code(self, address: str = None) -> str:
        for sent_address, code in reversed(self.sent):
            if address is None or sent_address == address:
                return code
        raise AssertionError(f"No code sent to {address}")


class FakeAuthorityClient:
    """AuthorityClient stand-in calling a SyncAuthority directly"""

    def __init__(self, authority: SyncAuthority):
        self.authority = authority
        self.online = True
        self.calls = []

    def _check(self, name):
        self.calls.append(name)
        if not self.online:
            raise SyncUnavailable("authority offline")

    async def get_profile(self, email):
        self._check("get_profile")
        return self.authority.get_profile(email)

    async def put_profile(self, email, partial):
        self._check("put_profile")
        return self.authority.put_profile(email, partial)

    async def put_balance(self, email, balance):
        self._check("put_balance")
        return self.authority.put_balance(email, balance)

    async def get_registry(self):
        self._check("get_registry")
        return self.authority.get_registry()

    async def replace_registry(self, users):
        self._check("replace_registry")
        return self.authority.replace_registry(users)[0]

    async def get_global_policy(self):
        self._check("get_global_policy")
        return self.authority.get_global_policy()

    async def put_global_policy(self, partial):
        self._check("put_global_policy")
        return self.authority.put_global_policy(partial)

    async def get_user_policies(self):
        self._check("get_user_policies")
        return self.authority.get_all_user_policies()

    async def put_user_policy(self, user_id, partial):
        self._check("put_user_policy")
        return self.authority.put_user_policy(user_id, partial)

    async def put_user_policies_bulk(self, policies):
        self._check("put_user_policies_bulk")
        return self.authority.put_user_policies_bulk(policies)

    async def get_transactions(self, email):
        self._check("get_transactions")
        return self.authority.get_transactions(email)

    async def append_transaction(self, email, transaction):
        self._check("append_transaction")
        return self.authority.append_transaction(email, transaction)[0]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def authority():
    return SyncAuthority(InMemoryStorage())


@pytest.fixture
def client(authority):
    return FakeAuthorityClient(authority)


@pytest.fixture
def cache():
    return InMemoryStorage()
