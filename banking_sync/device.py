"""
Device Session

Composition root for one signed-in device: the authority client, one
reconciler per record family, the remote OTP gateway and the transfer
authorizer that reads policies from the reconciler caches.
"""

from decimal import Decimal
from typing import Any, Dict, Optional
import random

import httpx

from .audit import AuditTrail
from .client import AuthorityClient, RemoteOTPGateway
from .config import SyncConfig, get_config
from .logging_config import get_logger
from .reconciler import (
    GlobalPolicyReconciler,
    ProfileReconciler,
    ReconcilerSet,
    RegistryReconciler,
    TransactionReconciler,
    UserPolicyReconciler,
)
from .storage import StorageInterface, create_storage
from .transfers import PendingTransfer, TransferAuthorizer, TransferOutcome, TransferRequest


class DeviceSession:
    """Everything a device needs to stay in sync and authorize transfers"""

    def __init__(
        self,
        account: Dict[str, Any],
        client: AuthorityClient,
        cache: StorageInterface,
        config: Optional[SyncConfig] = None,
        audit_trail: Optional[AuditTrail] = None,
        rng: Optional[random.Random] = None
    ):
        config = config or get_config()
        self.account = account
        self.client = client
        self.cache = cache
        self.logger = get_logger("banking_sync.device")

        email = account["email"]
        self.profile = ProfileReconciler(client, cache, email, poll_interval=config.profile_poll_seconds)
        self.global_policy = GlobalPolicyReconciler(client, cache, poll_interval=config.policy_poll_seconds)
        self.user_policies = UserPolicyReconciler(client, cache, poll_interval=config.policy_poll_seconds)
        self.registry = RegistryReconciler(client, cache, poll_interval=config.registry_poll_seconds)
        self.transactions = TransactionReconciler(client, cache, email, poll_interval=config.transactions_poll_seconds)
        self.reconcilers = ReconcilerSet([
            self.profile, self.global_policy, self.user_policies, self.registry, self.transactions
        ])

        self.otp_gateway = RemoteOTPGateway(client)
        self.transfers = TransferAuthorizer(
            otp_gateway=self.otp_gateway,
            global_policy=self.global_policy,
            user_policies=self.user_policies,
            transactions=self.transactions,
            audit_trail=audit_trail,
            rng=rng,
            fee_rate=Decimal(config.cross_border_fee_rate)
        )

    @classmethod
    def from_config(
        cls,
        account: Dict[str, Any],
        config: Optional[SyncConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "DeviceSession":
        config = config or get_config()
        client = AuthorityClient(config.authority_url, timeout=config.client_timeout, transport=transport)
        return cls(account, client, create_storage(config.client_cache_url), config=config)

    async def start(self, poll: bool = True) -> Dict[str, bool]:
        """Load caches, run one sync of every family, then start polling"""
        self.reconcilers.load_all()
        results = await self.reconcilers.sync_all()
        if poll:
            self.reconcilers.start()
        self.logger.info(f"Device session started for {self.account['email']}: {results}")
        return results

    async def stop(self) -> None:
        await self.reconcilers.stop()
        await self.client.aclose()
        self.cache.close()

    async def request_transfer(self, request: TransferRequest) -> PendingTransfer:
        return await self.transfers.request_transfer(self.account, request)

    async def confirm_transfer(self, transfer_id: str, code: str) -> TransferOutcome:
        return await self.transfers.confirm_transfer(transfer_id, code)
