"""
Tests for the client reconcilers

The authority side is an in-process SyncAuthority behind a fake client that
can be switched offline.
"""

import asyncio

import pytest

from banking_sync.defaults import DEFAULT_GLOBAL_POLICY, DEFAULT_REGISTRY
from banking_sync.errors import ValidationError
from banking_sync.reconciler import (
    CACHE_TABLE,
    GlobalPolicyReconciler,
    ProfileReconciler,
    ReconcilerSet,
    RegistryReconciler,
    TransactionReconciler,
    UserPolicyReconciler,
)


class TestLoad:

    def test_empty_cache_seeds_defaults(self, client, cache):
        reconciler = GlobalPolicyReconciler(client, cache)
        assert reconciler.load() == DEFAULT_GLOBAL_POLICY
        assert cache.load(CACHE_TABLE, "global_policy")["value"] == DEFAULT_GLOBAL_POLICY

    def test_existing_cache_is_used(self, client, cache):
        cache.save(CACHE_TABLE, "global_policy", {"value": {"transfersEnabled": False}})
        reconciler = GlobalPolicyReconciler(client, cache)
        assert reconciler.load() == {"transfersEnabled": False}

    def test_registry_seed(self, client, cache):
        reconciler = RegistryReconciler(client, cache)
        assert [u["id"] for u in reconciler.load()] == [u["id"] for u in DEFAULT_REGISTRY]


class TestSyncPull:
    """Pull merges authority fields over the local cache"""

    def test_authority_fields_win(self, authority, client, cache):
        authority.put_profile("user@bank.test", {"balance": 500, "fullName": "Ann"})
        reconciler = ProfileReconciler(client, cache, "user@bank.test")
        reconciler.load()
        reconciler._value["nickname"] = "annie"

        assert asyncio.run(reconciler.sync_pull()) is True
        assert reconciler.value["balance"] == 500
        assert reconciler.value["fullName"] == "Ann"
        assert reconciler.value["nickname"] == "annie"
        assert cache.load(CACHE_TABLE, "profile:user@bank.test")["value"]["balance"] == 500

    def test_cold_authority_receives_local_cache(self, authority, client, cache):
        cache.save(CACHE_TABLE, "global_policy", {"value": {"transfersEnabled": False, "successRate": 40}})
        reconciler = GlobalPolicyReconciler(client, cache)
        reconciler.load()

        assert asyncio.run(reconciler.sync_pull()) is True
        assert reconciler.value == {"transfersEnabled": False, "successRate": 40}
        remote = authority.get_global_policy()
        assert remote["transfersEnabled"] is False
        assert remote["successRate"] == 40

    def test_offline_pull_keeps_cache(self, client, cache):
        reconciler = GlobalPolicyReconciler(client, cache)
        reconciler.load()
        client.online = False

        assert asyncio.run(reconciler.sync_pull()) is False
        assert reconciler.value == DEFAULT_GLOBAL_POLICY

    def test_registry_pull_replaces_list(self, authority, client, cache):
        authority.replace_registry([{"id": "only", "email": "only@bank.test"}])
        reconciler = RegistryReconciler(client, cache)
        reconciler.load()

        asyncio.run(reconciler.sync_pull())
        assert reconciler.value == [{"id": "only", "email": "only@bank.test"}]

    def test_user_policies_merge_per_user(self, authority, client, cache):
        authority.put_user_policy("cust-1", {"successRate": 10})
        reconciler = UserPolicyReconciler(client, cache)
        reconciler.load()
        reconciler._value = {"cust-1": {"transfersEnabled": False}, "cust-2": {"successRate": 70}}

        asyncio.run(reconciler.sync_pull())
        assert reconciler.get("cust-1")["successRate"] == 10
        assert reconciler.get("cust-1")["transfersEnabled"] is False
        assert reconciler.get("cust-2")["successRate"] == 70
        assert reconciler.get("cust-9") == {"transfersEnabled": True, "successRate": 100}


class TestSyncPush:
    """Push applies locally first and forwards once"""

    def test_push_applies_and_forwards(self, authority, client, cache):
        reconciler = GlobalPolicyReconciler(client, cache)
        reconciler.load()

        assert asyncio.run(reconciler.update({"successRate": 25})) is True
        assert reconciler.policy["successRate"] == 25
        assert authority.get_global_policy()["successRate"] == 25

    def test_failed_forward_is_not_retried(self, authority, client, cache):
        reconciler = GlobalPolicyReconciler(client, cache)
        reconciler.load()
        client.online = False

        assert asyncio.run(reconciler.update({"successRate": 25})) is False
        assert reconciler.policy["successRate"] == 25
        assert cache.load(CACHE_TABLE, "global_policy")["value"]["successRate"] == 25
        assert client.calls.count("put_global_policy") == 1
        assert authority.get_global_policy() is None

    def test_invalid_mutation_rejected_locally(self, client, cache):
        reconciler = UserPolicyReconciler(client, cache)
        reconciler.load()
        with pytest.raises(ValidationError):
            asyncio.run(reconciler.update("cust-1", {"successRate": 300}))
        assert reconciler.value == {}
        assert client.calls == []

    def test_user_policy_forwarding(self, authority, client, cache):
        reconciler = UserPolicyReconciler(client, cache)
        reconciler.load()

        asyncio.run(reconciler.update("cust-1", {"successRate": 40}))
        asyncio.run(reconciler.update_many({
            "cust-1": {"transfersEnabled": False},
            "cust-2": {"successRate": 60},
        }))

        assert client.calls == ["put_user_policy", "put_user_policies_bulk"]
        remote = authority.get_all_user_policies()
        assert remote["cust-1"]["successRate"] == 40
        assert remote["cust-1"]["transfersEnabled"] is False
        assert remote["cust-2"]["successRate"] == 60
        assert reconciler.get("cust-2")["transfersEnabled"] is True

    def test_balance_uses_narrow_path(self, authority, client, cache):
        reconciler = ProfileReconciler(client, cache, "user@bank.test")
        reconciler.load()

        asyncio.run(reconciler.update_balance(99.5))
        assert reconciler.balance == 99.5
        assert client.calls == ["put_balance"]
        assert authority.get_profile("user@bank.test")["balance"] == 99.5

    def test_registry_upsert_and_remove(self, authority, client, cache):
        reconciler = RegistryReconciler(client, cache)
        reconciler.load()

        asyncio.run(reconciler.upsert_user({"id": "cust-002", "status": "suspended"}))
        asyncio.run(reconciler.upsert_user({"id": "new-1", "email": "new@bank.test"}))
        asyncio.run(reconciler.remove_user("cust-003"))

        remote = {u["id"]: u for u in authority.get_registry()}
        assert remote["cust-002"]["status"] == "suspended"
        assert remote["cust-002"]["email"] == "demo@example.com"
        assert "new-1" in remote
        assert "cust-003" not in remote
        assert reconciler.find_by_email("NEW@bank.test")["id"] == "new-1"

    def test_pull_during_push_does_not_clobber(self, authority, client, cache):
        """A pull that fetched before a local write must not overwrite it"""
        authority.put_global_policy({"successRate": 100})
        reconciler = GlobalPolicyReconciler(client, cache)
        reconciler.load()

        events = {}
        original_get = client.get_global_policy

        async def slow_get():
            stale = await original_get()
            events["fetched"].set()
            await events["release"].wait()
            return stale

        client.get_global_policy = slow_get

        async def run():
            events["fetched"] = asyncio.Event()
            events["release"] = asyncio.Event()
            pull = asyncio.create_task(reconciler.sync_pull())
            await events["fetched"].wait()
            push = asyncio.create_task(reconciler.update({"successRate": 10}))
            await asyncio.sleep(0)
            events["release"].set()
            await asyncio.gather(pull, push)

        asyncio.run(run())
        assert reconciler.policy["successRate"] == 10
        assert authority.get_global_policy()["successRate"] == 10


class TestTransactionReconciler:

    def test_record_forwards(self, authority, client, cache):
        reconciler = TransactionReconciler(client, cache, "user@bank.test")
        reconciler.load()

        asyncio.run(reconciler.record({"id": "t1", "status": "completed"}))
        asyncio.run(reconciler.record({"id": "t1", "status": "completed"}))
        assert len(reconciler.value) == 1
        assert authority.get_transactions("user@bank.test") == [{"id": "t1", "status": "completed"}]

    def test_pull_unions_and_repushes_local_only(self, authority, client, cache):
        authority.append_transaction("user@bank.test", {"id": "remote", "status": "completed"})
        reconciler = TransactionReconciler(client, cache, "user@bank.test")
        reconciler.load()

        client.online = False
        asyncio.run(reconciler.record({"id": "offline", "status": "failed"}))
        client.online = True

        asyncio.run(reconciler.sync_pull())
        assert [r["id"] for r in reconciler.value] == ["remote", "offline"]
        assert [r["id"] for r in authority.get_transactions("user@bank.test")] == ["remote", "offline"]

    def test_cold_authority_gets_history(self, authority, client, cache):
        cache.save(CACHE_TABLE, "transactions:user@bank.test", {"value": [{"id": "a"}, {"id": "b"}]})
        reconciler = TransactionReconciler(client, cache, "user@bank.test")
        reconciler.load()

        asyncio.run(reconciler.sync_pull())
        assert [r["id"] for r in authority.get_transactions("user@bank.test")] == ["a", "b"]


class TestReconcilerSet:

    def test_polling_loops_converge_and_stop(self, authority, client, cache):
        profile = ProfileReconciler(client, cache, "user@bank.test", poll_interval=0.01)
        policy = GlobalPolicyReconciler(client, cache, poll_interval=0.01)
        reconcilers = ReconcilerSet([profile, policy])
        reconcilers.load_all()

        async def run():
            reconcilers.start()
            authority.put_profile("user@bank.test", {"balance": 77})
            authority.put_global_policy({"transfersEnabled": False})
            await asyncio.sleep(0.1)
            await reconcilers.stop()

        asyncio.run(run())
        assert profile.balance == 77
        assert policy.policy["transfersEnabled"] is False

    def test_sync_all_reports_per_family(self, client, cache):
        reconcilers = ReconcilerSet([
            ProfileReconciler(client, cache, "user@bank.test"),
            GlobalPolicyReconciler(client, cache),
        ])
        reconcilers.load_all()
        client.online = False

        results = asyncio.run(reconcilers.sync_all())
        assert results == {"profile:user@bank.test": False, "global_policy": False}
