"""Tests for monthly quota admission and post-run debit."""

import asyncio
from datetime import datetime, timezone

import pytest

from canvasflow.service.admission import (
    AdmissionController,
    RedisQuotaLedger,
    StoreQuotaLedger,
    month_bounds,
)
from canvasflow.service.errors import QuotaExceededError
from canvasflow.storage.memory import MemoryStore
from canvasflow.storage.models import UsageRecord


def _controller(store=None, **kwargs):
    store = store or MemoryStore()
    return AdmissionController(store, StoreQuotaLedger(store), **kwargs), store


def _use(store, user_id, count):
    for i in range(count):
        store.record_usage(UsageRecord(user_id=user_id, workflow_id=f"wf-{i}"))


def test_month_bounds():
    start, end = month_bounds(datetime(2024, 12, 15, 8, 30, tzinfo=timezone.utc))
    assert start == datetime(2024, 12, 1, tzinfo=timezone.utc)
    assert end == datetime(2025, 1, 1, tzinfo=timezone.utc)
    start, end = month_bounds(datetime(2024, 2, 29))
    assert (start.month, end.month) == (2, 3)


class TestAdmit:
    async def test_free_user_with_two_runs_gets_last_slot(self):
        controller, store = _controller()
        _use(store, "u1", 2)
        decision = await controller.admit("u1")
        assert decision.allowed
        assert decision.remaining == 0
        assert decision.metered

    async def test_free_user_with_three_runs_blocked(self):
        controller, store = _controller()
        _use(store, "u1", 3)
        with pytest.raises(QuotaExceededError) as excinfo:
            await controller.admit("u1")
        assert excinfo.value.status_code == 402
        assert excinfo.value.detail["remaining"] == 0
        assert excinfo.value.detail["requiresUpgrade"] is True

    async def test_unlimited_tier(self):
        controller, store = _controller()
        store.set_user_tier("r1", "Researcher")
        _use(store, "r1", 50)
        decision = await controller.admit("r1")
        assert decision.allowed
        assert decision.remaining == -1
        assert not decision.metered

    async def test_anonymous_run_is_unmetered(self):
        controller, _ = _controller()
        decision = await controller.admit(None)
        assert decision.allowed
        assert decision.remaining == -1

    async def test_unknown_tier_uses_free_limit(self):
        controller, store = _controller()
        store.set_user_tier("u1", "enterprise-trial")
        _use(store, "u1", 3)
        with pytest.raises(QuotaExceededError):
            await controller.admit("u1")

    async def test_tier_lookup_failure_defaults_to_free(self):
        class BrokenTierStore(MemoryStore):
            def get_user_tier(self, user_id):
                raise RuntimeError("db down")

        controller, store = _controller(BrokenTierStore())
        _use(store, "u1", 3)
        with pytest.raises(QuotaExceededError):
            await controller.admit("u1")

    async def test_concurrent_admissions_cannot_share_last_slot(self):
        controller, store = _controller()
        _use(store, "u1", 2)
        outcomes = await asyncio.gather(
            controller.admit("u1"), controller.admit("u1"), return_exceptions=True
        )
        assert sum(1 for o in outcomes if isinstance(o, QuotaExceededError)) == 1
        assert sum(1 for o in outcomes if not isinstance(o, Exception)) == 1


class TestCommitAndRelease:
    async def test_commit_counts_run_and_debits_credits(self):
        controller, store = _controller()
        decision = await controller.admit("u1")
        await controller.commit(decision, workflow_id="wf-1", display_name="Demo", node_count=4)
        state = controller.status("u1")
        assert state.used == 1
        assert state.remaining == 2
        assert store.in_flight_runs("u1", state.period_start) == 0
        assert store.get_credit_balance("u1") == 46.0
        assert store.credit_ledger[0].action_type == "workflow_run"

    async def test_zero_node_run_debits_one_credit(self):
        controller, store = _controller()
        decision = await controller.admit("u1")
        await controller.commit(decision, workflow_id="wf-1", display_name=None, node_count=0)
        assert store.get_credit_balance("u1") == 49.0

    async def test_release_frees_slot_without_debit(self):
        controller, store = _controller()
        _use(store, "u1", 2)
        decision = await controller.admit("u1")
        await controller.release(decision)
        assert controller.status("u1").used == 2
        assert store.get_credit_balance("u1") == 50.0
        # the slot is available again
        assert (await controller.admit("u1")).allowed

    async def test_abandoned_reservation_stops_blocking_after_expiry(self):
        store = MemoryStore()
        _use(store, "u1", 2)
        controller = AdmissionController(store, StoreQuotaLedger(store, ttl_seconds=-1))
        # a worker that admitted and then died never commits or releases
        assert (await controller.admit("u1")).allowed
        decision = await controller.admit("u1")
        assert decision.allowed
        await controller.commit(decision, workflow_id="wf-2", display_name="Demo", node_count=1)
        with pytest.raises(QuotaExceededError):
            await controller.admit("u1")

    async def test_settled_decision_is_not_debited_twice(self):
        controller, store = _controller()
        decision = await controller.admit("u1")
        await controller.commit(decision, workflow_id="wf-1", display_name="Demo", node_count=1)
        await controller.commit(decision, workflow_id="wf-1", display_name="Demo", node_count=1)
        await controller.release(decision)
        assert controller.status("u1").used == 1
        assert store.get_credit_balance("u1") == 49.0

    async def test_insufficient_credits_is_swallowed(self):
        controller, store = _controller(MemoryStore(default_credit_balance=1.0))
        decision = await controller.admit("u1")
        await controller.commit(decision, workflow_id="wf-1", display_name="Demo", node_count=5)
        assert controller.status("u1").used == 1
        assert store.get_credit_balance("u1") == 1.0

    async def test_debit_failure_is_swallowed(self):
        class BrokenCreditStore(MemoryStore):
            def debit_credits(self, *args, **kwargs):
                raise RuntimeError("ledger offline")

        controller, _ = _controller(BrokenCreditStore())
        decision = await controller.admit("u1")
        await controller.commit(decision, workflow_id="wf-1", display_name="Demo", node_count=2)
        assert controller.status("u1").used == 1

    async def test_credit_debit_can_be_disabled(self):
        controller, store = _controller(credit_debit_enabled=False)
        decision = await controller.admit("u1")
        await controller.commit(decision, workflow_id="wf-1", display_name="Demo", node_count=2)
        assert store.get_credit_balance("u1") == 50.0

    async def test_unlimited_tier_commit_leaves_usage_trail(self):
        controller, store = _controller()
        store.set_user_tier("c1", "clinical")
        decision = await controller.admit("c1")
        await controller.commit(decision, workflow_id="wf-1", display_name="Demo", node_count=2)
        assert len(store.usage) == 1
        assert controller.status("c1").remaining == -1


class FakeQuotaCache:
    """Mimics the RedisCache quota scripts on plain dicts."""

    def __init__(self):
        self.used = {}
        self.reserved = {}

    async def reserve_run_slot(
        self, user_id, period_key, *, reservation_id, seed_used, limit, ttl_seconds, reservation_ttl_seconds
    ):
        key = (user_id, period_key)
        used = self.used.setdefault(key, seed_used)
        live = self.reserved.setdefault(key, set())
        observed = used + len(live)
        if observed < limit:
            live.add(reservation_id)
            return True, observed
        return False, observed

    async def commit_run_slot(self, user_id, period_key, reservation_id):
        key = (user_id, period_key)
        self.reserved[key].discard(reservation_id)
        self.used[key] += 1
        return self.used[key]

    async def release_run_slot(self, user_id, period_key, reservation_id):
        live = self.reserved[(user_id, period_key)]
        live.discard(reservation_id)
        return len(live)


class TestRedisLedger:
    async def test_seeded_from_store_and_records_history(self):
        store = MemoryStore()
        _use(store, "u1", 2)
        cache = FakeQuotaCache()
        controller = AdmissionController(store, RedisQuotaLedger(cache, store))
        decision = await controller.admit("u1")
        assert decision.remaining == 0
        await controller.commit(decision, workflow_id="wf-9", display_name="Demo", node_count=1)
        assert len(store.usage) == 3
        period_key = decision.state.period_key
        assert cache.used[("u1", period_key)] == 3
        assert cache.reserved[("u1", period_key)] == set()
        with pytest.raises(QuotaExceededError):
            await controller.admit("u1")
