from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, Tuple

from canvasflow.logging import get_logger
from canvasflow.service.errors import QuotaExceededError
from canvasflow.storage.models import UsageRecord, utcnow

logger = get_logger(__name__)

FREE_TIER = "free"
UNLIMITED = -1
DEFAULT_FREE_LIMIT = 3
# Must outlast the AI call deadline
DEFAULT_RESERVATION_TTL_SECONDS = 15 * 60


def month_bounds(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """UTC calendar month containing ``now`` as ``[start, next_start)``."""
    now = now or utcnow()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    start = datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
    return start, end


@dataclass(frozen=True)
class QuotaState:
    tier: str
    period_start: datetime
    period_end: datetime
    used: int
    limit: Optional[int]

    @property
    def unlimited(self) -> bool:
        return self.limit is None

    @property
    def period_key(self) -> str:
        return self.period_start.strftime("%Y-%m")

    @property
    def remaining(self) -> int:
        if self.limit is None:
            return UNLIMITED
        return max(0, self.limit - self.used)


@dataclass
class AdmissionDecision:
    allowed: bool
    remaining: int
    state: Optional[QuotaState] = None
    user_id: Optional[str] = None
    reason: Optional[str] = None
    reservation_id: Optional[str] = None
    settled: bool = field(default=False)

    @property
    def metered(self) -> bool:
        return self.reservation_id is not None


class QuotaLedger(Protocol):
    """Atomic per-user, per-period run counter with expiring in-flight reservations."""

    async def reserve(self, user_id: str, state: QuotaState, reservation_id: str) -> Tuple[bool, int]: ...

    async def commit(self, user_id: str, state: QuotaState, reservation_id: str, record: UsageRecord) -> None: ...

    async def release(self, user_id: str, state: QuotaState, reservation_id: str) -> None: ...


class StoreQuotaLedger:
    """Ledger backed by the primary store's own locking (memory or Postgres)."""

    def __init__(self, store: Any, *, ttl_seconds: int = DEFAULT_RESERVATION_TTL_SECONDS) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def reserve(self, user_id: str, state: QuotaState, reservation_id: str) -> Tuple[bool, int]:
        return self.store.reserve_run_slot(
            user_id,
            state.period_start,
            state.period_end,
            state.limit,
            reservation_id=reservation_id,
            ttl_seconds=self.ttl_seconds,
        )

    async def commit(self, user_id: str, state: QuotaState, reservation_id: str, record: UsageRecord) -> None:
        self.store.commit_run_slot(user_id, state.period_start, record, reservation_id=reservation_id)

    async def release(self, user_id: str, state: QuotaState, reservation_id: str) -> None:
        self.store.release_run_slot(user_id, state.period_start, reservation_id=reservation_id)


class RedisQuotaLedger:
    """Ledger shared across workers through Redis; history stays in the store."""

    def __init__(self, cache: Any, store: Any, *, ttl_seconds: int = DEFAULT_RESERVATION_TTL_SECONDS) -> None:
        self.cache = cache
        self.store = store
        self.ttl_seconds = ttl_seconds

    def _period_ttl(self, state: QuotaState) -> int:
        remaining = int((state.period_end - utcnow()).total_seconds())
        return max(self.ttl_seconds, remaining)

    async def reserve(self, user_id: str, state: QuotaState, reservation_id: str) -> Tuple[bool, int]:
        seed = self.store.count_runs(user_id, state.period_start, state.period_end)
        return await self.cache.reserve_run_slot(
            user_id,
            state.period_key,
            reservation_id=reservation_id,
            seed_used=seed,
            limit=state.limit,
            ttl_seconds=self._period_ttl(state),
            reservation_ttl_seconds=self.ttl_seconds,
        )

    async def commit(self, user_id: str, state: QuotaState, reservation_id: str, record: UsageRecord) -> None:
        self.store.record_usage(record)
        await self.cache.commit_run_slot(user_id, state.period_key, reservation_id)

    async def release(self, user_id: str, state: QuotaState, reservation_id: str) -> None:
        await self.cache.release_run_slot(user_id, state.period_key, reservation_id)


class AdmissionController:
    """Monthly run quota gate with post-run usage and credit debit.

    ``admit`` reserves a slot atomically so two concurrent runs cannot both
    take the last one. ``commit`` turns the reservation into a counted run;
    ``release`` gives it back without a debit (failed, timed out or
    cancelled runs). Accounting failures after a successful run are logged
    and never raised.
    """

    def __init__(
        self,
        store: Any,
        ledger: QuotaLedger,
        *,
        free_limit: int = DEFAULT_FREE_LIMIT,
        unlimited_tiers: frozenset = frozenset({"researcher", "clinical"}),
        credit_debit_enabled: bool = True,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.free_limit = free_limit
        self.unlimited_tiers = frozenset(t.lower() for t in unlimited_tiers)
        self.credit_debit_enabled = credit_debit_enabled

    def resolve_tier(self, user_id: str) -> str:
        try:
            tier = self.store.get_user_tier(user_id)
        except Exception as exc:
            logger.warning("quota_tier_lookup_failed", user_id=user_id, error=str(exc))
            return FREE_TIER
        return (tier or FREE_TIER).lower()

    def limit_for(self, tier: str) -> Optional[int]:
        if tier in self.unlimited_tiers:
            return None
        return self.free_limit

    def status(self, user_id: str, *, now: Optional[datetime] = None) -> QuotaState:
        tier = self.resolve_tier(user_id)
        start, end = month_bounds(now)
        used = self.store.count_runs(user_id, start, end)
        return QuotaState(tier=tier, period_start=start, period_end=end, used=used, limit=self.limit_for(tier))

    async def admit(self, user_id: Optional[str], *, now: Optional[datetime] = None) -> AdmissionDecision:
        """Admit or block a run.

        Raises:
            QuotaExceededError: when the user's metered tier has no slot left
                this month.
        """
        if not user_id:
            return AdmissionDecision(allowed=True, remaining=UNLIMITED, reason="unmetered")

        tier = self.resolve_tier(user_id)
        start, end = month_bounds(now)
        limit = self.limit_for(tier)
        if limit is None:
            state = QuotaState(tier=tier, period_start=start, period_end=end, used=0, limit=None)
            return AdmissionDecision(allowed=True, remaining=UNLIMITED, state=state, user_id=user_id)

        pending = QuotaState(tier=tier, period_start=start, period_end=end, used=0, limit=limit)
        reservation_id = str(uuid.uuid4())
        acquired, observed = await self.ledger.reserve(user_id, pending, reservation_id)
        state = QuotaState(tier=tier, period_start=start, period_end=end, used=observed, limit=limit)
        if not acquired:
            reason = (
                f"You've used all {limit} workflow executions for this month. "
                "Upgrade to get unlimited workflows."
            )
            logger.info("quota_blocked", user_id=user_id, tier=tier, used=observed, limit=limit)
            raise QuotaExceededError(
                "Execution limit reached",
                detail={
                    "reason": reason,
                    "remaining": 0,
                    "requiresUpgrade": True,
                    "tier": tier,
                    "limit": limit,
                    "used": observed,
                },
            )
        remaining = limit - observed - 1
        logger.info("quota_admitted", user_id=user_id, tier=tier, used=observed, remaining=remaining)
        return AdmissionDecision(
            allowed=True,
            remaining=remaining,
            state=state,
            user_id=user_id,
            reservation_id=reservation_id,
        )

    async def release(self, decision: AdmissionDecision) -> None:
        if not decision.metered or decision.settled:
            return
        decision.settled = True
        try:
            await self.ledger.release(decision.user_id, decision.state, decision.reservation_id)
        except Exception as exc:
            logger.error("quota_release_failed", user_id=decision.user_id, error=str(exc))

    async def commit(
        self,
        decision: AdmissionDecision,
        *,
        workflow_id: str,
        display_name: Optional[str],
        node_count: int,
    ) -> None:
        """Debit a successful run. Never raises."""
        if not decision.user_id or decision.settled:
            return
        decision.settled = True
        if decision.metered:
            record = UsageRecord(
                user_id=decision.user_id,
                workflow_id=workflow_id,
                workflow_name=display_name,
                nodes_count=node_count,
            )
            try:
                await self.ledger.commit(decision.user_id, decision.state, decision.reservation_id, record)
            except Exception as exc:
                logger.error(
                    "quota_commit_failed",
                    user_id=decision.user_id,
                    workflow_id=workflow_id,
                    error=str(exc),
                )
        else:
            # Unlimited tiers are not metered but still leave a usage trail
            try:
                self.store.record_usage(
                    UsageRecord(
                        user_id=decision.user_id,
                        workflow_id=workflow_id,
                        workflow_name=display_name,
                        nodes_count=node_count,
                    )
                )
            except Exception as exc:
                logger.error("usage_record_failed", user_id=decision.user_id, error=str(exc))

        if self.credit_debit_enabled:
            self._debit_credits(decision.user_id, workflow_id, display_name, node_count)

    def _debit_credits(
        self, user_id: str, workflow_id: str, workflow_name: Optional[str], node_count: int
    ) -> None:
        amount = max(1, node_count)
        try:
            result = self.store.debit_credits(
                user_id,
                amount,
                action_type="workflow_run",
                resource_type="ai_analysis",
                workflow_id=workflow_id,
                details={
                    "workflow_name": workflow_name,
                    "nodes_count": node_count,
                    "timestamp": utcnow().isoformat(),
                },
            )
        except Exception as exc:
            logger.error("credit_debit_failed", user_id=user_id, amount=amount, error=str(exc))
            return
        if not result.success:
            logger.warning(
                "credit_insufficient",
                user_id=user_id,
                amount=amount,
                balance=result.new_balance,
            )
            return
        logger.info("credit_debited", user_id=user_id, amount=amount, balance=result.new_balance)
