from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from canvasflow.logging import get_logger
from canvasflow.storage.errors import ConstraintViolation
from canvasflow.storage.models import (
    CreditDebitResult,
    CreditLedgerEntry,
    NodeResultRow,
    UsageRecord,
    WorkflowRun,
    utcnow,
)


class MemoryStore:
    """In-process backing store for tests and single-worker deployments.

    Implements the same persistence and quota contracts as
    :class:`canvasflow.storage.postgres.PostgresStore`.
    """

    def __init__(self, *, default_credit_balance: float = 50.0) -> None:
        self.logger = get_logger(__name__)
        self.default_credit_balance = default_credit_balance
        self.runs: Dict[str, WorkflowRun] = {}
        self.node_results: Dict[str, List[NodeResultRow]] = {}
        self.usage: List[UsageRecord] = []
        self.user_tiers: Dict[str, str] = {}
        self.credit_balances: Dict[str, float] = {}
        self.credit_ledger: List[CreditLedgerEntry] = []
        # reservation id -> expiry, per (user, period)
        self._reservations: Dict[Tuple[str, datetime], Dict[str, datetime]] = {}
        # RLock so quota helpers can nest within one acquisition
        self._data_lock = threading.RLock()

    # -- workflow runs -------------------------------------------------

    def upsert_workflow_run(self, run: WorkflowRun) -> WorkflowRun:
        with self._data_lock:
            self.runs[run.execution_id] = run
        return run

    def get_workflow_run(self, execution_id: str) -> Optional[WorkflowRun]:
        with self._data_lock:
            return self.runs.get(execution_id)

    def insert_node_results(self, rows: Sequence[NodeResultRow]) -> int:
        if not rows:
            return 0
        with self._data_lock:
            seen = set()
            for row in rows:
                key = (row.workflow_execution_id, row.node_id)
                existing = {r.node_id for r in self.node_results.get(row.workflow_execution_id, [])}
                if row.node_id in existing or key in seen:
                    raise ConstraintViolation(
                        "node result already recorded",
                        {"workflow_execution_id": row.workflow_execution_id, "node_id": row.node_id},
                    )
                seen.add(key)
            for row in rows:
                self.node_results.setdefault(row.workflow_execution_id, []).append(row)
        return len(rows)

    def list_node_results(self, execution_id: str) -> List[NodeResultRow]:
        with self._data_lock:
            rows = list(self.node_results.get(execution_id, []))
        return sorted(rows, key=lambda r: r.created_at)

    # -- quota ---------------------------------------------------------

    def set_user_tier(self, user_id: str, tier: str) -> None:
        with self._data_lock:
            self.user_tiers[user_id] = tier

    def get_user_tier(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.user_tiers.get(user_id)

    def count_runs(self, user_id: str, start: datetime, end: datetime) -> int:
        with self._data_lock:
            return sum(
                1 for rec in self.usage if rec.user_id == user_id and start <= rec.created_at < end
            )

    def record_usage(self, record: UsageRecord) -> UsageRecord:
        with self._data_lock:
            self.usage.append(record)
        return record

    def reserve_run_slot(
        self,
        user_id: str,
        period_start: datetime,
        period_end: datetime,
        limit: int,
        *,
        reservation_id: str,
        ttl_seconds: int,
    ) -> Tuple[bool, int]:
        """Atomically claim one in-flight run slot for the period.

        A reservation that is neither committed nor released stops counting
        once ``ttl_seconds`` have passed, so a crashed worker cannot hold a
        slot until the month ends.

        Returns ``(acquired, observed)`` where ``observed`` is the number of
        committed plus live in-flight runs seen before claiming.
        """
        with self._data_lock:
            now = utcnow()
            key = (user_id, period_start)
            live = self._prune_reservations(key, now)
            observed = self.count_runs(user_id, period_start, period_end) + len(live)
            if observed >= limit:
                return False, observed
            live[reservation_id] = now + timedelta(seconds=ttl_seconds)
            self._reservations[key] = live
            return True, observed

    def commit_run_slot(
        self, user_id: str, period_start: datetime, record: UsageRecord, *, reservation_id: str
    ) -> None:
        with self._data_lock:
            self.record_usage(record)
            self._drop_reservation(user_id, period_start, reservation_id)

    def release_run_slot(self, user_id: str, period_start: datetime, *, reservation_id: str) -> None:
        with self._data_lock:
            self._drop_reservation(user_id, period_start, reservation_id)

    def _prune_reservations(self, key: Tuple[str, datetime], now: datetime) -> Dict[str, datetime]:
        live = {rid: expires for rid, expires in self._reservations.get(key, {}).items() if expires > now}
        if live:
            self._reservations[key] = live
        else:
            self._reservations.pop(key, None)
        return live

    def _drop_reservation(self, user_id: str, period_start: datetime, reservation_id: str) -> None:
        key = (user_id, period_start)
        held = self._reservations.get(key)
        if held is None:
            return
        held.pop(reservation_id, None)
        if not held:
            self._reservations.pop(key, None)

    def in_flight_runs(self, user_id: str, period_start: datetime) -> int:
        with self._data_lock:
            return len(self._prune_reservations((user_id, period_start), utcnow()))

    # -- credits -------------------------------------------------------

    def get_credit_balance(self, user_id: str) -> float:
        with self._data_lock:
            return self.credit_balances.get(user_id, self.default_credit_balance)

    def debit_credits(
        self,
        user_id: str,
        amount: float,
        *,
        action_type: str,
        resource_type: str,
        workflow_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> CreditDebitResult:
        with self._data_lock:
            balance = self.get_credit_balance(user_id)
            if balance < amount:
                return CreditDebitResult(
                    success=False, new_balance=balance, reason="insufficient_credits"
                )
            new_balance = balance - amount
            self.credit_balances[user_id] = new_balance
            self.credit_ledger.append(
                CreditLedgerEntry(
                    user_id=user_id,
                    amount=-amount,
                    balance_after=new_balance,
                    action_type=action_type,
                    resource_type=resource_type,
                    workflow_id=workflow_id,
                    details=details,
                    created_at=utcnow(),
                )
            )
        return CreditDebitResult(success=True, new_balance=new_balance)

    def check_health(self) -> bool:
        return True
