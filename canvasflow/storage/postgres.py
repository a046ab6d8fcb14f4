from __future__ import annotations

import json
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from canvasflow.logging import get_logger
from canvasflow.storage.errors import ConstraintViolation, StorageUnavailable
from canvasflow.storage.models import (
    CreditDebitResult,
    NodeResultRow,
    UsageRecord,
    WorkflowRun,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS workflow_run (
        execution_id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        user_id TEXT,
        workflow_name TEXT,
        status TEXT NOT NULL,
        result_summary TEXT,
        nodes_executed INTEGER NOT NULL DEFAULT 0,
        archetype TEXT,
        meta JSONB,
        executed_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_node_result (
        workflow_execution_id TEXT NOT NULL,
        node_id TEXT NOT NULL,
        node_name TEXT,
        result JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (workflow_execution_id, node_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_usage (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        workflow_id TEXT,
        workflow_name TEXT,
        nodes_count INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS workflow_usage_user_created_idx ON workflow_usage (user_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS quota_reservation (
        reservation_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        period_start TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS quota_reservation_user_period_idx ON quota_reservation (user_id, period_start)",
    """
    CREATE TABLE IF NOT EXISTS user_plan (
        user_id TEXT PRIMARY KEY,
        tier TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credit (
        user_id TEXT PRIMARY KEY,
        balance NUMERIC NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS credit_ledger (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        amount NUMERIC NOT NULL,
        balance_after NUMERIC NOT NULL,
        action_type TEXT NOT NULL,
        resource_type TEXT NOT NULL,
        workflow_id TEXT,
        details JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed store for run records, node results and quota state."""

    def __init__(self, dsn: str, *, default_credit_balance: float = 50.0) -> None:
        self.dsn = dsn
        self.default_credit_balance = default_credit_balance
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the tables the engine reads and writes if they are missing."""

        try:
            with self._connect() as conn:
                for statement in _SCHEMA_STATEMENTS:
                    conn.execute(statement)
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_schema_init_failed", error=str(exc))
            raise StorageUnavailable("postgres is unreachable") from exc

    def close(self) -> None:
        self.pool.close()

    def check_health(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except Exception as exc:
            self.logger.warning("postgres_health_check_failed", error=str(exc))
            return False

    # -- workflow runs -------------------------------------------------

    def upsert_workflow_run(self, run: WorkflowRun) -> WorkflowRun:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflow_run (execution_id, workflow_id, user_id, workflow_name, status,
                    result_summary, nodes_executed, archetype, meta, executed_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (execution_id) DO UPDATE SET
                    status = EXCLUDED.status,
                    result_summary = EXCLUDED.result_summary,
                    nodes_executed = EXCLUDED.nodes_executed,
                    archetype = EXCLUDED.archetype,
                    meta = EXCLUDED.meta,
                    executed_at = EXCLUDED.executed_at
                """,
                (
                    run.execution_id,
                    run.workflow_id,
                    run.user_id,
                    run.workflow_name,
                    run.status,
                    run.result_summary,
                    run.nodes_executed,
                    run.archetype,
                    json.dumps(run.meta) if run.meta else None,
                    run.executed_at,
                ),
            )
        return run

    def get_workflow_run(self, execution_id: str) -> Optional[WorkflowRun]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflow_run WHERE execution_id = %s", (execution_id,)
            ).fetchone()
        if not row:
            return None
        meta = row.get("meta")
        if isinstance(meta, str):
            meta = json.loads(meta)
        return WorkflowRun(
            execution_id=row["execution_id"],
            workflow_id=row["workflow_id"],
            status=row["status"],
            result_summary=row.get("result_summary") or "",
            nodes_executed=row.get("nodes_executed") or 0,
            user_id=row.get("user_id"),
            workflow_name=row.get("workflow_name"),
            archetype=row.get("archetype"),
            executed_at=row["executed_at"],
            meta=meta,
        )

    def insert_node_results(self, rows: Sequence[NodeResultRow]) -> int:
        if not rows:
            return 0
        try:
            with self._connect() as conn, conn.transaction():
                with conn.cursor() as cur:
                    cur.executemany(
                        """
                        INSERT INTO workflow_node_result (workflow_execution_id, node_id, node_name,
                            result, created_at, updated_at)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        """,
                        [
                            (
                                row.workflow_execution_id,
                                row.node_id,
                                row.node_name,
                                json.dumps(row.result),
                                row.created_at,
                                row.updated_at,
                            )
                            for row in rows
                        ],
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "node result already recorded",
                {"workflow_execution_id": rows[0].workflow_execution_id},
            )
        return len(rows)

    def list_node_results(self, execution_id: str) -> List[NodeResultRow]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM workflow_node_result WHERE workflow_execution_id = %s ORDER BY created_at ASC",
                (execution_id,),
            ).fetchall()
        results: List[NodeResultRow] = []
        for row in rows:
            payload = row.get("result")
            if isinstance(payload, str):
                payload = json.loads(payload)
            results.append(
                NodeResultRow(
                    workflow_execution_id=row["workflow_execution_id"],
                    node_id=row["node_id"],
                    node_name=row.get("node_name") or "",
                    result=payload,
                    created_at=row["created_at"],
                    updated_at=row["updated_at"],
                )
            )
        return results

    # -- quota ---------------------------------------------------------

    def set_user_tier(self, user_id: str, tier: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_plan (user_id, tier) VALUES (%s, %s)
                ON CONFLICT (user_id) DO UPDATE SET tier = EXCLUDED.tier, updated_at = now()
                """,
                (user_id, tier),
            )

    def get_user_tier(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT tier FROM user_plan WHERE user_id = %s", (user_id,)
            ).fetchone()
        return row["tier"] if row else None

    def count_runs(self, user_id: str, start: datetime, end: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM workflow_usage WHERE user_id = %s AND created_at >= %s AND created_at < %s",
                (user_id, start, end),
            ).fetchone()
        return int(row["n"]) if row else 0

    def record_usage(self, record: UsageRecord) -> UsageRecord:
        with self._connect() as conn:
            self._insert_usage(conn, record)
        return record

    @staticmethod
    def _insert_usage(conn, record: UsageRecord) -> None:
        conn.execute(
            "INSERT INTO workflow_usage (id, user_id, workflow_id, workflow_name, nodes_count, created_at) VALUES (%s, %s, %s, %s, %s, %s)",
            (
                record.id,
                record.user_id,
                record.workflow_id,
                record.workflow_name,
                record.nodes_count,
                record.created_at,
            ),
        )

    @staticmethod
    def _lock_period(conn, user_id: str, period_start: datetime) -> None:
        # Serializes reserve/commit/release for one user and month
        conn.execute(
            "SELECT pg_advisory_xact_lock(hashtext(%s))",
            (f"quota:{user_id}:{period_start.isoformat()}",),
        )

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
        with self._connect() as conn, conn.transaction():
            self._lock_period(conn, user_id, period_start)
            conn.execute(
                "DELETE FROM quota_reservation WHERE user_id = %s AND period_start = %s AND expires_at <= now()",
                (user_id, period_start),
            )
            used_row = conn.execute(
                "SELECT COUNT(*) AS n FROM workflow_usage WHERE user_id = %s AND created_at >= %s AND created_at < %s",
                (user_id, period_start, period_end),
            ).fetchone()
            flight_row = conn.execute(
                "SELECT COUNT(*) AS n FROM quota_reservation WHERE user_id = %s AND period_start = %s",
                (user_id, period_start),
            ).fetchone()
            observed = int(used_row["n"]) + int(flight_row["n"])
            if observed >= limit:
                return False, observed
            conn.execute(
                """
                INSERT INTO quota_reservation (reservation_id, user_id, period_start, expires_at)
                VALUES (%s, %s, %s, now() + make_interval(secs => %s))
                """,
                (reservation_id, user_id, period_start, ttl_seconds),
            )
            return True, observed

    def commit_run_slot(
        self, user_id: str, period_start: datetime, record: UsageRecord, *, reservation_id: str
    ) -> None:
        with self._connect() as conn, conn.transaction():
            self._lock_period(conn, user_id, period_start)
            self._insert_usage(conn, record)
            self._drop_reservation(conn, reservation_id)

    def release_run_slot(self, user_id: str, period_start: datetime, *, reservation_id: str) -> None:
        with self._connect() as conn, conn.transaction():
            self._lock_period(conn, user_id, period_start)
            self._drop_reservation(conn, reservation_id)

    @staticmethod
    def _drop_reservation(conn, reservation_id: str) -> None:
        conn.execute("DELETE FROM quota_reservation WHERE reservation_id = %s", (reservation_id,))

    def in_flight_runs(self, user_id: str, period_start: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS n FROM quota_reservation
                WHERE user_id = %s AND period_start = %s AND expires_at > now()
                """,
                (user_id, period_start),
            ).fetchone()
        return int(row["n"])

    # -- credits -------------------------------------------------------

    def get_credit_balance(self, user_id: str) -> float:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT balance FROM user_credit WHERE user_id = %s", (user_id,)
            ).fetchone()
        return float(row["balance"]) if row else self.default_credit_balance

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
        with self._connect() as conn, conn.transaction():
            conn.execute(
                "INSERT INTO user_credit (user_id, balance) VALUES (%s, %s) ON CONFLICT (user_id) DO NOTHING",
                (user_id, self.default_credit_balance),
            )
            row = conn.execute(
                "SELECT balance FROM user_credit WHERE user_id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            balance = float(row["balance"])
            if balance < amount:
                return CreditDebitResult(
                    success=False, new_balance=balance, reason="insufficient_credits"
                )
            new_balance = balance - amount
            conn.execute(
                "UPDATE user_credit SET balance = %s, updated_at = now() WHERE user_id = %s",
                (new_balance, user_id),
            )
            conn.execute(
                """
                INSERT INTO credit_ledger (id, user_id, amount, balance_after, action_type,
                    resource_type, workflow_id, details, created_at)
                VALUES (gen_random_uuid()::text, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    user_id,
                    -amount,
                    new_balance,
                    action_type,
                    resource_type,
                    workflow_id,
                    json.dumps(details) if details else None,
                    utcnow(),
                ),
            )
        return CreditDebitResult(success=True, new_balance=new_balance)
