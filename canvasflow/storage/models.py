from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class WorkflowRun:
    """One completed execution of a workflow graph."""

    execution_id: str
    workflow_id: str
    status: str = "completed"
    result_summary: str = ""
    nodes_executed: int = 0
    user_id: Optional[str] = None
    workflow_name: Optional[str] = None
    archetype: Optional[str] = None
    executed_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None


@dataclass
class NodeResultRow:
    """Per-node result of a run, keyed by (workflow_execution_id, node_id)."""

    workflow_execution_id: str
    node_id: str
    node_name: str
    result: Any
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class UsageRecord:
    """A metered run counted against the user's monthly quota."""

    user_id: str
    workflow_id: str
    workflow_name: Optional[str] = None
    nodes_count: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class CreditLedgerEntry:
    user_id: str
    amount: float
    balance_after: float
    action_type: str
    resource_type: str
    workflow_id: Optional[str] = None
    details: Dict | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class CreditDebitResult:
    success: bool
    new_balance: Optional[float] = None
    reason: Optional[str] = None
