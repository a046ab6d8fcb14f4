from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from canvasflow.service.errors import ErrorKind

# Maximum nested JSON depth accepted in node payloads
MAX_JSON_DEPTH = 20
# Maximum nodes or edges in one workflow
MAX_ARRAY_ITEMS = 1000
MAX_NAME_LENGTH = 512


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested or oversized payloads.

    Raises:
        ValueError: If depth or array length exceeds the maximum
    """
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "rate_limited",
        "validation_error",
        "conflict",
        "server_error",
        "service_unavailable",
    }
    | {kind.value for kind in ErrorKind}
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RunWorkflowRequest(BaseModel):
    """Body of ``POST /v1/workflows/run`` as sent by the canvas editor."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    workflow_id: Optional[str] = Field(None, alias="workflowId", max_length=MAX_NAME_LENGTH)
    workflow_name: Optional[str] = Field(None, alias="workflowName", max_length=MAX_NAME_LENGTH)
    name: Optional[str] = Field(None, max_length=MAX_NAME_LENGTH)
    execution_id: Optional[str] = Field(None, alias="executionId", max_length=128)
    nodes: List[Dict[str, Any]] = Field(default_factory=list)
    edges: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("nodes", "edges")
    @classmethod
    def _validate_graph_payload(cls, value: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        _validate_json_depth(value)
        return value

    @property
    def display_name(self) -> str:
        return (self.workflow_name or self.name or "").strip() or "Untitled Workflow"


class RunWorkflowResponse(BaseModel):
    success: bool = True
    workflowId: str
    executionId: str
    workflowName: str
    result: str
    analysis: str
    perNodeResults: Dict[str, Any]
    metadata: Dict[str, Any]
    creditsRefresh: bool = True
    quotaRemaining: int = -1


class WorkflowHealthResponse(BaseModel):
    status: Literal["ready", "offline"]
    message: str
    timestamp: datetime
    model: str


class CancelRunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    execution_id: str = Field(..., alias="executionId", min_length=1, max_length=128)


class CancelRunResponse(BaseModel):
    executionId: str
    cancelled: bool
    message: str


class NodeResultResponse(BaseModel):
    nodeId: str
    nodeName: str
    result: Any = None
    createdAt: datetime


class ExecutionResultsResponse(BaseModel):
    executionId: str
    workflowId: Optional[str] = None
    workflowName: Optional[str] = None
    status: Optional[str] = None
    resultSummary: Optional[str] = None
    executedAt: Optional[datetime] = None
    results: List[NodeResultResponse] = Field(default_factory=list)


class QuotaStatusResponse(BaseModel):
    tier: str
    used: int
    limit: Optional[int] = None
    remaining: int
    unlimited: bool
    periodStart: datetime
    periodEnd: datetime
