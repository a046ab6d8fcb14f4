from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Header, Path

from canvasflow.api.schemas import (
    CancelRunRequest,
    CancelRunResponse,
    Envelope,
    ExecutionResultsResponse,
    NodeResultResponse,
    QuotaStatusResponse,
    RunWorkflowRequest,
    RunWorkflowResponse,
    WorkflowHealthResponse,
)
from canvasflow.logging import get_logger
from canvasflow.service.engine import RunRequest
from canvasflow.service.errors import NotFoundError, ValidationError
from canvasflow.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _user_id(x_user_id: Optional[str]) -> Optional[str]:
    value = (x_user_id or "").strip()
    return value or None


@router.post("/workflows/run", response_model=RunWorkflowResponse, tags=["workflows"])
async def run_workflow(
    body: RunWorkflowRequest,
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
):
    runtime = get_runtime()
    request = RunRequest(
        nodes=body.nodes,
        edges=body.edges,
        workflow_id=body.workflow_id,
        user_id=_user_id(x_user_id),
        display_name=body.display_name,
        execution_id=body.execution_id,
    )
    if runtime.engine.is_active(request.execution_id):
        raise ValidationError(
            "execution id is already running",
            detail={"executionId": request.execution_id},
        )
    result = await runtime.engine.run(request)
    return RunWorkflowResponse(
        workflowId=result.workflow_id,
        executionId=result.execution_id,
        workflowName=result.display_name,
        result=result.narrative_summary,
        analysis=result.narrative_summary,
        perNodeResults=dict(result.per_node_results),
        metadata=dict(result.metadata),
        creditsRefresh=request.user_id is not None,
        quotaRemaining=result.quota_remaining,
    )


@router.get("/workflows/run", response_model=WorkflowHealthResponse, tags=["workflows"])
async def workflow_health():
    runtime = get_runtime()
    configured = runtime.ai_client.is_configured
    return WorkflowHealthResponse(
        status="ready" if configured else "offline",
        message="Workflow API is ready" if configured else "GOOGLE_GEMINI_API_KEY not configured",
        timestamp=datetime.now(timezone.utc),
        model=runtime.ai_client.model,
    )


@router.post("/workflows/run/cancel", response_model=CancelRunResponse, tags=["workflows"])
async def cancel_workflow_run(body: CancelRunRequest):
    """Abort an in-flight run; the run's quota slot is released, not debited."""
    runtime = get_runtime()
    cancelled = runtime.engine.cancel(body.execution_id)
    if cancelled:
        logger.info("workflow_run_cancel_accepted", execution_id=body.execution_id)
    return CancelRunResponse(
        executionId=body.execution_id,
        cancelled=cancelled,
        message="Run cancelled" if cancelled else "Run not found or already finished",
    )


@router.get(
    "/workflows/executions/{execution_id}/results",
    response_model=Envelope,
    tags=["workflows"],
)
async def get_execution_results(execution_id: str = Path(..., min_length=1, max_length=128)):
    runtime = get_runtime()
    run = runtime.store.get_workflow_run(execution_id)
    rows = runtime.store.list_node_results(execution_id)
    if run is None and not rows:
        raise NotFoundError("execution not found", detail={"executionId": execution_id})
    payload = ExecutionResultsResponse(
        executionId=execution_id,
        workflowId=run.workflow_id if run else None,
        workflowName=run.workflow_name if run else None,
        status=run.status if run else None,
        resultSummary=run.result_summary if run else None,
        executedAt=run.executed_at if run else None,
        results=[
            NodeResultResponse(
                nodeId=row.node_id,
                nodeName=row.node_name,
                result=row.result,
                createdAt=row.created_at,
            )
            for row in rows
        ],
    )
    return Envelope(status="ok", data=payload.model_dump(mode="json"))


@router.get("/quota", response_model=Envelope, tags=["quota"])
async def get_quota(x_user_id: Optional[str] = Header(None, alias="X-User-ID")):
    user_id = _user_id(x_user_id)
    if user_id is None:
        raise ValidationError("X-User-ID header required")
    runtime = get_runtime()
    state = runtime.admission.status(user_id)
    payload = QuotaStatusResponse(
        tier=state.tier,
        used=state.used,
        limit=state.limit,
        remaining=state.remaining,
        unlimited=state.unlimited,
        periodStart=state.period_start,
        periodEnd=state.period_end,
    )
    return Envelope(status="ok", data=payload.model_dump(mode="json"))
