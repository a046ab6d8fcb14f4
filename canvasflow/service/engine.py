from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Dict, List, Mapping, Optional, TypeVar

from canvasflow.config import Settings
from canvasflow.logging import get_logger, log_wave_trace, sanitize_wave_trace
from canvasflow.service.admission import AdmissionController, AdmissionDecision
from canvasflow.service.archetype import classify
from canvasflow.service.content import ArticleFetcher
from canvasflow.service.errors import AuthConfigError, RunCancelledError, UpstreamFailureError
from canvasflow.service.graph import GraphNode, normalize_graph
from canvasflow.service.llm import AIClient
from canvasflow.service.prompts import NodeContext, PromptPayload, PromptSynthesizer
from canvasflow.service.reconcile import reconcile
from canvasflow.service.recorder import RunRecorder
from canvasflow.service.scheduler import WaveExecutor, WaveScheduler
from canvasflow.storage.models import utcnow

T = TypeVar("T")

DEFAULT_DISPLAY_NAME = "Untitled Workflow"


def mint_workflow_id() -> str:
    return f"wf-{uuid.uuid4()}"


@dataclass
class RunRequest:
    nodes: List[Any]
    edges: List[Any] = field(default_factory=list)
    workflow_id: Optional[str] = None
    user_id: Optional[str] = None
    display_name: str = DEFAULT_DISPLAY_NAME
    execution_id: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.workflow_id:
            self.workflow_id = mint_workflow_id()
        if not self.execution_id:
            self.execution_id = str(uuid.uuid4())
        self.display_name = (self.display_name or "").strip() or DEFAULT_DISPLAY_NAME


@dataclass(frozen=True)
class RunResult:
    narrative_summary: str
    per_node_results: Mapping[str, Any]
    metadata: Mapping[str, Any]
    workflow_id: str
    execution_id: str
    display_name: str
    quota_remaining: int = -1


class WorkflowEngine:
    """Run a canvas graph end to end with a single AI invocation.

    The engine plans and classifies the graph, admits the run against the
    user's quota, prepares node context wave by wave, invokes the AI client
    once and maps the answer back onto the graph. A run that fails, times
    out or is cancelled after admission gives its quota slot back.
    """

    def __init__(
        self,
        store: Any,
        ai_client: AIClient,
        admission: AdmissionController,
        *,
        recorder: Optional[RunRecorder] = None,
        scheduler: Optional[WaveScheduler] = None,
        executor: Optional[WaveExecutor] = None,
        synthesizer: Optional[PromptSynthesizer] = None,
        fetcher: Optional[ArticleFetcher] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.ai_client = ai_client
        self.admission = admission
        self.recorder = recorder or RunRecorder(store)
        self.scheduler = scheduler or WaveScheduler(
            column_gap=settings.wave_column_gap if settings else 150.0,
            strategy=settings.scheduler_strategy.value if settings else "auto",
        )
        self.executor = executor or WaveExecutor(max_workers=settings.wave_max_workers if settings else 8)
        self.synthesizer = synthesizer or PromptSynthesizer()
        self.fetcher = fetcher
        self.timeout_seconds = settings.ai_timeout_seconds if settings else 120.0
        self.logger = get_logger(__name__)
        self._active: Dict[str, asyncio.Event] = {}

    # -- cancellation ------------------------------------------------------

    def cancel(self, execution_id: str) -> bool:
        """Signal an in-flight run to abort; False when no such run is active."""
        event = self._active.get(execution_id)
        if event is None:
            return False
        event.set()
        self.logger.info("workflow_cancel_requested", execution_id=execution_id)
        return True

    def is_active(self, execution_id: str) -> bool:
        return execution_id in self._active

    async def _until_cancelled(self, awaitable: Awaitable[T], cancel_event: asyncio.Event, stage: str) -> T:
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not work.done():
                work.cancel()
        if work in done:
            return work.result()
        raise RunCancelledError("Workflow run cancelled", detail={"stage": stage})

    # -- node preparation --------------------------------------------------

    async def _prepare_node(self, node: GraphNode) -> NodeContext:
        url = node.url
        if node.is_news_article and url and self.fetcher is not None:
            text = await self.fetcher.fetch_text(url)
            return NodeContext(node_id=node.id, label=node.label, excerpt=text, source_url=url, source="fetched")
        inline = node.inline_content()
        if inline:
            return NodeContext(node_id=node.id, label=node.label, excerpt=inline, source_url=url, source="inline")
        return NodeContext(node_id=node.id, label=node.label, source_url=url)

    async def _invoke(self, payload: PromptPayload, cancel_event: asyncio.Event) -> str:
        call = self.ai_client.generate(payload, timeout_seconds=self.timeout_seconds)
        try:
            return await asyncio.wait_for(
                self._until_cancelled(call, cancel_event, "ai_invoke"),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            self.logger.error("ai_invoke_deadline_exceeded", timeout_seconds=self.timeout_seconds)
            raise UpstreamFailureError(
                "AI backend timed out",
                detail={"reason": "timeout", "timeout_seconds": self.timeout_seconds},
            ) from exc

    # -- run -----------------------------------------------------------------

    async def run(self, request: RunRequest, *, cancel_event: Optional[asyncio.Event] = None) -> RunResult:
        """Execute one workflow run.

        Raises:
            InvalidGraphError: the graph has no nodes or malformed ids.
            AuthConfigError: the AI client has no credentials.
            QuotaExceededError: the user's monthly quota is used up.
            UpstreamThrottledError, UpstreamFailureError: the AI call failed
                or timed out.
            RunCancelledError: the run was cancelled before it finished.
        """
        started = time.monotonic()
        graph = normalize_graph(request.nodes, request.edges)
        plan = self.scheduler.plan(graph)
        decision = classify(graph, request.display_name)
        self.logger.info(
            "workflow_run_started",
            workflow_id=request.workflow_id,
            execution_id=request.execution_id,
            nodes=len(graph),
            edges=len(graph.edges),
            archetype=decision.label,
            scheduler_strategy=plan.strategy,
        )

        if not self.ai_client.is_configured:
            raise AuthConfigError(
                "AI service not configured",
                detail={"mode": "offline", "hint": "GOOGLE_GEMINI_API_KEY is not set"},
            )

        admission: AdmissionDecision = await self.admission.admit(request.user_id)

        cancel_event = cancel_event or asyncio.Event()
        execution_id = request.execution_id
        self._active[execution_id] = cancel_event
        succeeded = False
        try:
            report = await self._until_cancelled(
                self.executor.execute(plan, graph, self._prepare_node), cancel_event, "node_preparation"
            )
            contexts = {
                node_id: output
                for node_id, output in report.outputs().items()
                if isinstance(output, NodeContext)
            }
            payload = self.synthesizer.synthesize(decision, graph, contexts, request.display_name)
            raw_text = await self._invoke(payload, cancel_event)
            succeeded = True
        except RunCancelledError:
            self.logger.info("workflow_run_cancelled", execution_id=execution_id)
            raise
        except asyncio.CancelledError:
            self.logger.info("workflow_run_aborted", execution_id=execution_id)
            raise
        finally:
            self._active.pop(execution_id, None)
            if not succeeded:
                await self.admission.release(admission)

        log_wave_trace(sanitize_wave_trace(report.trace()), self.logger)
        reconciliation = reconcile(raw_text, payload.manifest)

        metadata: Dict[str, Any] = {
            "model": self.ai_client.model,
            "nodesProcessed": len(graph),
            "edgesProcessed": len(graph.edges),
            "timestamp": utcnow().isoformat(),
            "archetype": decision.mode.value,
            "subtype": payload.subtype,
            "waves": plan.wave_ids(),
            "barrier": list(plan.barrier),
            "schedulerStrategy": plan.strategy,
            "failedNodes": report.failed_nodes,
            "unmatchedResults": reconciliation.unmatched,
            "reconciliationDegraded": reconciliation.degraded,
            "regionsAnalyzed": sum(1 for node in graph.nodes if node.is_region),
        }

        self.recorder.record(
            execution_id=execution_id,
            workflow_id=request.workflow_id,
            display_name=request.display_name,
            user_id=request.user_id,
            narrative_summary=reconciliation.narrative_summary,
            per_node_results=reconciliation.per_node_results,
            manifest=payload.manifest,
            node_count=len(graph),
            archetype=decision.label,
            meta={"waves": metadata["waves"], "failedNodes": metadata["failedNodes"]},
        )
        await self.admission.commit(
            admission,
            workflow_id=request.workflow_id,
            display_name=request.display_name,
            node_count=len(graph),
        )

        self.logger.info(
            "workflow_run_completed",
            workflow_id=request.workflow_id,
            execution_id=execution_id,
            archetype=decision.label,
            matched=len(reconciliation.per_node_results),
            unmatched=reconciliation.unmatched,
            degraded=reconciliation.degraded,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
        )
        return RunResult(
            narrative_summary=reconciliation.narrative_summary,
            per_node_results=reconciliation.per_node_results,
            metadata=MappingProxyType(metadata),
            workflow_id=request.workflow_id,
            execution_id=execution_id,
            display_name=request.display_name,
            quota_remaining=admission.remaining,
        )
