from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence

from canvasflow.logging import get_logger
from canvasflow.service.prompts import ManifestEntry
from canvasflow.storage.models import NodeResultRow, WorkflowRun, utcnow

logger = get_logger(__name__)

MAX_SUMMARY_CHARS = 500


class RunRecorder:
    """Persist a finished run and its per-node results.

    Recording is best effort: a completed run is returned to the caller
    even when the store rejects the write.
    """

    def __init__(self, store: Any) -> None:
        self.store = store

    def record(
        self,
        *,
        execution_id: str,
        workflow_id: str,
        display_name: str,
        user_id: Optional[str],
        narrative_summary: str,
        per_node_results: Mapping[str, Any],
        manifest: Sequence[ManifestEntry],
        node_count: int,
        archetype: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> bool:
        labels = {entry.node_id: entry.label for entry in manifest}
        now = utcnow()
        run = WorkflowRun(
            execution_id=execution_id,
            workflow_id=workflow_id,
            status="completed",
            result_summary=(narrative_summary or "")[:MAX_SUMMARY_CHARS],
            nodes_executed=node_count,
            user_id=user_id,
            workflow_name=display_name,
            archetype=archetype,
            executed_at=now,
            meta=meta,
        )
        rows = [
            NodeResultRow(
                workflow_execution_id=execution_id,
                node_id=node_id,
                node_name=labels.get(node_id, node_id),
                result=result,
                created_at=now,
                updated_at=now,
            )
            for node_id, result in per_node_results.items()
        ]
        try:
            self.store.upsert_workflow_run(run)
        except Exception as exc:
            logger.error(
                "run_record_failed",
                execution_id=execution_id,
                workflow_id=workflow_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        try:
            inserted = self.store.insert_node_results(rows)
        except Exception as exc:
            logger.error(
                "node_results_record_failed",
                execution_id=execution_id,
                rows=len(rows),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("run_recorded", execution_id=execution_id, node_results=inserted)
        return True
