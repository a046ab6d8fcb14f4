from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from canvasflow.logging import get_logger
from canvasflow.service.graph import Graph, GraphNode, NodeKind

logger = get_logger(__name__)

# Primary-axis distance (canvas px) above which a node starts a new wave
DEFAULT_COLUMN_GAP = 150.0
DEFAULT_MAX_WORKERS = 8

STRATEGY_TOPOLOGICAL = "topological"
STRATEGY_POSITIONAL = "positional"


@dataclass(frozen=True)
class ExecutionWave:
    index: int
    node_ids: Tuple[str, ...]


@dataclass(frozen=True)
class ExecutionPlan:
    waves: Tuple[ExecutionWave, ...]
    barrier: Tuple[str, ...]
    strategy: str

    def wave_ids(self) -> List[List[str]]:
        return [list(wave.node_ids) for wave in self.waves]

    @property
    def scheduled_ids(self) -> List[str]:
        ids = [node_id for wave in self.waves for node_id in wave.node_ids]
        return ids + list(self.barrier)


def _layout_key(node: GraphNode) -> Tuple[float, float, str]:
    return (node.x, node.y, node.id)


class WaveScheduler:
    """Partition a graph into execution waves plus a final output barrier.

    ``strategy="auto"`` layers the graph with Kahn's algorithm when the
    edges among non-output nodes form an acyclic graph that touches every
    node, and otherwise approximates dependency order from canvas position.
    ``strategy="positional"`` always uses the position heuristic.
    """

    def __init__(self, *, column_gap: float = DEFAULT_COLUMN_GAP, strategy: str = "auto") -> None:
        if strategy not in ("auto", STRATEGY_POSITIONAL):
            raise ValueError(f"unknown scheduler strategy: {strategy}")
        self.column_gap = column_gap
        self.strategy = strategy

    def plan(self, graph: Graph) -> ExecutionPlan:
        terminal = sorted(graph.of_kind(NodeKind.OUTPUT), key=_layout_key)
        non_terminal = [node for node in graph.nodes if node.kind != NodeKind.OUTPUT]
        barrier = tuple(node.id for node in terminal)

        layers: Optional[List[List[GraphNode]]] = None
        strategy = STRATEGY_POSITIONAL
        if self.strategy == "auto":
            layers = self._topological_layers(graph, non_terminal)
            if layers is not None:
                strategy = STRATEGY_TOPOLOGICAL
        if layers is None:
            layers = self._positional_layers(non_terminal)

        waves = tuple(
            ExecutionWave(index=i, node_ids=tuple(node.id for node in layer))
            for i, layer in enumerate(layers)
        )
        logger.debug(
            "wave_plan_built",
            strategy=strategy,
            waves=len(waves),
            barrier=len(barrier),
        )
        return ExecutionPlan(waves=waves, barrier=barrier, strategy=strategy)

    def _positional_layers(self, nodes: Sequence[GraphNode]) -> List[List[GraphNode]]:
        ordered = sorted(nodes, key=_layout_key)
        layers: List[List[GraphNode]] = []
        previous_x: Optional[float] = None
        for node in ordered:
            if previous_x is None or node.x - previous_x > self.column_gap:
                layers.append([])
            layers[-1].append(node)
            previous_x = node.x
        return layers

    @staticmethod
    def _topological_layers(graph: Graph, nodes: Sequence[GraphNode]) -> Optional[List[List[GraphNode]]]:
        """Kahn layering over edges among ``nodes``; None on cycles or orphans."""
        if not nodes:
            return []
        ids = {node.id for node in nodes}
        if len(ids) > 1:
            touched = {edge.source for edge in graph.edges} | {edge.target for edge in graph.edges}
            if not ids <= touched:
                return None

        indegree: Dict[str, int] = {node_id: 0 for node_id in ids}
        successors: Dict[str, List[str]] = {node_id: [] for node_id in ids}
        for edge in graph.edges:
            if edge.source in ids and edge.target in ids:
                successors[edge.source].append(edge.target)
                indegree[edge.target] += 1

        layers: List[List[GraphNode]] = []
        current = [node_id for node_id in ids if indegree[node_id] == 0]
        placed = 0
        while current:
            layer = sorted((graph.index[node_id] for node_id in current), key=_layout_key)
            layers.append(layer)
            placed += len(layer)
            upcoming: List[str] = []
            for node_id in current:
                for target in successors[node_id]:
                    indegree[target] -= 1
                    if indegree[target] == 0:
                        upcoming.append(target)
            current = upcoming
        if placed != len(ids):
            return None
        return layers


@dataclass
class NodeOutcome:
    node_id: str
    wave: int
    status: str
    output: Any = None
    error: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    def trace_entry(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "wave": self.wave,
            "status": self.status,
            "duration_ms": round(self.duration_ms, 2),
            "error": self.error,
        }


@dataclass
class WaveReport:
    outcomes: Dict[str, NodeOutcome] = field(default_factory=dict)

    @property
    def failed_nodes(self) -> List[str]:
        return [node_id for node_id, outcome in self.outcomes.items() if not outcome.ok]

    def outputs(self) -> Dict[str, Any]:
        return {node_id: outcome.output for node_id, outcome in self.outcomes.items() if outcome.ok}

    def trace(self) -> List[Dict[str, Any]]:
        return [outcome.trace_entry() for outcome in self.outcomes.values()]


NodeHandler = Callable[[GraphNode], Awaitable[Any]]


class WaveExecutor:
    """Run a plan wave by wave with bounded concurrency inside each wave.

    Every node of a wave runs as its own task; the next wave starts only
    after each task has completed or recorded a failure. Output nodes run
    last as a final barrier wave.
    """

    def __init__(self, *, max_workers: int = DEFAULT_MAX_WORKERS) -> None:
        self.max_workers = max(1, max_workers)

    async def execute(self, plan: ExecutionPlan, graph: Graph, handler: NodeHandler) -> WaveReport:
        report = WaveReport()
        semaphore = asyncio.Semaphore(self.max_workers)
        stages: List[Tuple[int, Sequence[str]]] = [(wave.index, wave.node_ids) for wave in plan.waves]
        if plan.barrier:
            stages.append((len(plan.waves), plan.barrier))

        for wave_index, node_ids in stages:
            started = time.monotonic()
            outcomes = await asyncio.gather(
                *(self._run_node(graph.index[node_id], wave_index, handler, semaphore) for node_id in node_ids)
            )
            for outcome in outcomes:
                report.outcomes[outcome.node_id] = outcome
            logger.debug(
                "wave_completed",
                wave=wave_index,
                nodes=len(node_ids),
                failed=sum(1 for outcome in outcomes if not outcome.ok),
                barrier=wave_index == len(plan.waves),
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
        return report

    async def _run_node(
        self,
        node: GraphNode,
        wave_index: int,
        handler: NodeHandler,
        semaphore: asyncio.Semaphore,
    ) -> NodeOutcome:
        async with semaphore:
            started = time.monotonic()
            try:
                output = await handler(node)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    "wave_node_failed",
                    node_id=node.id,
                    wave=wave_index,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return NodeOutcome(
                    node_id=node.id,
                    wave=wave_index,
                    status="failed",
                    error=str(exc) or type(exc).__name__,
                    duration_ms=(time.monotonic() - started) * 1000,
                )
            return NodeOutcome(
                node_id=node.id,
                wave=wave_index,
                status="completed",
                output=output,
                duration_ms=(time.monotonic() - started) * 1000,
            )
