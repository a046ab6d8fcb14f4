from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from canvasflow.logging import get_logger
from canvasflow.service.errors import InvalidGraphError

logger = get_logger(__name__)


class NodeKind(str, Enum):
    DATA_SOURCE = "data_source"
    PREPROCESSING = "preprocessing"
    ANALYSIS = "analysis"
    AGENT = "agent"
    COMPARATOR = "comparator"
    REFERENCE_DATASET = "reference_dataset"
    OUTPUT = "output"
    CUSTOM = "custom"


# Canvas node types emitted by the editor, mapped to execution kinds
CANVAS_TYPE_KINDS: Dict[str, NodeKind] = {
    "dataNode": NodeKind.DATA_SOURCE,
    "data": NodeKind.DATA_SOURCE,
    "contentUrlInputNode": NodeKind.DATA_SOURCE,
    "newsArticleNode": NodeKind.DATA_SOURCE,
    "preprocessingNode": NodeKind.PREPROCESSING,
    "analysisNode": NodeKind.ANALYSIS,
    "analysis": NodeKind.ANALYSIS,
    "brain": NodeKind.ANALYSIS,
    "brainNode": NodeKind.AGENT,
    "brainOrchestratorNode": NodeKind.AGENT,
    "agentNode": NodeKind.AGENT,
    "agent": NodeKind.AGENT,
    "comparisonAgentNode": NodeKind.COMPARATOR,
    "comparison": NodeKind.COMPARATOR,
    "referenceDatasetNode": NodeKind.REFERENCE_DATASET,
    "reference": NodeKind.REFERENCE_DATASET,
    "outputNode": NodeKind.OUTPUT,
    "output": NodeKind.OUTPUT,
}

_KIND_ALIASES: Dict[str, NodeKind] = {
    **{kind.value: kind for kind in NodeKind},
    "datasource": NodeKind.DATA_SOURCE,
    "referencedataset": NodeKind.REFERENCE_DATASET,
}

# Attribute keys that may carry inline file or text content on a node
CONTENT_KEYS = ("fileContent", "content", "text", "sampleData", "rawText", "prompt")


def resolve_kind(node_type: Optional[str], explicit_kind: Optional[str], attributes: Mapping[str, Any]) -> NodeKind:
    """Resolve a node's execution kind.

    An explicit ``kind`` wins, then the ``output_sink`` category, then the
    canvas type table. Unknown types are ``CUSTOM``.
    """
    if explicit_kind:
        normalized = str(explicit_kind).strip().lower().replace("-", "_")
        alias = _KIND_ALIASES.get(normalized) or _KIND_ALIASES.get(normalized.replace("_", ""))
        if alias is not None:
            return alias
    if attributes.get("category") == "output_sink":
        return NodeKind.OUTPUT
    if node_type and node_type in CANVAS_TYPE_KINDS:
        return CANVAS_TYPE_KINDS[node_type]
    return NodeKind.CUSTOM


@dataclass(frozen=True)
class GraphNode:
    id: str
    kind: NodeKind
    label: str
    position: Tuple[float, float] = (0.0, 0.0)
    node_type: str = ""
    attributes: Mapping[str, Any] = field(default_factory=dict)

    @property
    def x(self) -> float:
        return self.position[0]

    @property
    def y(self) -> float:
        return self.position[1]

    @property
    def lowered_label(self) -> str:
        return self.label.lower()

    @property
    def description(self) -> Optional[str]:
        value = self.attributes.get("description") or self.attributes.get("sampleDataDescription")
        return str(value) if value else None

    @property
    def url(self) -> Optional[str]:
        value = self.attributes.get("url") or self.attributes.get("value")
        if isinstance(value, str) and value.strip().lower().startswith(("http://", "https://")):
            return value.strip()
        return None

    @property
    def is_content_input(self) -> bool:
        return self.kind == NodeKind.DATA_SOURCE and (
            self.node_type in ("contentUrlInputNode", "newsArticleNode")
            or self.attributes.get("subType") == "url"
        )

    @property
    def is_news_article(self) -> bool:
        return self.node_type == "newsArticleNode" or self.attributes.get("subType") == "article"

    @property
    def is_region(self) -> bool:
        return self.node_type == "brainRegion" or bool(self.attributes.get("regionId"))

    @property
    def region_name(self) -> str:
        name = self.attributes.get("regionName") or self.label or "Unknown Region"
        abbrev = self.attributes.get("regionAbbreviation")
        return f"{name} ({abbrev})" if abbrev else str(name)

    def inline_content(self) -> Optional[str]:
        for key in CONTENT_KEYS:
            value = self.attributes.get(key)
            if isinstance(value, str) and value.strip():
                return value
            if isinstance(value, (list, dict)) and value:
                return repr(value)
        return None


@dataclass(frozen=True)
class GraphEdge:
    source: str
    target: str
    id: Optional[str] = None


@dataclass(frozen=True)
class Graph:
    nodes: Tuple[GraphNode, ...]
    edges: Tuple[GraphEdge, ...]
    index: Mapping[str, GraphNode]

    def get(self, node_id: str) -> Optional[GraphNode]:
        return self.index.get(node_id)

    def of_kind(self, *kinds: NodeKind) -> List[GraphNode]:
        return [node for node in self.nodes if node.kind in kinds]

    def __len__(self) -> int:
        return len(self.nodes)


def _coerce_position(raw: Any) -> Tuple[float, float]:
    if isinstance(raw, Mapping):
        try:
            return (float(raw.get("x") or 0.0), float(raw.get("y") or 0.0))
        except (TypeError, ValueError):
            return (0.0, 0.0)
    if isinstance(raw, (list, tuple)) and len(raw) == 2:
        try:
            return (float(raw[0]), float(raw[1]))
        except (TypeError, ValueError):
            return (0.0, 0.0)
    return (0.0, 0.0)


def _field(raw: Any, name: str, default: Any = None) -> Any:
    if isinstance(raw, Mapping):
        return raw.get(name, default)
    return getattr(raw, name, default)


def build_node(raw: Any) -> GraphNode:
    """Flatten one canvas node payload into a ``GraphNode``.

    The canvas nests display fields under ``data``; top level ``label`` and
    ``attributes`` are accepted as well.
    """
    node_id = _field(raw, "id")
    if node_id is None or not str(node_id).strip():
        raise InvalidGraphError("node is missing an id", detail={"node": str(raw)[:200]})
    data = _field(raw, "data") or {}
    extra = _field(raw, "attributes") or {}
    attributes: Dict[str, Any] = {**dict(data), **dict(extra)}
    node_type = str(_field(raw, "type") or attributes.get("type") or "")
    label = _field(raw, "label") or attributes.get("label") or attributes.get("name") or node_type or str(node_id)
    kind = resolve_kind(node_type, _field(raw, "kind"), attributes)
    return GraphNode(
        id=str(node_id),
        kind=kind,
        label=str(label),
        position=_coerce_position(_field(raw, "position")),
        node_type=node_type,
        attributes=MappingProxyType(attributes),
    )


def normalize_graph(raw_nodes: Iterable[Any], raw_edges: Optional[Iterable[Any]]) -> Graph:
    """Validate and flatten a raw node/edge payload.

    Raises:
        InvalidGraphError: when the node list is empty, a node has no id,
            or two nodes share an id.
    """
    nodes: List[GraphNode] = [build_node(raw) for raw in (raw_nodes or [])]
    if not nodes:
        raise InvalidGraphError("No nodes provided in workflow")

    index: Dict[str, GraphNode] = {}
    for node in nodes:
        if node.id in index:
            raise InvalidGraphError("duplicate node id", detail={"node_id": node.id})
        index[node.id] = node

    edges: List[GraphEdge] = []
    dropped = 0
    for raw in raw_edges or []:
        source = _field(raw, "source")
        target = _field(raw, "target")
        if source is None or target is None or str(source) not in index or str(target) not in index:
            dropped += 1
            continue
        edge_id = _field(raw, "id")
        edges.append(
            GraphEdge(source=str(source), target=str(target), id=str(edge_id) if edge_id else None)
        )
    if dropped:
        logger.debug("graph_edges_dropped", dropped=dropped, retained=len(edges))

    return Graph(nodes=tuple(nodes), edges=tuple(edges), index=MappingProxyType(index))
