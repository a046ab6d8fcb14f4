"""Select the prompt-synthesis strategy for a workflow graph.

Classification is a pure function of the graph and its display name, so a
run can always be re-classified from its stored inputs.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from canvasflow.service.graph import Graph, GraphNode, NodeKind


class WorkflowMode(str, Enum):
    SIMULATION = "simulation"
    MEDIA_IMPACT = "media_impact"
    GENERAL_ASSISTANT = "general_assistant"
    STRUCTURED_DOMAIN = "structured_domain"


# Subtypes per mode
SIM_TEST = "test"
SIM_AGENTS = "agents"
MEDIA_VIDEO = "video"
MEDIA_ARTICLE = "article"
MEDIA_CONTENT = "content"
REPORT_DEVIATION = "deviation"
REPORT_EVIDENTIARY = "evidentiary"
REPORT_RESEARCH = "research"

PERSONA_WORDS = (
    "student",
    "agent",
    "participant",
    "persona",
    "learner",
    "respondent",
    "customer",
    "user",
    "voter",
    "candidate",
)
NAME_TEST_WORDS = ("test", "exam", "sat", "quiz", "simulation")
DATA_TEST_WORDS = ("question", "exam", "test", "quiz")
ANALYSIS_LABEL_WORDS = ("bias", "fact", "manipulation")
EVIDENTIARY_WORDS = ("tbi", "traumatic")
PATIENT_WORDS = ("patient", "upload")
REFERENCE_LABEL_WORDS = ("hcp", "reference")
COMPARISON_LABEL_WORDS = ("deviation", "comparison")

MEDIA_MIN_AGENTS = 5
MEDIA_MIN_ANALYSIS = 2
SIMULATION_MIN_PERSONAS = 2

_YOUTUBE_ID = re.compile(r"(?:youtube\.com/(?:watch\?v=|shorts/)|youtu\.be/)([^&?\s/]+)")
_VIDEO_HOSTS = ("youtube.com", "youtu.be", "tiktok.com", "vimeo.com")
_INFLECTIONS = ("", "s", "es", "ing", "ed", "er", "ers", "zes")


def _words(text: str) -> List[str]:
    return re.findall(r"[a-z0-9]+", text.lower())


def _has_word(text: str, vocabulary: Iterable[str]) -> bool:
    """Whole-word match that also accepts common inflections (``testing``, ``quizzes``).

    Only listed suffixes count, so ``sat`` does not fire on ``saturation``.
    """
    words = set(_words(text))
    return any(f"{term}{suffix}" in words for term in vocabulary for suffix in _INFLECTIONS)


def _contains(text: str, vocabulary: Iterable[str]) -> bool:
    lowered = text.lower()
    return any(term in lowered for term in vocabulary)


def extract_youtube_id(url: str) -> Optional[str]:
    match = _YOUTUBE_ID.search(url or "")
    return match.group(1) if match else None


def is_video_url(url: str) -> bool:
    lowered = (url or "").lower()
    return any(host in lowered for host in _VIDEO_HOSTS)


def is_persona_agent(node: GraphNode) -> bool:
    if node.kind != NodeKind.AGENT:
        return False
    return node.node_type == "brainOrchestratorNode" or _has_word(node.label, PERSONA_WORDS)


def is_analysis_processor(node: GraphNode) -> bool:
    if node.kind in (NodeKind.ANALYSIS, NodeKind.PREPROCESSING):
        return True
    return _contains(node.label, ANALYSIS_LABEL_WORDS)


@dataclass(frozen=True)
class ArchetypeDecision:
    mode: WorkflowMode
    subtype: str
    agents: Tuple[GraphNode, ...] = ()
    data_sources: Tuple[GraphNode, ...] = ()
    content_inputs: Tuple[GraphNode, ...] = ()
    reasons: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def label(self) -> str:
        return f"{self.mode.value}:{self.subtype}"


def _simulation(graph: Graph, display_name: str) -> Optional[ArchetypeDecision]:
    personas = tuple(node for node in graph.nodes if is_persona_agent(node))
    data_sources = tuple(graph.of_kind(NodeKind.DATA_SOURCE))
    name_is_test = _has_word(display_name, NAME_TEST_WORDS)
    by_personas = len(personas) >= SIMULATION_MIN_PERSONAS and bool(data_sources)
    by_name = name_is_test and bool(personas)
    if not (by_personas or by_name):
        return None
    data_is_test = any(_has_word(node.label, DATA_TEST_WORDS) for node in data_sources)
    subtype = SIM_TEST if (name_is_test or data_is_test) else SIM_AGENTS
    reasons = []
    if by_personas:
        reasons.append("persona_agents_with_data")
    if by_name:
        reasons.append("test_vocabulary_in_name")
    return ArchetypeDecision(
        mode=WorkflowMode.SIMULATION,
        subtype=subtype,
        agents=personas,
        data_sources=data_sources,
        reasons=tuple(reasons),
    )


def _media(graph: Graph) -> Optional[ArchetypeDecision]:
    content_inputs = tuple(node for node in graph.nodes if node.is_content_input)
    if not content_inputs:
        return None
    agents = tuple(graph.of_kind(NodeKind.AGENT))
    processors = [node for node in graph.nodes if is_analysis_processor(node)]
    if len(agents) < MEDIA_MIN_AGENTS and len(processors) < MEDIA_MIN_ANALYSIS:
        return None
    url_inputs = [node for node in content_inputs if not node.is_news_article]
    primary = url_inputs[0] if url_inputs else content_inputs[0]
    if not url_inputs:
        subtype = MEDIA_ARTICLE
    elif primary.url and is_video_url(primary.url):
        subtype = MEDIA_VIDEO
    else:
        subtype = MEDIA_CONTENT
    return ArchetypeDecision(
        mode=WorkflowMode.MEDIA_IMPACT,
        subtype=subtype,
        agents=agents,
        data_sources=tuple(graph.of_kind(NodeKind.DATA_SOURCE)),
        content_inputs=content_inputs,
        reasons=("content_input_with_processing",),
    )


def _is_reference(node: GraphNode) -> bool:
    return node.kind == NodeKind.REFERENCE_DATASET or _contains(node.label, REFERENCE_LABEL_WORDS)


def _is_comparator(node: GraphNode) -> bool:
    return node.kind == NodeKind.COMPARATOR or _contains(node.label, COMPARISON_LABEL_WORDS)


def report_shape(graph: Graph) -> Tuple[str, bool]:
    """Return the structured report shape and whether evidentiary focus applies."""
    references = [node for node in graph.nodes if _is_reference(node)]
    comparators = [node for node in graph.nodes if _is_comparator(node)]
    patients = [node for node in graph.nodes if _contains(node.label, PATIENT_WORDS)]
    evidentiary = any(_contains(node.label, EVIDENTIARY_WORDS) for node in graph.nodes)
    if comparators or (patients and references):
        return REPORT_DEVIATION, evidentiary
    if evidentiary:
        return REPORT_EVIDENTIARY, True
    return REPORT_RESEARCH, False


def classify(graph: Graph, display_name: str = "") -> ArchetypeDecision:
    """Pick exactly one workflow mode, in priority order."""
    decision = _simulation(graph, display_name or "")
    if decision is not None:
        return decision

    decision = _media(graph)
    if decision is not None:
        return decision

    agents = tuple(graph.of_kind(NodeKind.AGENT))
    domain_nodes = graph.of_kind(NodeKind.REFERENCE_DATASET, NodeKind.COMPARATOR)
    if agents and not domain_nodes:
        return ArchetypeDecision(
            mode=WorkflowMode.GENERAL_ASSISTANT,
            subtype="pipeline",
            agents=agents,
            data_sources=tuple(graph.of_kind(NodeKind.DATA_SOURCE)),
            reasons=("agents_without_domain_nodes",),
        )

    shape, _ = report_shape(graph)
    return ArchetypeDecision(
        mode=WorkflowMode.STRUCTURED_DOMAIN,
        subtype=shape,
        agents=agents,
        data_sources=tuple(graph.of_kind(NodeKind.DATA_SOURCE)),
        reasons=("default",),
    )
