from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from canvasflow.logging import get_logger
from canvasflow.service.archetype import (
    MEDIA_ARTICLE,
    MEDIA_VIDEO,
    REPORT_DEVIATION,
    REPORT_EVIDENTIARY,
    SIM_TEST,
    ArchetypeDecision,
    WorkflowMode,
    extract_youtube_id,
    is_analysis_processor,
    report_shape,
)
from canvasflow.service.graph import Graph, GraphNode, NodeKind

logger = get_logger(__name__)

MAX_EXCERPT_CHARS = 10_000
MAX_TOTAL_EXCERPT_CHARS = 20_000
MAX_OUTPUT_TOKENS_CEILING = 8192
SIMULATION_BASE_TOKENS = 4000
SIMULATION_TOKENS_PER_EXTRA_AGENT = 250
SIMULATION_AGENTS_IN_BASE = 8

ARTICLE_UNAVAILABLE = "[Article text not available - analyze based on URL context]"


@dataclass(frozen=True)
class GenerationConfig:
    temperature: float
    top_p: float
    max_output_tokens: int

    def to_payload(self) -> Dict[str, Any]:
        return {
            "temperature": self.temperature,
            "topP": self.top_p,
            "maxOutputTokens": self.max_output_tokens,
        }


STRUCTURED_GENERATION = GenerationConfig(temperature=0.3, top_p=0.9, max_output_tokens=3000)
MEDIA_GENERATION = GenerationConfig(temperature=0.25, top_p=0.9, max_output_tokens=3000)
ASSISTANT_GENERATION = GenerationConfig(temperature=0.4, top_p=0.9, max_output_tokens=4000)


def simulation_generation(agent_count: int) -> GenerationConfig:
    """Higher temperature, token budget scaled to the number of simulated agents."""
    extra = max(0, agent_count - SIMULATION_AGENTS_IN_BASE) * SIMULATION_TOKENS_PER_EXTRA_AGENT
    return GenerationConfig(
        temperature=0.7,
        top_p=0.9,
        max_output_tokens=min(MAX_OUTPUT_TOKENS_CEILING, SIMULATION_BASE_TOKENS + extra),
    )


@dataclass(frozen=True)
class ManifestEntry:
    node_id: str
    label: str
    kind: NodeKind = NodeKind.CUSTOM


@dataclass(frozen=True)
class MultimodalRef:
    uri: str
    mime_type: str = "video/mp4"


@dataclass(frozen=True)
class NodeContext:
    """Context prepared for one node during wave execution."""

    node_id: str
    label: str
    excerpt: Optional[str] = None
    source_url: Optional[str] = None
    source: str = "none"


@dataclass(frozen=True)
class PromptPayload:
    mode: WorkflowMode
    subtype: str
    text: str
    manifest: Tuple[ManifestEntry, ...]
    generation: GenerationConfig
    multimodal: Optional[MultimodalRef] = None
    details: Mapping[str, Any] = field(default_factory=dict)


def truncate_text(text: str, limit: int) -> str:
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n[... truncated {len(text) - limit} characters]"


def build_manifest(nodes: Sequence[GraphNode]) -> Tuple[ManifestEntry, ...]:
    return tuple(ManifestEntry(node_id=node.id, label=node.label, kind=node.kind) for node in nodes)


def render_manifest(manifest: Sequence[ManifestEntry]) -> str:
    return "\n".join(
        f"  - nodeId: {json.dumps(entry.node_id)}, nodeName: {json.dumps(entry.label)}"
        for entry in manifest
    )


def _bullets(nodes: Sequence[GraphNode], default: str) -> str:
    return "\n".join(f"- {node.label}: {node.description or default}" for node in nodes)


def _response_contract(entry_fields: str) -> str:
    return (
        "## Output Format\n"
        "Your ENTIRE response MUST be a single JSON object with two top-level keys:\n"
        '- "summary": a markdown string with the full narrative report\n'
        '- "perNodeResults": an array with one object per node in the manifest above. '
        'Each object MUST include "nodeId" (the EXACT nodeId from the manifest) and '
        f'"nodeName", plus {entry_fields}.\n'
        "Do not invent node ids and do not omit nodes from the manifest."
    )


class PromptSynthesizer:
    """Build the single instruction payload of a run for its archetype."""

    def __init__(
        self,
        *,
        max_excerpt_chars: int = MAX_EXCERPT_CHARS,
        max_total_excerpt_chars: int = MAX_TOTAL_EXCERPT_CHARS,
    ) -> None:
        self.max_excerpt_chars = max_excerpt_chars
        self.max_total_excerpt_chars = max_total_excerpt_chars

    def synthesize(
        self,
        decision: ArchetypeDecision,
        graph: Graph,
        contexts: Mapping[str, NodeContext],
        display_name: str,
    ) -> PromptPayload:
        if decision.mode == WorkflowMode.SIMULATION:
            payload = self._simulation(decision, graph, contexts, display_name)
        elif decision.mode == WorkflowMode.MEDIA_IMPACT:
            payload = self._media(decision, graph, contexts)
        elif decision.mode == WorkflowMode.GENERAL_ASSISTANT:
            payload = self._assistant(decision, graph, contexts, display_name)
        else:
            payload = self._structured(decision, graph, contexts)
        logger.debug(
            "prompt_synthesized",
            mode=payload.mode.value,
            subtype=payload.subtype,
            manifest=len(payload.manifest),
            prompt_chars=len(payload.text),
            multimodal=payload.multimodal is not None,
        )
        return payload

    # -- shared sections ---------------------------------------------------

    def _excerpt_section(self, graph: Graph, contexts: Mapping[str, NodeContext]) -> str:
        budget = self.max_total_excerpt_chars
        blocks: List[str] = []
        for node in graph.of_kind(NodeKind.DATA_SOURCE):
            context = contexts.get(node.id)
            if context is None or not context.excerpt or budget <= 0:
                continue
            limit = min(self.max_excerpt_chars, budget)
            excerpt = truncate_text(context.excerpt, limit)
            budget -= min(len(context.excerpt), limit)
            blocks.append(f"### {node.label}\n```\n{excerpt}\n```")
        if not blocks:
            return ""
        return "## Attached Content\n" + "\n\n".join(blocks) + "\n\n"

    @staticmethod
    def _manifest_section(manifest: Sequence[ManifestEntry], heading: str) -> str:
        return f"## {heading} (Use these EXACT nodeIds in your response)\n{render_manifest(manifest)}\n\n"

    # -- simulation ----------------------------------------------------------

    def _simulation(
        self,
        decision: ArchetypeDecision,
        graph: Graph,
        contexts: Mapping[str, NodeContext],
        display_name: str,
    ) -> PromptPayload:
        agents = list(decision.agents)
        manifest = build_manifest(agents)
        data_node = decision.data_sources[0] if decision.data_sources else None
        analysis = next((n for n in graph.nodes if n.kind == NodeKind.ANALYSIS), None)
        output = next((n for n in graph.nodes if n.kind == NodeKind.OUTPUT), None)
        data_label = data_node.label if data_node else "Input Data"
        data_details = (data_node.description if data_node else None) or "Sample dataset"

        header = (
            f"**Workflow Name**: {display_name}\n"
            f"**Data Source**: {data_label}\n"
            f"**Data Details**: {data_details}\n"
        )
        if decision.subtype == SIM_TEST:
            text = (
                f"You are simulating {len(agents)} participants taking a test/exam.\n\n"
                "## Simulation Context\n"
                + header
                + f"**Number of Participants**: {len(agents)}\n"
                + (f"**Analysis**: {analysis.label}\n" if analysis else "")
                + (f"**Output**: {output.label}\n" if output else "")
                + "\n"
                + self._manifest_section(manifest, "Participant List")
                + self._excerpt_section(graph, contexts)
                + "## Your Task: Run the Simulation\n"
                "1. Generate a realistic set of test questions from the data source "
                "(multiple choice, varied difficulty, several sections).\n"
                "2. Simulate each participant taking the test with individual strengths, "
                "pacing and natural score variation.\n"
                "3. Aggregate: class average, score distribution, commonly missed question "
                "types and recommendations.\n\n"
                + _response_contract(
                    '"score" (0-100), per-section scores, "timeSpent" (minutes), '
                    '"questionsAnswered", "strengths", "weaknesses" and "performanceNotes"'
                )
                + "\n\nMake the simulation feel realistic with varied, believable performances."
            )
        else:
            text = (
                f"You are simulating {len(agents)} agents processing data in parallel.\n\n"
                "## Simulation Context\n"
                + header
                + f"**Number of Agents**: {len(agents)}\n\n"
                + self._manifest_section(manifest, "Agent List")
                + self._excerpt_section(graph, contexts)
                + "## Your Task\n"
                "1. Generate appropriate sample data based on the data source description.\n"
                "2. Simulate each agent processing the data with realistic variation.\n"
                "3. Return results for each agent with its unique processing outcome.\n\n"
                + _response_contract(
                    '"status", "processingTime", "result" (agent-specific object) and "insights"'
                )
                + "\n\nMake results realistic and varied across agents."
            )
        return PromptPayload(
            mode=decision.mode,
            subtype=decision.subtype,
            text=text,
            manifest=manifest,
            generation=simulation_generation(len(agents)),
        )

    # -- media ---------------------------------------------------------------

    def _media(
        self,
        decision: ArchetypeDecision,
        graph: Graph,
        contexts: Mapping[str, NodeContext],
    ) -> PromptPayload:
        url_inputs = [n for n in decision.content_inputs if not n.is_news_article]
        primary = url_inputs[0] if url_inputs else decision.content_inputs[0]
        url = primary.url or ""
        title = (
            primary.attributes.get("videoTitle")
            or primary.attributes.get("title")
            or primary.label
            or "Submitted Content"
        )
        reaction_fields = (
            '"engagement" (1-10), "primaryReaction", "wouldShare" ("Yes" or "No") and "keyInsight"'
        )

        if decision.subtype == MEDIA_ARTICLE:
            manifest = build_manifest(graph.nodes)
            context = contexts.get(primary.id)
            article_text = context.excerpt if context and context.excerpt else None
            sample = truncate_text(article_text, MAX_EXCERPT_CHARS) if article_text else ARTICLE_UNAVAILABLE
            modules = [n for n in graph.nodes if is_analysis_processor(n) or n.kind == NodeKind.AGENT]
            module_list = "\n".join(f"- {n.label}" for n in modules) or "- General Content Analyzer"
            text = (
                "You are an advanced media bias and content impact analyst powered by a "
                "multi-node AI pipeline.\n\n"
                f"## Analysis Pipeline Modules\n{module_list}\n\n"
                f"## Article To Analyze\n**Title**: {title}\n**URL**: {url or 'n/a'}\n\n"
                f"## Article Text\n{sample}\n\n"
                + self._manifest_section(manifest, "Node Manifest")
                + "## Your Task\n"
                "Analyze the article with each configured module and cover:\n"
                "1. Executive summary: bias rating, credibility score (0-100), key findings.\n"
                "2. Bias detection: leaning indicators, loaded language, source diversity.\n"
                "3. Manipulation tactics: emotional levers, logical fallacies, misleading data.\n"
                "4. Fact check: verifiable claims, accuracy, missing context.\n"
                "5. Audience impact: target demographic, likely response, share potential.\n\n"
                + _response_contract(reaction_fields)
                + "\n\nBe specific. Quote the article directly when identifying bias or manipulation."
            )
            return PromptPayload(
                mode=decision.mode,
                subtype=decision.subtype,
                text=text,
                manifest=manifest,
                generation=MEDIA_GENERATION,
                details={"url": url, "articleTextAvailable": article_text is not None},
            )

        agents = list(decision.agents)
        manifest = build_manifest(agents)
        references = graph.of_kind(NodeKind.REFERENCE_DATASET)
        reference_section = (
            f"## Reference Baselines\n{_bullets(references, 'Normative comparison data')}\n\n"
            if references
            else ""
        )
        text = (
            f"You are an advanced neuromarketing AI simulating {len(agents)} distinct brain "
            "processing units analyzing content impact.\n\n"
            f"## Content Being Analyzed\n**URL**: {url or 'n/a'}\n**Title**: {title}\n\n"
            + self._manifest_section(manifest, "Brain Node Manifest")
            + f"## Processing Units\n{_bullets(agents, 'Evaluating the content response')}\n\n"
            + reference_section
            + self._excerpt_section(graph, contexts)
            + "## Your Task\n"
            "Analyze the ACTUAL content from the perspective of every unit above and cover:\n"
            "1. Executive summary: engagement score (0-100), strengths, weaknesses, viral potential.\n"
            "2. Emotional response profile and emotional arc.\n"
            "3. Attention: hook effectiveness, drop-off risks.\n"
            "4. Reward, memory and recall predictions.\n"
            "5. Social sharing and call-to-action effectiveness.\n"
            "6. Top optimization recommendations.\n\n"
            + _response_contract(reaction_fields)
            + "\n\nBE SPECIFIC. Reference actual content elements rather than assumptions."
        )
        multimodal = None
        if decision.subtype == MEDIA_VIDEO:
            video_id = extract_youtube_id(url)
            if video_id:
                multimodal = MultimodalRef(uri=f"https://www.youtube.com/watch?v={video_id}")
        return PromptPayload(
            mode=decision.mode,
            subtype=decision.subtype,
            text=text,
            manifest=manifest,
            generation=MEDIA_GENERATION,
            multimodal=multimodal,
            details={"url": url},
        )

    # -- general assistant -----------------------------------------------------

    def _assistant(
        self,
        decision: ArchetypeDecision,
        graph: Graph,
        contexts: Mapping[str, NodeContext],
        display_name: str,
    ) -> PromptPayload:
        agents = list(decision.agents)
        manifest = build_manifest(agents)
        steps = []
        for position, node in enumerate(graph.nodes, start=1):
            if node.kind == NodeKind.OUTPUT:
                continue
            instruction = node.attributes.get("prompt") or node.attributes.get("instructions") or node.description
            steps.append(f"{position}. [{node.kind.value}] {node.label}" + (f": {instruction}" if instruction else ""))
        outputs = graph.of_kind(NodeKind.OUTPUT)
        text = (
            "You are a careful assistant executing a user-defined pipeline of agents.\n\n"
            f"## Workflow\n**Name**: {display_name}\n\n"
            "## Pipeline Steps\n" + "\n".join(steps) + "\n\n"
            + (f"## Expected Outputs\n{_bullets(outputs, 'Final deliverable')}\n\n" if outputs else "")
            + self._excerpt_section(graph, contexts)
            + self._manifest_section(manifest, "Agent Manifest")
            + "## Your Task\n"
            "Carry out each agent's instruction in pipeline order, passing each step's "
            "findings to the next, and produce a concise final report.\n\n"
            + _response_contract('"status" and "output" (the agent\'s result)')
        )
        return PromptPayload(
            mode=decision.mode,
            subtype=decision.subtype,
            text=text,
            manifest=manifest,
            generation=ASSISTANT_GENERATION,
        )

    # -- structured domain -------------------------------------------------------

    def _structured(
        self,
        decision: ArchetypeDecision,
        graph: Graph,
        contexts: Mapping[str, NodeContext],
    ) -> PromptPayload:
        shape, evidentiary = report_shape(graph)
        manifest = build_manifest([n for n in graph.nodes if n.kind != NodeKind.OUTPUT])
        regions = [n for n in graph.nodes if n.is_region]
        references = [n for n in graph.nodes if n.kind == NodeKind.REFERENCE_DATASET]
        comparators = graph.of_kind(NodeKind.COMPARATOR)
        data_nodes = graph.of_kind(NodeKind.DATA_SOURCE)
        analyses = graph.of_kind(NodeKind.ANALYSIS, NodeKind.PREPROCESSING)

        region_text = "\n".join(f"- {n.region_name}" for n in regions)
        reference_text = "\n".join(
            f"- {n.label}" + (f": {n.attributes.get('subjects') or n.description}" if (n.attributes.get("subjects") or n.description) else "")
            for n in references
        )
        comparison_text = "\n".join(
            f"- {n.label} ({n.attributes.get('comparisonType') or 'deviation'} analysis)" for n in comparators
        )

        sections: List[str] = []
        if shape == REPORT_DEVIATION:
            sections.append(
                "You are a clinical neuroscience assistant specializing in individual patient "
                "analysis against normative databases.\n\n"
                "## Workflow Type: Patient vs. Control Group Comparison\n"
            )
            if reference_text:
                sections.append(f"## Reference Datasets (Healthy Controls)\n{reference_text}\n")
            if region_text:
                sections.append(f"## Target Brain Regions\n{region_text}\n\nFocus the deviation analysis on these regions.\n")
            if comparison_text:
                sections.append(f"## Comparison Methods\n{comparison_text}\n")
            if evidentiary:
                sections.append(
                    "## TBI Analysis Mode\nFocus on white matter tract integrity, commonly affected "
                    "regions (corpus callosum, fronto-temporal connections), axonal shearing patterns "
                    "and the functional implications of detected deviations.\n"
                )
            sections.append(
                "## Task: Generate Patient Deviation Report\n"
                "1. Executive summary of key findings.\n"
                "2. Deviation analysis with z-scores and percentile rankings per region or tract.\n"
                "3. Clinical implications.\n"
                "4. Comparison to published literature.\n"
                "5. Recommended follow-up assessments.\n"
                "Write for patients (plain language), clinicians (next steps) and legal review "
                "(cite statistical methods).\n"
            )
        elif shape == REPORT_EVIDENTIARY:
            sections.append(
                "You are a forensic neuroscience expert specializing in Traumatic Brain Injury "
                "documentation and analysis.\n\n## Workflow Type: TBI Evidence Generation\n"
            )
            if region_text:
                sections.append(f"## Target Brain Regions\n{region_text}\n")
            if reference_text:
                sections.append(f"## Normative Reference\n{reference_text}\n")
            sections.append(
                "## Task: Generate TBI Evidence Report\n"
                "1. Injury pattern analysis for the specified regions.\n"
                "2. White matter assessment of the major fiber bundles.\n"
                "3. Deviation quantification versus the healthy population.\n"
                "4. Functional correlates of the structural findings.\n"
                "5. Causation opinion relative to the reported mechanism of injury.\n"
                "6. Prognosis based on deviation severity.\n"
                "Cite relevant literature and use precise statistical language.\n"
            )
        else:
            sections.append("You are a neuroscience research assistant specializing in brain imaging analysis.\n")
            if region_text:
                sections.append(
                    f"## Target Brain Regions\n{region_text}\n\nProvide region-specific insights, known "
                    "functions, connectivity patterns and relevant research findings.\n"
                )
            if data_nodes:
                sections.append(
                    f"## Data Sources\n{_bullets(data_nodes, 'No description')}\n\nConsider data quality, "
                    "preprocessing requirements and compatibility with the target regions.\n"
                )
            if analyses:
                sections.append(f"## Analysis Pipeline\n{_bullets(analyses, 'Neural analysis')}\n")
            sections.append(
                "## Task\n"
                "1. Region overview.\n"
                "2. Analysis recommendations.\n"
                "3. Expected findings based on the literature.\n"
                "4. Quality considerations and likely artifacts.\n"
                "5. Related research and datasets.\n"
            )

        text = (
            "\n".join(sections)
            + "\n"
            + self._excerpt_section(graph, contexts)
            + self._manifest_section(manifest, "Node Manifest")
            + _response_contract('"status" and "findings" (what this node contributes to the report)')
        )
        return PromptPayload(
            mode=decision.mode,
            subtype=shape,
            text=text,
            manifest=manifest,
            generation=STRUCTURED_GENERATION,
            details={"evidentiaryFocus": evidentiary, "regions": len(regions)},
        )
