"""Tests for prompt synthesis per workflow archetype."""

from canvasflow.service.archetype import MEDIA_VIDEO, WorkflowMode, classify
from canvasflow.service.graph import NodeKind, normalize_graph
from canvasflow.service.prompts import (
    ARTICLE_UNAVAILABLE,
    ASSISTANT_GENERATION,
    MEDIA_GENERATION,
    STRUCTURED_GENERATION,
    NodeContext,
    PromptSynthesizer,
    render_manifest,
    simulation_generation,
    truncate_text,
)


def _node(node_id, node_type, label, **data):
    return {"id": node_id, "type": node_type, "data": {"label": label, **data}}


def _synthesize(nodes, name="", contexts=None):
    graph = normalize_graph(nodes, [])
    decision = classify(graph, name)
    return PromptSynthesizer().synthesize(decision, graph, contexts or {}, name or "Untitled Workflow")


def test_simulation_generation_scales_with_agents():
    assert simulation_generation(2).max_output_tokens == 4000
    assert simulation_generation(12).max_output_tokens == 5000
    assert simulation_generation(100).max_output_tokens == 8192
    assert simulation_generation(3).temperature == 0.7


def test_generation_payload_uses_api_field_names():
    assert STRUCTURED_GENERATION.to_payload() == {"temperature": 0.3, "topP": 0.9, "maxOutputTokens": 3000}


def test_truncate_text_marks_cut():
    assert truncate_text("abc", 10) == "abc"
    cut = truncate_text("abcdef", 3)
    assert cut.startswith("abc")
    assert "truncated 3 characters" in cut


def test_simulation_manifest_lists_personas_only():
    payload = _synthesize(
        [
            _node("d", "dataNode", "Exam questions"),
            _node("s1", "brainNode", "Student 1"),
            _node("s2", "brainNode", "Student 2"),
            _node("o", "outputNode", "Scores"),
        ],
        name="Midterm",
    )
    assert payload.mode == WorkflowMode.SIMULATION
    assert [entry.node_id for entry in payload.manifest] == ["s1", "s2"]
    assert '"s1"' in payload.text and '"Student 2"' in payload.text
    assert payload.generation == simulation_generation(2)


def test_manifest_ids_are_quoted_verbatim():
    rendered = render_manifest(_synthesize([_node('a"1', "agentNode", "Writer")]).manifest)
    assert 'nodeId: "a\\"1"' in rendered


def test_assistant_prompt_includes_steps_and_inline_content():
    contexts = {"d": NodeContext(node_id="d", label="Notes", excerpt="meeting notes body", source="inline")}
    payload = _synthesize(
        [
            _node("d", "dataNode", "Notes"),
            _node("a", "agentNode", "Summarizer", prompt="Summarize the notes"),
            _node("o", "outputNode", "Report"),
        ],
        name="Weekly",
        contexts=contexts,
    )
    assert payload.mode == WorkflowMode.GENERAL_ASSISTANT
    assert payload.generation == ASSISTANT_GENERATION
    assert "Summarize the notes" in payload.text
    assert "meeting notes body" in payload.text
    assert [entry.node_id for entry in payload.manifest] == ["a"]


def test_article_prompt_without_fetched_text():
    payload = _synthesize(
        [
            _node("n", "newsArticleNode", "Story", url="https://news.example.com/a"),
            _node("x", "analysisNode", "Bias Detector"),
            _node("y", "analysisNode", "Fact Checker"),
        ]
    )
    assert payload.mode == WorkflowMode.MEDIA_IMPACT
    assert ARTICLE_UNAVAILABLE in payload.text
    assert payload.details["articleTextAvailable"] is False
    assert len(payload.manifest) == 3


def test_article_prompt_with_fetched_text():
    contexts = {"n": NodeContext(node_id="n", label="Story", excerpt="The council voted.", source="fetched")}
    payload = _synthesize(
        [
            _node("n", "newsArticleNode", "Story", url="https://news.example.com/a"),
            _node("x", "analysisNode", "Bias Detector"),
            _node("y", "analysisNode", "Fact Checker"),
        ],
        contexts=contexts,
    )
    assert "The council voted." in payload.text
    assert payload.details["articleTextAvailable"] is True


def test_video_prompt_attaches_multimodal_reference():
    nodes = [_node("u", "contentUrlInputNode", "Ad", url="https://youtu.be/vid42")]
    nodes += [_node(f"b{i}", "brainNode", f"Unit {i}") for i in range(5)]
    payload = _synthesize(nodes)
    assert payload.generation == MEDIA_GENERATION
    assert payload.multimodal is not None
    assert payload.multimodal.uri == "https://www.youtube.com/watch?v=vid42"
    assert all(entry.kind == NodeKind.AGENT for entry in payload.manifest)


def test_non_youtube_video_is_sent_as_text_only():
    nodes = [_node("u", "contentUrlInputNode", "Clip", url="https://www.tiktok.com/@brand/video/1")]
    nodes += [_node(f"b{i}", "brainNode", f"Unit {i}") for i in range(5)]
    payload = _synthesize(nodes)
    assert payload.subtype == MEDIA_VIDEO
    assert payload.multimodal is None
    assert "https://www.tiktok.com/@brand/video/1" in payload.text


def test_structured_prompt_excludes_output_nodes_from_manifest():
    payload = _synthesize(
        [
            _node("p", "dataNode", "Patient Upload"),
            _node("r", "referenceDatasetNode", "HCP Reference", subjects="1200 healthy adults"),
            _node("c", "comparisonAgentNode", "Deviation Analysis"),
            _node("g", "brainRegion", "Hippocampus", regionId="hc"),
            _node("o", "outputNode", "Report"),
        ]
    )
    assert payload.mode == WorkflowMode.STRUCTURED_DOMAIN
    assert payload.generation == STRUCTURED_GENERATION
    assert "o" not in [entry.node_id for entry in payload.manifest]
    assert "1200 healthy adults" in payload.text
    assert "Hippocampus" in payload.text
    assert payload.details["regions"] == 1


def test_excerpts_respect_total_budget():
    graph = normalize_graph(
        [_node("d1", "dataNode", "One"), _node("d2", "dataNode", "Two"), _node("a", "agentNode", "Writer")],
        [],
    )
    contexts = {
        "d1": NodeContext(node_id="d1", label="One", excerpt="x" * 80),
        "d2": NodeContext(node_id="d2", label="Two", excerpt="y" * 80),
    }
    synthesizer = PromptSynthesizer(max_excerpt_chars=100, max_total_excerpt_chars=100)
    payload = synthesizer.synthesize(classify(graph, ""), graph, contexts, "Budget")
    assert "x" * 80 in payload.text
    assert "y" * 20 in payload.text
    assert "y" * 21 not in payload.text
