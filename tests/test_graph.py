"""Tests for canvas payload normalization."""

import pytest

from canvasflow.service.errors import InvalidGraphError
from canvasflow.service.graph import NodeKind, build_node, normalize_graph, resolve_kind


def _node(node_id, node_type="agentNode", label=None, x=0, y=0, **data):
    payload = {"id": node_id, "type": node_type, "position": {"x": x, "y": y}, "data": dict(data)}
    if label is not None:
        payload["data"]["label"] = label
    return payload


class TestResolveKind:
    def test_canvas_types_map_to_kinds(self):
        assert resolve_kind("dataNode", None, {}) == NodeKind.DATA_SOURCE
        assert resolve_kind("newsArticleNode", None, {}) == NodeKind.DATA_SOURCE
        assert resolve_kind("brainNode", None, {}) == NodeKind.AGENT
        assert resolve_kind("comparisonAgentNode", None, {}) == NodeKind.COMPARATOR
        assert resolve_kind("referenceDatasetNode", None, {}) == NodeKind.REFERENCE_DATASET
        assert resolve_kind("outputNode", None, {}) == NodeKind.OUTPUT

    def test_unknown_type_is_custom(self):
        assert resolve_kind("brainRegion", None, {}) == NodeKind.CUSTOM
        assert resolve_kind(None, None, {}) == NodeKind.CUSTOM

    def test_explicit_kind_wins(self):
        assert resolve_kind("dataNode", "agent", {}) == NodeKind.AGENT
        assert resolve_kind("dataNode", "reference-dataset", {}) == NodeKind.REFERENCE_DATASET

    def test_output_sink_category(self):
        assert resolve_kind("customNode", None, {"category": "output_sink"}) == NodeKind.OUTPUT


class TestBuildNode:
    def test_label_and_attributes_flattened(self):
        node = build_node(_node("a", "dataNode", label="Scores", description="Exam scores", x=10, y=20))
        assert node.label == "Scores"
        assert node.description == "Exam scores"
        assert node.position == (10.0, 20.0)
        assert node.kind == NodeKind.DATA_SOURCE

    def test_label_falls_back_to_type_then_id(self):
        assert build_node({"id": "n1", "type": "agentNode"}).label == "agentNode"
        assert build_node({"id": "n1"}).label == "n1"

    def test_attributes_are_read_only(self):
        node = build_node(_node("a", label="A"))
        with pytest.raises(TypeError):
            node.attributes["label"] = "B"

    def test_url_requires_http_scheme(self):
        assert build_node(_node("a", "contentUrlInputNode", url="https://example.com/x")).url == "https://example.com/x"
        assert build_node(_node("a", "contentUrlInputNode", url="ftp://example.com/x")).url is None

    def test_inline_content(self):
        node = build_node(_node("a", "dataNode", fileContent="q1,q2\n1,2"))
        assert node.inline_content() == "q1,q2\n1,2"
        assert build_node(_node("b", "dataNode")).inline_content() is None

    def test_region_name_with_abbreviation(self):
        node = build_node(
            {"id": "r", "type": "brainRegion", "data": {"regionId": "hc", "regionName": "Hippocampus", "regionAbbreviation": "HC"}}
        )
        assert node.is_region
        assert node.region_name == "Hippocampus (HC)"


class TestNormalizeGraph:
    def test_empty_node_set_rejected(self):
        with pytest.raises(InvalidGraphError) as excinfo:
            normalize_graph([], [])
        assert excinfo.value.status_code == 400
        assert excinfo.value.error_code == "invalid_graph"

    def test_missing_id_rejected(self):
        with pytest.raises(InvalidGraphError):
            normalize_graph([{"type": "agentNode"}], [])

    def test_duplicate_id_rejected(self):
        with pytest.raises(InvalidGraphError):
            normalize_graph([_node("a"), _node("a")], [])

    def test_dangling_edges_dropped(self):
        graph = normalize_graph(
            [_node("a"), _node("b")],
            [{"source": "a", "target": "b"}, {"source": "a", "target": "ghost"}, {"source": None, "target": "b"}],
        )
        assert [(e.source, e.target) for e in graph.edges] == [("a", "b")]

    def test_payload_order_and_index(self):
        graph = normalize_graph([_node("z"), _node("a"), _node("m")], None)
        assert [n.id for n in graph.nodes] == ["z", "a", "m"]
        assert graph.get("a").id == "a"
        assert graph.get("missing") is None
        assert len(graph) == 3
