"""Tests for recovering per-node results from model output."""

import json

from canvasflow.service.graph import NodeKind
from canvasflow.service.prompts import ManifestEntry
from canvasflow.service.reconcile import (
    extract_structured,
    match_entries,
    reconcile,
    repair_truncated_json,
    strip_code_fence,
)


def _manifest(*entries):
    return tuple(ManifestEntry(node_id=i, label=label, kind=kind) for i, label, kind in entries)


AGENTS = _manifest(
    ("a", "Alpha", NodeKind.AGENT),
    ("b", "Beta", NodeKind.AGENT),
    ("c", "Gamma", NodeKind.AGENT),
)

CODE_SUMMARY = {
    "summary": "Use this helper:\n```python\ndef total(rows):\n    return sum(rows)\n```\nThen chart it.",
    "perNodeResults": [
        {"nodeId": "a", "status": "done", "output": "first"},
        {"nodeId": "b", "status": "done", "output": "second"},
    ],
}


class TestRepair:
    def test_balanced_input_unchanged(self):
        text = '{"summary": "ok", "perNodeResults": []}'
        assert repair_truncated_json(text) == text

    def test_truncated_array_closed(self):
        repaired = repair_truncated_json('{"summary":"x","perNodeResults":[{"nodeId":"a"}')
        assert json.loads(repaired) == {"summary": "x", "perNodeResults": [{"nodeId": "a"}]}

    def test_unterminated_string_closed(self):
        repaired = repair_truncated_json('{"summary":"x","perNodeResults":[{"nodeId":"a","insight":"half')
        assert json.loads(repaired)["perNodeResults"][0]["insight"] == "half"

    def test_trailing_comma_dropped(self):
        assert json.loads(repair_truncated_json('{"summary":"x",')) == {"summary": "x"}

    def test_dangling_key_dropped(self):
        assert json.loads(repair_truncated_json('{"a":1,"key":')) == {"a": 1}

    def test_brackets_inside_strings_ignored(self):
        repaired = repair_truncated_json('{"summary":"use [brackets] and {braces}"')
        assert json.loads(repaired) == {"summary": "use [brackets] and {braces}"}


class TestExtraction:
    def test_fenced_block(self):
        text = 'Here you go:\n```json\n{"summary": "s"}\n```\nThanks'
        assert strip_code_fence(text) == '{"summary": "s"}'
        assert extract_structured(text) == {"summary": "s"}

    def test_unclosed_fence(self):
        assert extract_structured('```json\n{"summary": "s", "perNodeResults": [') == {
            "summary": "s",
            "perNodeResults": [],
        }

    def test_trailing_prose_trimmed(self):
        assert extract_structured('{"summary": "s"} Hope this helps!') == {"summary": "s"}

    def test_plain_prose_is_not_structured(self):
        assert extract_structured("The analysis shows strong engagement.") is None

    def test_fence_inside_a_summary_string_is_kept(self):
        body = json.dumps({"summary": "Run:\n```python\nprint(1)\n```\ndone", "perNodeResults": []})
        assert extract_structured(body)["summary"] == "Run:\n```python\nprint(1)\n```\ndone"

    def test_outer_fence_runs_to_the_last_fence(self):
        text = '```json\n{"summary": "see ```python x``` here"}\n```'
        assert strip_code_fence(text) == '{"summary": "see ```python x``` here"}'


class TestMatching:
    def test_id_then_label_then_position(self):
        entries = [
            {"nodeName": "Gamma", "score": 3},
            {"nodeId": "a", "score": 1},
            {"score": 2},
        ]
        results, matched_by, unmatched = match_entries(entries, AGENTS)
        assert results["a"]["score"] == 1
        assert results["c"]["score"] == 3
        # third entry sits at index 2, whose agent (c) is taken, so it stays unmatched
        assert "b" not in results
        assert matched_by == {"a": "id", "c": "label"}
        assert unmatched == 1

    def test_position_fallback_for_agents(self):
        entries = [{"score": 1}, {"score": 2}]
        results, matched_by, unmatched = match_entries(entries, AGENTS)
        assert results == {"a": {"score": 1}, "b": {"score": 2}}
        assert set(matched_by.values()) == {"position"}
        assert unmatched == 0

    def test_position_fallback_skips_non_agents(self):
        manifest = _manifest(("d", "Data", NodeKind.DATA_SOURCE), ("x", "Agent", NodeKind.AGENT))
        results, _, unmatched = match_entries([{"score": 1}, {"score": 2}], manifest)
        assert results == {"x": {"score": 1}}
        assert unmatched == 1

    def test_unknown_ids_do_not_overwrite(self):
        entries = [{"nodeId": "zzz"}, {"nodeId": "a", "v": 1}, {"nodeId": "a", "v": 2}]
        results, _, unmatched = match_entries(entries, AGENTS)
        assert results["a"] == {"nodeId": "a", "v": 1}
        assert "zzz" not in results
        # the unknown id entry sits at the position of an already filled agent
        assert unmatched == 1

    def test_duplicate_labels_fill_first_unfilled(self):
        manifest = _manifest(("s1", "Student", NodeKind.AGENT), ("s2", "Student", NodeKind.AGENT))
        entries = [{"nodeName": "Student", "v": 1}, {"nodeName": "Student", "v": 2}]
        results, _, _ = match_entries(entries, manifest)
        assert results["s1"]["v"] == 1
        assert results["s2"]["v"] == 2


class TestReconcile:
    def test_truncated_output_recovered(self):
        result = reconcile('{"summary":"x","perNodeResults":[{"nodeId":"a"}', AGENTS)
        assert result.narrative_summary == "x"
        assert dict(result.per_node_results) == {"a": {"nodeId": "a"}}
        assert not result.degraded

    def test_label_match_two_of_three(self):
        raw = json.dumps(
            {
                "summary": "done",
                "perNodeResults": [
                    {"nodeName": "Alpha", "v": 1},
                    {"nodeName": "Gamma", "v": 3},
                ],
            }
        )
        result = reconcile(raw, AGENTS)
        assert set(result.per_node_results) == {"a", "c"}
        assert result.unmatched == 0

    def test_unparseable_output_degrades(self):
        result = reconcile("Plain narrative with no JSON.", AGENTS)
        assert result.degraded
        assert result.narrative_summary == "Plain narrative with no JSON."
        assert dict(result.per_node_results) == {}

    def test_missing_summary_uses_raw_text(self):
        raw = '{"perNodeResults": [{"nodeId": "b"}]}'
        result = reconcile(raw, AGENTS)
        assert result.narrative_summary == raw
        assert set(result.per_node_results) == {"b"}

    def test_alternate_result_keys(self):
        result = reconcile('{"summary": "s", "results": [{"node_id": "c"}]}', AGENTS)
        assert set(result.per_node_results) == {"c"}

    def test_idempotent(self):
        raw = '```json\n{"summary":"x","perNodeResults":[{"nodeName":"Beta"},{"v":9}'
        first = reconcile(raw, AGENTS)
        second = reconcile(raw, AGENTS)
        assert first == second
        assert dict(first.per_node_results) == dict(second.per_node_results)

    def test_unfenced_output_with_code_in_summary(self):
        result = reconcile(json.dumps(CODE_SUMMARY), AGENTS)
        assert result.degraded is False
        assert result.narrative_summary == CODE_SUMMARY["summary"]
        assert set(result.per_node_results) == {"a", "b"}

    def test_fenced_output_with_code_in_summary(self):
        raw = "```json\n" + json.dumps(CODE_SUMMARY, indent=2) + "\n```"
        result = reconcile(raw, AGENTS)
        assert result.degraded is False
        assert result.narrative_summary == CODE_SUMMARY["summary"]
        assert set(result.per_node_results) == {"a", "b"}
