"""Turn free-form model output into a narrative plus per-node results.

Model output is not a reliable structured source: it may be fenced,
prefixed with prose, or cut off mid-object at the output-token limit. Each
step below is a fallback for the previous one, and a run never fails
because the structure could not be recovered.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from canvasflow.logging import get_logger
from canvasflow.service.graph import NodeKind
from canvasflow.service.prompts import ManifestEntry

logger = get_logger(__name__)

RESULT_ARRAY_KEYS = ("perNodeResults", "per_node_results", "nodeResults", "results")
ID_KEYS = ("nodeId", "node_id", "id", "agentId")
NAME_KEYS = ("nodeName", "node_name", "name", "label", "agentName")

_OPEN_FENCE_RE = re.compile(r"^[ \t]*```(?:json|JSON)?[ \t]*(?:\n|$)", re.MULTILINE)
_CLOSERS = {"{": "}", "[": "]"}


@dataclass(frozen=True)
class Reconciliation:
    narrative_summary: str
    per_node_results: Mapping[str, Any]
    unmatched: int = 0
    degraded: bool = False
    entries: int = 0
    matched_by: Mapping[str, str] = field(default_factory=dict)


def strip_code_fence(text: str) -> str:
    """Return the body of the outermost fenced block; an unclosed fence is dropped too.

    The opening fence must start a line and the block runs to the last fence
    in the text, so fences quoted inside the JSON do not end it early.
    """
    stripped = text.strip()
    opening = _OPEN_FENCE_RE.search(stripped)
    if opening is None:
        return stripped
    body = stripped[opening.end():]
    closing = body.rfind("```")
    if closing != -1:
        return body[:closing].strip()
    if "{" in body:
        return body.strip()
    return stripped


def repair_truncated_json(text: str) -> str:
    """Close whatever a truncated JSON object left open.

    Scans outside of string literals, tracking open objects and arrays, then
    closes an unterminated string, drops a dangling comma or key separator,
    and appends the closers in reverse order. Balanced input is returned
    unchanged.
    """
    stack: List[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _CLOSERS:
            stack.append(char)
        elif char in ("}", "]") and stack and _CLOSERS[stack[-1]] == char:
            stack.pop()

    if not stack and not in_string:
        return text

    repaired = text
    if in_string:
        if escaped:
            repaired = repaired[:-1]
        repaired += '"'
    stripped = repaired.rstrip()
    while stripped and stripped[-1] in ",:":
        stripped = stripped[:-1].rstrip()
        # A dangling object key has no value; drop the key as well
        if stripped.endswith('"') and stack and stack[-1] == "{":
            key_start = _dangling_key_start(stripped)
            if key_start is not None:
                stripped = stripped[:key_start].rstrip()
    return stripped + "".join(_CLOSERS[opener] for opener in reversed(stack))


def _dangling_key_start(text: str) -> Optional[int]:
    """Index of the opening quote of a trailing ``"key"`` preceded by ``{`` or ``,``."""
    end = len(text) - 1
    idx = end - 1
    while idx >= 0:
        if text[idx] == '"' and (idx == 0 or text[idx - 1] != "\\"):
            before = text[:idx].rstrip()
            if before.endswith(("{", ",")):
                return idx if before.endswith("{") else len(before) - 1
            return None
        idx -= 1
    return None


def extract_structured(raw_text: str) -> Optional[Dict[str, Any]]:
    """Best-effort parse of the model's JSON object, or None.

    The text is read as-is first and only then with a code fence removed.
    """
    raw_text = raw_text or ""
    parsed = _parse_object(raw_text)
    if parsed is not None:
        return parsed
    unfenced = strip_code_fence(raw_text)
    if unfenced == raw_text.strip():
        return None
    return _parse_object(unfenced)


def _parse_object(text: str) -> Optional[Dict[str, Any]]:
    start = text.find("{")
    if start == -1:
        return None
    candidate = text[start:]
    for attempt in (candidate, repair_truncated_json(candidate), _trim_trailing_text(candidate)):
        if attempt is None:
            continue
        try:
            parsed = json.loads(attempt)
        except (TypeError, ValueError):
            continue
        if isinstance(parsed, dict):
            return parsed
        return None
    return None


def _trim_trailing_text(candidate: str) -> Optional[str]:
    """Cut prose that follows a complete object (``{...} Hope this helps``)."""
    end = candidate.rfind("}")
    if end <= 0 or end == len(candidate) - 1:
        return None
    return candidate[: end + 1]


def _first_str(entry: Mapping[str, Any], keys: Sequence[str]) -> Optional[str]:
    for key in keys:
        value = entry.get(key)
        if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value).strip():
            return str(value).strip()
    return None


def _result_entries(parsed: Mapping[str, Any]) -> List[Any]:
    for key in RESULT_ARRAY_KEYS:
        value = parsed.get(key)
        if isinstance(value, list):
            return value
    return []


def match_entries(
    entries: Sequence[Any], manifest: Sequence[ManifestEntry]
) -> Tuple[Dict[str, Any], Dict[str, str], int]:
    """Assign result entries to manifest nodes.

    Precedence: exact node id, then exact label (first unfilled manifest
    node with that label), then, for agent nodes only, the entry's array
    index within the manifest's ordered agents. Each entry and each node is
    used at most once.

    Returns:
        Tuple of (results by node id, match rule by node id, unmatched count)
    """
    manifest_ids = {entry.node_id for entry in manifest}
    results: Dict[str, Any] = {}
    matched_by: Dict[str, str] = {}
    consumed = [False] * len(entries)

    for idx, entry in enumerate(entries):
        if not isinstance(entry, Mapping):
            continue
        node_id = _first_str(entry, ID_KEYS)
        if node_id in manifest_ids and node_id not in results:
            results[node_id] = entry
            matched_by[node_id] = "id"
            consumed[idx] = True

    for idx, entry in enumerate(entries):
        if consumed[idx] or not isinstance(entry, Mapping):
            continue
        name = _first_str(entry, NAME_KEYS)
        if name is None:
            continue
        for item in manifest:
            if item.label == name and item.node_id not in results:
                results[item.node_id] = entry
                matched_by[item.node_id] = "label"
                consumed[idx] = True
                break

    agents = [item for item in manifest if item.kind == NodeKind.AGENT]
    for idx, entry in enumerate(entries):
        if consumed[idx] or idx >= len(agents):
            continue
        agent = agents[idx]
        if agent.node_id not in results:
            results[agent.node_id] = entry
            matched_by[agent.node_id] = "position"
            consumed[idx] = True

    unmatched = consumed.count(False)
    return results, matched_by, unmatched


def reconcile(raw_text: str, manifest: Sequence[ManifestEntry]) -> Reconciliation:
    """Convert raw model text into ``(narrative, per-node results)``.

    Deterministic for the same text and manifest order.
    """
    parsed = extract_structured(raw_text)
    if parsed is None:
        logger.warning("reconciliation_degraded", chars=len(raw_text or ""))
        return Reconciliation(
            narrative_summary=raw_text or "",
            per_node_results=MappingProxyType({}),
            degraded=True,
        )

    summary = parsed.get("summary")
    narrative = summary if isinstance(summary, str) and summary.strip() else raw_text
    entries = _result_entries(parsed)
    results, matched_by, unmatched = match_entries(entries, manifest)
    if unmatched:
        logger.warning(
            "reconciliation_unmatched",
            unmatched=unmatched,
            entries=len(entries),
            matched=len(results),
        )
    return Reconciliation(
        narrative_summary=narrative,
        per_node_results=MappingProxyType(results),
        unmatched=unmatched,
        degraded=False,
        entries=len(entries),
        matched_by=MappingProxyType(matched_by),
    )
