"""End-to-end tests for the workflow engine with a fake AI client."""

import asyncio
import json

import pytest

from canvasflow.service.admission import AdmissionController, StoreQuotaLedger
from canvasflow.service.content import ContentFetchError
from canvasflow.service.engine import RunRequest, WorkflowEngine
from canvasflow.service.errors import (
    AuthConfigError,
    InvalidGraphError,
    QuotaExceededError,
    RunCancelledError,
    UpstreamFailureError,
    UpstreamThrottledError,
)
from canvasflow.storage.memory import MemoryStore
from canvasflow.storage.models import UsageRecord


RESPONSE = json.dumps(
    {
        "summary": "Pipeline finished",
        "perNodeResults": [
            {"nodeId": "sum", "status": "done", "output": "summary text"},
            {"nodeName": "Reviewer", "status": "done", "output": "looks right"},
        ],
    }
)


class FakeAIClient:
    model = "fake-model"

    def __init__(self, text=RESPONSE, *, configured=True, error=None, block=False):
        self.text = text
        self.configured = configured
        self.error = error
        self.block = block
        self.calls = []
        self.started = asyncio.Event() if block else None

    @property
    def is_configured(self):
        return self.configured

    async def generate(self, payload, *, timeout_seconds=None):
        self.calls.append(payload)
        if self.block:
            self.started.set()
            await asyncio.sleep(30)
        if self.error is not None:
            raise self.error
        return self.text


class FailingFetcher:
    async def fetch_text(self, url):
        raise ContentFetchError("article fetch returned 404")


class BrokenRecordStore(MemoryStore):
    def upsert_workflow_run(self, run):
        raise RuntimeError("disk full")


def _nodes():
    return [
        {"id": "data", "type": "dataNode", "position": {"x": 0, "y": 0}, "data": {"label": "Sales CSV", "fileContent": "month,total\njan,10"}},
        {"id": "sum", "type": "agentNode", "position": {"x": 300, "y": 0}, "data": {"label": "Summarizer", "prompt": "Summarize totals"}},
        {"id": "rev", "type": "agentNode", "position": {"x": 600, "y": 0}, "data": {"label": "Reviewer"}},
        {"id": "out", "type": "outputNode", "position": {"x": 900, "y": 0}, "data": {"label": "Report"}},
    ]


def _edges():
    return [
        {"id": "e1", "source": "data", "target": "sum"},
        {"id": "e2", "source": "sum", "target": "rev"},
        {"id": "e3", "source": "rev", "target": "out"},
    ]


def _engine(client=None, store=None, fetcher=None):
    store = store or MemoryStore()
    admission = AdmissionController(store, StoreQuotaLedger(store))
    engine = WorkflowEngine(store, client or FakeAIClient(), admission, fetcher=fetcher)
    return engine, store


def _request(**kwargs):
    kwargs.setdefault("nodes", _nodes())
    kwargs.setdefault("edges", _edges())
    kwargs.setdefault("user_id", "u1")
    kwargs.setdefault("display_name", "Monthly review")
    return RunRequest(**kwargs)


def _used(engine, user_id="u1"):
    return engine.admission.status(user_id).used


def test_run_request_defaults():
    request = RunRequest(nodes=[], display_name="   ")
    assert request.workflow_id.startswith("wf-")
    assert request.execution_id
    assert request.display_name == "Untitled Workflow"


class TestSuccessfulRun:
    async def test_result_and_metadata(self):
        engine, store = _engine()
        result = await engine.run(_request(execution_id="exec-1"))
        assert result.narrative_summary == "Pipeline finished"
        assert set(result.per_node_results) == {"sum", "rev"}
        assert result.execution_id == "exec-1"
        assert result.quota_remaining == 2
        meta = result.metadata
        assert meta["model"] == "fake-model"
        assert meta["nodesProcessed"] == 4
        assert meta["edgesProcessed"] == 3
        assert meta["archetype"] == "general_assistant"
        assert meta["waves"] == [["data"], ["sum"], ["rev"]]
        assert meta["barrier"] == ["out"]
        assert meta["failedNodes"] == []
        assert meta["reconciliationDegraded"] is False

    async def test_run_is_recorded_and_charged(self):
        engine, store = _engine()
        await engine.run(_request(execution_id="exec-2"))
        run = store.get_workflow_run("exec-2")
        assert run.result_summary == "Pipeline finished"
        assert run.nodes_executed == 4
        rows = store.list_node_results("exec-2")
        assert {row.node_id: row.node_name for row in rows} == {"sum": "Summarizer", "rev": "Reviewer"}
        assert _used(engine) == 1
        assert store.get_credit_balance("u1") == 46.0

    async def test_inline_content_reaches_prompt(self):
        client = FakeAIClient()
        engine, _ = _engine(client)
        await engine.run(_request())
        assert "jan,10" in client.calls[0].text

    async def test_unparseable_output_still_succeeds(self):
        engine, store = _engine(FakeAIClient("Everything went fine."))
        result = await engine.run(_request(execution_id="exec-3"))
        assert result.narrative_summary == "Everything went fine."
        assert dict(result.per_node_results) == {}
        assert result.metadata["reconciliationDegraded"] is True
        assert _used(engine) == 1

    async def test_recording_failure_is_swallowed(self):
        engine, store = _engine(store=BrokenRecordStore())
        result = await engine.run(_request(execution_id="exec-4"))
        assert result.narrative_summary == "Pipeline finished"
        assert _used(engine) == 1

    async def test_failed_article_fetch_is_reported(self):
        nodes = _nodes() + [
            {"id": "news", "type": "newsArticleNode", "position": {"x": 0, "y": 200}, "data": {"label": "Story", "url": "https://news.test/a"}}
        ]
        engine, _ = _engine(fetcher=FailingFetcher())
        result = await engine.run(_request(nodes=nodes))
        assert result.metadata["failedNodes"] == ["news"]

    async def test_anonymous_run_is_not_metered(self):
        engine, store = _engine()
        result = await engine.run(_request(user_id=None))
        assert result.quota_remaining == -1
        assert store.credit_ledger == []


class TestRejectedRuns:
    async def test_empty_graph(self):
        client = FakeAIClient()
        engine, _ = _engine(client)
        with pytest.raises(InvalidGraphError):
            await engine.run(_request(nodes=[]))
        assert client.calls == []

    async def test_unconfigured_client(self):
        engine, _ = _engine(FakeAIClient(configured=False))
        with pytest.raises(AuthConfigError) as excinfo:
            await engine.run(_request())
        assert excinfo.value.status_code == 503
        assert _used(engine) == 0

    async def test_quota_exhausted_skips_ai_call(self):
        client = FakeAIClient()
        engine, store = _engine(client)
        for i in range(3):
            store.record_usage(UsageRecord(user_id="u1", workflow_id=f"wf-{i}"))
        with pytest.raises(QuotaExceededError):
            await engine.run(_request())
        assert client.calls == []


class TestFailedRuns:
    async def test_throttled_call_releases_slot(self):
        engine, store = _engine(FakeAIClient(error=UpstreamThrottledError("slow down")))
        with pytest.raises(UpstreamThrottledError):
            await engine.run(_request(execution_id="exec-5"))
        state = engine.admission.status("u1")
        assert state.used == 0
        assert store.in_flight_runs("u1", state.period_start) == 0
        assert store.get_credit_balance("u1") == 50.0
        assert store.get_workflow_run("exec-5") is None

    async def test_timeout_is_upstream_failure(self):
        engine, store = _engine(FakeAIClient(block=True))
        engine.timeout_seconds = 0.05
        with pytest.raises(UpstreamFailureError) as excinfo:
            await engine.run(_request())
        assert excinfo.value.detail["reason"] == "timeout"
        assert _used(engine) == 0
        assert store.get_credit_balance("u1") == 50.0

    async def test_cancel_in_flight_run(self):
        client = FakeAIClient(block=True)
        engine, store = _engine(client)
        task = asyncio.ensure_future(engine.run(_request(execution_id="exec-6")))
        await asyncio.wait_for(client.started.wait(), timeout=5)
        assert engine.is_active("exec-6")
        assert engine.cancel("exec-6") is True
        with pytest.raises(RunCancelledError):
            await task
        assert not engine.is_active("exec-6")
        state = engine.admission.status("u1")
        assert state.used == 0
        assert store.in_flight_runs("u1", state.period_start) == 0

    async def test_cancel_unknown_execution(self):
        engine, _ = _engine()
        assert engine.cancel("nope") is False
