"""Discovery phase: intent, clarification, task templates, gap search and selection."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from workflow_orchestrator.reasoning import EngineResponse
from workflow_orchestrator.registry.gap_search import GapSearch
from workflow_orchestrator.registry.tasks import FailedTask, TaskFetchResult, TaskNode
from workflow_orchestrator.registry.tools import registry_tools
from workflow_orchestrator.runners.base import wrap_phase
from workflow_orchestrator.runners.discovery import DiscoveryRunner
from workflow_orchestrator.session.operations import (
    AddTokenUsage,
    ClarificationResponse,
    DiscoverNode,
    RecordError,
    RequestClarification,
    SelectNode,
    fold,
)
from workflow_orchestrator.session.state import DiscoveredNode, new_session


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _engine(*replies: dict) -> MagicMock:
    engine = MagicMock()
    engine.model_id = "test/model"
    engine.complete = AsyncMock(side_effect=[
        EngineResponse(content=json.dumps(r), input_tokens=100, output_tokens=20) for r in replies
    ])
    return engine


def _tasks(successful=(), failed=()) -> MagicMock:
    tasks = MagicMock()
    tasks.fetch_task_nodes = AsyncMock(
        return_value=TaskFetchResult(successful=list(successful), failed=list(failed))
    )
    return tasks


def _gap_search(hits: dict[str, list[dict]]) -> GapSearch:
    node_info = MagicMock()

    async def search(term, limit=5):
        return hits.get(term, [])

    node_info.search_nodes = AsyncMock(side_effect=search)
    return GapSearch(node_info)


WEBHOOK_TASK = TaskNode(
    task_name="receive_webhook",
    node_id="task_receive_webhook",
    node_type="n8n-nodes-base.webhook",
    config={"parameters": {"path": "incoming", "httpMethod": "POST"}},
    purpose="Receive the webhook call",
    category="trigger",
)

SLACK_HIT = {"nodeType": "n8n-nodes-base.slack", "displayName": "Slack", "description": "", "category": "output"}


def _session(prompt="When a webhook fires, post the payload to Slack"):
    return new_session("wf_disc", prompt)


def _ops_of(result, cls):
    return [op for op in result.operations if isinstance(op, cls)]


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestDiscovery:
    @pytest.mark.asyncio
    async def test_templates_and_gap_selection(self):
        engine = _engine(
            {"intent": "webhook to slack", "confidence": 0.9,
             "matched_tasks": ["receive_webhook", "send_slack_message"],
             "unmatched_capabilities": []},
            {"selections": [
                {"nodeType": "nodes-base.slack", "capability": "Send Slack Message",
                 "purpose": "Post the payload", "category": "output"},
                {"nodeType": "nodes-base.madeUp"},
            ]},
        )
        tasks = _tasks([WEBHOOK_TASK], [FailedTask("send_slack_message", "not_found")])
        runner = DiscoveryRunner(engine, tasks, _gap_search({"slack": [SLACK_HIT]}))

        result = await runner.run(_session())

        assert result.success
        discovered = [op.node for op in _ops_of(result, DiscoverNode)]
        assert [n.id for n in discovered] == ["task_receive_webhook", "search_send_slack_message_1"]
        assert discovered[0].is_pre_configured
        assert discovered[1].type == "n8n-nodes-base.slack"
        assert discovered[1].category == "output"
        assert [op.node_id for op in _ops_of(result, SelectNode)] == [n.id for n in discovered]
        assert len(_ops_of(result, AddTokenUsage)) == 2

    @pytest.mark.asyncio
    async def test_selection_duplicate_of_template_skipped(self):
        engine = _engine(
            {"confidence": 0.9, "matched_tasks": ["receive_webhook"],
             "unmatched_capabilities": [{"name": "Webhook", "search_terms": ["webhook"]}]},
            {"selections": [{"nodeType": "n8n-nodes-base.webhook", "capability": "Webhook"}]},
        )
        hits = {"webhook": [{"nodeType": "n8n-nodes-base.webhook", "displayName": "Webhook", "category": "trigger"}]}
        runner = DiscoveryRunner(engine, _tasks([WEBHOOK_TASK]), _gap_search(hits))
        result = await runner.run(_session())
        assert [op.node.id for op in _ops_of(result, DiscoverNode)] == ["task_receive_webhook"]

    @pytest.mark.asyncio
    async def test_low_confidence_requests_clarification(self):
        engine = _engine({
            "confidence": 0.3, "matched_tasks": ["send_slack_message"],
            "clarification": {"question": "Which Slack channel?", "suggestions": ["#general"]},
        })
        tasks = _tasks()
        runner = DiscoveryRunner(engine, tasks, _gap_search({}))

        result = await runner.run(_session("send something to slack"))

        assert result.success
        [question] = _ops_of(result, RequestClarification)
        assert question.question == "Which Slack channel?"
        assert question.context["suggestions"] == ["#general"]
        assert not _ops_of(result, DiscoverNode)
        tasks.fetch_task_nodes.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_nothing_recognised_asks_default_question(self):
        engine = _engine({"confidence": 0.95, "matched_tasks": [], "unmatched_capabilities": []})
        result = await DiscoveryRunner(engine, _tasks(), _gap_search({})).run(_session("do the thing"))
        [question] = _ops_of(result, RequestClarification)
        assert "apps or services" in question.question

    @pytest.mark.asyncio
    async def test_clarification_rounds_are_capped(self):
        session = fold(_session("send something"), [
            RequestClarification(question_id="q_1", question="?"),
            ClarificationResponse(question_id="q_1", response="slack"),
            RequestClarification(question_id="q_2", question="?"),
            ClarificationResponse(question_id="q_2", response="#general"),
        ])
        engine = _engine(
            {"confidence": 0.4, "matched_tasks": [], "unmatched_capabilities": ["slack"]},
            {"selections": [{"nodeType": "n8n-nodes-base.slack"}]},
        )
        runner = DiscoveryRunner(engine, _tasks(), _gap_search({"slack": [SLACK_HIT]}))
        result = await runner.run(session)
        assert not _ops_of(result, RequestClarification)
        assert [op.node.type for op in _ops_of(result, DiscoverNode)] == ["n8n-nodes-base.slack"]

    @pytest.mark.asyncio
    async def test_no_nodes_is_a_retryable_failure(self):
        engine = _engine({"confidence": 0.9, "unmatched_capabilities": [{"name": "Teleport", "search_terms": ["teleport"]}]})
        result = await DiscoveryRunner(engine, _tasks(), _gap_search({})).run(_session())
        assert not result.success
        assert result.error.code == "NO_NODES_FOUND"
        assert result.error.retryable
        assert engine.complete.await_count == 1

    @pytest.mark.asyncio
    async def test_existing_selection_recovered_without_model(self):
        session = fold(_session(), [
            DiscoverNode(node=DiscoveredNode(id="a", type="n8n-nodes-base.webhook")),
            SelectNode(node_id="a"),
        ])
        engine = _engine()
        result = await DiscoveryRunner(engine, _tasks(), _gap_search({})).run(session)
        assert result.success
        assert result.operations == []
        assert result.data["recovered"] is True
        engine.complete.assert_not_awaited()


class TestDiscoveryThroughWrapper:
    @pytest.mark.asyncio
    async def test_model_error_becomes_recorded_failure(self):
        engine = MagicMock()
        engine.model_id = "test/model"
        engine.complete = AsyncMock(side_effect=RuntimeError("Connection refused"))
        runner = DiscoveryRunner(engine, _tasks(), _gap_search({}))

        result = await wrap_phase(runner, _session())

        assert not result.success
        assert result.error.code == "CONNECTION_REFUSED"
        assert result.error.retryable
        [record] = _ops_of(result, RecordError)
        assert record.phase == "discovery"
        assert result.metrics["phase"] == "discovery"

    @pytest.mark.asyncio
    async def test_unparseable_reply_is_unexpected_error(self):
        engine = MagicMock()
        engine.model_id = "test/model"
        engine.complete = AsyncMock(return_value=EngineResponse(content="I cannot help with that"))
        result = await wrap_phase(DiscoveryRunner(engine, _tasks(), _gap_search({})), _session())
        assert not result.success
        assert result.error.code == "UNEXPECTED_ERROR"

    @pytest.mark.asyncio
    async def test_selection_offers_search_tools_only(self):
        engine = _engine(
            {"intent": "slack", "confidence": 0.9, "matched_tasks": ["send_slack_message"],
             "unmatched_capabilities": []},
            {"selections": [{"nodeType": "nodes-base.slack", "capability": "Send Slack Message"}]},
        )
        tasks = _tasks(failed=[FailedTask("send_slack_message", "not_found")])
        runner = DiscoveryRunner(
            engine, tasks, _gap_search({"slack": [SLACK_HIT]}), tools=registry_tools(MagicMock()),
        )

        await runner.run(_session())

        intent_call, selection_call = engine.complete.await_args_list
        assert "tools" not in intent_call.kwargs
        assert [t.name for t in selection_call.kwargs["tools"]] == ["search_nodes", "get_node_essentials"]
