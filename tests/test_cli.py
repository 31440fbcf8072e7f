"""Terminal client loop: clarifications, retries and export."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from workflow_orchestrator import cli
from workflow_orchestrator.orchestrator import StatusProjection


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

WORKFLOW = {"name": "Webhook to Slack", "nodes": [{"id": "a"}, {"id": "b"}], "connections": {}}


def _status(phase="discovery", complete=False, **extra) -> StatusProjection:
    return StatusProjection(session_id="wf_cli", phase=phase, complete=complete, prompt="p", **extra)


def _install(monkeypatch, orchestrator):
    provider, store = MagicMock(), MagicMock()
    provider.release = AsyncMock()
    store.close = AsyncMock()
    orchestrator.close = AsyncMock()
    orchestrator.export_workflow = AsyncMock(return_value=WORKFLOW)
    monkeypatch.setattr(cli, "create_orchestrator_from_env",
                        AsyncMock(return_value=(orchestrator, provider, store)))
    return provider, store


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestRunSession:
    @pytest.mark.asyncio
    async def test_writes_workflow_to_file(self, monkeypatch, tmp_path):
        orchestrator = MagicMock()
        orchestrator.initialize = AsyncMock(return_value=_status())
        orchestrator.advance = AsyncMock(side_effect=[
            _status("configuration"), _status("complete", complete=True),
        ])
        provider, store = _install(monkeypatch, orchestrator)
        out = tmp_path / "workflow.json"

        assert await cli._run_session("Send a Slack message", str(out)) == 0

        assert json.loads(out.read_text(encoding="utf-8")) == WORKFLOW
        orchestrator.close.assert_awaited_once()
        store.close.assert_awaited_once()
        provider.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_clarification_answered_from_stdin(self, monkeypatch, capsys):
        question = {"questionId": "q_1", "question": "Which channel?", "context": {"suggestions": ["#general"]}}
        orchestrator = MagicMock()
        orchestrator.initialize = AsyncMock(return_value=_status(pending_clarification=question))
        orchestrator.submit_clarification = AsyncMock(return_value=_status("complete", complete=True))
        _install(monkeypatch, orchestrator)
        monkeypatch.setattr(cli, "_prompt", lambda label: "#alerts")

        assert await cli._run_session("post something") == 0

        orchestrator.submit_clarification.assert_awaited_once_with("wf_cli", "q_1", "#alerts")
        out = capsys.readouterr().out
        assert "Which channel?" in out
        assert "#general" in out

    @pytest.mark.asyncio
    async def test_retries_then_stops(self, monkeypatch):
        error = {"code": "TIMEOUT", "userMessage": "Request timed out.", "retryable": True}
        orchestrator = MagicMock()
        orchestrator.initialize = AsyncMock(return_value=_status())
        orchestrator.advance = AsyncMock(return_value=_status(error=error))
        _install(monkeypatch, orchestrator)

        assert await cli._run_session("x") == 1
        assert orchestrator.advance.await_count == cli.MAX_RETRIES_PER_PHASE

    @pytest.mark.asyncio
    async def test_non_retryable_failure_stops_immediately(self, monkeypatch):
        error = {"code": "NO_CONFIGURED_NODES", "userMessage": "Nothing to build.", "retryable": False}
        orchestrator = MagicMock()
        orchestrator.initialize = AsyncMock(return_value=_status())
        orchestrator.advance = AsyncMock(return_value=_status("building", error=error))
        _install(monkeypatch, orchestrator)

        assert await cli._run_session("x") == 1
        assert orchestrator.advance.await_count == 1
