"""Registry client retries, tool errors and the shared-client provider."""

from __future__ import annotations

from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from workflow_orchestrator.errors import RegistryError
from workflow_orchestrator.registry.client import (
    TOOL_ERROR_PREFIX,
    RegistryClient,
    RegistryClientProvider,
)
from workflow_orchestrator.registry.config import RegistrySettings


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _result(text: str, is_error: bool = False):
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)], isError=is_error)


def _client_with_sessions(*sessions) -> tuple[RegistryClient, list]:
    """A client whose calls open the given sessions in order.

    An Exception instance in place of a session fails that attempt while the
    transport is being opened. Returns the client and a list recording every
    session that was closed again.
    """
    client = RegistryClient(RegistrySettings(server_url="http://registry.test/mcp", retry_delay=0))
    queue = list(sessions)
    closed: list = []

    @asynccontextmanager
    async def open_session():
        session = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(session, BaseException):
            raise session
        try:
            yield session
        finally:
            closed.append(session)

    client._open_session = open_session
    return client, closed


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class TestCallTool:
    @pytest.mark.asyncio
    async def test_returns_text_content(self):
        session = MagicMock()
        session.call_tool = AsyncMock(return_value=_result('{"ok": true}'))
        client, closed = _client_with_sessions(session)
        assert await client.get_node_info("nodes-base.slack") == '{"ok": true}'
        session.call_tool.assert_awaited_once_with("get_node_info", {"nodeType": "nodes-base.slack"})
        assert closed == [session]

    @pytest.mark.asyncio
    async def test_transport_failure_retried(self):
        session = MagicMock()
        session.call_tool = AsyncMock(side_effect=[ConnectionError("reset"), _result("fine")])
        client, closed = _client_with_sessions(session)
        assert await client.search_nodes("slack") == "fine"
        assert session.call_tool.await_count == 2
        assert len(closed) == 2

    @pytest.mark.asyncio
    async def test_failed_open_retried_on_fresh_session(self):
        session = MagicMock()
        session.call_tool = AsyncMock(return_value=_result("fine"))
        client, closed = _client_with_sessions(ConnectionError("refused"), session)
        assert await client.get_node_essentials("nodes-base.slack") == "fine"
        session.call_tool.assert_awaited_once()
        assert closed == [session]

    @pytest.mark.asyncio
    async def test_tool_error_not_retried(self):
        session = MagicMock()
        session.call_tool = AsyncMock(return_value=_result("unknown node", is_error=True))
        client, _ = _client_with_sessions(session)
        text = await client.get_node_essentials("ghost")
        assert text.startswith(TOOL_ERROR_PREFIX)
        assert session.call_tool.await_count == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        session = MagicMock()
        session.call_tool = AsyncMock(side_effect=ConnectionError("reset"))
        client, closed = _client_with_sessions(session)
        with pytest.raises(RegistryError, match="after 3 attempts"):
            await client.validate_workflow({"nodes": []})
        assert session.call_tool.await_count == 3
        assert len(closed) == 3

    @pytest.mark.asyncio
    async def test_unconfigured_url_raises(self):
        client = RegistryClient(RegistrySettings(server_url=""))
        with pytest.raises(RegistryError, match="not configured"):
            await client.search_nodes("slack")


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_healthy(self):
        session = MagicMock()
        session.list_tools = AsyncMock(return_value=[])
        client, closed = _client_with_sessions(session)
        assert await client.health_check() is True
        assert closed == [session]

    @pytest.mark.asyncio
    async def test_unhealthy(self):
        session = MagicMock()
        session.list_tools = AsyncMock(side_effect=ConnectionError("down"))
        client, _ = _client_with_sessions(session)
        assert await client.health_check() is False

    @pytest.mark.asyncio
    async def test_unreachable(self):
        client, _ = _client_with_sessions(ConnectionError("refused"))
        assert await client.health_check() is False


class TestSettings:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("MCP_SERVER_URL", "http://registry.test/mcp/")
        monkeypatch.setenv("MCP_AUTH_TOKEN", "secret")
        monkeypatch.setenv("MCP_MAX_RETRIES", "5")
        settings = RegistrySettings.from_env()
        assert settings.server_url == "http://registry.test/mcp"
        assert settings.max_retries == 5
        assert settings.is_configured
        assert settings.headers == {"Authorization": "Bearer secret"}
        assert "secret" not in repr(settings)

    def test_url_without_token_not_configured(self):
        assert not RegistrySettings(server_url="http://registry.test").is_configured


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class TestProvider:
    @pytest.mark.asyncio
    async def test_shared_client_dropped_on_last_release(self):
        fake = MagicMock()
        fake.health_check = AsyncMock(return_value=True)

        provider = RegistryClientProvider(RegistrySettings(server_url="http://registry.test"))
        provider._make_client = lambda: fake

        first = await provider.acquire()
        second = await provider.acquire()
        assert first is second
        assert provider.ref_count == 2
        fake.health_check.assert_awaited_once()

        await provider.release()
        assert await provider.acquire() is fake
        await provider.release()
        await provider.release()
        assert provider.ref_count == 0
        assert provider._client is None

    @pytest.mark.asyncio
    async def test_unreachable_registry_still_hands_out_client(self):
        fake = MagicMock()
        fake.health_check = AsyncMock(return_value=False)
        provider = RegistryClientProvider(RegistrySettings(server_url="http://registry.test"))
        provider._make_client = lambda: fake
        assert await provider.acquire() is fake

    @pytest.mark.asyncio
    async def test_release_without_acquire_is_noop(self):
        provider = RegistryClientProvider(RegistrySettings())
        await provider.release()
        assert provider.ref_count == 0
