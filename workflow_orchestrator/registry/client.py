"""Async client for the capability registry, spoken over MCP streamable HTTP.

The registry is an MCP server exposing node-catalog tools (search_nodes,
get_node_info, get_node_essentials, validate_workflow, ...). RegistryClient
returns every tool result as plain text; interpreting that text (JSON vs
"not found") is the job of the Node Information Service.

Each tool call opens its own streamable HTTP transport and ClientSession,
runs the MCP handshake and closes both when the call returns. The transport
is bound to the task that opened it, so no session outlives the request
that used it and any task may call the client.

The process owns one RegistryClientProvider which hands the shared client
out with reference counting:

    provider = RegistryClientProvider(RegistrySettings.from_env())
    client = await provider.acquire()      # health-checks on first acquire
    ...
    await provider.release()               # drops the client at zero
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from workflow_orchestrator.errors import RegistryError
from workflow_orchestrator.registry.config import RegistrySettings

logger = logging.getLogger("workflow_orchestrator.registry.client")

TOOL_ERROR_PREFIX = "Error executing tool"


class RegistryClient:
    """Thin async wrapper around the registry's MCP tools."""

    def __init__(self, settings: RegistrySettings) -> None:
        self._settings = settings

    @property
    def settings(self) -> RegistrySettings:
        return self._settings

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _require_url(self) -> str:
        if not self._settings.server_url:
            raise RegistryError("MCP_SERVER_URL is not configured")
        return self._settings.server_url

    @asynccontextmanager
    async def _open_session(self) -> AsyncIterator[Any]:
        """One initialized ClientSession, closed with its transport on exit."""
        from mcp import ClientSession
        from mcp.client.streamable_http import streamablehttp_client

        async with (
            streamablehttp_client(self._require_url(), headers=self._settings.headers) as (read, write, _),
            ClientSession(read, write) as session,
        ):
            await asyncio.wait_for(session.initialize(), timeout=self._settings.connect_timeout)
            yield session

    async def health_check(self) -> bool:
        """True when the registry completes a handshake and answers list_tools."""
        try:
            async with self._open_session() as session:
                await asyncio.wait_for(session.list_tools(), timeout=self._settings.connect_timeout)
            return True
        except Exception as e:
            logger.warning("Registry health check failed: %s", e)
            return False

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> str:
        """Call a registry tool and return its text content.

        Transport failures are retried with exponential backoff, each attempt
        on a fresh session. A tool-level error (isError) is not retried; it is
        returned as text prefixed with TOOL_ERROR_PREFIX.
        """
        self._require_url()
        attempts = max(1, self._settings.max_retries)
        last_exc: Exception | None = None
        for attempt in range(attempts):
            try:
                async with self._open_session() as session:
                    result = await session.call_tool(name, arguments)
                text = _result_text(result)
                if getattr(result, "isError", False):
                    return f"{TOOL_ERROR_PREFIX} {name}: {text}"
                return text
            except Exception as e:
                last_exc = e
            if attempt + 1 < attempts:
                wait = self._settings.retry_delay * (2 ** attempt)
                logger.warning(
                    "Registry call %s attempt %d failed (%s); retrying in %.1fs",
                    name, attempt + 1, last_exc, wait,
                )
                await asyncio.sleep(wait)
        raise RegistryError(f"Registry tool {name} failed after {attempts} attempts: {last_exc}")

    async def search_nodes(self, query: str, limit: int = 5) -> str:
        return await self.call_tool("search_nodes", {"query": query, "limit": limit})

    async def get_node_info(self, node_type: str) -> str:
        return await self.call_tool("get_node_info", {"nodeType": node_type})

    async def get_node_essentials(self, node_type: str) -> str:
        return await self.call_tool("get_node_essentials", {"nodeType": node_type})

    async def get_node_documentation(self, node_type: str) -> str:
        return await self.call_tool("get_node_documentation", {"nodeType": node_type})

    async def validate_node_minimal(self, node_type: str, config: dict[str, Any]) -> str:
        return await self.call_tool("validate_node_minimal", {"nodeType": node_type, "config": config})

    async def validate_node_operation(
        self, node_type: str, config: dict[str, Any], profile: str = "runtime"
    ) -> str:
        return await self.call_tool(
            "validate_node_operation",
            {"nodeType": node_type, "config": config, "profile": profile},
        )

    async def validate_workflow(self, workflow: dict[str, Any]) -> str:
        return await self.call_tool(
            "validate_workflow",
            {
                "workflow": workflow,
                "options": {
                    "validateNodes": True,
                    "validateConnections": True,
                    "validateExpressions": True,
                    "profile": "runtime",
                },
            },
        )

    async def get_node_for_task(self, task: str) -> str:
        return await self.call_tool("get_node_for_task", {"task": task})


def _result_text(result: Any) -> str:
    """Concatenate the text blocks of a CallToolResult."""
    parts = [
        block.text for block in getattr(result, "content", None) or []
        if getattr(block, "type", None) == "text"
    ]
    return "\n".join(parts)


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class RegistryClientProvider:
    """Reference-counted owner of the process's shared RegistryClient."""

    def __init__(self, settings: RegistrySettings) -> None:
        self._settings = settings
        self._client: RegistryClient | None = None
        self._refs = 0

    @property
    def ref_count(self) -> int:
        return self._refs

    def _make_client(self) -> RegistryClient:
        return RegistryClient(self._settings)

    async def acquire(self) -> RegistryClient:
        if self._client is None:
            self._client = self._make_client()
            if await self._client.health_check():
                logger.info("Registry reachable: %s", self._settings.server_url)
            else:
                logger.warning(
                    "Registry %s not reachable yet; calls will retry",
                    self._settings.server_url or "(unset)",
                )
        self._refs += 1
        return self._client

    async def release(self) -> None:
        if self._refs == 0:
            return
        self._refs -= 1
        if self._refs == 0 and self._client is not None:
            self._client = None
            logger.info("Registry client released")
