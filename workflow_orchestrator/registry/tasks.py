"""Task templates: pre-configured nodes the registry knows by task name.

Discovery asks the model for task names ("receive_webhook",
"send_slack_message", ...). Each one is looked up with the registry's
get_node_for_task tool; a hit becomes a pre-configured node, a miss becomes
a capability gap that Gap Search resolves by free-text search instead.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from workflow_orchestrator.registry.client import RegistryClient
from workflow_orchestrator.registry.gap_search import CapabilityGap
from workflow_orchestrator.registry.node_info import is_miss

logger = logging.getLogger("workflow_orchestrator.registry.tasks")

CACHE_TTL_SECONDS = 15 * 60

# task name -> (search terms used when the template is missing, category hint)
TASK_FALLBACKS: dict[str, tuple[list[str], str]] = {
    "receive_webhook": (["webhook", "http trigger", "webhook trigger"], "trigger"),
    "webhook_with_response": (["webhook", "respond to webhook"], "trigger"),
    "schedule_trigger": (["schedule", "cron", "interval"], "trigger"),
    "send_slack_message": (["slack", "message", "notification"], "output"),
    "send_email": (["email", "send email", "smtp"], "output"),
    "query_postgres": (["postgres", "postgresql", "sql"], "input"),
    "insert_postgres_data": (["postgres", "insert", "database"], "output"),
    "append_google_sheet": (["google sheets", "spreadsheet", "sheets"], "output"),
    "http_request": (["http request", "api", "request"], "input"),
    "get_api_data": (["http request", "api", "get"], "input"),
    "post_json_request": (["http request", "api", "post"], "output"),
    "call_api": (["http request", "api", "call"], "input"),
    "transform_data": (["set", "code", "transform"], "transform"),
    "filter_data": (["filter", "if", "condition"], "transform"),
    "chat_with_ai": (["openai", "chat", "ai"], "transform"),
}


@dataclass
class TaskNode:
    """A node resolved from a task template."""

    task_name: str
    node_id: str
    node_type: str
    config: dict[str, Any] = field(default_factory=dict)
    purpose: str = ""
    category: str | None = None

    @property
    def display_name(self) -> str:
        return self.task_name.replace("_", " ")


@dataclass
class FailedTask:
    task_name: str
    reason: str  # "not_found" | "registry_error" | "invalid_response"
    error: str | None = None


@dataclass
class TaskFetchResult:
    successful: list[TaskNode] = field(default_factory=list)
    failed: list[FailedTask] = field(default_factory=list)


class TaskService:
    """Fetches task templates with a short in-process cache."""

    def __init__(self, client: RegistryClient, cache_ttl: float = CACHE_TTL_SECONDS) -> None:
        self._client = client
        self._cache_ttl = cache_ttl
        self._cache: dict[str, tuple[float, dict[str, Any]]] = {}

    def known_task_names(self) -> list[str]:
        return list(TASK_FALLBACKS)

    def clear_cache(self) -> None:
        self._cache.clear()

    async def fetch_task_nodes(self, task_names: list[str]) -> TaskFetchResult:
        """Look up every task concurrently; order of the input is preserved."""
        if not task_names:
            return TaskFetchResult()
        logger.info("Fetching %d task templates: %s", len(task_names), ", ".join(task_names))
        outcomes = await asyncio.gather(*(self._fetch_one(name) for name in task_names))

        result = TaskFetchResult()
        for outcome in outcomes:
            if isinstance(outcome, TaskNode):
                result.successful.append(outcome)
            else:
                result.failed.append(outcome)
        logger.info(
            "Task fetch complete: %d successful, %d failed",
            len(result.successful), len(result.failed),
        )
        return result

    async def _fetch_one(self, task_name: str) -> TaskNode | FailedTask:
        template = self._cached(task_name)
        if template is None:
            try:
                text = await self._client.get_node_for_task(task_name)
            except Exception as e:
                logger.warning("Task %s lookup failed: %s", task_name, e)
                return FailedTask(task_name, "registry_error", str(e))
            if is_miss(text):
                return FailedTask(task_name, "not_found")
            try:
                data = json.loads(text)
            except json.JSONDecodeError:
                return FailedTask(task_name, "invalid_response", text[:200])
            config = data.get("configuration") or data.get("config") if isinstance(data, dict) else None
            if not isinstance(config, dict) or not data.get("nodeType"):
                return FailedTask(task_name, "invalid_response")
            template = {
                "nodeType": data["nodeType"],
                "config": config,
                "category": data.get("category"),
                "purpose": data.get("description") or data.get("purpose"),
            }
            self._cache[task_name] = (time.monotonic(), template)
        else:
            logger.debug("Using cached template for task %s", task_name)

        fallback = TASK_FALLBACKS.get(task_name)
        return TaskNode(
            task_name=task_name,
            node_id=f"task_{task_name}",
            node_type=template["nodeType"],
            config=dict(template["config"]),
            purpose=template.get("purpose") or f"Pre-configured: {task_name}",
            category=template.get("category") or (fallback[1] if fallback else None),
        )

    def _cached(self, task_name: str) -> dict[str, Any] | None:
        entry = self._cache.get(task_name)
        if entry is None:
            return None
        stored_at, template = entry
        if time.monotonic() - stored_at >= self._cache_ttl:
            del self._cache[task_name]
            return None
        return template


def convert_failed_tasks_to_capabilities(failed: list[FailedTask]) -> list[CapabilityGap]:
    """Turn failed task lookups into capabilities for Gap Search."""
    gaps = []
    for f in failed:
        terms = TASK_FALLBACKS.get(f.task_name, ([f.task_name.replace("_", " ")], None))[0]
        gaps.append(
            CapabilityGap(
                name=f.task_name.replace("_", " ").title(),
                search_terms=list(terms[:1]),
                alternative_terms=list(terms[1:]),
            )
        )
    return gaps
