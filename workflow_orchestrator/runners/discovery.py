"""Discovery phase: prompt -> discovered and selected nodes.

Flow:
  1. Intent analysis (model): task names the registry may hold templates
     for, plus free-form capabilities no template covers.
  2. Ambiguous intent -> requestClarification and stop; the Orchestrator
     holds the phase until the question is answered.
  3. Task templates fetched from the registry (no model call).
  4. Failed tasks + unmatched capabilities -> Gap Search.
  5. Selection (model) over the formatted gap results; only node types that
     actually came back from the search are accepted.

Emits discoverNode + selectNode for every chosen node.
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any

from workflow_orchestrator.errors import PhaseError
from workflow_orchestrator.reasoning import ReasoningEngine, complete_json
from workflow_orchestrator.registry.gap_search import (
    CapabilityGap,
    GapSearch,
    GapSearchResult,
    format_results_for_selection,
    summarize,
)
from workflow_orchestrator.registry.node_info import canonical_node_type
from workflow_orchestrator.registry.tasks import (
    TASK_FALLBACKS,
    TaskService,
    convert_failed_tasks_to_capabilities,
)
from workflow_orchestrator.registry.tools import RegistryTools
from workflow_orchestrator.runners.base import PhaseResult, PhaseRunner, token_usage
from workflow_orchestrator.session.operations import (
    DiscoverNode,
    Operation,
    RequestClarification,
    SelectNode,
)
from workflow_orchestrator.session.state import DiscoveredNode, Phase, Session

logger = logging.getLogger("workflow_orchestrator.runners.discovery")

CONFIDENCE_THRESHOLD = 0.6
MAX_CLARIFICATION_ROUNDS = 2

_DEFAULT_QUESTION = (
    "Could you describe which apps or services this workflow should connect, "
    "and what should start it?"
)

_INTENT_SYSTEM = """You analyze automation requests for an n8n workflow builder.
Reply with one JSON object and nothing else:
{
  "intent": "<one sentence>",
  "confidence": <0.0-1.0>,
  "matched_tasks": ["<task name from the known list>", ...],
  "unmatched_capabilities": [
    {"name": "<capability>", "search_terms": ["<term>", ...], "alternative_terms": ["<term>", ...]}
  ],
  "clarification_needed": <true|false>,
  "clarification": {"question": "...", "context": "...", "suggestions": ["..."]}
}
Only use task names from the known list. Put anything else in unmatched_capabilities."""

_SELECTION_SYSTEM = """You pick n8n nodes for a workflow from search results.
Reply with one JSON object and nothing else:
{"selections": [{"nodeType": "...", "displayName": "...", "purpose": "...", "category": "trigger|input|transform|output", "capability": "..."}]}
Only choose nodeType values that appear in the search results. Choose the minimum set of nodes the workflow needs.
When tools are available you may look up a candidate before choosing."""


def _as_gap(item: Any) -> CapabilityGap | None:
    if isinstance(item, str):
        return CapabilityGap(name=item, search_terms=[item])
    if not isinstance(item, dict) or not item.get("name"):
        return None
    return CapabilityGap(
        name=str(item["name"]),
        search_terms=[str(t) for t in item.get("search_terms") or item.get("searchTerms") or []],
        alternative_terms=[
            str(t) for t in item.get("alternative_terms") or item.get("alternativeTerms") or []
        ],
        description=str(item.get("description") or ""),
    )


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_") or "node"


class DiscoveryRunner(PhaseRunner):
    phase = Phase.DISCOVERY

    def __init__(
        self,
        engine: ReasoningEngine,
        tasks: TaskService,
        gap_search: GapSearch,
        confidence_threshold: float = CONFIDENCE_THRESHOLD,
        tools: RegistryTools | None = None,
    ) -> None:
        self._engine = engine
        self._tasks = tasks
        self._gap_search = gap_search
        self._threshold = confidence_threshold
        self._tools = (tools or RegistryTools()).subset("search_nodes", "get_node_essentials")

    async def run(self, session: Session) -> PhaseResult:
        if session.selected:
            logger.info(
                "Session %s already has %d selected nodes; nothing to discover",
                session.session_id, len(session.selected),
            )
            return PhaseResult(
                success=True,
                phase=self.phase,
                data={"selectedNodeIds": list(session.selected), "recovered": True},
                reasoning=["Recovered selection from existing session state"],
            )

        ops: list[Operation] = []

        # Step 1: intent
        intent, response = await complete_json(
            self._engine, _INTENT_SYSTEM, self._intent_prompt(session)
        )
        ops.append(token_usage(response, self.phase))

        matched = [str(t) for t in intent.get("matched_tasks") or [] if t]
        gaps = [g for g in (_as_gap(i) for i in intent.get("unmatched_capabilities") or []) if g]
        try:
            confidence = float(intent.get("confidence", 1.0))
        except (TypeError, ValueError):
            confidence = 0.0
        logger.info(
            "Intent analysis: %d tasks, %d gaps, confidence %.2f",
            len(matched), len(gaps), confidence,
        )

        # Step 2: clarification
        wants_clarification = (
            bool(intent.get("clarification_needed"))
            or confidence < self._threshold
            or not (matched or gaps)
        )
        if wants_clarification and len(session.clarification_history) < MAX_CLARIFICATION_ROUNDS:
            clarification = intent.get("clarification") or {}
            question_id = f"q_{int(time.time() * 1000)}"
            question = str(clarification.get("question") or _DEFAULT_QUESTION)
            ops.append(
                RequestClarification(
                    question_id=question_id,
                    question=question,
                    context={
                        "reason": clarification.get("context") or "",
                        "suggestions": list(clarification.get("suggestions") or []),
                        "confidence": confidence,
                    },
                )
            )
            logger.info("Clarification %s requested for session %s", question_id, session.session_id)
            return PhaseResult(
                success=True,
                phase=self.phase,
                operations=ops,
                data={"pendingClarification": {"questionId": question_id, "question": question}},
                reasoning=[str(intent.get("intent") or "")],
            )

        nodes: list[DiscoveredNode] = []

        # Step 3: task templates
        if matched:
            fetched = await self._tasks.fetch_task_nodes(matched)
            for task in fetched.successful:
                nodes.append(
                    DiscoveredNode(
                        id=task.node_id,
                        type=task.node_type,
                        display_name=task.display_name,
                        purpose=task.purpose or f"Pre-configured: {task.task_name}",
                        category=task.category,
                        is_pre_configured=True,
                        config=task.config,
                    )
                )
            if fetched.failed:
                logger.warning(
                    "%d task templates unavailable, searching instead: %s",
                    len(fetched.failed), ", ".join(f.task_name for f in fetched.failed),
                )
                gaps.extend(convert_failed_tasks_to_capabilities(fetched.failed))

        # Step 4 + 5: gap search and selection
        gap_summary: dict[str, int] = {}
        if gaps:
            results = await self._gap_search.search(gaps)
            gap_summary = summarize(results)
            logger.info(
                "Gap search: %d/%d capabilities found, %d nodes",
                gap_summary["found"], gap_summary["totalCapabilities"], gap_summary["totalNodes"],
            )
            if gap_summary["totalNodes"] > 0:
                selected, response = await self._select(session, results)
                ops.append(token_usage(response, self.phase))
                known_types = {canonical_node_type(n.type) for n in nodes}
                for node in selected:
                    if canonical_node_type(node.type) in known_types:
                        continue
                    known_types.add(canonical_node_type(node.type))
                    nodes.append(node)

        if not nodes:
            return PhaseResult.failure(
                self.phase,
                PhaseError(
                    self.phase.value,
                    "No nodes found for the requested workflow",
                    code="NO_NODES_FOUND",
                    user_message="No matching nodes were found. Try rephrasing the request.",
                    retryable=True,
                ),
                operations=ops,
            )

        for node in nodes:
            ops.append(DiscoverNode(node=node))
            ops.append(SelectNode(node_id=node.id))

        logger.info(
            "Discovery completed: %d nodes (%s)",
            len(nodes), ", ".join(n.type for n in nodes),
        )
        return PhaseResult(
            success=True,
            phase=self.phase,
            operations=ops,
            data={
                "discoveredNodes": [
                    {"id": n.id, "type": n.type, "displayName": n.display_name, "category": n.category}
                    for n in nodes
                ],
                "selectedNodeIds": [n.id for n in nodes],
                "gapSummary": gap_summary,
            },
            reasoning=[str(intent.get("intent") or "")],
        )

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    def _intent_prompt(self, session: Session) -> str:
        lines = [f"Request: {session.user_prompt}", "", "Known task names:"]
        lines.extend(f"- {name}" for name in TASK_FALLBACKS)
        return "\n".join(lines)

    async def _select(self, session: Session, results: list[GapSearchResult]):
        prompt = (
            f"Request: {session.user_prompt}\n\n"
            f"Search results:\n{format_results_for_selection(results)}"
        )
        reply, response = await complete_json(
            self._engine, _SELECTION_SYSTEM, prompt,
            tools=self._tools.defs, executor=self._tools.executor,
        )

        offered: dict[str, dict[str, Any]] = {}
        for r in results:
            for n in r.nodes:
                offered.setdefault(canonical_node_type(n["nodeType"]), {**n, "capability": r.capability})

        chosen: list[DiscoveredNode] = []
        for i, sel in enumerate(reply.get("selections") or []):
            if not isinstance(sel, dict):
                continue
            source = offered.get(canonical_node_type(str(sel.get("nodeType") or "")))
            if source is None:
                logger.warning("Selection %r dropped: not in search results", sel.get("nodeType"))
                continue
            capability = str(sel.get("capability") or source["capability"])
            chosen.append(
                DiscoveredNode(
                    id=f"search_{_slug(capability)}_{i + 1}",
                    type=source["nodeType"],
                    display_name=str(sel.get("displayName") or source.get("displayName") or source["nodeType"]),
                    purpose=str(sel.get("purpose") or capability),
                    category=sel.get("category") or source.get("category"),
                )
            )
        logger.debug("Selection: %s", json.dumps([n.type for n in chosen]))
        return chosen, response
