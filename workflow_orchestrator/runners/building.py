"""Building phase: configured nodes -> one complete workflow graph.

The model lays out nodes and connections; everything it is not trusted to
decide is filled in here: parameters from Configuration for every node
Configuration produced, the category recorded for each node, default settings and a
grid position. The Configuration Status Analyzer then runs over the result
so callers can see what credentials and decisions remain.
"""

from __future__ import annotations

import copy
import json
import logging
from typing import Any

from workflow_orchestrator.analysis.config_analyzer import analyze_workflow
from workflow_orchestrator.errors import PhaseError
from workflow_orchestrator.reasoning import ReasoningEngine, complete_json
from workflow_orchestrator.registry.node_info import canonical_node_type
from workflow_orchestrator.runners.base import (
    PhaseResult,
    PhaseRunner,
    precondition_failed,
    token_usage,
)
from workflow_orchestrator.session.operations import (
    Operation,
    SetBuildPhases,
    SetConfigAnalysis,
    SetWorkflow,
)
from workflow_orchestrator.session.state import ConfiguredNode, Phase, Session

logger = logging.getLogger("workflow_orchestrator.runners.building")

DEFAULT_SETTINGS: dict[str, Any] = {
    "executionOrder": "v1",
    "saveDataErrorExecution": "all",
    "saveDataSuccessExecution": "all",
    "saveManualExecutions": True,
    "saveExecutionProgress": True,
}

GRID_START_X = 250
GRID_SPACING_X = 200
GRID_Y = 300

_SYSTEM = """You assemble an n8n workflow from pre-configured nodes.
Reply with one JSON object and nothing else:
{
  "name": "<workflow name>",
  "nodes": [{"id": "<node id as given>", "name": "<unique name>", "type": "<node type>",
             "typeVersion": 1, "position": [x, y], "parameters": {...}}],
  "connections": {"<source node name>": {"main": [[{"node": "<target node name>", "type": "main", "index": 0}]]}},
  "settings": {},
  "phases": [{"type": "trigger|data_collection|data_processing|decision|notification|storage|integration",
              "description": "...", "nodeIds": ["..."]}]
}
Use every node exactly once, keep the given ids and parameters, and connect them in execution order.
Connections are keyed by node name, not id."""


class BuildingRunner(PhaseRunner):
    phase = Phase.BUILDING

    def __init__(self, engine: ReasoningEngine) -> None:
        self._engine = engine

    async def run(self, session: Session) -> PhaseResult:
        if not session.configured:
            return precondition_failed(
                self.phase,
                "NO_CONFIGURED_NODES",
                "No configured nodes to build from",
                "No nodes were configured. Start over with a new request.",
            )

        usable = {
            node_id: node
            for node_id, node in session.configured.items()
            if not (node_id in session.validated and session.validated[node_id].valid is False)
        }
        if not usable:
            return precondition_failed(
                self.phase,
                "NO_VALIDATED_NODES",
                "Every configured node failed validation",
                "None of the configured nodes passed validation. Try a different request.",
            )
        excluded = sorted(set(session.configured) - set(usable))
        if excluded:
            logger.info("Building without invalid nodes: %s", ", ".join(excluded))

        reply, response = await complete_json(
            self._engine, _SYSTEM, self._prompt(session, usable)
        )
        ops: list[Operation] = [token_usage(response, self.phase)]

        nodes = assemble_nodes(reply.get("nodes"), usable, session)
        if not nodes:
            return PhaseResult.failure(
                self.phase,
                PhaseError(
                    self.phase.value,
                    "Model returned a workflow without nodes",
                    code="EMPTY_WORKFLOW",
                    user_message="The workflow could not be assembled. Please try again.",
                    retryable=True,
                ),
                operations=ops,
            )

        settings = dict(DEFAULT_SETTINGS)
        if isinstance(reply.get("settings"), dict):
            settings.update(reply["settings"])

        workflow = {
            "name": str(reply.get("name") or _default_name(session)),
            "nodes": nodes,
            "connections": reply.get("connections") if isinstance(reply.get("connections"), dict) else {},
            "settings": settings,
        }
        analysis = analyze_workflow(workflow)

        ops.append(SetWorkflow(workflow=workflow))
        phases = [p for p in reply.get("phases") or [] if isinstance(p, dict)]
        if phases:
            ops.append(SetBuildPhases(phases=phases))
        ops.append(SetConfigAnalysis(analysis=analysis.to_dict()))

        logger.info(
            "Built workflow %r: %d nodes, %d connection sources, config complete=%s",
            workflow["name"], len(nodes), len(workflow["connections"]), analysis.is_complete,
        )
        return PhaseResult(
            success=True,
            phase=self.phase,
            operations=ops,
            data={
                "nodeCount": len(nodes),
                "connectionCount": len(workflow["connections"]),
                "excludedNodeIds": excluded,
                "configComplete": analysis.is_complete,
            },
        )

    def _prompt(self, session: Session, usable: dict[str, ConfiguredNode]) -> str:
        described = []
        for node_id, node in usable.items():
            discovered = session.discovered_node(node_id)
            described.append({
                "id": node_id,
                "name": discovered.display_name if discovered else node.node_type,
                "type": node.node_type,
                "purpose": node.purpose,
                "category": node.category,
                "parameters": node.parameters,
            })
        return (
            f"Request: {session.user_prompt}\n\n"
            f"Configured nodes:\n{json.dumps(described, indent=2)}"
        )


# ---------------------------------------------------------------------------
# Node assembly
# ---------------------------------------------------------------------------


def _default_name(session: Session) -> str:
    prompt = session.original_prompt.strip()
    return prompt[:60] if prompt else "Generated workflow"


def _match_configured(
    raw: dict[str, Any],
    usable: dict[str, ConfiguredNode],
    used: set[str],
) -> ConfiguredNode | None:
    node_id = str(raw.get("id") or "")
    if node_id in usable and node_id not in used:
        return usable[node_id]
    wanted = canonical_node_type(str(raw.get("type") or ""))
    for candidate_id, node in usable.items():
        if candidate_id not in used and canonical_node_type(node.node_type) == wanted:
            return node
    return None


def assemble_nodes(
    raw_nodes: Any,
    usable: dict[str, ConfiguredNode],
    session: Session,
) -> list[dict[str, Any]]:
    """Normalize the model's node list against what Configuration produced.

    Every node ends up with id, name, type, typeVersion, position,
    parameters and category. Node names are made unique.
    """
    nodes: list[dict[str, Any]] = []
    used: set[str] = set()
    names: set[str] = set()

    for i, raw in enumerate(raw_nodes if isinstance(raw_nodes, list) else []):
        if not isinstance(raw, dict) or not raw.get("type"):
            continue
        configured = _match_configured(raw, usable, used)
        if configured is not None:
            used.add(configured.node_id)

        node_id = str(raw.get("id") or (configured.node_id if configured else "") or raw.get("name") or f"node_{i + 1}")
        discovered = session.discovered_node(configured.node_id) if configured else None
        name = str(raw.get("name") or (discovered.display_name if discovered else "") or node_id)
        base, n = name, 2
        while name in names:
            name = f"{base} {n}"
            n += 1
        names.add(name)

        parameters = raw.get("parameters")
        if configured is not None:
            parameters = copy.deepcopy(configured.parameters)
        elif not isinstance(parameters, dict):
            parameters = {}

        position = raw.get("position")
        if not (isinstance(position, list) and len(position) == 2):
            position = [GRID_START_X + i * GRID_SPACING_X, GRID_Y]

        node = {
            "id": node_id,
            "name": name,
            "type": str(raw["type"]),
            "typeVersion": raw.get("typeVersion") or 1,
            "position": position,
            "parameters": parameters,
        }
        for key in ("credentials", "notes", "disabled", "onError", "retryOnFail"):
            if key in raw:
                node[key] = raw[key]
        category = (configured.category if configured else None) or raw.get("category")
        if category:
            node["category"] = category
        nodes.append(node)

    missing = sorted(set(usable) - used)
    if missing and nodes:
        logger.warning("Model left out configured nodes: %s", ", ".join(missing))
    return nodes
