"""Configuration phase: selected nodes -> configureNode per node.

Per node, in selection order:
  1. Essentials from the registry (documentation too, unless a task template
     already supplies a working configuration).
  2. Every candidate missed -> configure with whatever the template had and
     mark the node invalid straight away.
  3. Model call for {parameters}, with the template taking priority over
     the essentials' shape. The model may call registry tools first. Keys
     that neither source declares are dropped, and known parameter patches
     (see patches.py) run over the template and again over the merged result.
  4. Cheap self-check with the registry's minimal validator. Missing
     required fields are filled from the essentials' defaults and the check
     runs once more.

Nodes already present in session.configured are skipped, so a re-run after a
failure only pays for what is left.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from workflow_orchestrator.reasoning import ReasoningEngine, complete_json
from workflow_orchestrator.registry.node_info import NodeInfoService, NodeLookup
from workflow_orchestrator.registry.tools import RegistryTools
from workflow_orchestrator.runners.base import (
    PhaseResult,
    PhaseRunner,
    precondition_failed,
    token_usage,
)
from workflow_orchestrator.runners.patches import apply_patches
from workflow_orchestrator.session.operations import ConfigureNode, Operation, ValidateNode
from workflow_orchestrator.session.state import DiscoveredNode, Phase, Session

logger = logging.getLogger("workflow_orchestrator.runners.configuration")

# Template keys that belong on the node itself, never inside parameters.
NODE_LEVEL_PROPERTIES = frozenset({
    "onError",
    "retryOnFail",
    "maxTries",
    "waitBetweenTries",
    "alwaysOutputData",
    "continueOnFail",
    "notes",
    "typeVersion",
    "disabled",
    "executeOnce",
    "credentials",
    "color",
    "issues",
})

_DOC_LIMIT = 4000
_ESSENTIALS_LIMIT = 6000
_MISSING_FIELD_RE = re.compile(r"missing required (?:field|property)[:\s]+['\"]?([\w.]+)", re.I)

_SYSTEM = """You configure a single n8n node.
Reply with one JSON object and nothing else: {"parameters": {...}}

Priority:
1. If a template configuration is given, keep it and only fill what the request needs.
2. Otherwise follow the essentials' declared properties.
3. Never invent property names that appear in neither.
Use n8n expressions ({{ $json.field }}) to reference data from earlier nodes.
Leave credentials out of parameters.
When tools are available you may look up the node or check your configuration before answering."""


# ---------------------------------------------------------------------------
# Template and essentials helpers
# ---------------------------------------------------------------------------


def restructure_template(config: dict[str, Any]) -> dict[str, Any]:
    """Parameters part of a task template.

    Templates come either as {"parameters": {...}, ...node-level...} or flat,
    with node-level settings mixed into the parameter keys.
    """
    if not config:
        return {}
    if isinstance(config.get("parameters"), dict):
        return dict(config["parameters"])
    return {k: v for k, v in config.items() if k not in NODE_LEVEL_PROPERTIES}


def _property_defs(essentials: Any) -> list[dict[str, Any]]:
    if not isinstance(essentials, dict):
        return []
    defs: list[dict[str, Any]] = []
    props = essentials.get("properties")
    if isinstance(props, dict):
        for name, d in props.items():
            defs.append({"name": name, **(d if isinstance(d, dict) else {})})
    elif isinstance(props, list):
        defs.extend(p for p in props if isinstance(p, dict))
    for key in ("requiredProperties", "commonProperties"):
        extra = essentials.get(key)
        if isinstance(extra, list):
            defs.extend(p for p in extra if isinstance(p, dict))
    return defs


def declared_properties(essentials: Any) -> set[str]:
    """Property names the essentials declare (name, key or displayName)."""
    names: set[str] = set()
    for d in _property_defs(essentials):
        for key in ("name", "key"):
            if d.get(key):
                names.add(str(d[key]))
    return names


def default_for_type(prop_type: str | None) -> Any:
    match prop_type:
        case "number":
            return 0
        case "boolean":
            return False
        case "collection" | "fixedCollection":
            return {}
        case _:
            return ""


def fill_missing_fields(
    parameters: dict[str, Any],
    errors: list[str],
    essentials: Any,
) -> tuple[dict[str, Any], list[str]]:
    """Fill fields reported missing with the essentials' defaults.

    Returns the patched parameters and the names of the fields filled.
    """
    defs = _property_defs(essentials)
    patched = dict(parameters)
    filled: list[str] = []
    for error in errors:
        m = _MISSING_FIELD_RE.search(error)
        if not m:
            continue
        field_name = m.group(1)
        if field_name in patched:
            continue
        match_def = next(
            (
                d for d in defs
                if field_name in (d.get("name"), d.get("key"), d.get("displayName"))
            ),
            None,
        )
        if match_def is not None and "default" in match_def:
            value = match_def["default"]
        elif field_name == "schema":
            value = "public"
        else:
            value = default_for_type(match_def.get("type") if match_def else None)
        patched[field_name] = value
        filled.append(field_name)
    return patched, filled


def _truncate(data: Any, limit: int) -> str:
    if isinstance(data, dict) and set(data) == {"raw"}:
        text = str(data["raw"])
    else:
        text = json.dumps(data, indent=2, default=str)
    if len(text) > limit:
        return text[:limit] + "\n... (truncated)"
    return text


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class ConfigurationRunner(PhaseRunner):
    phase = Phase.CONFIGURATION

    def __init__(
        self,
        engine: ReasoningEngine,
        node_info: NodeInfoService,
        self_check: bool = True,
        tools: RegistryTools | None = None,
    ) -> None:
        self._engine = engine
        self._node_info = node_info
        self._self_check = self_check
        self._tools = (tools or RegistryTools()).subset(
            "get_node_essentials", "get_node_documentation", "validate_node_minimal"
        )

    async def run(self, session: Session) -> PhaseResult:
        if not session.selected:
            return precondition_failed(
                self.phase,
                "NO_NODES_SELECTED",
                "No nodes selected for configuration",
                "Discovery did not select any nodes. Start over with a new request.",
            )

        ops: list[Operation] = []
        configured: list[str] = []
        invalid: list[str] = []
        skipped = 0

        for node_id in session.selected:
            if node_id in session.configured:
                skipped += 1
                continue
            node = session.discovered_node(node_id)
            if node is None:
                logger.warning("Selected node %s has no discovery record; skipped", node_id)
                continue

            node_ops, valid = await self._configure_one(session, node)
            ops.extend(node_ops)
            configured.append(node_id)
            if not valid:
                invalid.append(node_id)

        if skipped:
            logger.info("%d nodes already configured; kept as-is", skipped)
        logger.info(
            "Configuration completed: %d configured, %d invalid",
            len(configured), len(invalid),
        )
        return PhaseResult(
            success=True,
            phase=self.phase,
            operations=ops,
            data={"configuredNodeIds": configured, "invalidNodeIds": invalid},
        )

    async def _configure_one(
        self, session: Session, node: DiscoveredNode
    ) -> tuple[list[Operation], bool]:
        template: dict[str, Any] = {}
        if node.is_pre_configured:
            template, applied = apply_patches(node.type, restructure_template(node.config))
            if applied:
                logger.debug("Patched template for %s: %s", node.id, "; ".join(applied))
        essentials = await self._node_info.get_node_essentials(node.type)

        if not essentials.found:
            message = f"Node type {node.type} not found in registry"
            logger.warning("%s (%s); configured from template only", message, node.id)
            return [
                self._configure_op(node, template),
                ValidateNode(node_id=node.id, valid=False, errors=[message]),
            ], False

        docs: NodeLookup | None = None
        if not template:
            docs = await self._node_info.get_node_documentation(node.type)

        reply, response = await complete_json(
            self._engine, _SYSTEM, self._prompt(session, node, template, essentials, docs),
            tools=self._tools.defs, executor=self._tools.executor,
        )
        ops: list[Operation] = [token_usage(response, self.phase)]

        produced = reply.get("parameters")
        if not isinstance(produced, dict):
            produced = {k: v for k, v in reply.items() if k != "parameters"}

        patched, _ = apply_patches(node.type, produced)
        allowed = set(template) | declared_properties(essentials.data)
        if allowed:
            allowed |= set(patched) - set(produced)
            dropped = sorted(k for k in patched if k not in allowed)
            if dropped:
                logger.info("Dropped undeclared parameters for %s: %s", node.id, ", ".join(dropped))
            patched = {k: v for k, v in patched.items() if k in allowed}
        produced = patched

        parameters, _ = apply_patches(node.type, {**template, **produced})

        valid = True
        if self._self_check:
            check = await self._node_info.validate_node(node.type, parameters, "minimal")
            if not check.valid:
                parameters, filled = fill_missing_fields(parameters, check.errors, essentials.data)
                if filled:
                    parameters, _ = apply_patches(node.type, parameters)
                    logger.info("Filled missing fields for %s: %s", node.id, ", ".join(filled))
                    check = await self._node_info.validate_node(node.type, parameters, "minimal")
            valid = check.valid
            ops.append(ValidateNode(node_id=node.id, valid=check.valid, errors=list(check.errors)))

        ops.insert(1, self._configure_op(node, parameters))
        logger.debug("Configured %s (%s): %s", node.id, node.type, ", ".join(parameters) or "-")
        return ops, valid

    @staticmethod
    def _configure_op(node: DiscoveredNode, parameters: dict[str, Any]) -> ConfigureNode:
        return ConfigureNode(
            node_id=node.id,
            node_type=node.type,
            parameters=parameters,
            purpose=node.purpose,
            category=node.category,
        )

    def _prompt(
        self,
        session: Session,
        node: DiscoveredNode,
        template: dict[str, Any],
        essentials: NodeLookup,
        docs: NodeLookup | None,
    ) -> str:
        parts = [
            f"Request: {session.user_prompt}",
            f"Node: {node.display_name or node.type} ({node.type})",
            f"Purpose: {node.purpose or 'not stated'}",
        ]
        if template:
            parts.append(f"Template configuration (working, keep it):\n{json.dumps(template, indent=2)}")
        parts.append(f"Essentials:\n{_truncate(essentials.data, _ESSENTIALS_LIMIT)}")
        if docs is not None and docs.found:
            parts.append(f"Documentation:\n{_truncate(docs.data, _DOC_LIMIT)}")
        return "\n\n".join(parts)
