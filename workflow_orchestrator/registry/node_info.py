"""Node Information Service: registry lookups by candidate identifier.

The same node type reaches the orchestrator spelled several ways:

    n8n-nodes-base.slack          (workflow JSON)
    nodes-base.slack              (registry canonical form)
    @n8n/n8n-nodes-langchain.agent
    slack                         (model shorthand)

build_node_type_candidates() turns one raw spelling into an ordered,
de-duplicated list of spellings; every resolving call walks that list and
keeps the first answer that is not a "not found" / tool-error text.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from workflow_orchestrator.registry.client import RegistryClient

logger = logging.getLogger("workflow_orchestrator.registry.node_info")

_SCOPE_RE = re.compile(r"^@[^/]+/")


# ---------------------------------------------------------------------------
# Candidate identifiers
# ---------------------------------------------------------------------------


def canonical_node_type(raw: str) -> str:
    """Drop a leading @scope/ and then a leading n8n- from the package segment."""
    unscoped = _SCOPE_RE.sub("", raw.strip())
    if "." not in unscoped:
        return unscoped
    pkg, rest = unscoped.split(".", 1)
    if pkg.startswith("n8n-"):
        pkg = pkg[len("n8n-"):]
    return f"{pkg}.{rest}"


def build_node_type_candidates(raw: str) -> list[str]:
    """Ordered spellings to try against the registry.

    >>> build_node_type_candidates("@scope/n8n-nodes-base.httpRequest")
    ['nodes-base.httpRequest', '@scope/n8n-nodes-base.httpRequest', 'n8n-nodes-base.httpRequest', 'httpRequest']
    """
    raw = (raw or "").strip()
    candidates = [canonical_node_type(raw), raw]

    if raw.startswith("n8n-"):
        candidates.append(raw[len("n8n-"):])

    scope = _SCOPE_RE.match(raw)
    if scope:
        after_scope = raw[scope.end():]
        candidates.append(after_scope)
        if after_scope.startswith("n8n-"):
            candidates.append(after_scope[len("n8n-"):])

    if "." in raw:
        candidates.append(raw.rsplit(".", 1)[1])

    seen: set[str] = set()
    ordered: list[str] = []
    for c in candidates:
        if c and c not in seen:
            seen.add(c)
            ordered.append(c)
    return ordered


def is_miss(text: str | None) -> bool:
    """True for empty text, a "not found" answer, or a tool-level error."""
    if not text:
        return True
    lower = text.strip().lower()
    return "not found" in lower or lower.startswith("error executing tool")


def parse_tool_text(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return {"raw": text}


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class NodeLookup:
    """Outcome of a candidate-resolved registry call.

    found:        False when every candidate missed.
    node_type:    The raw identifier the caller asked about.
    resolved_as:  The candidate spelling the registry accepted.
    data:         Parsed JSON, or {"raw": text} when the answer was not JSON.
    tried:        Candidates attempted, in order.
    """

    found: bool
    node_type: str
    resolved_as: str | None = None
    data: Any = None
    tried: list[str] = field(default_factory=list)


@dataclass
class NodeValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)
    found: bool = True
    data: Any = None


def interpret_validation(data: Any) -> tuple[bool, list[str]]:
    """Read (valid, errors) out of a validation tool answer.

    errors may be strings or objects with message/error; an answer listing
    missingRequiredFields but no errors is reported field by field.
    """
    if not isinstance(data, dict):
        return True, []
    if "raw" in data and len(data) == 1:
        text = str(data["raw"])
        lower = text.lower()
        if "invalid" in lower or "error" in lower:
            return False, [text.strip()]
        return True, []

    errors: list[str] = []
    raw_errors = data.get("errors")
    if isinstance(raw_errors, list):
        for e in raw_errors:
            if isinstance(e, str):
                errors.append(e)
            elif isinstance(e, dict):
                errors.append(str(e.get("message") or e.get("error") or json.dumps(e)))
    elif isinstance(raw_errors, str):
        errors.append(raw_errors)
    elif isinstance(data.get("missingRequiredFields"), list):
        errors = [f"Missing required field: {f}" for f in data["missingRequiredFields"]]

    if errors:
        return False, errors
    if "valid" in data:
        valid = bool(data["valid"])
    elif "isValid" in data:
        valid = bool(data["isValid"])
    else:
        valid = True
    if not valid:
        errors = ["Validation failed - check configuration"]
    return valid, errors


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class NodeInfoService:
    """Registry queries for single nodes, resolved through candidate identifiers."""

    def __init__(self, client: RegistryClient) -> None:
        self._client = client

    @property
    def client(self) -> RegistryClient:
        return self._client

    async def _resolve(
        self,
        node_type: str,
        call: Callable[[str], Awaitable[str]],
        what: str,
    ) -> NodeLookup:
        candidates = build_node_type_candidates(node_type)
        tried: list[str] = []
        for candidate in candidates:
            tried.append(candidate)
            text = await call(candidate)
            if is_miss(text):
                logger.debug("%s miss for candidate %r", what, candidate)
                continue
            if candidate != candidates[0]:
                logger.info("%s for %s resolved as %r", what, node_type, candidate)
            return NodeLookup(
                found=True,
                node_type=node_type,
                resolved_as=candidate,
                data=parse_tool_text(text),
                tried=tried,
            )
        logger.warning("%s: no candidate for %s was found (%s)", what, node_type, ", ".join(tried))
        return NodeLookup(found=False, node_type=node_type, tried=tried)

    async def get_node_info(self, node_type: str) -> NodeLookup:
        return await self._resolve(node_type, self._client.get_node_info, "get_node_info")

    async def get_node_essentials(self, node_type: str) -> NodeLookup:
        return await self._resolve(node_type, self._client.get_node_essentials, "get_node_essentials")

    async def get_node_documentation(self, node_type: str) -> NodeLookup:
        return await self._resolve(
            node_type, self._client.get_node_documentation, "get_node_documentation"
        )

    async def validate_node(
        self,
        node_type: str,
        config: dict[str, Any],
        mode: str = "minimal",
    ) -> NodeValidation:
        """Validate one node's parameters.

        mode "minimal" accepts expressions and only checks required fields;
        "operation" runs the registry's full runtime profile.
        """
        if mode == "operation":
            async def call(candidate: str) -> str:
                return await self._client.validate_node_operation(candidate, config)
        else:
            async def call(candidate: str) -> str:
                return await self._client.validate_node_minimal(candidate, config)

        lookup = await self._resolve(node_type, call, f"validate_node[{mode}]")
        if not lookup.found:
            return NodeValidation(
                valid=False,
                errors=[f"Node type {node_type} not found in registry"],
                found=False,
            )
        valid, errors = interpret_validation(lookup.data)
        return NodeValidation(valid=valid, errors=errors, data=lookup.data)

    async def search_nodes(self, query: str, limit: int = 5) -> list[dict[str, Any]]:
        """Free-text search, normalized to {nodeType, displayName, description, category}."""
        text = await self._client.search_nodes(query, limit)
        if is_miss(text):
            return []
        data = parse_tool_text(text)
        results = data.get("results") if isinstance(data, dict) else data
        if not isinstance(results, list):
            logger.debug("Could not parse search results for %r", query)
            return []
        nodes = []
        for item in results[:limit]:
            if not isinstance(item, dict) or not item.get("nodeType"):
                continue
            nodes.append({
                "nodeType": item["nodeType"],
                "displayName": item.get("displayName") or item["nodeType"],
                "description": item.get("description") or "",
                "category": item.get("category"),
            })
        return nodes

    async def validate_workflow(self, workflow: dict[str, Any]) -> dict[str, Any]:
        """Whole-graph validation. Raises RegistryError when the registry is down."""
        text = await self._client.validate_workflow(workflow)
        data = parse_tool_text(text)
        if not isinstance(data, dict) or set(data) == {"raw"}:
            return {"valid": False, "errors": [{"message": text.strip()}], "warnings": []}
        return data
