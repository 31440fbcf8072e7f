"""Registry lookups offered to the model as callable tools.

Runners hand a RegistryTools subset to complete_json() so the model can
look up a node's essentials or documentation, search for alternatives, or
check a candidate configuration before it answers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from workflow_orchestrator.reasoning import ToolDef, ToolExecutor
from workflow_orchestrator.registry.client import RegistryClient


def _td(name: str, description: str, properties: dict[str, Any], required: list[str]) -> ToolDef:
    return ToolDef(
        name=name,
        description=description,
        parameters={"type": "object", "properties": properties, "required": required},
    )


_NODE_TYPE = {"type": "string", "description": "Full node type, e.g. n8n-nodes-base.slack"}

REGISTRY_TOOL_DEFS: list[ToolDef] = [
    _td(
        "search_nodes",
        "Search the node registry by keyword. Returns matching node types with descriptions.",
        {"query": {"type": "string"}, "limit": {"type": "integer", "default": 5}},
        ["query"],
    ),
    _td(
        "get_node_essentials",
        "Required and common properties of a node type, with their types and defaults.",
        {"nodeType": _NODE_TYPE},
        ["nodeType"],
    ),
    _td(
        "get_node_documentation",
        "Human-readable documentation for a node type, with usage examples.",
        {"nodeType": _NODE_TYPE},
        ["nodeType"],
    ),
    _td(
        "validate_node_minimal",
        "Check a node configuration for missing required fields.",
        {"nodeType": _NODE_TYPE, "config": {"type": "object"}},
        ["nodeType", "config"],
    ),
]


@dataclass
class RegistryTools:
    defs: list[ToolDef] = field(default_factory=list)
    executor: ToolExecutor = field(default_factory=dict)

    def subset(self, *names: str) -> RegistryTools:
        return RegistryTools(
            defs=[d for d in self.defs if d.name in names],
            executor={k: v for k, v in self.executor.items() if k in names},
        )


def registry_tools(client: RegistryClient) -> RegistryTools:
    """Every registry tool, executed against client."""

    async def search_nodes(query: str, limit: int = 5) -> str:
        return await client.search_nodes(query, limit)

    async def get_node_essentials(nodeType: str) -> str:
        return await client.get_node_essentials(nodeType)

    async def get_node_documentation(nodeType: str) -> str:
        return await client.get_node_documentation(nodeType)

    async def validate_node_minimal(nodeType: str, config: dict[str, Any]) -> str:
        return await client.validate_node_minimal(nodeType, config)

    return RegistryTools(
        defs=list(REGISTRY_TOOL_DEFS),
        executor={
            "search_nodes": search_nodes,
            "get_node_essentials": get_node_essentials,
            "get_node_documentation": get_node_documentation,
            "validate_node_minimal": validate_node_minimal,
        },
    )
