"""Capability registry access: MCP client, node lookups, task templates, gap search, model tools."""

from workflow_orchestrator.registry.client import RegistryClient, RegistryClientProvider
from workflow_orchestrator.registry.config import RegistrySettings
from workflow_orchestrator.registry.gap_search import (
    CapabilityGap,
    GapSearch,
    GapSearchResult,
    format_results_for_selection,
    summarize,
)
from workflow_orchestrator.registry.node_info import (
    NodeInfoService,
    NodeLookup,
    NodeValidation,
    build_node_type_candidates,
    canonical_node_type,
)
from workflow_orchestrator.registry.tasks import (
    TaskFetchResult,
    TaskNode,
    TaskService,
    convert_failed_tasks_to_capabilities,
)
from workflow_orchestrator.registry.tools import RegistryTools, registry_tools

__all__ = [
    "CapabilityGap",
    "GapSearch",
    "GapSearchResult",
    "NodeInfoService",
    "NodeLookup",
    "NodeValidation",
    "RegistryClient",
    "RegistryClientProvider",
    "RegistrySettings",
    "RegistryTools",
    "TaskFetchResult",
    "TaskNode",
    "TaskService",
    "build_node_type_candidates",
    "canonical_node_type",
    "convert_failed_tasks_to_capabilities",
    "format_results_for_selection",
    "registry_tools",
    "summarize",
]
