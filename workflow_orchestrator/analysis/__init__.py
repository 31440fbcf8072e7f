"""Pure, offline analysis of assembled workflows."""

from workflow_orchestrator.analysis.categorization import (
    GROUP_ORDER,
    categorize_node,
    group_nodes,
    unified_sticky_height,
)
from workflow_orchestrator.analysis.config_analyzer import (
    NodeConfigStatus,
    WorkflowConfigAnalysis,
    analyze_node,
    analyze_workflow,
)

__all__ = [
    "GROUP_ORDER",
    "NodeConfigStatus",
    "WorkflowConfigAnalysis",
    "analyze_node",
    "analyze_workflow",
    "categorize_node",
    "group_nodes",
    "unified_sticky_height",
]
