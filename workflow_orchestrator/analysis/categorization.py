"""Static visual-group classification and layout constants for annotations.

Every workflow node lands in one of four visual groups, left to right:

    trigger -> input -> transform -> output

The group comes from, in order: the node's registry category, the build
phase Building put it in, its node type, and finally "transform".
"""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger("workflow_orchestrator.analysis.categorization")

GROUP_ORDER: list[str] = ["trigger", "input", "transform", "output"]

GROUP_DEFINITIONS: dict[str, dict[str, Any]] = {
    "trigger": {"icon": "📥", "name": "Triggers", "description": "Workflow entry points", "color": 5},
    "input": {"icon": "📊", "name": "Inputs", "description": "Data collection", "color": 5},
    "transform": {"icon": "⚙️", "name": "Transform", "description": "Processing & routing", "color": 5},
    "output": {"icon": "🚀", "name": "Outputs", "description": "Actions & destinations", "color": 6},
}

# Layout, in canvas pixels.
NODE_WIDTH = 150
NODE_HEIGHT = 100
WITHIN_GROUP_SPACING = 200
VERTICAL_SPACING = 150
STICKY_PADDING = 40
STICKY_TOP_SPACING = 200
MIN_STICKY_HEIGHT = 200
MIN_STICKY_WIDTH = 310
BASE_Y = 300
START_X = 470

CATEGORY_GROUPS: dict[str, str] = {
    "trigger": "trigger",
    "input": "input",
    "transform": "transform",
    "decision": "transform",
    "aggregation": "transform",
    "output": "output",
    "storage": "output",
    "integration": "output",
    "finalization": "output",
}

BUILD_PHASE_GROUPS: dict[str, str] = {
    "trigger": "trigger",
    "data_collection": "input",
    "data_processing": "transform",
    "decision": "transform",
    "aggregation": "transform",
    "error_handling": "transform",
    "notification": "output",
    "storage": "output",
    "integration": "output",
}

TRIGGER_NODE_TYPES = frozenset({"webhook", "cron", "manualTrigger", "scheduleTrigger"})


def base_type(node_type: str) -> str:
    return (node_type or "").rsplit(".", 1)[-1]


def group_for_type(node_type: str) -> str:
    """Trigger for known entry-point types and any *Trigger node, transform otherwise."""
    base = base_type(node_type)
    if base in TRIGGER_NODE_TYPES or base.endswith("Trigger"):
        return "trigger"
    return "transform"


def build_phase_index(build_phases: list[dict[str, Any]]) -> dict[str, str]:
    """node id -> visual group, from Building's phase grouping."""
    index: dict[str, str] = {}
    for phase in build_phases or []:
        group = BUILD_PHASE_GROUPS.get(str(phase.get("type", "")))
        if group is None:
            continue
        for node_id in phase.get("nodeIds") or phase.get("nodes") or []:
            index.setdefault(str(node_id), group)
    return index


def categorize_node(node: dict[str, Any], phase_index: dict[str, str] | None = None) -> str:
    category = node.get("category")
    if category:
        group = CATEGORY_GROUPS.get(str(category).lower())
        if group:
            return group
        logger.debug("Unexpected category %r for %s", category, node.get("type"))
    if phase_index:
        for key in (node.get("id"), node.get("name")):
            if key and str(key) in phase_index:
                return phase_index[str(key)]
    return group_for_type(node.get("type", ""))


def group_nodes(
    nodes: list[dict[str, Any]],
    build_phases: list[dict[str, Any]] | None = None,
) -> dict[str, list[str]]:
    """Visual group -> node ids, groups in GROUP_ORDER, nodes in input order."""
    index = build_phase_index(build_phases or [])
    groups: dict[str, list[str]] = {g: [] for g in GROUP_ORDER}
    for node in nodes:
        groups[categorize_node(node, index)].append(str(node.get("id")))
    return groups


def unified_sticky_height(groups: dict[str, list[str]], nodes: list[dict[str, Any]]) -> int:
    """One height for every note: the tallest group's span, with a floor."""
    positions = {str(n.get("id")): n.get("position") or [0, BASE_Y] for n in nodes}
    heights = [MIN_STICKY_HEIGHT + STICKY_TOP_SPACING]
    for node_ids in groups.values():
        ys = [positions[i][1] for i in node_ids if i in positions]
        if not ys:
            continue
        span = max(ys) - min(ys) + NODE_HEIGHT
        heights.append(STICKY_TOP_SPACING + STICKY_PADDING + span + STICKY_PADDING)
    return max(heights)
