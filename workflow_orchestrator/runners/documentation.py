"""Documentation phase: lay nodes out by visual group and annotate each group.

No model or registry calls. Groups run left to right (trigger, input,
transform, output); inside a group nodes advance along x, except parallel
branches (several nodes fed by the same single source) which stack along y.
Every group gets one sticky note placed above it, and all notes share one
height so the row of boxes lines up.

Existing sticky notes are dropped first, so running the phase twice yields
the same workflow.
"""

from __future__ import annotations

import copy
import logging
from typing import Any

from workflow_orchestrator.analysis.categorization import (
    BASE_Y,
    GROUP_DEFINITIONS,
    GROUP_ORDER,
    MIN_STICKY_WIDTH,
    NODE_WIDTH,
    START_X,
    STICKY_PADDING,
    STICKY_TOP_SPACING,
    VERTICAL_SPACING,
    WITHIN_GROUP_SPACING,
    group_nodes,
    unified_sticky_height,
)
from workflow_orchestrator.analysis.config_analyzer import STICKY_NOTE_TYPE, is_annotation
from workflow_orchestrator.runners.base import PhaseResult, PhaseRunner
from workflow_orchestrator.session.operations import SetWorkflow
from workflow_orchestrator.session.state import Phase, Session

logger = logging.getLogger("workflow_orchestrator.runners.documentation")


# ---------------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------------


def _sources_by_target(connections: dict[str, Any], name_to_id: dict[str, str]) -> dict[str, set[str]]:
    """target node id -> ids of the nodes feeding it."""
    sources: dict[str, set[str]] = {}
    for source_name, outputs in (connections or {}).items():
        source_id = name_to_id.get(source_name, source_name)
        for branches in (outputs or {}).values():
            for branch in branches or []:
                for link in branch or []:
                    target = link.get("node") if isinstance(link, dict) else None
                    if target:
                        sources.setdefault(name_to_id.get(target, target), set()).add(source_id)
    return sources


def _parallel_source(node_ids: list[str], sources: dict[str, set[str]]) -> str | None:
    """The shared single source when every node in the group hangs off it."""
    if len(node_ids) < 2:
        return None
    feeds = [sources.get(i, set()) for i in node_ids]
    if all(len(f) == 1 for f in feeds) and len({next(iter(f)) for f in feeds}) == 1:
        return next(iter(feeds[0]))
    return None


def layout_nodes(
    nodes: list[dict[str, Any]],
    groups: dict[str, list[str]],
    connections: dict[str, Any],
) -> None:
    """Assign positions in place."""
    by_id = {str(n.get("id")): n for n in nodes}
    name_to_id = {str(n.get("name")): str(n.get("id")) for n in nodes if n.get("name")}
    sources = _sources_by_target(connections, name_to_id)

    x = START_X
    for group in GROUP_ORDER:
        node_ids = groups.get(group) or []
        if not node_ids:
            continue
        if _parallel_source(node_ids, sources) is not None:
            for i, node_id in enumerate(node_ids):
                by_id[node_id]["position"] = [x, BASE_Y + i * VERTICAL_SPACING]
            x += WITHIN_GROUP_SPACING
        else:
            for node_id in node_ids:
                by_id[node_id]["position"] = [x, BASE_Y]
                x += WITHIN_GROUP_SPACING
        x += WITHIN_GROUP_SPACING


def build_sticky_notes(
    nodes: list[dict[str, Any]],
    groups: dict[str, list[str]],
) -> list[dict[str, Any]]:
    """One note per non-empty group, all the same height, all tops aligned."""
    positioned = {str(n.get("id")): n.get("position") or [START_X, BASE_Y] for n in nodes}
    occupied = [g for g in GROUP_ORDER if groups.get(g)]
    if not occupied:
        return []

    height = unified_sticky_height(groups, nodes)
    global_min_y = min(positioned[i][1] for g in occupied for i in groups[g])
    top_y = global_min_y - STICKY_PADDING - STICKY_TOP_SPACING

    notes = []
    for group in occupied:
        xs = [positioned[i][0] for i in groups[group]]
        min_x, max_x = min(xs), max(xs)
        center_x = (min_x + max_x + NODE_WIDTH) / 2
        width = max(MIN_STICKY_WIDTH, (max_x - min_x + NODE_WIDTH) + 2 * STICKY_PADDING)
        definition = GROUP_DEFINITIONS[group]
        notes.append({
            "id": f"sticky_{group}",
            "name": f"{definition['name']} Documentation",
            "type": STICKY_NOTE_TYPE,
            "typeVersion": 1,
            "position": [round(center_x - width / 2), top_y],
            "parameters": {
                "content": f"## {definition['icon']} {definition['name']}\n{definition['description']}",
                "height": height,
                "width": width,
                "color": definition["color"],
            },
        })
    return notes


def document_workflow(
    workflow: dict[str, Any],
    build_phases: list[dict[str, Any]] | None = None,
) -> tuple[dict[str, Any], dict[str, list[str]]]:
    """Return the annotated copy of workflow and the groups it was laid out by."""
    documented = copy.deepcopy(workflow)
    nodes = [n for n in documented.get("nodes") or [] if not is_annotation(n)]
    groups = group_nodes(nodes, build_phases)
    layout_nodes(nodes, groups, documented.get("connections") or {})
    notes = build_sticky_notes(nodes, groups)
    documented["nodes"] = notes + nodes
    return documented, groups


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class DocumentationRunner(PhaseRunner):
    phase = Phase.DOCUMENTATION

    async def run(self, session: Session) -> PhaseResult:
        workflow = session.workflow or {"nodes": [], "connections": {}}
        documented, groups = document_workflow(workflow, session.build_phases)
        note_count = sum(1 for n in documented["nodes"] if is_annotation(n))

        logger.info(
            "Documented %d nodes in %d groups",
            len(documented["nodes"]) - note_count, note_count,
        )
        return PhaseResult(
            success=True,
            phase=self.phase,
            operations=[SetWorkflow(workflow=documented)],
            data={
                "stickyNotes": note_count,
                "groups": {g: ids for g, ids in groups.items() if ids},
            },
        )
