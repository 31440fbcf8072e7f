"""Known parameter fixes applied before a node configuration is validated.

Some registry templates and model replies use field names the node itself
does not accept. Patches are keyed by canonical node type and run over
the parameters dict, once on the template and once on the merged result.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Callable

from workflow_orchestrator.registry.node_info import canonical_node_type

logger = logging.getLogger("workflow_orchestrator.runners.patches")


@dataclass(frozen=True)
class ParameterPatch:
    node_type: str
    description: str
    apply: Callable[[dict[str, Any]], dict[str, Any]]


def _slack_channel(params: dict[str, Any]) -> dict[str, Any]:
    # The Slack node reads channelId and needs select to know the target kind.
    if "channel" in params:
        params["channelId"] = params.pop("channel")
        params["select"] = "channel"
    if params.get("channelId") and not params.get("select"):
        params["select"] = "channel"
    return params


PATCHES: list[ParameterPatch] = [
    ParameterPatch(
        node_type="nodes-base.slack",
        description="Slack channel -> channelId with select=channel",
        apply=_slack_channel,
    ),
]


def apply_patches(node_type: str, parameters: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    """Patched copy of parameters plus the descriptions of the patches that ran."""
    wanted = canonical_node_type(node_type)
    patched = copy.deepcopy(parameters)
    applied: list[str] = []
    for patch in PATCHES:
        if patch.node_type != wanted:
            continue
        patched = patch.apply(patched)
        applied.append(patch.description)
    if applied:
        logger.debug("Patched %s parameters: %s", node_type, "; ".join(applied))
    return patched, applied
