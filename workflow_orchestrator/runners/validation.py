"""Validation phase: the bounded auto-repair loop.

    check -> invalid? -> repair round -> check -> ... (at most max_attempts rounds)

A repair round first applies every machine-supplied fix the validator put
in its own error objects, then asks the model about every issue no fix
resolved, including fixes aimed at a node the graph does not have. The
model only ever sees the specific reported issues.

The loop never raises once the first check has answered: a validator or
model failure mid-loop ends the loop and the best graph so far is kept.
Ending still invalid is a partial result, reported as success with
data["valid"] False so later phases get whatever was achieved.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from workflow_orchestrator.analysis.config_analyzer import analyze_workflow, is_annotation
from workflow_orchestrator.reasoning import ReasoningEngine, complete_json
from workflow_orchestrator.registry.node_info import NodeInfoService
from workflow_orchestrator.registry.tools import RegistryTools
from workflow_orchestrator.runners.base import (
    PhaseResult,
    PhaseRunner,
    precondition_failed,
    token_usage,
)
from workflow_orchestrator.runners.configuration import NODE_LEVEL_PROPERTIES
from workflow_orchestrator.session.operations import (
    Operation,
    SetConfigAnalysis,
    SetWorkflow,
    ValidateNode,
)
from workflow_orchestrator.session.state import Phase, Session

logger = logging.getLogger("workflow_orchestrator.runners.validation")

MAX_ATTEMPTS = 3

_OUTDATED_RE = re.compile(r"outdated typeversion:?\s*([\d.]+)\.?\s*latest is\s*([\d.]+)", re.I)

_SYSTEM = """You repair an n8n workflow that failed validation.
Fix ONLY the issues listed. Do not restructure the workflow or rename nodes.
Reply with one JSON object and nothing else:
{"nodes": [<complete replacement node objects, only for nodes you changed>],
 "connections": {<full connections object, only if connections had to change>},
 "changes": ["<one line per change>"]}
When tools are available you may look up a node's properties or check a node before answering."""


@dataclass
class ValidationIssue:
    message: str
    node: str | None = None
    property: str | None = None
    fix: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"message": self.message}
        if self.node:
            d["node"] = self.node
        if self.property:
            d["property"] = self.property
        if self.fix is not None:
            d["fix"] = self.fix
        return d


# ---------------------------------------------------------------------------
# Validator output
# ---------------------------------------------------------------------------


def _issue_from(item: Any) -> ValidationIssue | None:
    if isinstance(item, str):
        return ValidationIssue(message=item)
    if not isinstance(item, dict):
        return None
    message = str(item.get("message") or item.get("error") or json.dumps(item, default=str))
    node = item.get("node") or item.get("nodeName") or item.get("nodeId")
    prop = item.get("property") or item.get("field")
    fix = item.get("fix") or item.get("autofix")
    if isinstance(fix, dict) and "property" not in fix and len(fix) == 1:
        # {"path": "incoming"} shorthand
        [(key, value)] = fix.items()
        fix = {"property": key, "value": value}
    if not (isinstance(fix, dict) and "property" in fix and "value" in fix):
        fix = None
    return ValidationIssue(
        message=message,
        node=str(node) if node else None,
        property=str(prop) if prop else None,
        fix=fix,
    )


def _promoted_warning(item: Any) -> ValidationIssue | None:
    issue = _issue_from(item)
    if issue is None:
        return None
    m = _OUTDATED_RE.search(issue.message)
    if not m:
        return None
    try:
        latest = float(m.group(2))
    except ValueError:
        logger.debug("Unreadable latest typeVersion in %r", issue.message)
        return issue
    if issue.fix is None:
        issue.fix = {"property": "typeVersion", "value": int(latest) if latest.is_integer() else latest}
    return issue


def normalize_issues(result: dict[str, Any]) -> list[ValidationIssue]:
    """Errors plus "Outdated typeVersion" warnings, as ValidationIssue objects."""
    issues = [i for i in (_issue_from(e) for e in result.get("errors") or []) if i]
    issues.extend(i for i in (_promoted_warning(w) for w in result.get("warnings") or []) if i)
    if not issues and result.get("valid") is False:
        issues.append(ValidationIssue(message="Workflow reported invalid without details"))
    return issues


# ---------------------------------------------------------------------------
# Applying fixes
# ---------------------------------------------------------------------------


def _find_node(workflow: dict[str, Any], ref: str | None) -> dict[str, Any] | None:
    if not ref:
        return None
    for node in workflow.get("nodes") or []:
        if ref in (node.get("name"), node.get("id")):
            return node
    return None


def _set_path(target: dict[str, Any], dotted: str, value: Any) -> None:
    keys = dotted.split(".")
    for key in keys[:-1]:
        nxt = target.get(key)
        if not isinstance(nxt, dict):
            nxt = {}
            target[key] = nxt
        target = nxt
    target[keys[-1]] = value


def apply_autofix(workflow: dict[str, Any], issue: ValidationIssue) -> bool:
    """Apply issue.fix in place. False when the target node is unknown."""
    node = _find_node(workflow, issue.node)
    if node is None or issue.fix is None:
        return False
    prop = str(issue.fix["property"])
    if prop.startswith("parameters."):
        prop = prop[len("parameters."):]
    elif prop.split(".", 1)[0] in NODE_LEVEL_PROPERTIES:
        _set_path(node, prop, issue.fix["value"])
        return True
    node.setdefault("parameters", {})
    _set_path(node["parameters"], prop, issue.fix["value"])
    return True


def apply_model_fix(workflow: dict[str, Any], reply: dict[str, Any]) -> int:
    """Replace nodes (matched by id, then name) and connections. Returns the change count."""
    changed = 0
    nodes = workflow.get("nodes") or []
    for replacement in reply.get("nodes") or []:
        if not isinstance(replacement, dict):
            continue
        for i, node in enumerate(nodes):
            same_id = replacement.get("id") and replacement.get("id") == node.get("id")
            same_name = replacement.get("name") and replacement.get("name") == node.get("name")
            if same_id or same_name:
                merged = {**node, **replacement}
                merged["id"] = node.get("id")
                merged["name"] = node.get("name")
                if replacement.get("position") is None:
                    merged["position"] = node.get("position")
                nodes[i] = merged
                changed += 1
                break
    if isinstance(reply.get("connections"), dict) and reply["connections"]:
        workflow["connections"] = reply["connections"]
        changed += 1
    return changed


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class ValidationRunner(PhaseRunner):
    phase = Phase.VALIDATION

    def __init__(
        self,
        engine: ReasoningEngine,
        node_info: NodeInfoService,
        max_attempts: int = MAX_ATTEMPTS,
        tools: RegistryTools | None = None,
    ) -> None:
        self._engine = engine
        self._node_info = node_info
        self._max_attempts = max_attempts
        self._tools = (tools or RegistryTools()).subset(
            "get_node_essentials", "validate_node_minimal"
        )

    async def run(self, session: Session) -> PhaseResult:
        if not session.workflow or not session.workflow.get("nodes"):
            return precondition_failed(
                self.phase,
                "NO_WORKFLOW",
                "No workflow to validate",
                "The workflow has not been built yet.",
            )

        ops: list[Operation] = []
        workflow = copy.deepcopy(session.workflow)

        result = await self._node_info.validate_workflow(workflow)
        issues = normalize_issues(result)
        initial = {"valid": not issues, "errorCount": len(issues)}
        best_workflow, best_issues = copy.deepcopy(workflow), issues

        attempts = 0
        fixes_applied: list[dict[str, Any]] = []

        while issues and attempts < self._max_attempts:
            attempts += 1
            logger.info(
                "Repair round %d/%d: %d issues", attempts, self._max_attempts, len(issues)
            )

            changed = 0
            remaining: list[ValidationIssue] = []
            for issue in issues:
                if issue.fix is None or not apply_autofix(workflow, issue):
                    remaining.append(issue)
                    continue
                changed += 1
                fixes_applied.append({
                    "attempt": attempts,
                    "source": "autofix",
                    "node": issue.node,
                    "property": issue.fix["property"],
                    "value": issue.fix["value"],
                })

            if remaining:
                try:
                    reply, response = await complete_json(
                        self._engine, _SYSTEM, self._prompt(workflow, remaining),
                        tools=self._tools.defs, executor=self._tools.executor,
                    )
                except Exception as e:
                    logger.warning("Repair model call failed in round %d: %s", attempts, e)
                    break
                ops.append(token_usage(response, self.phase))
                model_changes = apply_model_fix(workflow, reply)
                changed += model_changes
                if model_changes:
                    fixes_applied.append({
                        "attempt": attempts,
                        "source": "model",
                        "changes": [str(c) for c in reply.get("changes") or []],
                        "issues": [i.message for i in remaining],
                    })

            if not changed:
                logger.warning("Repair round %d changed nothing; stopping", attempts)
                break

            try:
                result = await self._node_info.validate_workflow(workflow)
            except Exception as e:
                logger.warning("Validator failed after repair round %d: %s", attempts, e)
                break
            issues = normalize_issues(result)
            if len(issues) <= len(best_issues):
                best_workflow, best_issues = copy.deepcopy(workflow), issues

        valid = not best_issues
        if valid:
            logger.info("Workflow valid after %d repair rounds", attempts)
        else:
            logger.warning(
                "Workflow still has %d issues after %d repair rounds; keeping best effort",
                len(best_issues), attempts,
            )

        if best_workflow != session.workflow:
            ops.append(SetWorkflow(workflow=best_workflow))
        ops.extend(_node_validations(best_workflow, best_issues))
        ops.append(SetConfigAnalysis(analysis=analyze_workflow(best_workflow).to_dict()))

        report = {
            "initial": initial,
            "attempts": attempts,
            "fixesApplied": fixes_applied,
            "final": {"valid": valid, "errors": [i.to_dict() for i in best_issues]},
        }
        return PhaseResult(
            success=True,
            phase=self.phase,
            operations=ops,
            data={"valid": valid, "attempts": attempts, "report": report},
        )

    def _prompt(self, workflow: dict[str, Any], issues: list[ValidationIssue]) -> str:
        return (
            f"Workflow:\n{json.dumps(workflow, indent=2)}\n\n"
            f"Issues to fix:\n{json.dumps([i.to_dict() for i in issues], indent=2)}"
        )


def _node_validations(workflow: dict[str, Any], issues: list[ValidationIssue]) -> list[ValidateNode]:
    ops = []
    for node in workflow.get("nodes") or []:
        if is_annotation(node):
            continue
        refs = {node.get("name"), node.get("id")}
        errors = [i.message for i in issues if i.node and i.node in refs]
        ops.append(ValidateNode(node_id=str(node.get("id")), valid=not errors, errors=errors))
    return ops
