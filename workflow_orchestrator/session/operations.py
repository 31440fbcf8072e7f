"""Operations - the only way session state changes.

Each operation is a small typed dataclass with an ``op_type`` discriminator.
The current state of a session is always::

    fold(new_session(...), operations)

apply_operation() is a pure reducer with one match arm per operation type.
Adding a new operation class without a match arm is caught by the
exhaustiveness fallthrough (TypeError) in the reducer tests.

Reducer rules that keep the session invariants true no matter what a
runner (or a model behind it) emits:

  - phase only moves forward one step at a time; nothing moves discovery
    straight to building
  - completePhase(p) advances only when the session is in p, so a repeated
    completePhase is a no-op
  - no phase movement while a clarification is pending
  - selectNode needs a prior discoverNode; configureNode needs a prior
    selectNode
  - setWorkflow is accepted only during building / validation / documentation
  - operation_history is append-only
"""

from __future__ import annotations

import copy
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Union

from workflow_orchestrator.errors import OperationValidationError
from workflow_orchestrator.session.state import (
    Clarification,
    ConfiguredNode,
    DiscoveredNode,
    Phase,
    Session,
    ValidationRecord,
    discovered_from_dict,
    new_session,
    next_phase,
    phase_index,
)

logger = logging.getLogger("workflow_orchestrator.session.operations")


# ---------------------------------------------------------------------------
# Operation types
# ---------------------------------------------------------------------------


@dataclass
class SetUserPrompt:
    """Rewrite the working prompt (e.g. after a clarification answer)."""

    op_type: str = "setUserPrompt"
    prompt: str = ""
    reason: str = ""


@dataclass
class DiscoverNode:
    op_type: str = "discoverNode"
    node: DiscoveredNode = field(default_factory=DiscoveredNode)


@dataclass
class SelectNode:
    op_type: str = "selectNode"
    node_id: str = ""


@dataclass
class DeselectNode:
    op_type: str = "deselectNode"
    node_id: str = ""


@dataclass
class ConfigureNode:
    """Record the parameters produced for a selected node."""

    op_type: str = "configureNode"
    node_id: str = ""
    node_type: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)
    purpose: str = ""
    category: str | None = None


@dataclass
class ValidateNode:
    op_type: str = "validateNode"
    node_id: str = ""
    valid: bool = True
    errors: list[str] = field(default_factory=list)


@dataclass
class SetPhase:
    op_type: str = "setPhase"
    phase: str = ""


@dataclass
class CompletePhase:
    """Mark `phase` finished; the session moves to its successor."""

    op_type: str = "completePhase"
    phase: str = ""


@dataclass
class RequestClarification:
    op_type: str = "requestClarification"
    question_id: str = ""
    question: str = ""
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class ClarificationResponse:
    op_type: str = "clarificationResponse"
    question_id: str = ""
    response: str = ""


@dataclass
class SetWorkflow:
    op_type: str = "setWorkflow"
    workflow: dict[str, Any] = field(default_factory=dict)


@dataclass
class SetBuildPhases:
    """Visual grouping produced by Building, consumed only by Documentation.

    phases: [{"type": "trigger", "description": "...", "nodeIds": [...]}, ...]
    """

    op_type: str = "setBuildPhases"
    phases: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class SetConfigAnalysis:
    op_type: str = "setConfigAnalysis"
    analysis: dict[str, Any] = field(default_factory=dict)


@dataclass
class AddTokenUsage:
    op_type: str = "addTokenUsage"
    input_tokens: int = 0
    output_tokens: int = 0
    phase: str = ""


@dataclass
class RecordError:
    op_type: str = "recordError"
    phase: str = ""
    code: str = ""
    message: str = ""
    error_type: str = ""
    retryable: bool = True


Operation = Union[
    SetUserPrompt,
    DiscoverNode,
    SelectNode,
    DeselectNode,
    ConfigureNode,
    ValidateNode,
    SetPhase,
    CompletePhase,
    RequestClarification,
    ClarificationResponse,
    SetWorkflow,
    SetBuildPhases,
    SetConfigAnalysis,
    AddTokenUsage,
    RecordError,
]

_OP_TYPE_MAP: dict[str, type] = {
    "setUserPrompt": SetUserPrompt,
    "discoverNode": DiscoverNode,
    "selectNode": SelectNode,
    "deselectNode": DeselectNode,
    "configureNode": ConfigureNode,
    "validateNode": ValidateNode,
    "setPhase": SetPhase,
    "completePhase": CompletePhase,
    "requestClarification": RequestClarification,
    "clarificationResponse": ClarificationResponse,
    "setWorkflow": SetWorkflow,
    "setBuildPhases": SetBuildPhases,
    "setConfigAnalysis": SetConfigAnalysis,
    "addTokenUsage": AddTokenUsage,
    "recordError": RecordError,
}

# Flushed by the Session Manager as soon as they are queued.
PHASE_TRANSITION_TYPES: frozenset[str] = frozenset({"setPhase", "completePhase"})
CRITICAL_TYPES: frozenset[str] = frozenset({
    "requestClarification",
    "clarificationResponse",
    "configureNode",
    "setWorkflow",
    "recordError",
})

_WORKFLOW_WRITABLE_PHASES: frozenset[Phase] = frozenset({
    Phase.BUILDING,
    Phase.VALIDATION,
    Phase.DOCUMENTATION,
})


# ---------------------------------------------------------------------------
# Reducer
# ---------------------------------------------------------------------------


def apply_operation(session: Session, op: Operation) -> Session:
    """Return a new Session with op applied. The input is never mutated."""
    result = copy.deepcopy(session)
    _apply_in_place(result, op)
    return result


def fold(session: Session, ops: Iterable[Operation]) -> Session:
    """Apply ops in order on a copy of session."""
    result = copy.deepcopy(session)
    for op in ops:
        _apply_in_place(result, op)
    return result


def replay(session: Session) -> Session:
    """Rebuild a session from its operation history alone.

    The store-owned fields (version, updated_at) are carried over so the
    replayed session compares equal to a correctly derived one.
    """
    initial = new_session(
        session.session_id,
        session.original_prompt,
        owner=session.owner,
        webhook_url=session.webhook_url,
        created_at=session.created_at,
    )
    rebuilt = fold(initial, ops_from_dicts(session.operation_history))
    rebuilt.version = session.version
    rebuilt.updated_at = session.updated_at
    return rebuilt


def _apply_in_place(s: Session, op: Operation) -> None:
    _reduce(s, op)
    s.operation_history.append(op_to_dict(op))
    s.metadata["operation_count"] = s.metadata.get("operation_count", 0) + 1


def _reduce(s: Session, op: Operation) -> None:
    match op:
        case SetUserPrompt(prompt=prompt):
            s.user_prompt = prompt

        case DiscoverNode(node=node):
            node = copy.deepcopy(node)
            for i, existing in enumerate(s.discovered):
                if existing.id == node.id:
                    s.discovered[i] = node
                    break
            else:
                s.discovered.append(node)

        case SelectNode(node_id=node_id):
            if s.discovered_node(node_id) is None:
                logger.warning("selectNode %s ignored: node was never discovered", node_id)
                return
            if node_id not in s.selected:
                s.selected.append(node_id)

        case DeselectNode(node_id=node_id):
            if node_id in s.selected:
                s.selected.remove(node_id)
            s.configured.pop(node_id, None)
            s.validated.pop(node_id, None)

        case ConfigureNode():
            if op.node_id not in s.selected:
                logger.warning("configureNode %s ignored: node is not selected", op.node_id)
                return
            s.configured[op.node_id] = ConfiguredNode(
                node_id=op.node_id,
                node_type=op.node_type,
                parameters=copy.deepcopy(op.parameters),
                purpose=op.purpose,
                category=op.category,
            )

        case ValidateNode(node_id=node_id, valid=valid, errors=errors):
            s.validated[node_id] = ValidationRecord(valid=valid, errors=list(errors))

        case SetPhase(phase=target):
            _move_phase(s, Phase(target), op_name="setPhase")

        case CompletePhase(phase=done):
            if s.phase != Phase(done):
                logger.debug("completePhase(%s) ignored: session is in %s", done, s.phase.value)
                return
            successor = next_phase(done)
            if successor is not None:
                _move_phase(s, successor, op_name="completePhase")

        case RequestClarification(question_id=qid, question=question, context=context):
            if s.pending_question(qid) is None:
                s.pending_clarifications.append(
                    Clarification(question_id=qid, question=question, context=copy.deepcopy(context))
                )

        case ClarificationResponse(question_id=qid, response=response):
            pending = s.pending_question(qid)
            if pending is None:
                logger.warning("clarificationResponse for unknown question %s ignored", qid)
                return
            s.pending_clarifications.remove(pending)
            s.clarification_history.append(
                {"questionId": qid, "question": pending.question, "response": response}
            )

        case SetWorkflow(workflow=workflow):
            if s.phase not in _WORKFLOW_WRITABLE_PHASES:
                logger.warning("setWorkflow ignored during %s phase", s.phase.value)
                return
            s.workflow = copy.deepcopy(workflow)

        case SetBuildPhases(phases=phases):
            s.build_phases = copy.deepcopy(phases)

        case SetConfigAnalysis(analysis=analysis):
            s.config_analysis = copy.deepcopy(analysis)

        case AddTokenUsage(input_tokens=inp, output_tokens=out):
            tokens = s.metadata.setdefault("tokens", {"input": 0, "output": 0})
            tokens["input"] = tokens.get("input", 0) + inp
            tokens["output"] = tokens.get("output", 0) + out

        case RecordError():
            s.metadata["error_count"] = s.metadata.get("error_count", 0) + 1
            s.metadata["last_error"] = {
                "phase": op.phase,
                "code": op.code,
                "message": op.message,
                "type": op.error_type,
                "retryable": op.retryable,
            }

        case _:
            raise TypeError(f"Unhandled operation type: {type(op).__name__}")


def _move_phase(s: Session, target: Phase, op_name: str) -> None:
    if s.pending_clarifications:
        logger.warning(
            "%s(%s) ignored: clarification %s pending",
            op_name, target.value, s.pending_clarifications[0].question_id,
        )
        return
    current, wanted = phase_index(s.phase), phase_index(target)
    if wanted == current:
        return
    if wanted != current + 1:
        logger.warning(
            "%s ignored: cannot move from %s to %s", op_name, s.phase.value, target.value
        )
        return
    s.phase = target


# ---------------------------------------------------------------------------
# JSON serialization / deserialization
# ---------------------------------------------------------------------------


def op_to_dict(op: Operation) -> dict[str, Any]:
    """Serialize a single operation to a JSON-safe dict."""
    return dataclasses.asdict(op)


def op_from_dict(d: dict[str, Any]) -> Operation:
    """Deserialize a dict to a typed operation.

    Raises OperationValidationError for a missing or unknown op_type.
    Unknown keys are silently dropped (forward-compatibility).
    """
    op_type = d.get("op_type") or d.get("type")
    cls = _OP_TYPE_MAP.get(op_type)  # type: ignore[arg-type]
    if cls is None:
        raise OperationValidationError(
            [f"Unknown op_type: {op_type!r}. Valid types: {list(_OP_TYPE_MAP)}"]
        )
    valid_fields = {f.name for f in dataclasses.fields(cls)}
    filtered = {k: v for k, v in d.items() if k in valid_fields}
    filtered["op_type"] = op_type
    if cls is DiscoverNode and isinstance(filtered.get("node"), dict):
        filtered["node"] = discovered_from_dict(filtered["node"])
    return cls(**filtered)


def ops_from_dicts(items: Iterable[dict[str, Any]]) -> list[Operation]:
    """Deserialize a list of operation dicts, collecting every error."""
    ops: list[Operation] = []
    errors: list[str] = []
    for i, item in enumerate(items):
        try:
            ops.append(op_from_dict(item))
        except OperationValidationError as e:
            errors.extend(f"[{i}] {msg}" for msg in e.errors)
    if errors:
        raise OperationValidationError(errors)
    return ops


def is_flush_trigger(op: Operation) -> bool:
    """True for phase transitions and critical operations."""
    return op.op_type in PHASE_TRANSITION_TYPES or op.op_type in CRITICAL_TYPES
