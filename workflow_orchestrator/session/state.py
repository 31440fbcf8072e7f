"""Session state for one workflow-build request.

A Session is a derived projection: the source of truth is
``operation_history``, and every other field is what folding those
operations over a fresh session produces (see operations.py).

Serialization to and from plain dicts happens only here, at the
persistence boundary. Older snapshots stored ``configured`` / ``validated``
as lists of pairs or lists of records; session_from_dict() accepts every
shape and always yields ordered mappings, so no read site needs to care.
"""

from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Phase
# ---------------------------------------------------------------------------


class Phase(str, Enum):
    DISCOVERY = "discovery"
    CONFIGURATION = "configuration"
    BUILDING = "building"
    VALIDATION = "validation"
    DOCUMENTATION = "documentation"
    COMPLETE = "complete"


PHASE_ORDER: list[Phase] = [
    Phase.DISCOVERY,
    Phase.CONFIGURATION,
    Phase.BUILDING,
    Phase.VALIDATION,
    Phase.DOCUMENTATION,
    Phase.COMPLETE,
]


def phase_index(phase: Phase | str) -> int:
    return PHASE_ORDER.index(Phase(phase))


def next_phase(phase: Phase | str) -> Phase | None:
    """Successor of phase in the fixed order, or None for COMPLETE."""
    idx = phase_index(phase)
    if idx + 1 >= len(PHASE_ORDER):
        return None
    return PHASE_ORDER[idx + 1]


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


@dataclass
class DiscoveredNode:
    """A capability candidate found during Discovery.

    id:                Session-local node id (e.g. "task_receive_webhook", "gap_slack_0").
    type:              Registry node type (e.g. "n8n-nodes-base.slack").
    display_name:      Human-readable name.
    purpose:           What the node is for in this workflow (model guess).
    category:          Visual category hint from the registry ("trigger", "output", ...).
    is_pre_configured: True when the node came from a task template.
    config:            Template parameters carried from the task template, if any.
    """

    id: str = ""
    type: str = ""
    display_name: str = ""
    purpose: str = ""
    category: str | None = None
    is_pre_configured: bool = False
    config: dict[str, Any] = field(default_factory=dict)


@dataclass
class ConfiguredNode:
    node_id: str = ""
    node_type: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)
    purpose: str = ""
    category: str | None = None


@dataclass
class ValidationRecord:
    valid: bool = True
    errors: list[str] = field(default_factory=list)


@dataclass
class Clarification:
    question_id: str = ""
    question: str = ""
    context: dict[str, Any] = field(default_factory=dict)


def _empty_metadata() -> dict[str, Any]:
    return {
        "operation_count": 0,
        "tokens": {"input": 0, "output": 0},
        "error_count": 0,
        "last_error": None,
    }


@dataclass
class Session:
    """Full persisted state of one build session.

    version is owned by the store (compare-and-swap stamp) and updated_at is
    stamped on persist; neither is touched by the operation reducer.
    """

    session_id: str
    user_prompt: str
    created_at: float
    original_prompt: str = ""
    owner: str | None = None
    webhook_url: str | None = None
    phase: Phase = Phase.DISCOVERY
    discovered: list[DiscoveredNode] = field(default_factory=list)
    selected: list[str] = field(default_factory=list)
    configured: dict[str, ConfiguredNode] = field(default_factory=dict)
    validated: dict[str, ValidationRecord] = field(default_factory=dict)
    workflow: dict[str, Any] = field(default_factory=dict)
    build_phases: list[dict[str, Any]] = field(default_factory=list)
    config_analysis: dict[str, Any] | None = None
    pending_clarifications: list[Clarification] = field(default_factory=list)
    clarification_history: list[dict[str, Any]] = field(default_factory=list)
    operation_history: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=_empty_metadata)
    updated_at: float | None = None
    version: int = 0

    @property
    def is_complete(self) -> bool:
        return self.phase == Phase.COMPLETE

    def discovered_node(self, node_id: str) -> DiscoveredNode | None:
        for node in self.discovered:
            if node.id == node_id:
                return node
        return None

    def pending_question(self, question_id: str) -> Clarification | None:
        for c in self.pending_clarifications:
            if c.question_id == question_id:
                return c
        return None


def new_session(
    session_id: str,
    prompt: str,
    owner: str | None = None,
    webhook_url: str | None = None,
    created_at: float | None = None,
) -> Session:
    """Fresh session in the discovery phase with an empty history."""
    return Session(
        session_id=session_id,
        user_prompt=prompt,
        original_prompt=prompt,
        created_at=created_at if created_at is not None else time.time(),
        owner=owner,
        webhook_url=webhook_url,
    )


def new_session_id() -> str:
    """Generate an id of the form wf_<epoch-ms>_<8 base36 chars>."""
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(random.choices(alphabet, k=8))
    return f"wf_{int(time.time() * 1000)}_{suffix}"


# ---------------------------------------------------------------------------
# Persistence boundary
# ---------------------------------------------------------------------------


def session_to_dict(session: Session) -> dict[str, Any]:
    """JSON-safe snapshot of a session."""
    return {
        "session_id": session.session_id,
        "user_prompt": session.user_prompt,
        "original_prompt": session.original_prompt,
        "created_at": session.created_at,
        "updated_at": session.updated_at,
        "owner": session.owner,
        "webhook_url": session.webhook_url,
        "phase": session.phase.value,
        "discovered": [_discovered_to_dict(n) for n in session.discovered],
        "selected": list(session.selected),
        "configured": {
            node_id: {
                "node_id": c.node_id,
                "node_type": c.node_type,
                "parameters": c.parameters,
                "purpose": c.purpose,
                "category": c.category,
            }
            for node_id, c in session.configured.items()
        },
        "validated": {
            node_id: {"valid": v.valid, "errors": list(v.errors)}
            for node_id, v in session.validated.items()
        },
        "workflow": session.workflow,
        "build_phases": session.build_phases,
        "config_analysis": session.config_analysis,
        "pending_clarifications": [
            {"question_id": c.question_id, "question": c.question, "context": c.context}
            for c in session.pending_clarifications
        ],
        "clarification_history": session.clarification_history,
        "operation_history": session.operation_history,
        "metadata": session.metadata,
        "version": session.version,
    }


def _discovered_to_dict(node: DiscoveredNode) -> dict[str, Any]:
    return {
        "id": node.id,
        "type": node.type,
        "display_name": node.display_name,
        "purpose": node.purpose,
        "category": node.category,
        "is_pre_configured": node.is_pre_configured,
        "config": node.config,
    }


def discovered_from_dict(d: dict[str, Any]) -> DiscoveredNode:
    return DiscoveredNode(
        id=d.get("id", ""),
        type=d.get("type", ""),
        display_name=d.get("display_name") or d.get("displayName") or "",
        purpose=d.get("purpose", ""),
        category=d.get("category"),
        is_pre_configured=bool(d.get("is_pre_configured", d.get("isPreConfigured", False))),
        config=dict(d.get("config") or {}),
    )


def _as_mapping(raw: Any) -> dict[str, dict[str, Any]]:
    """Normalize mapping / [[key, value], ...] / [{"nodeId": ...}, ...] into a dict."""
    if not raw:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    out: dict[str, dict[str, Any]] = {}
    for item in raw:
        if isinstance(item, (list, tuple)) and len(item) == 2:
            out[str(item[0])] = item[1]
        elif isinstance(item, dict):
            key = item.get("node_id") or item.get("nodeId") or item.get("id")
            if key:
                out[str(key)] = item
    return out


def session_from_dict(d: dict[str, Any]) -> Session:
    configured = {
        node_id: ConfiguredNode(
            node_id=c.get("node_id") or c.get("nodeId") or node_id,
            node_type=c.get("node_type") or c.get("nodeType") or c.get("type", ""),
            parameters=dict(c.get("parameters") or c.get("config") or {}),
            purpose=c.get("purpose", ""),
            category=c.get("category"),
        )
        for node_id, c in _as_mapping(d.get("configured")).items()
    }
    validated = {
        node_id: ValidationRecord(
            valid=bool(v.get("valid", True)),
            errors=[str(e) for e in v.get("errors") or []],
        )
        for node_id, v in _as_mapping(d.get("validated")).items()
    }
    metadata = _empty_metadata()
    metadata.update(d.get("metadata") or {})

    return Session(
        session_id=d["session_id"],
        user_prompt=d.get("user_prompt", ""),
        original_prompt=d.get("original_prompt") or d.get("user_prompt", ""),
        created_at=d.get("created_at") or 0.0,
        updated_at=d.get("updated_at"),
        owner=d.get("owner"),
        webhook_url=d.get("webhook_url"),
        phase=Phase(d.get("phase", Phase.DISCOVERY.value)),
        discovered=[discovered_from_dict(n) for n in d.get("discovered") or []],
        selected=list(d.get("selected") or []),
        configured=configured,
        validated=validated,
        workflow=d.get("workflow") or {},
        build_phases=list(d.get("build_phases") or []),
        config_analysis=d.get("config_analysis"),
        pending_clarifications=[
            Clarification(
                question_id=c.get("question_id", ""),
                question=c.get("question", ""),
                context=c.get("context") or {},
            )
            for c in d.get("pending_clarifications") or []
        ],
        clarification_history=list(d.get("clarification_history") or []),
        operation_history=list(d.get("operation_history") or []),
        metadata=metadata,
        version=int(d.get("version") or 0),
    )
