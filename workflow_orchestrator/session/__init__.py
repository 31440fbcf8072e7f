"""Operation-sourced session state, storage and batching.

Exports:
  Session, Phase, PHASE_ORDER       - state model
  apply_operation / fold / replay   - pure reducer
  SessionStore, InMemorySessionStore, SqliteSessionStore
  SessionManager                    - batched writes in front of a store
"""

from workflow_orchestrator.session.manager import SessionManager
from workflow_orchestrator.session.operations import (
    AddTokenUsage,
    ClarificationResponse,
    CompletePhase,
    ConfigureNode,
    DeselectNode,
    DiscoverNode,
    Operation,
    RecordError,
    RequestClarification,
    SelectNode,
    SetBuildPhases,
    SetConfigAnalysis,
    SetPhase,
    SetUserPrompt,
    SetWorkflow,
    ValidateNode,
    apply_operation,
    fold,
    op_from_dict,
    op_to_dict,
    ops_from_dicts,
    replay,
)
from workflow_orchestrator.session.state import (
    PHASE_ORDER,
    ConfiguredNode,
    DiscoveredNode,
    Phase,
    Session,
    ValidationRecord,
    new_session,
    new_session_id,
    next_phase,
    session_from_dict,
    session_to_dict,
)
from workflow_orchestrator.session.store import (
    InMemorySessionStore,
    SessionStore,
    SqliteSessionStore,
)

__all__ = [
    "AddTokenUsage",
    "ClarificationResponse",
    "CompletePhase",
    "ConfigureNode",
    "ConfiguredNode",
    "DeselectNode",
    "DiscoverNode",
    "DiscoveredNode",
    "InMemorySessionStore",
    "Operation",
    "PHASE_ORDER",
    "Phase",
    "RecordError",
    "RequestClarification",
    "SelectNode",
    "Session",
    "SessionManager",
    "SessionStore",
    "SetBuildPhases",
    "SetConfigAnalysis",
    "SetPhase",
    "SetUserPrompt",
    "SetWorkflow",
    "SqliteSessionStore",
    "ValidateNode",
    "ValidationRecord",
    "apply_operation",
    "fold",
    "new_session",
    "new_session_id",
    "next_phase",
    "op_from_dict",
    "op_to_dict",
    "ops_from_dicts",
    "replay",
    "session_from_dict",
    "session_to_dict",
]
