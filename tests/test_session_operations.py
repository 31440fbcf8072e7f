"""Operation reducer: phase ordering, node subset rules, replay determinism."""

from __future__ import annotations

import pytest

from workflow_orchestrator.errors import OperationValidationError
from workflow_orchestrator.session.operations import (
    AddTokenUsage,
    ClarificationResponse,
    CompletePhase,
    ConfigureNode,
    DeselectNode,
    DiscoverNode,
    RecordError,
    RequestClarification,
    SelectNode,
    SetPhase,
    SetUserPrompt,
    SetWorkflow,
    ValidateNode,
    apply_operation,
    fold,
    is_flush_trigger,
    op_from_dict,
    op_to_dict,
    ops_from_dicts,
    replay,
)
from workflow_orchestrator.session.state import (
    DiscoveredNode,
    Phase,
    new_session,
    session_from_dict,
    session_to_dict,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _session():
    return new_session("wf_test", "send a Slack message when a webhook fires", created_at=1000.0)


def _node(node_id: str = "n1", node_type: str = "n8n-nodes-base.slack") -> DiscoveredNode:
    return DiscoveredNode(id=node_id, type=node_type, display_name=node_id)


# ---------------------------------------------------------------------------
# Phase ordering
# ---------------------------------------------------------------------------


class TestPhaseOrdering:
    def test_complete_phase_moves_one_step(self):
        s = fold(_session(), [CompletePhase(phase="discovery")])
        assert s.phase == Phase.CONFIGURATION

    def test_repeated_complete_phase_is_noop(self):
        s = fold(_session(), [CompletePhase(phase="discovery"), CompletePhase(phase="discovery")])
        assert s.phase == Phase.CONFIGURATION

    def test_cannot_skip_from_discovery_to_building(self):
        s = fold(_session(), [SetPhase(phase="building")])
        assert s.phase == Phase.DISCOVERY

    def test_set_phase_backwards_ignored(self):
        s = fold(_session(), [CompletePhase(phase="discovery"), SetPhase(phase="discovery")])
        assert s.phase == Phase.CONFIGURATION

    def test_full_forward_sequence_reaches_complete(self):
        ops = [
            CompletePhase(phase=p)
            for p in ("discovery", "configuration", "building", "validation", "documentation")
        ]
        s = fold(_session(), ops)
        assert s.phase == Phase.COMPLETE
        assert s.is_complete

    def test_complete_phase_after_complete_is_noop(self):
        ops = [
            CompletePhase(phase=p)
            for p in ("discovery", "configuration", "building", "validation", "documentation", "complete")
        ]
        assert fold(_session(), ops).phase == Phase.COMPLETE

    def test_pending_clarification_blocks_phase_movement(self):
        s = fold(_session(), [
            RequestClarification(question_id="q_1", question="Which channel?"),
            CompletePhase(phase="discovery"),
        ])
        assert s.phase == Phase.DISCOVERY
        assert len(s.pending_clarifications) == 1

    def test_answered_clarification_unblocks(self):
        s = fold(_session(), [
            RequestClarification(question_id="q_1", question="Which channel?"),
            ClarificationResponse(question_id="q_1", response="#alerts"),
            CompletePhase(phase="discovery"),
        ])
        assert s.phase == Phase.CONFIGURATION
        assert s.pending_clarifications == []
        assert s.clarification_history == [
            {"questionId": "q_1", "question": "Which channel?", "response": "#alerts"}
        ]

    def test_unknown_clarification_response_ignored(self):
        s = fold(_session(), [ClarificationResponse(question_id="q_missing", response="x")])
        assert s.clarification_history == []


# ---------------------------------------------------------------------------
# Node subset rules
# ---------------------------------------------------------------------------


class TestNodeSubsets:
    def test_select_requires_discover(self):
        s = fold(_session(), [SelectNode(node_id="ghost")])
        assert s.selected == []

    def test_configure_requires_select(self):
        s = fold(_session(), [
            DiscoverNode(node=_node()),
            ConfigureNode(node_id="n1", node_type="n8n-nodes-base.slack", parameters={"text": "hi"}),
        ])
        assert s.configured == {}

    def test_configured_subset_of_selected(self):
        s = fold(_session(), [
            DiscoverNode(node=_node("a")),
            DiscoverNode(node=_node("b")),
            SelectNode(node_id="a"),
            ConfigureNode(node_id="a", node_type="t", parameters={"x": 1}),
            ConfigureNode(node_id="b", node_type="t", parameters={"x": 2}),
        ])
        assert set(s.configured) <= set(s.selected)
        assert set(s.selected) <= {n.id for n in s.discovered}

    def test_select_is_idempotent(self):
        s = fold(_session(), [DiscoverNode(node=_node()), SelectNode(node_id="n1"), SelectNode(node_id="n1")])
        assert s.selected == ["n1"]

    def test_deselect_drops_configuration_and_validation(self):
        s = fold(_session(), [
            DiscoverNode(node=_node()),
            SelectNode(node_id="n1"),
            ConfigureNode(node_id="n1", node_type="t"),
            ValidateNode(node_id="n1", valid=False, errors=["bad"]),
            DeselectNode(node_id="n1"),
        ])
        assert s.selected == []
        assert s.configured == {}
        assert s.validated == {}

    def test_rediscovery_replaces_node(self):
        s = fold(_session(), [
            DiscoverNode(node=_node("n1", "n8n-nodes-base.slack")),
            DiscoverNode(node=_node("n1", "n8n-nodes-base.discord")),
        ])
        assert [n.type for n in s.discovered] == ["n8n-nodes-base.discord"]


# ---------------------------------------------------------------------------
# Workflow, metadata, history
# ---------------------------------------------------------------------------


class TestWorkflowAndMetadata:
    def test_set_workflow_rejected_before_building(self):
        s = fold(_session(), [SetWorkflow(workflow={"nodes": [{"id": "x"}]})])
        assert s.workflow == {}

    def test_set_workflow_accepted_in_building(self):
        s = fold(_session(), [
            CompletePhase(phase="discovery"),
            CompletePhase(phase="configuration"),
            SetWorkflow(workflow={"nodes": [{"id": "x"}], "connections": {}}),
        ])
        assert s.workflow["nodes"] == [{"id": "x"}]

    def test_token_usage_accumulates(self):
        s = fold(_session(), [
            AddTokenUsage(input_tokens=10, output_tokens=5, phase="discovery"),
            AddTokenUsage(input_tokens=3, output_tokens=2, phase="configuration"),
        ])
        assert s.metadata["tokens"] == {"input": 13, "output": 7}

    def test_record_error_sets_last_error(self):
        s = fold(_session(), [
            RecordError(phase="building", code="NO_CONFIGURED_NODES", message="none",
                        error_type="validation", retryable=False),
        ])
        assert s.metadata["error_count"] == 1
        assert s.metadata["last_error"]["code"] == "NO_CONFIGURED_NODES"

    def test_ignored_ops_still_recorded(self):
        s = fold(_session(), [SelectNode(node_id="ghost"), SetPhase(phase="building")])
        assert [op["op_type"] for op in s.operation_history] == ["selectNode", "setPhase"]
        assert s.metadata["operation_count"] == 2

    def test_apply_operation_does_not_mutate_input(self):
        original = _session()
        updated = apply_operation(original, SetUserPrompt(prompt="changed"))
        assert original.user_prompt == "send a Slack message when a webhook fires"
        assert updated.user_prompt == "changed"
        assert original.operation_history == []

    def test_unknown_operation_object_raises(self):
        class Bogus:
            op_type = "bogus"

        with pytest.raises(TypeError, match="Unhandled operation type"):
            apply_operation(_session(), Bogus())  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Serialization and replay
# ---------------------------------------------------------------------------


class TestReplay:
    def _ops(self):
        return [
            DiscoverNode(node=_node("webhook", "n8n-nodes-base.webhook")),
            DiscoverNode(node=_node("slack")),
            SelectNode(node_id="webhook"),
            SelectNode(node_id="slack"),
            RequestClarification(question_id="q_1", question="Channel?", context={"reason": "x"}),
            ClarificationResponse(question_id="q_1", response="#general"),
            CompletePhase(phase="discovery"),
            ConfigureNode(node_id="slack", node_type="n8n-nodes-base.slack", parameters={"text": "hi"}),
            ValidateNode(node_id="slack", valid=True),
            AddTokenUsage(input_tokens=7, output_tokens=3, phase="configuration"),
        ]

    def test_replay_reproduces_state(self):
        s = fold(_session(), self._ops())
        assert session_to_dict(replay(s)) == session_to_dict(s)

    def test_replay_after_persistence_round_trip(self):
        s = fold(_session(), self._ops())
        restored = session_from_dict(session_to_dict(s))
        assert session_to_dict(replay(restored)) == session_to_dict(s)

    def test_op_from_dict_accepts_type_alias_and_drops_unknown_keys(self):
        op = op_from_dict({"type": "selectNode", "node_id": "n1", "extra": True})
        assert op == SelectNode(node_id="n1")

    def test_discover_node_dict_rebuilt_as_dataclass(self):
        op = op_from_dict(op_to_dict(DiscoverNode(node=_node())))
        assert isinstance(op.node, DiscoveredNode)

    def test_unknown_op_type_rejected(self):
        with pytest.raises(OperationValidationError) as exc_info:
            ops_from_dicts([{"op_type": "selectNode", "node_id": "a"}, {"op_type": "teleport"}])
        assert exc_info.value.errors[0].startswith("[1]")


class TestFlushTriggers:
    @pytest.mark.parametrize("op", [
        CompletePhase(phase="discovery"),
        SetPhase(phase="configuration"),
        RequestClarification(question_id="q"),
        ClarificationResponse(question_id="q"),
        ConfigureNode(node_id="n"),
        SetWorkflow(),
        RecordError(),
    ])
    def test_critical_and_transition_ops_flush(self, op):
        assert is_flush_trigger(op)

    @pytest.mark.parametrize("op", [SelectNode(node_id="n"), AddTokenUsage(), ValidateNode(node_id="n")])
    def test_other_ops_wait(self, op):
        assert not is_flush_trigger(op)


class TestPersistenceBoundary:
    def test_configured_as_list_of_pairs_normalized(self):
        d = session_to_dict(_session())
        d["configured"] = [["n1", {"nodeType": "t", "parameters": {"a": 1}}]]
        d["validated"] = [{"nodeId": "n1", "valid": False, "errors": ["e"]}]
        s = session_from_dict(d)
        assert s.configured["n1"].node_type == "t"
        assert s.configured["n1"].parameters == {"a": 1}
        assert s.validated["n1"].valid is False
