"""Configuration Status Analyzer and visual-group classification."""

from __future__ import annotations

from workflow_orchestrator.analysis.categorization import (
    GROUP_ORDER,
    MIN_STICKY_HEIGHT,
    STICKY_TOP_SPACING,
    categorize_node,
    group_for_type,
    group_nodes,
    unified_sticky_height,
)
from workflow_orchestrator.analysis.config_analyzer import (
    analyze_node,
    analyze_workflow,
    credential_variable,
    is_placeholder,
    node_purpose,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _node(node_id, node_type, parameters=None, credentials=None, **extra):
    node = {"id": node_id, "name": node_id, "type": node_type, "parameters": parameters or {}}
    if credentials is not None:
        node["credentials"] = credentials
    node.update(extra)
    return node


# ---------------------------------------------------------------------------
# Value classification
# ---------------------------------------------------------------------------


class TestValueClassification:
    def test_placeholders(self):
        assert is_placeholder("https://api.example.com/data")
        assert is_placeholder("YOUR-CHANNEL")
        assert not is_placeholder("#general")
        assert not is_placeholder(42)

    def test_credential_expressions(self):
        assert credential_variable("{{$credentials.slackApi}}") == "slackApi"
        assert credential_variable("Bearer {{ $env.API_TOKEN }}") == "API_TOKEN"
        assert credential_variable("{{ $json.body }}") is None


# ---------------------------------------------------------------------------
# Node status
# ---------------------------------------------------------------------------


class TestNodeStatus:
    def test_placeholder_url_is_a_decision(self):
        status = analyze_node(_node("http", "n8n-nodes-base.httpRequest",
                                    {"url": "https://api.example.com/data", "method": "GET"}))
        assert status.status == "needs_decisions"
        assert [d.field for d in status.needs_decisions] == ["url"]
        assert [c.field for c in status.configured] == ["method"]

    def test_credential_expression_is_a_credential_need(self):
        status = analyze_node(_node(
            "slack", "n8n-nodes-base.slack",
            {"channel": "#alerts", "text": "{{$credentials.slackApi}}"},
            credentials={"slackApi": {"id": "7", "name": "Slack account"}},
        ))
        assert status.status == "needs_credentials"
        assert [c.variable for c in status.needs_credentials] == ["slackApi"]

    def test_missing_slack_credential_lists_alternatives(self):
        status = analyze_node(_node("slack", "n8n-nodes-base.slack", {"channel": "#alerts", "text": "hi"}))
        assert status.status == "needs_credentials"
        kinds = [c.credential_type for c in status.needs_credentials]
        assert kinds == ["slackApi", "slackOAuth2Api"]
        assert all(c.is_alternative for c in status.needs_credentials)

    def test_fully_configured(self):
        status = analyze_node(_node(
            "slack", "n8n-nodes-base.slack",
            {"channel": "#alerts", "text": "New order {{ $json.id }}"},
            credentials={"slackOAuth2Api": {"id": "3"}},
        ))
        assert status.status == "configured"
        assert status.is_ready

    def test_missing_required_field_offers_methods(self):
        status = analyze_node(_node("hook", "n8n-nodes-base.webhook", {"path": "orders"}))
        assert status.status == "needs_decisions"
        [decision] = status.needs_decisions
        assert decision.field == "httpMethod"
        assert "POST" in decision.options

    def test_both_kinds_is_partial(self):
        status = analyze_node(_node("sheet", "n8n-nodes-base.googleSheets", {"documentId": "your-doc-id"}))
        assert status.status == "partial"

    def test_nothing_filled_needs_decisions(self):
        assert analyze_node(_node("noop", "n8n-nodes-base.noOp")).status == "needs_decisions"

    def test_nested_values_scanned(self):
        status = analyze_node(_node("code", "n8n-nodes-base.set",
                                    {"values": {"string": [{"name": "key", "value": "placeholder"}]}}))
        assert [d.field for d in status.needs_decisions] == ["values.string.0.value"]

    def test_unknown_credential_without_id(self):
        status = analyze_node(_node("x", "n8n-nodes-base.noOp", {"a": 1}, credentials={"customApi": {}}))
        assert [c.credential_type for c in status.needs_credentials] == ["customApi"]

    def test_purpose_prefers_notes(self):
        assert node_purpose(_node("a", "n8n-nodes-base.slack", {"notes": "Ping on-call"})) == "Ping on-call"
        assert node_purpose(_node("a", "n8n-nodes-base.slack")) == "Send messages to Slack"
        assert node_purpose(_node("a", "n8n-nodes-base.unknownThing")) == "Process data"


# ---------------------------------------------------------------------------
# Workflow analysis
# ---------------------------------------------------------------------------


class TestWorkflowAnalysis:
    def test_summary_excludes_annotations(self):
        workflow = {"nodes": [
            _node("hook", "n8n-nodes-base.webhook", {"path": "orders", "httpMethod": "POST"}),
            _node("slack", "n8n-nodes-base.slack", {"channel": "#alerts", "text": "hi"}),
            _node("note", "n8n-nodes-base.stickyNote", {"content": "TODO"}),
        ]}
        result = analyze_workflow(workflow).to_dict()
        assert result["totalNodes"] == 2
        assert result["configuredNodes"] == 1
        assert result["isComplete"] is False
        assert result["missingCredentials"] == ["SLACKAPI", "SLACKOAUTH2API"]
        assert [n["id"] for n in result["nodes"]] == ["hook", "slack"]

    def test_empty_workflow_is_complete(self):
        result = analyze_workflow({"nodes": []})
        assert result.is_complete
        assert result.total_nodes == 0


# ---------------------------------------------------------------------------
# Visual groups
# ---------------------------------------------------------------------------


class TestCategorization:
    def test_category_wins(self):
        assert categorize_node({"id": "a", "type": "n8n-nodes-base.webhook", "category": "storage"}) == "output"

    def test_build_phase_used_without_category(self):
        phases = [{"type": "notification", "nodeIds": ["slack"]}]
        groups = group_nodes([{"id": "slack", "type": "n8n-nodes-base.slack"}], phases)
        assert groups["output"] == ["slack"]

    def test_type_fallback(self):
        assert categorize_node({"id": "a", "type": "n8n-nodes-base.scheduleTrigger"}) == "trigger"
        assert categorize_node({"id": "b", "type": "n8n-nodes-base.slack"}) == "transform"

    def test_group_for_type(self):
        assert group_for_type("n8n-nodes-base.webhook") == "trigger"
        assert group_for_type("n8n-nodes-base.cron") == "trigger"
        assert group_for_type("@n8n/n8n-nodes-langchain.chatTrigger") == "trigger"
        assert group_for_type("n8n-nodes-base.if") == "transform"
        assert group_for_type("n8n-nodes-base.merge") == "transform"
        assert group_for_type("") == "transform"

    def test_groups_always_in_order(self):
        assert list(group_nodes([])) == GROUP_ORDER

    def test_height_floor_and_tallest_group(self):
        nodes = [
            {"id": "a", "position": [470, 300]},
            {"id": "b", "position": [470, 600]},
        ]
        assert unified_sticky_height({"trigger": []}, nodes) == MIN_STICKY_HEIGHT + STICKY_TOP_SPACING
        assert unified_sticky_height({"trigger": ["a", "b"]}, nodes) == 200 + 40 + 400 + 40
