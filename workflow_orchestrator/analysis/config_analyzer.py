"""Configuration Status Analyzer.

Pure inspection of an assembled workflow: for every non-annotation node it
reports which fields are filled, which credentials are still missing and
which decisions (placeholders, empty required fields) the user must make.
No registry or model calls are made.

Node status:
    configured         no credential or decision needs, at least one filled field
    needs_credentials  only credential needs
    needs_decisions    only decision needs, or nothing filled at all
    partial            both kinds of need

analyze_workflow() output is stored on the session via setConfigAnalysis.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from workflow_orchestrator.registry.node_info import canonical_node_type

logger = logging.getLogger("workflow_orchestrator.analysis.config_analyzer")

STICKY_NOTE_TYPE = "n8n-nodes-base.stickyNote"

PLACEHOLDER_PATTERNS: tuple[str, ...] = (
    "your-",
    "example.com",
    "placeholder",
    "todo",
    "fixme",
    "xxx",
    "https://api.",
    "test-",
    "demo-",
    "sample-",
    "<your_",
    "[your_",
    "{your_",
)

_CREDENTIAL_EXPR = re.compile(r"\{\{\s*\$(?:vars|credentials|env)\.([^}]+?)\s*\}\}")

# Keyed by canonical node type (nodes-base.X).
REQUIRED_FIELDS: dict[str, list[str]] = {
    "nodes-base.httpRequest": ["url", "method"],
    "nodes-base.webhook": ["path", "httpMethod"],
    "nodes-base.googleSheets": ["documentId", "sheetName"],
    "nodes-base.googleSheetsTrigger": ["documentId"],
    "nodes-base.postgres": ["database", "table"],
    "nodes-base.mysql": ["database", "table"],
    "nodes-base.mongodb": ["database", "collection"],
}

# Node type -> alternative credential kinds; any one of them satisfies the node.
AUTH_REQUIREMENTS: dict[str, list[str]] = {
    "nodes-base.slack": ["slackApi", "slackOAuth2Api"],
    "nodes-base.gmail": ["gmailOAuth2"],
    "nodes-base.emailSend": ["smtp"],
    "nodes-base.googleSheets": ["googleSheetsOAuth2Api", "googleApi"],
    "nodes-base.googleSheetsTrigger": ["googleSheetsTriggerOAuth2Api"],
    "nodes-base.postgres": ["postgres"],
    "nodes-base.mysql": ["mySql"],
    "nodes-base.mongodb": ["mongoDb"],
    "nodes-base.telegram": ["telegramApi"],
    "nodes-base.discord": ["discordWebhookApi", "discordBotApi"],
    "nodes-base.airtable": ["airtableTokenApi", "airtableOAuth2Api"],
    "nodes-base.notion": ["notionApi", "notionOAuth2Api"],
    "nodes-base.github": ["githubApi", "githubOAuth2Api"],
    "nodes-base.hubspot": ["hubspotAppToken", "hubspotOAuth2Api"],
    "nodes-base.openAi": ["openAiApi"],
}

DEFAULT_PURPOSES: dict[str, str] = {
    "nodes-base.httpRequest": "Make HTTP API request",
    "nodes-base.webhook": "Receive webhook data",
    "nodes-base.code": "Execute custom JavaScript code",
    "nodes-base.googleSheets": "Read or write Google Sheets data",
    "nodes-base.googleSheetsTrigger": "Monitor Google Sheets for changes",
    "nodes-base.postgres": "Query PostgreSQL database",
    "nodes-base.mysql": "Query MySQL database",
    "nodes-base.mongodb": "Query MongoDB database",
    "nodes-base.merge": "Merge data from multiple sources",
    "nodes-base.splitInBatches": "Split data into batches",
    "nodes-base.if": "Conditional branching",
    "nodes-base.switch": "Multi-path branching",
    "nodes-base.xml": "Convert between XML and JSON",
    "nodes-base.csv": "Parse or generate CSV data",
    "nodes-base.emailSend": "Send emails",
    "nodes-base.slack": "Send messages to Slack",
}

FIELD_DESCRIPTIONS: dict[str, str] = {
    "url": "API endpoint URL",
    "method": "HTTP method",
    "path": "Webhook path",
    "documentId": "Google Sheets document ID",
    "sheetName": "Sheet name",
    "database": "Database name",
    "table": "Table name",
    "collection": "Collection name",
}

HTTP_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]

_SKIPPED_PARAMETERS = frozenset({"notes", "description"})


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class ConfiguredField:
    field: str
    value: Any
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "value": self.value, "description": self.description}


@dataclass
class CredentialRequirement:
    field: str
    credential_type: str
    variable: str
    description: str = ""
    is_alternative: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "credentialType": self.credential_type,
            "variable": self.variable,
            "description": self.description,
            "isAlternative": self.is_alternative,
        }


@dataclass
class DecisionRequirement:
    field: str
    decision: str
    description: str = ""
    options: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "field": self.field,
            "decision": self.decision,
            "description": self.description,
        }
        if self.options:
            d["options"] = list(self.options)
        return d


@dataclass
class NodeConfigStatus:
    id: str
    name: str
    type: str
    purpose: str
    status: str
    configured: list[ConfiguredField] = field(default_factory=list)
    needs_credentials: list[CredentialRequirement] = field(default_factory=list)
    needs_decisions: list[DecisionRequirement] = field(default_factory=list)

    @property
    def is_ready(self) -> bool:
        return self.status == "configured"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "purpose": self.purpose,
            "status": self.status,
            "configured": [c.to_dict() for c in self.configured],
            "needsCredentials": [c.to_dict() for c in self.needs_credentials],
            "needsDecisions": [d.to_dict() for d in self.needs_decisions],
            "isReady": self.is_ready,
        }


@dataclass
class WorkflowConfigAnalysis:
    timestamp: str
    is_complete: bool
    total_nodes: int
    configured_nodes: int
    missing_credentials: list[str] = field(default_factory=list)
    nodes: list[NodeConfigStatus] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "isComplete": self.is_complete,
            "totalNodes": self.total_nodes,
            "configuredNodes": self.configured_nodes,
            "missingCredentials": list(self.missing_credentials),
            "nodes": [n.to_dict() for n in self.nodes],
        }


# ---------------------------------------------------------------------------
# Classification helpers
# ---------------------------------------------------------------------------


def is_placeholder(value: Any) -> bool:
    if not isinstance(value, str) or not value:
        return False
    lower = value.lower()
    return any(p in lower for p in PLACEHOLDER_PATTERNS)


def credential_variable(value: Any) -> str | None:
    """Name referenced by a {{ $vars|$credentials|$env.X }} expression, if any."""
    if not isinstance(value, str):
        return None
    m = _CREDENTIAL_EXPR.search(value)
    return m.group(1).strip() if m else None


def _variable_name(credential_type: str) -> str:
    return re.sub(r"[^A-Z0-9]", "_", credential_type.upper())


def _credential_kind(field_name: str) -> str:
    lower = field_name.lower()
    if "auth" in lower or "token" in lower:
        return "API Key"
    if "password" in lower:
        return "Password"
    if "secret" in lower:
        return "Secret"
    return "Credential"


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def node_purpose(node: dict[str, Any]) -> str:
    params = node.get("parameters") or {}
    for candidate in (
        params.get("notes"),
        params.get("description"),
        node.get("purpose"),
        node.get("notes"),
    ):
        if isinstance(candidate, str) and candidate.strip():
            return candidate
    return DEFAULT_PURPOSES.get(canonical_node_type(node.get("type", "")), "Process data")


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


def _scan_value(
    path: str,
    value: Any,
    required: list[str],
    configured: list[ConfiguredField],
    needs_credentials: list[CredentialRequirement],
    needs_decisions: list[DecisionRequirement],
) -> None:
    if isinstance(value, dict) and value:
        for key, child in value.items():
            _scan_value(f"{path}.{key}", child, required, configured, needs_credentials, needs_decisions)
        return
    if isinstance(value, list) and value:
        for i, child in enumerate(value):
            _scan_value(f"{path}.{i}", child, required, configured, needs_credentials, needs_decisions)
        return

    name = path.rsplit(".", 1)[-1]
    variable = credential_variable(value)
    if is_placeholder(value):
        needs_decisions.append(DecisionRequirement(
            field=path,
            decision="Replace placeholder value",
            description=f'Current value "{value}" appears to be a placeholder',
        ))
    elif variable is not None:
        needs_credentials.append(CredentialRequirement(
            field=path,
            credential_type=_credential_kind(name),
            variable=variable,
            description="Credential or environment variable required",
        ))
    elif path in required and _is_empty(value):
        needs_decisions.append(DecisionRequirement(
            field=path,
            decision="Provide required value",
            description=f'Required field "{path}" is empty',
        ))
    elif not _is_empty(value):
        configured.append(ConfiguredField(
            field=path, value=value, description=FIELD_DESCRIPTIONS.get(name, name)
        ))


def analyze_node(node: dict[str, Any]) -> NodeConfigStatus:
    node_type = node.get("type", "")
    canonical = canonical_node_type(node_type)
    params = node.get("parameters") or {}
    credentials = node.get("credentials") or {}
    required = REQUIRED_FIELDS.get(canonical, [])

    configured: list[ConfiguredField] = []
    needs_credentials: list[CredentialRequirement] = []
    needs_decisions: list[DecisionRequirement] = []

    alternatives = AUTH_REQUIREMENTS.get(canonical, [])
    satisfied = any(
        isinstance(credentials.get(kind), dict) and credentials[kind].get("id")
        for kind in alternatives
    )
    if alternatives and not satisfied:
        for kind in alternatives:
            needs_credentials.append(CredentialRequirement(
                field="credentials",
                credential_type=kind,
                variable=_variable_name(kind),
                description=f"Option: {kind}" if len(alternatives) > 1 else f"Requires {kind}",
                is_alternative=len(alternatives) > 1,
            ))

    for kind, cred in credentials.items():
        if kind in alternatives:
            continue
        if not isinstance(cred, dict) or not cred.get("id"):
            needs_credentials.append(CredentialRequirement(
                field="credentials",
                credential_type=kind,
                variable=_variable_name(kind),
                description=f"{kind} credentials required",
            ))

    for key, value in params.items():
        if key in _SKIPPED_PARAMETERS:
            continue
        _scan_value(key, value, required, configured, needs_credentials, needs_decisions)

    flagged = {d.field for d in needs_decisions}
    for name in required:
        if name not in flagged and _is_empty(params.get(name)):
            needs_decisions.append(DecisionRequirement(
                field=name,
                decision="Provide required value",
                description=f'Required field "{name}" is missing',
                options=HTTP_METHODS if name in ("method", "httpMethod") else None,
            ))

    if needs_credentials and needs_decisions:
        status = "partial"
    elif needs_credentials:
        status = "needs_credentials"
    elif needs_decisions or not configured:
        status = "needs_decisions"
    else:
        status = "configured"

    return NodeConfigStatus(
        id=str(node.get("id") or node.get("name") or ""),
        name=str(node.get("name") or node.get("id") or ""),
        type=node_type,
        purpose=node_purpose(node),
        status=status,
        configured=configured,
        needs_credentials=needs_credentials,
        needs_decisions=needs_decisions,
    )


def is_annotation(node: dict[str, Any]) -> bool:
    return "stickyNote" in (node.get("type") or "")


def analyze_workflow(workflow: dict[str, Any]) -> WorkflowConfigAnalysis:
    """Classify every non-annotation node of workflow."""
    statuses = [analyze_node(n) for n in workflow.get("nodes") or [] if not is_annotation(n)]
    missing: list[str] = []
    for status in statuses:
        for cred in status.needs_credentials:
            if cred.variable not in missing:
                missing.append(cred.variable)

    ready = sum(1 for s in statuses if s.is_ready)
    logger.debug("Configuration analysis: %d/%d nodes configured", ready, len(statuses))
    return WorkflowConfigAnalysis(
        timestamp=datetime.now(timezone.utc).isoformat(),
        is_complete=all(s.is_ready for s in statuses),
        total_nodes=len(statuses),
        configured_nodes=ready,
        missing_credentials=missing,
        nodes=statuses,
    )
