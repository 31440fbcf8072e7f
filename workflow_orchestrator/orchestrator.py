"""Orchestrator: the phase state machine behind every external call.

    discovery -> configuration -> building -> validation -> documentation -> complete

advance() runs exactly one phase: load the session, dispatch the runner for
its phase, queue the runner's operations, and append completePhase when the
runner succeeded and no clarification is open. The caller polls advance()
until the status says complete.

A clarification holds the session in its phase. Only submit_clarification()
moves it on: the answer is recorded, folded into the working prompt, and the
same phase's runner runs again.

One advance per session at a time is the caller contract. Within a process
a second concurrent call is refused with a conflict error; across processes
the SQLite store's version stamp refuses the losing write.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from workflow_orchestrator.config import OrchestratorSettings
from workflow_orchestrator.errors import (
    NOT_FOUND,
    VALIDATION,
    ClarificationPendingError,
    OrchestratorError,
    PhaseError,
    SessionConflictError,
    SessionNotFoundError,
)
from workflow_orchestrator.persistence.event_log import EventLog
from workflow_orchestrator.reasoning import ReasoningEngine
from workflow_orchestrator.registry.gap_search import GapSearch
from workflow_orchestrator.registry.node_info import NodeInfoService
from workflow_orchestrator.registry.tasks import TaskService
from workflow_orchestrator.registry.tools import registry_tools
from workflow_orchestrator.runners.base import PhaseRunner, wrap_phase
from workflow_orchestrator.runners.building import BuildingRunner
from workflow_orchestrator.runners.configuration import ConfigurationRunner
from workflow_orchestrator.runners.discovery import DiscoveryRunner
from workflow_orchestrator.runners.documentation import DocumentationRunner
from workflow_orchestrator.runners.validation import ValidationRunner
from workflow_orchestrator.session.manager import SessionManager
from workflow_orchestrator.session.operations import (
    ClarificationResponse,
    CompletePhase,
    SetUserPrompt,
)
from workflow_orchestrator.session.state import Phase, Session, new_session_id
from workflow_orchestrator.session.store import (
    InMemorySessionStore,
    SessionStore,
    SqliteSessionStore,
)

logger = logging.getLogger("workflow_orchestrator.orchestrator")


# ---------------------------------------------------------------------------
# Status projection
# ---------------------------------------------------------------------------


@dataclass
class StatusProjection:
    """What pollers see. Nothing else about a session leaves the orchestrator."""

    session_id: str
    phase: str
    complete: bool
    prompt: str
    selected_nodes: list[dict[str, Any]] = field(default_factory=list)
    pending_clarification: dict[str, Any] | None = None
    workflow_summary: dict[str, Any] | None = None
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "sessionId": self.session_id,
            "phase": self.phase,
            "complete": self.complete,
            "prompt": self.prompt,
            "selectedNodes": self.selected_nodes,
        }
        if self.pending_clarification is not None:
            d["pendingClarification"] = self.pending_clarification
        if self.workflow_summary is not None:
            d["workflow"] = self.workflow_summary
        if self.error is not None:
            d["error"] = self.error
        return d


def project(session: Session, error: PhaseError | None = None) -> StatusProjection:
    selected = []
    for node_id in session.selected:
        node = session.discovered_node(node_id)
        selected.append({
            "id": node_id,
            "type": node.type if node else None,
            "displayName": node.display_name if node else node_id,
        })

    pending = None
    if session.pending_clarifications:
        c = session.pending_clarifications[0]
        pending = {"questionId": c.question_id, "question": c.question, "context": c.context}

    summary = None
    if session.workflow.get("nodes"):
        nodes = session.workflow["nodes"]
        summary = {
            "name": session.workflow.get("name"),
            "nodeCount": len(nodes),
            "connectionCount": len(session.workflow.get("connections") or {}),
        }
        if session.config_analysis:
            summary["configComplete"] = bool(session.config_analysis.get("isComplete"))

    return StatusProjection(
        session_id=session.session_id,
        phase=session.phase.value,
        complete=session.is_complete,
        prompt=session.user_prompt,
        selected_nodes=selected,
        pending_clarification=pending,
        workflow_summary=summary,
        error=error.to_dict() if error is not None else None,
    )


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


async def _fire_webhook(url: str, payload: dict) -> None:
    """POST a status payload to the session's webhook URL.

    Retries up to 3 times with exponential back-off (1s, 2s, 4s).
    Failures are logged but never propagate.
    """
    import httpx
    for attempt in range(3):
        try:
            async with httpx.AsyncClient(timeout=10) as http:
                r = await http.post(url, json=payload)
                r.raise_for_status()
            logger.debug("Webhook delivered to %s", url)
            return
        except Exception as exc:
            wait = 2 ** attempt
            logger.warning(
                "Webhook attempt %d failed (%s); retrying in %ds", attempt + 1, exc, wait
            )
            await asyncio.sleep(wait)
    logger.error("Webhook delivery failed after 3 attempts: %s", url)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator:
    """Drives sessions through the phase runners.

    Lifecycle:
        orchestrator = create_orchestrator(settings, engine, node_info, store)
        status = await orchestrator.initialize("send a Slack message when a webhook fires")
        while not status.complete:
            status = await orchestrator.advance(status.session_id)
        workflow = await orchestrator.export_workflow(status.session_id)
        await orchestrator.close()
    """

    def __init__(
        self,
        manager: SessionManager,
        runners: dict[Phase, PhaseRunner],
        event_log: EventLog | None = None,
        webhooks: bool = True,
    ) -> None:
        self._manager = manager
        self._runners = runners
        self._event_log = event_log
        self._webhooks = webhooks
        self._in_flight: set[str] = set()
        self._background: set[asyncio.Task] = set()

    @property
    def manager(self) -> SessionManager:
        return self._manager

    # ------------------------------------------------------------------
    # External operations
    # ------------------------------------------------------------------

    async def initialize(
        self,
        prompt: str,
        session_id: str | None = None,
        owner: str | None = None,
        webhook_url: str | None = None,
    ) -> StatusProjection:
        """Create a session in the discovery phase. Raises SessionConflictError if the id exists."""
        if not prompt or not prompt.strip():
            raise OrchestratorError(
                "Prompt must not be empty",
                code="EMPTY_PROMPT",
                user_message="Describe the workflow you want to build.",
                retryable=False,
                error_type=VALIDATION,
            )
        session_id = session_id or new_session_id()
        session = await self._manager.store.create(
            session_id, prompt.strip(), owner=owner, webhook_url=webhook_url
        )
        logger.info("Initialized session %s: %r", session_id, prompt[:80])
        return project(session)

    async def advance(self, session_id: str) -> StatusProjection:
        async with self._single_flight(session_id):
            session = await self._load(session_id)
            if session.is_complete:
                return project(session)
            if session.pending_clarifications:
                raise ClarificationPendingError(
                    session_id, session.pending_clarifications[0].question_id
                )
            return await self._run_phase(session)

    async def submit_clarification(
        self, session_id: str, question_id: str, answer: str
    ) -> StatusProjection:
        """Record the answer, fold it into the prompt, and re-run the same phase."""
        async with self._single_flight(session_id):
            session = await self._load(session_id)
            pending = session.pending_question(question_id)
            if pending is None:
                raise OrchestratorError(
                    f"No pending question {question_id} on session {session_id}",
                    code="QUESTION_NOT_FOUND",
                    user_message="That question is not waiting for an answer.",
                    retryable=False,
                    error_type=NOT_FOUND,
                )
            await self._manager.queue_operations(
                session_id,
                [
                    ClarificationResponse(question_id=question_id, response=answer),
                    SetUserPrompt(
                        prompt=f"{session.user_prompt}\n\nClarification[{question_id}]: {answer}",
                        reason="clarification",
                    ),
                ],
            )
            await self._manager.flush(session_id)
            logger.info("Clarification %s answered for session %s", question_id, session_id)

            session = await self._load(session_id)
            if session.pending_clarifications:
                return project(session)
            return await self._run_phase(session)

    async def get_status(self, session_id: str) -> StatusProjection:
        return project(await self._load(session_id))

    async def export_workflow(self, session_id: str) -> dict[str, Any]:
        """The built workflow as importable n8n JSON."""
        session = await self._load(session_id)
        if not session.workflow.get("nodes"):
            raise PhaseError(
                session.phase.value,
                f"Session {session_id} has no workflow yet",
                code="NO_WORKFLOW",
                user_message="The workflow has not been built yet.",
                retryable=False,
                error_type=VALIDATION,
            )
        workflow = dict(session.workflow)
        workflow["nodes"] = [
            {k: v for k, v in node.items() if k != "category"} for node in session.workflow["nodes"]
        ]
        return workflow

    async def cleanup_expired(self, max_age_hours: float) -> int:
        removed = await self._manager.store.cleanup_expired(max_age_hours)
        if removed:
            logger.info("Cleaned up %d sessions older than %.1fh", removed, max_age_hours)
        return removed

    async def close(self) -> None:
        await self._manager.close()
        for task in list(self._background):
            task.cancel()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _single_flight(self, session_id: str):
        if session_id in self._in_flight:
            raise SessionConflictError(session_id, "another request is already running")
        self._in_flight.add(session_id)
        try:
            yield
        finally:
            self._in_flight.discard(session_id)

    async def _load(self, session_id: str) -> Session:
        session = await self._manager.load(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def _run_phase(self, session: Session) -> StatusProjection:
        runner = self._runners.get(session.phase)
        if runner is None:
            raise PhaseError(
                session.phase.value,
                f"No runner registered for phase {session.phase.value}",
                code="NO_RUNNER",
                retryable=False,
                error_type=VALIDATION,
            )

        result = await wrap_phase(runner, session, self._event_log)
        await self._manager.queue_operations(session.session_id, result.operations)

        updated = await self._load(session.session_id)
        already_completed = any(isinstance(op, CompletePhase) for op in result.operations)
        if result.success and not updated.pending_clarifications and not already_completed:
            await self._manager.queue_operation(
                session.session_id, CompletePhase(phase=runner.phase.value)
            )
        persisted = await self._manager.flush(session.session_id)
        updated = persisted or await self._load(session.session_id)

        status = project(updated, error=None if result.success else result.error)
        if updated.webhook_url and self._webhooks:
            if updated.pending_clarifications and not session.pending_clarifications:
                self._notify(updated.webhook_url, "clarification", status)
            elif updated.is_complete:
                self._notify(updated.webhook_url, "complete", status)
        return status

    def _notify(self, url: str, event: str, status: StatusProjection) -> None:
        task = asyncio.create_task(_fire_webhook(url, {"type": event, **status.to_dict()}))
        self._background.add(task)
        task.add_done_callback(self._background.discard)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def default_runners(
    engine: ReasoningEngine,
    node_info: NodeInfoService,
    settings: OrchestratorSettings,
) -> dict[Phase, PhaseRunner]:
    tools = registry_tools(node_info.client)
    return {
        Phase.DISCOVERY: DiscoveryRunner(
            engine,
            TaskService(node_info.client),
            GapSearch(node_info),
            confidence_threshold=settings.confidence_threshold,
            tools=tools,
        ),
        Phase.CONFIGURATION: ConfigurationRunner(engine, node_info, tools=tools),
        Phase.BUILDING: BuildingRunner(engine),
        Phase.VALIDATION: ValidationRunner(
            engine, node_info, max_attempts=settings.validation_max_attempts, tools=tools,
        ),
        Phase.DOCUMENTATION: DocumentationRunner(),
    }


async def open_store(settings: OrchestratorSettings) -> SessionStore:
    """SQLite when SESSION_DB_PATH is set, in-memory otherwise."""
    if settings.uses_sqlite:
        return await SqliteSessionStore.open(settings.session_db_path)
    logger.warning("SESSION_DB_PATH not set; sessions live in memory only")
    return InMemorySessionStore()


def create_orchestrator(
    settings: OrchestratorSettings,
    engine: ReasoningEngine,
    node_info: NodeInfoService,
    store: SessionStore,
    event_log: EventLog | None = None,
    webhooks: bool = True,
) -> Orchestrator:
    manager = SessionManager(
        store, batch_size=settings.batch_size, save_interval=settings.save_interval
    )
    return Orchestrator(
        manager,
        default_runners(engine, node_info, settings),
        event_log=event_log,
        webhooks=webhooks,
    )
