"""Phase runner contract and the wrapper every runner call goes through.

A runner reads the session it is given, talks to its collaborators and
returns a PhaseResult: success flag, the operations to append, and
phase-specific data. Runners never write to the store themselves; the
Orchestrator queues their operations through the Session Manager.

Runners rebuild everything they need from the session on every call, so a
failed phase can be re-run against whatever partial progress was persisted.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from workflow_orchestrator.errors import VALIDATION, PhaseError, classify_exception
from workflow_orchestrator.metrics import MetricsCollector
from workflow_orchestrator.reasoning import EngineResponse
from workflow_orchestrator.session.operations import AddTokenUsage, Operation, RecordError
from workflow_orchestrator.session.state import Phase, Session

logger = logging.getLogger("workflow_orchestrator.runners.base")


@dataclass
class PhaseResult:
    success: bool
    phase: Phase
    operations: list[Operation] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error: PhaseError | None = None
    reasoning: list[str] = field(default_factory=list)
    metrics: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(
        cls,
        phase: Phase,
        error: PhaseError,
        operations: list[Operation] | None = None,
    ) -> "PhaseResult":
        return cls(success=False, phase=phase, operations=list(operations or []), error=error)


class PhaseRunner(ABC):
    """One pipeline phase."""

    phase: Phase

    @abstractmethod
    async def run(self, session: Session) -> PhaseResult:
        ...


def precondition_failed(phase: Phase, code: str, message: str, user_message: str) -> PhaseResult:
    """Failed, non-retryable result for a missing input from an earlier phase."""
    return PhaseResult.failure(
        phase,
        PhaseError(
            phase.value,
            message,
            code=code,
            user_message=user_message,
            retryable=False,
            error_type=VALIDATION,
        ),
    )


def token_usage(response: EngineResponse, phase: Phase) -> AddTokenUsage:
    return AddTokenUsage(
        input_tokens=response.input_tokens,
        output_tokens=response.output_tokens,
        phase=phase.value,
    )


async def wrap_phase(runner: PhaseRunner, session: Session, event_log=None) -> PhaseResult:
    """Run one phase with timing, exception classification and error recording.

    An exception escaping the runner becomes a failed result; every failed
    result carries a recordError operation so the failure is in the session
    history even if the caller never reads the response.
    """
    phase = runner.phase
    logger.info("Starting %s phase for session %s", phase.value, session.session_id)
    if event_log is not None:
        await event_log.insert_event(session.session_id, phase.value, "started")

    async with MetricsCollector(phase.value) as m:
        try:
            result = await runner.run(session)
        except Exception as e:
            error = classify_exception(e, phase.value)
            logger.error(
                "%s phase failed for session %s: %s (%s)",
                phase.value, session.session_id, error.message, error.code,
            )
            result = PhaseResult.failure(phase, error)

        if not result.success and result.error is not None:
            if not any(isinstance(op, RecordError) for op in result.operations):
                result.operations.append(
                    RecordError(
                        phase=phase.value,
                        code=result.error.code,
                        message=result.error.message,
                        error_type=result.error.error_type,
                        retryable=result.error.retryable,
                    )
                )

        for op in result.operations:
            if isinstance(op, AddTokenUsage):
                m.input_tokens += op.input_tokens
                m.output_tokens += op.output_tokens
        m.operation_count = len(result.operations)
        m.repair_attempts = int(result.data.get("attempts", 0)) if phase == Phase.VALIDATION else 0

    result.metrics = m.to_dict()
    status = "completed" if result.success else "failed"
    logger.info(
        "%s phase %s for session %s in %dms (%d ops)",
        phase.value, status, session.session_id, m.duration_ms, len(result.operations),
    )
    if event_log is not None:
        payload = dict(result.metrics)
        if result.error is not None:
            payload["error"] = result.error.to_dict()
        await event_log.insert_event(
            session.session_id,
            phase.value,
            status,
            duration_ms=m.duration_ms,
            summary=result.error.message if result.error else f"{len(result.operations)} operations",
            payload=payload,
        )
    return result
