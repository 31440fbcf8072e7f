"""Typed error taxonomy shared by the orchestrator, runners and HTTP surface.

Every failure that leaves a phase carries four things the caller can act on:

  type         - "validation" | "external_service" | "not_found" | "conflict"
  code         - stable machine-readable code (e.g. "NO_CONFIGURED_NODES")
  user_message - short text safe to show an end user
  retryable    - True when calling advance() again may succeed

classify_exception() maps arbitrary exceptions raised by collaborators
(model SDKs, the registry transport) onto this taxonomy.
"""

from __future__ import annotations

from typing import Any

VALIDATION = "validation"
EXTERNAL_SERVICE = "external_service"
NOT_FOUND = "not_found"
CONFLICT = "conflict"


class OrchestratorError(Exception):
    """Base class for every error surfaced by the orchestrator."""

    error_type: str = EXTERNAL_SERVICE

    def __init__(
        self,
        message: str,
        code: str = "UNEXPECTED_ERROR",
        user_message: str | None = None,
        retryable: bool = True,
        error_type: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.user_message = user_message or message
        self.retryable = retryable
        if error_type is not None:
            self.error_type = error_type

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.error_type,
            "code": self.code,
            "message": self.message,
            "userMessage": self.user_message,
            "retryable": self.retryable,
        }


class SessionNotFoundError(OrchestratorError):
    error_type = NOT_FOUND

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Session '{session_id}' not found",
            code="SESSION_NOT_FOUND",
            user_message="This workflow session does not exist.",
            retryable=False,
        )
        self.session_id = session_id


class ClarificationPendingError(OrchestratorError):
    error_type = CONFLICT

    def __init__(self, session_id: str, question_id: str) -> None:
        super().__init__(
            f"Session '{session_id}' is waiting for an answer to {question_id}",
            code="CLARIFICATION_PENDING",
            user_message="Please answer the pending clarification question first.",
            retryable=False,
        )
        self.question_id = question_id


class SessionConflictError(OrchestratorError):
    """Raised when a compare-and-swap write loses against a concurrent writer."""

    error_type = CONFLICT

    def __init__(self, session_id: str, detail: str = "version mismatch") -> None:
        super().__init__(
            f"Concurrent update on session '{session_id}': {detail}",
            code="VERSION_CONFLICT",
            user_message="The session was updated by another request. Please retry.",
            retryable=True,
        )


class PhaseError(OrchestratorError):
    """Failure of a single phase runner, scoped to the phase that produced it."""

    def __init__(
        self,
        phase: str,
        message: str,
        code: str = "PHASE_FAILED",
        user_message: str | None = None,
        retryable: bool = True,
        error_type: str = EXTERNAL_SERVICE,
    ) -> None:
        super().__init__(message, code, user_message, retryable, error_type)
        self.phase = phase

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["phase"] = self.phase
        return d


class RegistryError(OrchestratorError):
    """The capability registry could not be reached or kept failing."""

    error_type = EXTERNAL_SERVICE

    def __init__(self, message: str) -> None:
        super().__init__(
            message,
            code="REGISTRY_UNAVAILABLE",
            user_message="The node registry is temporarily unavailable. Please try again.",
            retryable=True,
        )


class OperationValidationError(ValueError):
    """Raised when operation dicts fail structural validation.

    errors: list of human-readable error strings, one per problem found.
    """

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


# ---------------------------------------------------------------------------
# Classification of arbitrary collaborator exceptions
# ---------------------------------------------------------------------------

# (substring patterns, code, user message). First match wins; all retryable.
_ERROR_MAPPINGS: list[tuple[tuple[str, ...], str, str]] = [
    (
        ("econnrefused", "connection refused", "connecterror"),
        "CONNECTION_REFUSED",
        "Unable to connect to an external service. Please try again.",
    ),
    (
        ("etimedout", "timed out", "timeout"),
        "TIMEOUT",
        "Request timed out. Please try again.",
    ),
    (
        ("429", "rate limit"),
        "RATE_LIMITED",
        "Rate limit exceeded. Please wait a moment and try again.",
    ),
    (
        ("500", "internal server error"),
        "SERVICE_UNAVAILABLE",
        "Service temporarily unavailable. Please try again.",
    ),
]


def classify_exception(exc: BaseException, phase: str) -> PhaseError:
    """Convert any exception into a PhaseError for the given phase.

    OrchestratorError subclasses keep their own code and retryability.
    """
    if isinstance(exc, PhaseError):
        return exc
    if isinstance(exc, OrchestratorError):
        return PhaseError(
            phase,
            exc.message,
            code=exc.code,
            user_message=exc.user_message,
            retryable=exc.retryable,
            error_type=exc.error_type,
        )

    text = f"{type(exc).__name__}: {exc}".lower()
    for patterns, code, user_message in _ERROR_MAPPINGS:
        if any(p in text for p in patterns):
            return PhaseError(phase, str(exc) or type(exc).__name__, code, user_message)
    return PhaseError(
        phase,
        str(exc) or type(exc).__name__,
        code="UNEXPECTED_ERROR",
        user_message="An unexpected error occurred. Please try again.",
    )
