"""FastAPI service for the n8n workflow orchestrator.

Wraps the Orchestrator in a polling HTTP API:

  POST /workflow/create              → new session in the discovery phase
  POST /workflow/{id}/advance        → run one phase, return the status
  POST /workflow/{id}/clarify        → answer a pending question, re-run the phase
  GET  /workflow/{id}/state          → status without doing any work
  GET  /workflow/{id}/export         → importable n8n workflow JSON

Typical client loop:
  create → advance → advance → ... until status.complete → export
  (when status.pendingClarification is set: clarify, then keep advancing)
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from workflow_orchestrator.errors import (
    CONFLICT,
    NOT_FOUND,
    OrchestratorError,
    PhaseError,
)

logger = logging.getLogger("workflow_orchestrator.api")

# ---------------------------------------------------------------------------
# API key authentication (optional, enabled when AGENT_API_KEY is set)
# ---------------------------------------------------------------------------

_bearer = HTTPBearer(auto_error=False)


def _verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
) -> None:
    """Verify Bearer token matches AGENT_API_KEY env var.

    If AGENT_API_KEY is not set, all requests are allowed (open dev mode).
    If set, every request must carry 'Authorization: Bearer <key>'.
    """
    api_key = os.getenv("AGENT_API_KEY")
    if not api_key:
        return
    if not credentials or credentials.credentials != api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


# ---------------------------------------------------------------------------
# Lifespan: wire collaborators once at startup, release them on shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the orchestrator unless one was installed on app.state beforehand."""
    if getattr(app.state, "orchestrator", None) is not None:
        yield
        return

    from dotenv import load_dotenv
    load_dotenv()

    from workflow_orchestrator.config import OrchestratorSettings
    from workflow_orchestrator.orchestrator import create_orchestrator, open_store
    from workflow_orchestrator.persistence import EventLog
    from workflow_orchestrator.reasoning import ReasoningSettings, create_engine
    from workflow_orchestrator.registry import (
        NodeInfoService,
        RegistryClientProvider,
        RegistrySettings,
    )

    settings = OrchestratorSettings.from_env()
    reasoning_settings = ReasoningSettings.from_env()
    registry_settings = RegistrySettings.from_env()

    logger.info(
        "Starting workflow orchestrator | Registry: %s | Engine: %s | Store: %s",
        registry_settings.server_url or "(unset)",
        reasoning_settings.provider,
        settings.session_db_path or "memory",
    )

    provider = RegistryClientProvider(registry_settings)
    client = await provider.acquire()
    store = await open_store(settings)

    event_log = None
    if settings.postgres_dsn:
        event_log = EventLog(dsn=settings.postgres_dsn)
        await event_log.setup()

    orchestrator = create_orchestrator(
        settings,
        create_engine(reasoning_settings),
        NodeInfoService(client),
        store,
        event_log=event_log,
    )
    removed = await orchestrator.cleanup_expired(settings.session_ttl_hours)
    if removed:
        logger.info("Startup cleanup removed %d expired sessions", removed)

    app.state.orchestrator = orchestrator
    app.state.registry = client
    app.state.event_log = event_log

    yield

    await orchestrator.close()
    await store.close()
    await provider.release()
    if event_log is not None:
        await event_log.close()
    app.state.orchestrator = None
    logger.info("Shutting down workflow orchestrator")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

_rate_limit = os.getenv("RATE_LIMIT_SESSIONS_PER_MIN", "10")
limiter = Limiter(key_func=get_remote_address)

app = FastAPI(
    title="n8n Workflow Orchestrator API",
    description=(
        "Turns a natural-language request into an importable n8n workflow through "
        "discovery, configuration, building, validation and documentation phases. "
        "Clients poll /advance until the session is complete."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

_CORS_ORIGINS: list[str] = [
    o.strip()
    for o in os.environ.get("CORS_ORIGINS", "http://localhost:3001,http://localhost:3000").split(",")
    if o.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(OrchestratorError)
async def _orchestrator_error(request: Request, exc: OrchestratorError) -> JSONResponse:
    if exc.error_type == NOT_FOUND:
        status_code = 404
    elif exc.error_type == CONFLICT or (isinstance(exc, PhaseError) and exc.code == "NO_WORKFLOW"):
        status_code = 409
    elif not exc.retryable:
        status_code = 422
    else:
        status_code = 503
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class CreateWorkflowRequest(BaseModel):
    """Request body for POST /workflow/create."""

    model_config = ConfigDict(populate_by_name=True)

    prompt: str = Field(
        ...,
        min_length=1,
        description="What the workflow should do, in plain language.",
        examples=["Send a Slack message when a webhook fires"],
    )
    session_id: str | None = Field(
        None,
        alias="sessionId",
        description="Optional session id. Generated (wf_<ms>_<suffix>) when omitted.",
    )
    webhook_url: str | None = Field(
        None,
        alias="webhookUrl",
        description=(
            "Optional URL to POST the status to when a clarification is requested "
            "or the session completes. Retried up to 3 times on failure."
        ),
    )


class ClarifyRequest(BaseModel):
    """Request body for POST /workflow/{session_id}/clarify."""

    model_config = ConfigDict(populate_by_name=True)

    question_id: str = Field(..., alias="questionId", description="Id from pendingClarification.")
    answer: str = Field(..., min_length=1, description="The answer to the question.")


class WorkflowStatus(BaseModel):
    """Status projection returned by every session endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    phase: str = Field(..., description="discovery | configuration | building | validation | documentation | complete")
    complete: bool
    prompt: str
    selected_nodes: list[dict] = Field(default_factory=list, alias="selectedNodes")
    pending_clarification: dict | None = Field(None, alias="pendingClarification")
    workflow: dict | None = Field(None, description="Summary of the built workflow, once there is one.")
    error: dict | None = Field(None, description="Typed error of the phase run that just failed.")


# ---------------------------------------------------------------------------
# Dependency
# ---------------------------------------------------------------------------


def _get_orchestrator(request: Request):
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator is not ready")
    return orchestrator


def _status_response(status) -> WorkflowStatus | JSONResponse:
    """Non-retryable phase failures go out as 422 so pollers stop."""
    if status.error is not None and not status.error.get("retryable", True):
        return JSONResponse(status_code=422, content=status.to_dict())
    return WorkflowStatus.model_validate(status.to_dict())


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health", tags=["system"], dependencies=[Depends(_verify_api_key)])
async def health(request: Request) -> dict:
    """Health check. Verifies the API and the node registry are both up."""
    registry = getattr(request.app.state, "registry", None)
    registry_ok = False
    detail: str | None = None
    if registry is not None:
        try:
            registry_ok = await registry.health_check()
        except Exception as e:
            detail = str(e)
    return {
        "api": "ok",
        "registry": "ok" if registry_ok else "unreachable",
        "registry_detail": detail,
    }


@app.post(
    "/workflow/create",
    response_model=WorkflowStatus,
    response_model_exclude_none=True,
    tags=["workflow"],
    dependencies=[Depends(_verify_api_key)],
)
@limiter.limit(f"{_rate_limit}/minute")
async def create_workflow(request: Request, body: CreateWorkflowRequest):
    """Start a new session. Call /advance to run the first phase."""
    orchestrator = _get_orchestrator(request)
    status = await orchestrator.initialize(
        body.prompt, session_id=body.session_id, webhook_url=body.webhook_url
    )
    return WorkflowStatus.model_validate(status.to_dict())


@app.post(
    "/workflow/{session_id}/advance",
    response_model=WorkflowStatus,
    response_model_exclude_none=True,
    tags=["workflow"],
    dependencies=[Depends(_verify_api_key)],
)
async def advance_workflow(session_id: str, request: Request):
    """Run the current phase once.

    A retryable failure comes back as 200 with `error` set; call again to
    retry the same phase. A pending clarification answers 409.
    """
    orchestrator = _get_orchestrator(request)
    return _status_response(await orchestrator.advance(session_id))


@app.post(
    "/workflow/{session_id}/clarify",
    response_model=WorkflowStatus,
    response_model_exclude_none=True,
    tags=["workflow"],
    dependencies=[Depends(_verify_api_key)],
)
async def clarify_workflow(session_id: str, body: ClarifyRequest, request: Request):
    """Answer the pending question; the same phase runs again with the answer."""
    orchestrator = _get_orchestrator(request)
    status = await orchestrator.submit_clarification(session_id, body.question_id, body.answer)
    return _status_response(status)


@app.get(
    "/workflow/{session_id}/state",
    response_model=WorkflowStatus,
    response_model_exclude_none=True,
    tags=["workflow"],
    dependencies=[Depends(_verify_api_key)],
)
async def workflow_state(session_id: str, request: Request):
    orchestrator = _get_orchestrator(request)
    status = await orchestrator.get_status(session_id)
    return WorkflowStatus.model_validate(status.to_dict())


@app.get("/workflow/{session_id}/export", tags=["workflow"], dependencies=[Depends(_verify_api_key)])
async def export_workflow(session_id: str, request: Request) -> dict:
    """The workflow JSON, ready for n8n's import dialog."""
    orchestrator = _get_orchestrator(request)
    return await orchestrator.export_workflow(session_id)


# ---------------------------------------------------------------------------
# Entry point (for uvicorn programmatic launch)
# ---------------------------------------------------------------------------


def serve(host: str = "0.0.0.0", port: int = 8000, reload: bool = False) -> None:
    """Launch the FastAPI server via uvicorn."""
    import sys
    import uvicorn
    # Windows: psycopg async requires SelectorEventLoop (not the default ProactorEventLoop)
    if sys.platform == "win32":
        import asyncio
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    uvicorn.run(
        "workflow_orchestrator.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    serve()
