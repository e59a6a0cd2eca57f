"""FastAPI application entry point for the Workflow Engine service.

This module exposes the transition engine over HTTP for stage workers and
the review UI. Every state change goes through POST
/workflows/{workflow_id}/transitions, which calls WorkflowEngine.transition()
and nothing else.

Without a configured database_url the service runs in development mode
with the in-memory repository, and a requested database audit sink is
replaced by the in-memory one.

Metrics are exposed in Prometheus format at `/metrics`.
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional, Union

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from src.workflow_engine.api.models import (
    AllowedEventsResponse,
    CreateWorkflowRequest,
    StateResponse,
    TransitionHistoryResponse,
    TransitionRecordResponse,
    TransitionRequest,
    TransitionResponse,
    WorkflowListResponse,
    WorkflowResponse,
)
from src.workflow_engine.audit.recorder import (
    AuditRecorder,
    AuditSinkType,
    create_audit_recorder,
)
from src.workflow_engine.config import WorkflowEngineSettings, get_settings
from src.workflow_engine.metrics import generate_metrics_output, get_metrics
from src.workflow_engine.state.engine import (
    InvalidRollbackTargetError,
    WorkflowEngine,
    WorkflowNotFoundError,
    WorkflowVanishedError,
)
from src.workflow_engine.state.memory import InMemoryWorkflowRepository
from src.workflow_engine.state.models import TransitionOptions, WorkflowState
from src.workflow_engine.state.registry import allowed_events, is_terminal_state
from src.workflow_engine.state.repository import (
    DatabaseError,
    PostgresWorkflowRepository,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global instances, initialized during lifespan startup
settings: WorkflowEngineSettings
engine: Optional[WorkflowEngine] = None
repository: Optional[Union[PostgresWorkflowRepository, InMemoryWorkflowRepository]] = None
audit_recorder: Optional[AuditRecorder] = None


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters.

    Args:
        value: The secret value to redact. None is shown as "<not set>".
        visible_chars: Number of characters to show at the start.
    """
    if value is None:
        return "<not set>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(cfg: WorkflowEngineSettings) -> None:
    """Log configuration values with the database URL redacted."""
    logger.info("Workflow engine configuration:")
    logger.info(f"  Database URL: {_redact_secret(cfg.database_url, visible_chars=13)}")
    logger.info(f"  DB Pool Size: {cfg.db_min_pool_size}-{cfg.db_max_pool_size}")
    logger.info(f"  DB Command Timeout Seconds: {cfg.db_command_timeout_seconds}")
    logger.info(f"  Audit Sinks: {[s.value for s in cfg.audit_sinks]}")
    logger.info(f"  Audit Timeout Seconds: {cfg.audit_timeout_seconds}")
    logger.info(f"  Log Level: {cfg.log_level}")
    logger.info(f"  Host: {cfg.host}")
    logger.info(f"  Port: {cfg.port}")


def _audit_sinks_for(cfg: WorkflowEngineSettings) -> List[AuditSinkType]:
    """Resolve configured audit sinks for the current persistence mode."""
    if cfg.database_url:
        return list(cfg.audit_sinks)

    sinks: List[AuditSinkType] = []
    for sink in cfg.audit_sinks:
        resolved = AuditSinkType.MEMORY if sink == AuditSinkType.DATABASE else sink
        if resolved not in sinks:
            sinks.append(resolved)
    return sinks


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown.

    Handles:
    - Configuration loading and validation
    - Repository and audit recorder wiring
    - Graceful shutdown of connection pools
    """
    global settings, engine, repository, audit_recorder

    logger.info("Workflow Engine starting up...")

    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level)
    _log_configuration(settings)

    if settings.database_url:
        repository = PostgresWorkflowRepository(
            settings.database_url,
            min_pool_size=settings.db_min_pool_size,
            max_pool_size=settings.db_max_pool_size,
            command_timeout=settings.db_command_timeout_seconds,
        )
        await repository.connect()
    else:
        logger.warning("No database_url configured, using in-memory repository")
        repository = InMemoryWorkflowRepository()

    audit_recorder = create_audit_recorder(
        _audit_sinks_for(settings),
        database_url=settings.database_url,
        command_timeout=settings.db_command_timeout_seconds,
    )
    try:
        await audit_recorder.connect()
    except DatabaseError as e:
        # Transitions still commit; their audit writes fail and are counted
        logger.error(
            "Audit recorder unavailable at startup",
            extra={"error": str(e)},
        )

    engine = WorkflowEngine(
        repository,
        audit_recorder=audit_recorder,
        metrics=get_metrics(),
        audit_timeout_seconds=settings.audit_timeout_seconds,
    )

    logger.info("Workflow Engine started successfully")

    yield

    logger.info("Workflow Engine shutting down...")

    await audit_recorder.close()
    if isinstance(repository, PostgresWorkflowRepository):
        await repository.disconnect()
    engine = None

    logger.info("Workflow Engine shutdown complete")


app = FastAPI(
    title="Content Workflow Engine",
    description="Optimistic-concurrency state machine for content workflows",
    version="1.0.0",
    lifespan=lifespan,
)


def _get_engine() -> WorkflowEngine:
    if engine is None:
        raise DatabaseError("Workflow engine not initialized")
    return engine


# -----------------------------------------------------------------------------
# Error mapping
# -----------------------------------------------------------------------------
@app.exception_handler(WorkflowNotFoundError)
async def handle_not_found(request: Request, exc: WorkflowNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidRollbackTargetError)
async def handle_invalid_rollback(request: Request, exc: InvalidRollbackTargetError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(WorkflowVanishedError)
async def handle_vanished(request: Request, exc: WorkflowVanishedError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(DatabaseError)
async def handle_database_error(request: Request, exc: DatabaseError):
    logger.error(
        "Request failed with database error",
        extra={"path": request.url.path, "error": exc.message},
    )
    return JSONResponse(status_code=503, content={"detail": exc.message})


# -----------------------------------------------------------------------------
# Probes
# -----------------------------------------------------------------------------
@app.get("/health")
async def health():
    """Liveness probe endpoint.

    Returns 200 OK if the application is running.
    """
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness probe endpoint.

    Verifies connectivity to the workflow store. Audit sinks are not
    checked: an unavailable audit store never blocks transitions.

    Returns:
        dict: Status and dependency health information, with status 503 if
        the store is unavailable.
    """
    database_healthy = repository is not None and await repository.health_check()
    database_status = "healthy" if database_healthy else "unhealthy"
    body = {
        "status": "ready" if database_healthy else "not_ready",
        "dependencies": {
            "database": database_status,
        },
    }
    if not database_healthy:
        return JSONResponse(status_code=503, content=body)
    return body


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_metrics_output())


# -----------------------------------------------------------------------------
# Workflows
# -----------------------------------------------------------------------------
@app.post("/workflows", status_code=201, response_model=WorkflowResponse)
async def create_workflow(body: CreateWorkflowRequest):
    """Create a workflow in the first stage."""
    workflow = await _get_engine().create(
        body.organization_id,
        created_by=body.created_by,
        payload=body.payload,
    )
    return WorkflowResponse.from_workflow(workflow)


@app.get("/workflows", response_model=WorkflowListResponse)
async def list_workflows(
    state: WorkflowState = Query(...),
    organization_id: Optional[str] = Query(default=None),
):
    """List workflows currently in a state."""
    workflows = await _get_engine().list_by_state(state, organization_id)
    return WorkflowListResponse(
        workflows=[WorkflowResponse.from_workflow(w) for w in workflows],
        count=len(workflows),
    )


@app.get("/workflows/{workflow_id}", response_model=WorkflowResponse)
async def get_workflow(workflow_id: str):
    workflow = await _get_engine().get(workflow_id)
    if workflow is None:
        raise WorkflowNotFoundError(workflow_id)
    return WorkflowResponse.from_workflow(workflow)


@app.get("/workflows/{workflow_id}/state", response_model=StateResponse)
async def get_workflow_state(workflow_id: str):
    state = await _get_engine().get_current_state(workflow_id)
    return StateResponse(workflow_id=workflow_id, state=state)


@app.post("/workflows/{workflow_id}/transitions", response_model=TransitionResponse)
async def transition_workflow(workflow_id: str, body: TransitionRequest):
    """Apply an event to a workflow.

    Every expected outcome, including an illegal event or a lost race, is
    returned with status 200; callers branch on ``ok``.
    """
    result = await _get_engine().transition(
        workflow_id,
        body.event,
        TransitionOptions(
            rollback_target=body.rollback_target,
            triggered_by=body.triggered_by,
        ),
    )
    return TransitionResponse.from_result(workflow_id, result)


@app.get(
    "/workflows/{workflow_id}/transitions",
    response_model=TransitionHistoryResponse,
)
async def get_workflow_transitions(workflow_id: str):
    """Return the audit trail of a workflow, oldest first."""
    current = _get_engine()
    await current.get_current_state(workflow_id)
    records = await current.history(workflow_id)
    return TransitionHistoryResponse(
        workflow_id=workflow_id,
        transitions=[TransitionRecordResponse.from_record(r) for r in records],
    )


@app.get("/states/{state}/events", response_model=AllowedEventsResponse)
async def get_allowed_events(state: WorkflowState):
    """List the events the registry accepts from a state (advisory)."""
    return AllowedEventsResponse(
        state=state,
        events=sorted(allowed_events(state), key=lambda e: e.value),
        terminal=is_terminal_state(state),
    )


if __name__ == "__main__":
    import uvicorn

    # For local development, load settings to get host/port
    dev_settings = get_settings()
    uvicorn.run(
        "src.workflow_engine.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )
