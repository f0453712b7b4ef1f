"""
Model Rollout Controller - Main API Application

FastAPI application providing REST endpoints for:
- Starting progressive rollouts from a plan
- Run status, listing and audit reports
- Operator aborts
- Health, readiness and Prometheus metrics

OpenAPI documentation available at /docs (Swagger UI) and /redoc (ReDoc).
"""

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from model_rollout import __version__
from model_rollout.config.loader import ConfigError, load_controller_settings
from model_rollout.rollout.controller import RolloutController
from model_rollout.rollout.errors import (
    ConflictError,
    InvalidStateError,
    PersistenceError,
    RolloutError,
    RunNotFoundError,
)
from model_rollout.rollout.models import RolloutRun
from model_rollout.rollout.report import generate_audit_report

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# =============================================================================
# Pydantic Models for API
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service status", examples=["healthy"])
    version: str = Field(..., description="API version", examples=["1.0.0"])
    timestamp: str = Field(..., description="Current timestamp in ISO format")
    active_runs: int | None = Field(None, description="Number of active runs")


class StartRolloutRequest(BaseModel):
    """Request model for starting a rollout."""

    plan: dict[str, Any] = Field(..., description="Rollout plan (same schema as plan YAML)")


class StartRolloutResponse(BaseModel):
    """Response model for a started rollout."""

    run_id: str = Field(..., description="Identifier of the new run")
    candidate_version: str = Field(..., description="Candidate being promoted")
    phase: str = Field(..., description="Phase at creation", examples=["pending"])


class AbortRequest(BaseModel):
    """Request model for aborting a rollout."""

    reason: str = Field(
        default="operator request",
        description="Why the rollout is aborted",
        min_length=1,
        max_length=500,
    )


class AbortResponse(BaseModel):
    """Response model for an accepted abort."""

    run_id: str = Field(..., description="Aborted run")
    phase: str = Field(..., description="Phase after the abort", examples=["rolling_back"])
    reason: str = Field(..., description="Abort reason")
    requested_at: str = Field(..., description="When the abort was accepted")


class RunStatusResponse(BaseModel):
    """Status of a rollout run."""

    run_id: str
    plan_id: str
    candidate_version: str
    baseline_version: str
    segment: str
    phase: str
    step_index: int
    num_steps: int
    target_candidate_weight: int = Field(..., description="Candidate weight of the current step")
    applied_candidate_weight: int | None = Field(
        None, description="Last candidate weight confirmed by the router"
    )
    started_at: str
    phase_entered_at: str
    step_started_at: str | None = None
    outcome: str | None = None
    failure_reason: str | None = None
    abort_requested: bool = False
    abort_reason: str | None = None
    last_error: str | None = None
    last_verdict: dict[str, Any] | None = None
    verdicts: list[dict[str, Any]] | None = Field(
        None, description="Full verdict history (detail view only)"
    )
    transitions: list[dict[str, Any]] | None = Field(
        None, description="Phase transition log (detail view only)"
    )

    @classmethod
    def from_run(cls, run: RolloutRun, detailed: bool = False) -> "RunStatusResponse":
        """Build from a run snapshot."""
        last = run.last_verdict
        return cls(
            run_id=run.run_id,
            plan_id=run.plan.plan_id,
            candidate_version=run.plan.candidate_version,
            baseline_version=run.plan.baseline_version,
            segment=run.plan.segment,
            phase=run.phase.value,
            step_index=run.step_index,
            num_steps=run.plan.num_steps,
            target_candidate_weight=run.current_step_weight,
            applied_candidate_weight=run.applied_candidate_weight,
            started_at=run.started_at.isoformat(),
            phase_entered_at=run.phase_entered_at.isoformat(),
            step_started_at=run.step_started_at.isoformat() if run.step_started_at else None,
            outcome=run.outcome.value if run.outcome else None,
            failure_reason=run.failure_reason,
            abort_requested=run.abort_requested,
            abort_reason=run.abort_reason,
            last_error=run.last_error,
            last_verdict=last.to_dict() if last else None,
            verdicts=[v.to_dict() for v in run.history] if detailed else None,
            transitions=[t.to_dict() for t in run.transitions] if detailed else None,
        )


class RunListResponse(BaseModel):
    """List of rollout runs."""

    total: int
    runs: list[RunStatusResponse]


# =============================================================================
# Application Lifecycle
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifecycle manager."""
    # Startup
    logger.info("Starting Model Rollout Controller API...")
    controller: RolloutController | None = getattr(app.state, "controller", None)
    if controller is None:
        settings = load_controller_settings(os.getenv("ROLLOUT_CONFIG"))
        controller = RolloutController.from_settings(settings)
        app.state.controller = controller
    recovered = await controller.start()
    logger.info(f"Controller running, {len(recovered)} run(s) resumed")
    yield
    # Shutdown
    logger.info("Shutting down Model Rollout Controller API...")
    await controller.stop()


# =============================================================================
# FastAPI Application
# =============================================================================


app = FastAPI(
    title="Model Rollout Controller API",
    description="""
## Progressive Delivery for ML Models

Promotes a candidate model to production traffic step by step while
comparing its health against the serving baseline.

### Features
- **Weighted steps**: canary (e.g. 5% -> 25% -> 50% -> 100%) and blue-green plans
- **Health gates**: error-rate, p99 latency and drift thresholds
- **Automatic rollback**: on threshold breach, timeout or router loss
- **Crash safety**: every transition is persisted before it takes effect
    """,
    version=__version__,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Health", "description": "Service health and readiness endpoints"},
        {"name": "Rollouts", "description": "Start, inspect and abort rollouts"},
    ],
)


def get_controller(request: Request) -> RolloutController:
    return request.app.state.controller


def _http_error(e: RolloutError | ConfigError) -> HTTPException:
    """Map controller errors to HTTP errors."""
    if isinstance(e, ConfigError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=jsonable_encoder({"message": str(e), **e.details}),
        )
    if isinstance(e, RunNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, (ConflictError, InvalidStateError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, PersistenceError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    logger.error(f"Unexpected controller error: {e}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


# =============================================================================
# Health Endpoints
# =============================================================================


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="Health check",
    description="Returns service health status and version information.",
)
async def health_check() -> HealthResponse:
    """Check if the service is healthy."""
    return HealthResponse(
        status="healthy",
        version=__version__,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@app.get(
    "/ready",
    response_model=HealthResponse,
    tags=["Health"],
    summary="Readiness check",
    description="Returns readiness once the controller has resumed persisted runs.",
)
async def readiness_check(request: Request) -> HealthResponse:
    """Check if the controller is running and its store is readable."""
    controller = get_controller(request)
    if not controller.running:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Controller not running",
        )
    try:
        active = len(await controller.list_runs(active_only=True))
    except PersistenceError as e:
        raise _http_error(e) from e
    return HealthResponse(
        status="ready",
        version=__version__,
        timestamp=datetime.now(timezone.utc).isoformat(),
        active_runs=active,
    )


@app.get(
    "/metrics",
    response_class=PlainTextResponse,
    tags=["Health"],
    summary="Prometheus metrics",
    description="Returns Prometheus-formatted rollout metrics.",
)
async def metrics(request: Request) -> str:
    """Return Prometheus metrics."""
    return get_controller(request).metrics.export("prometheus")


# =============================================================================
# Rollout Endpoints
# =============================================================================


@app.post(
    "/api/v1/rollouts",
    response_model=StartRolloutResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Rollouts"],
    summary="Start a rollout",
)
async def start_rollout(body: StartRolloutRequest, request: Request) -> StartRolloutResponse:
    """Validate the plan and start a run for it."""
    controller = get_controller(request)
    try:
        run_id = await controller.start_rollout(body.plan)
        run = await controller.get_status(run_id)
    except (RolloutError, ConfigError) as e:
        raise _http_error(e) from e
    return StartRolloutResponse(
        run_id=run.run_id,
        candidate_version=run.candidate_version,
        phase=run.phase.value,
    )


@app.get(
    "/api/v1/rollouts",
    response_model=RunListResponse,
    tags=["Rollouts"],
    summary="List rollouts",
)
async def list_rollouts(
    request: Request,
    active_only: bool = Query(False, description="Only return non-terminal runs"),
) -> RunListResponse:
    """List rollout runs."""
    try:
        runs = await get_controller(request).list_runs(active_only=active_only)
    except RolloutError as e:
        raise _http_error(e) from e
    return RunListResponse(
        total=len(runs),
        runs=[RunStatusResponse.from_run(run) for run in runs],
    )


@app.get(
    "/api/v1/rollouts/{run_id}",
    response_model=RunStatusResponse,
    tags=["Rollouts"],
    summary="Rollout status",
)
async def get_rollout(run_id: str, request: Request) -> RunStatusResponse:
    """Return the status of a run including its verdicts and transitions."""
    try:
        run = await get_controller(request).get_status(run_id)
    except RolloutError as e:
        raise _http_error(e) from e
    return RunStatusResponse.from_run(run, detailed=True)


@app.get(
    "/api/v1/rollouts/{run_id}/report",
    response_class=PlainTextResponse,
    tags=["Rollouts"],
    summary="Rollout audit report",
)
async def get_rollout_report(run_id: str, request: Request) -> PlainTextResponse:
    """Return the Markdown audit report of a run."""
    try:
        run = await get_controller(request).get_status(run_id)
    except RolloutError as e:
        raise _http_error(e) from e
    return PlainTextResponse(generate_audit_report(run), media_type="text/markdown")


@app.post(
    "/api/v1/rollouts/{run_id}/abort",
    response_model=AbortResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Rollouts"],
    summary="Abort a rollout",
)
async def abort_rollout(
    run_id: str, request: Request, body: AbortRequest | None = None
) -> AbortResponse:
    """Abort a run and restore the baseline split."""
    reason = body.reason if body else AbortRequest().reason
    try:
        ack = await get_controller(request).abort_rollout(run_id, reason)
    except RolloutError as e:
        raise _http_error(e) from e
    return AbortResponse(**ack.to_dict())


@app.exception_handler(500)
async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle 500 errors."""
    logger.error(f"Internal server error: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# =============================================================================
# Main Entry Point
# =============================================================================


def main() -> None:
    """Run the API server."""
    import uvicorn

    port = int(os.getenv("PORT", "8080"))
    host = os.getenv("HOST", "0.0.0.0")  # nosec B104 - Intentional for container deployment

    # Run loops live in the process; more than one worker would drive runs twice
    uvicorn.run(
        "model_rollout.api.main:app",
        host=host,
        port=port,
        workers=1,
        reload=os.getenv("ENVIRONMENT") == "development",
    )


if __name__ == "__main__":
    main()
