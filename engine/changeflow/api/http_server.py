"""
HTTP observation API for ChangeFlow.

This module exposes the scheduler's observation interface over REST:
- Stage status, gate predicate and run history
- Manual runs, suspend and resume
- Change log and table inspection

Invariants:
    - Manual runs go through Scheduler.force_run(), so single-flight and
      the gate apply exactly as for scheduled runs
    - Stage failures are reported in the response body, never as 500s
    - JSON request/response format

How to change safely:
    - Keep response shapes stable; operators script against them
    - Version the API if breaking changes are needed
"""

from __future__ import annotations

import logging
from typing import Any

import uvicorn
from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .._version import __version__
from ..config import ApiConfig
from ..errors import (
    ChangeLogNotFoundError,
    GateEvaluationError,
    StageError,
    StageNotFoundError,
    TableNotFoundError,
)
from ..scheduler import Scheduler
from ..storage.changelog import list_changelogs
from ..storage.table import Table

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["ChangeFlow"])


# =============================================================================
# Request/Response Models
# =============================================================================


class RunRequest(BaseModel):
    """Manual stage run."""

    cascade: bool = Field(default=True, description="Also run AfterStage children")


class RunResponse(BaseModel):
    """Outcome of a manual stage run."""

    stage: str
    success: bool
    outcome: dict[str, Any] | None = None
    error: dict[str, Any] | None = None


class UnconsumedResponse(BaseModel):
    stage: str
    has_unconsumed: bool


# =============================================================================
# Routes
# =============================================================================


def _scheduler(request: Request) -> Scheduler:
    return request.app.state.scheduler


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Health check."""
    scheduler = _scheduler(request)
    return {
        "healthy": True,
        "version": __version__,
        "pipeline": scheduler.pipeline.name,
        "scheduler_running": scheduler.is_running,
        "stages": len(scheduler.pipeline),
    }


@router.get("/stages")
async def list_stages(request: Request) -> dict[str, Any]:
    """Status of every stage."""
    return {"stages": [s.to_dict() for s in _scheduler(request).list_stages()]}


@router.get("/stages/{name}")
async def get_stage(name: str, request: Request) -> dict[str, Any]:
    """Status of one stage."""
    return _scheduler(request).stage_status(name).to_dict()


@router.get("/stages/{name}/unconsumed", response_model=UnconsumedResponse)
async def stage_has_unconsumed(name: str, request: Request) -> UnconsumedResponse:
    """Gate predicate of a stage."""
    has_data = await _scheduler(request).has_unconsumed(name)
    return UnconsumedResponse(stage=name, has_unconsumed=has_data)


@router.post("/stages/{name}/run", response_model=RunResponse)
async def run_stage(
    name: str,
    request: Request,
    body: RunRequest | None = None,
) -> RunResponse:
    """Run a stage now, bypassing its timer."""
    cascade = body.cascade if body else True
    try:
        outcome = await _scheduler(request).force_run(name, cascade=cascade)
    except StageError as e:
        return RunResponse(
            stage=name,
            success=False,
            error={"kind": e.kind, "message": e.message, "details": e.details},
        )
    return RunResponse(stage=name, success=True, outcome=outcome.to_dict())


@router.post("/stages/{name}/suspend")
async def suspend_stage(name: str, request: Request) -> dict[str, Any]:
    scheduler = _scheduler(request)
    scheduler.suspend(name)
    return scheduler.stage_status(name).to_dict()


@router.post("/stages/{name}/resume")
async def resume_stage(name: str, request: Request) -> dict[str, Any]:
    scheduler = _scheduler(request)
    scheduler.resume(name)
    return scheduler.stage_status(name).to_dict()


@router.get("/stages/{name}/history")
async def stage_history(
    name: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=1000),
) -> dict[str, Any]:
    """Recent runs of a stage, newest first."""
    runs = await _scheduler(request).run_history(name, limit=limit)
    return {"stage": name, "runs": [r.to_dict() for r in runs]}


@router.get("/changelogs")
async def get_changelogs(request: Request) -> dict[str, Any]:
    """Every change log with its cursors."""
    database = _scheduler(request).pipeline.database
    changelogs = await list_changelogs(database)
    return {"changelogs": [await c.describe() for c in changelogs]}


@router.get("/tables/{name}/rows")
async def get_table_rows(
    name: str,
    request: Request,
    limit: int = Query(default=100, ge=1, le=10000),
    offset: int = Query(default=0, ge=0),
) -> dict[str, Any]:
    """Rows of a table in insertion order."""
    table = await Table.open(_scheduler(request).pipeline.database, name)
    rows = await table.scan(limit=limit, offset=offset)
    return {
        "table": name,
        "total": await table.count(),
        "rows": [r.to_dict() for r in rows],
    }


# =============================================================================
# Application
# =============================================================================


def create_app(scheduler: Scheduler, config: ApiConfig | None = None) -> FastAPI:
    """Create the observation API for a scheduler.

    Args:
        scheduler: Scheduler to observe and control
        config: HTTP configuration

    Returns:
        FastAPI application
    """
    config = config or ApiConfig()

    app = FastAPI(
        title="ChangeFlow",
        description="Observation and control API for a change-driven pipeline.",
        version=__version__,
    )
    app.state.scheduler = scheduler

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(StageNotFoundError)
    @app.exception_handler(TableNotFoundError)
    @app.exception_handler(ChangeLogNotFoundError)
    async def not_found_handler(request: Request, exc: Any) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content={"error": exc.message, "error_code": exc.code},
        )

    @app.exception_handler(GateEvaluationError)
    async def gate_error_handler(request: Request, exc: GateEvaluationError) -> JSONResponse:
        logger.warning(f"Gate evaluation failed: {exc.message}")
        return JSONResponse(
            status_code=503,
            content={"error": exc.message, "error_code": exc.code},
        )

    app.include_router(router)
    return app


async def run_http_server(scheduler: Scheduler, config: ApiConfig) -> None:
    """Serve the API until cancelled.

    Args:
        scheduler: Scheduler to observe and control
        config: HTTP configuration
    """
    app = create_app(scheduler, config)
    server = uvicorn.Server(
        uvicorn.Config(app, host=config.host, port=config.port, log_config=None)
    )
    logger.info(f"HTTP API running on http://{config.host}:{config.port}")
    await server.serve()


__all__ = ["create_app", "run_http_server", "router"]
