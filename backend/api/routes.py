"""HTTP API routes for the scaffold generation backend.

This module defines the HTTP endpoints for starting and inspecting
generation runs, reading generated files, and health checks. Real-time
events are handled via WebSocket in websocket.py.
"""

from __future__ import annotations

import time
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, status

from errors import GraphValidationError, MissingCapabilityError, RunConflictError
from models.schemas import (
    SCHEDULABLE_AGENT_KINDS,
    FileContentResponse,
    FileSummary,
    HealthResponse,
    RunMetricsResponse,
    RunSnapshot,
    RunStatus,
    RunSummaryResponse,
    StartGenerationRequest,
    StartGenerationResponse,
    TemplateInfo,
)
from orchestrator.graph import TEMPLATE_TOPOLOGIES
from run_manager import RunManager

logger = structlog.get_logger(__name__)

router = APIRouter()


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------


def get_run_manager(request: Request) -> RunManager:
    """Return the RunManager created by the application lifespan.

    Raises:
        HTTPException: 503 if the application has not finished starting.
    """
    manager = getattr(request.app.state, "run_manager", None)
    if manager is None:
        logger.error("run_manager_not_configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return manager


RunManagerDep = Annotated[RunManager, Depends(get_run_manager)]
ProjectId = Annotated[str, Path(min_length=1, max_length=100, description="The project ID")]
RunId = Annotated[str, Path(min_length=1, max_length=64, description="The run ID")]


def _not_found(run_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Run {run_id} not found",
    )


# -----------------------------------------------------------------------------
# Generation runs
# -----------------------------------------------------------------------------


@router.post(
    "/api/projects/{project_id}/generations",
    response_model=StartGenerationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a generation run",
    description="Build the task graph for a project configuration and start generating.",
)
async def start_generation(
    project_id: ProjectId,
    body: StartGenerationRequest,
    run_manager: RunManagerDep,
) -> StartGenerationResponse:
    """Start a generation run for a project.

    Raises:
        HTTPException: 409 if the project already has an active run,
            422 if the configuration cannot produce a task graph,
            503 if an agent kind has no registered capability.
    """
    try:
        run_id = await run_manager.start_generation(
            project_id=project_id,
            config=body.config,
            user_id=body.user_id,
        )
    except RunConflictError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        ) from e
    except GraphValidationError as e:
        logger.warning("start_generation_invalid_config", project_id=project_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e
    except MissingCapabilityError as e:
        logger.error("start_generation_missing_capability", agent_kinds=e.agent_kinds)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e),
        ) from e
    except Exception as e:
        logger.error("start_generation_failed", project_id=project_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to start generation",
        ) from e

    snapshot = await run_manager.get_run(run_id)
    return StartGenerationResponse(
        run_id=run_id,
        project_id=project_id,
        status=snapshot.status if snapshot else RunStatus.PENDING,
        websocket_url=f"/ws/generations/{run_id}",
    )


@router.get(
    "/api/projects/{project_id}/generations",
    response_model=list[RunSummaryResponse],
    summary="List generation runs",
    description="List a project's generation runs, newest first.",
)
async def list_generations(
    project_id: ProjectId,
    run_manager: RunManagerDep,
    limit: Annotated[int, Query(description="Maximum runs to return", ge=1, le=200)] = 25,
) -> list[RunSummaryResponse]:
    return await run_manager.list_runs(project_id, limit=limit)


@router.get(
    "/api/projects/{project_id}/generations/active",
    response_model=RunSnapshot,
    summary="Get the active run",
    description="Get the snapshot of the project's pending or running generation.",
)
async def get_active_generation(
    project_id: ProjectId,
    run_manager: RunManagerDep,
) -> RunSnapshot:
    snapshot = await run_manager.get_active_run(project_id)
    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Project {project_id} has no active generation",
        )
    return snapshot


@router.get(
    "/api/generations/{run_id}",
    response_model=RunSnapshot,
    summary="Get run status",
    description="Get the status snapshot of a run: tasks, progress, files and logs.",
)
async def get_generation(run_id: RunId, run_manager: RunManagerDep) -> RunSnapshot:
    snapshot = await run_manager.get_run(run_id)
    if snapshot is None:
        logger.debug("get_generation_not_found", run_id=run_id)
        raise _not_found(run_id)
    return snapshot


@router.post(
    "/api/generations/{run_id}/cancel",
    response_model=RunSnapshot,
    summary="Cancel a run",
    description="Request cancellation. Files already generated are kept.",
)
async def cancel_generation(run_id: RunId, run_manager: RunManagerDep) -> RunSnapshot:
    try:
        return await run_manager.cancel_run(run_id)
    except KeyError:
        raise _not_found(run_id) from None


@router.get(
    "/api/generations/{run_id}/files",
    response_model=list[FileSummary],
    summary="List generated files",
)
async def list_generated_files(run_id: RunId, run_manager: RunManagerDep) -> list[FileSummary]:
    files = run_manager.list_files(run_id)
    if files is not None:
        return files

    # Runs from before a restart only have their persisted summaries.
    snapshot = await run_manager.get_run(run_id)
    if snapshot is None:
        raise _not_found(run_id)
    return list(snapshot.files)


@router.get(
    "/api/generations/{run_id}/files/{path:path}",
    response_model=FileContentResponse,
    summary="Get file content",
)
async def get_generated_file(
    run_id: RunId,
    path: Annotated[str, Path(description="File path within the project")],
    run_manager: RunManagerDep,
) -> FileContentResponse:
    if ".." in path.split("/"):
        logger.warning("path_traversal_blocked", run_id=run_id, path=path)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Path traversal is not allowed",
        )

    generated = run_manager.get_file(run_id, path)
    if generated is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"File {path} not found in run {run_id}",
        )
    return FileContentResponse(
        path=generated.path,
        task_id=generated.task_id,
        content=generated.content,
        size=generated.size,
    )


@router.get(
    "/api/generations/{run_id}/metrics",
    response_model=RunMetricsResponse,
    summary="Get run metrics",
    description="Token usage, LLM calls, retries and duration of a run.",
)
async def get_generation_metrics(run_id: RunId, run_manager: RunManagerDep) -> RunMetricsResponse:
    metrics = await run_manager.get_run_metrics(run_id)
    if metrics is None:
        raise _not_found(run_id)
    return metrics


# -----------------------------------------------------------------------------
# Catalog and health
# -----------------------------------------------------------------------------


@router.get(
    "/api/templates",
    response_model=list[TemplateInfo],
    summary="List project templates",
)
async def list_templates() -> list[TemplateInfo]:
    return [
        TemplateInfo(template=template, agent_kinds=list(kinds))
        for template, kinds in TEMPLATE_TOPOLOGIES.items()
    ]


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health_check(request: Request) -> HealthResponse:
    """Report healthy when every schedulable agent kind has a capability."""
    run_manager: RunManager | None = getattr(request.app.state, "run_manager", None)
    if run_manager is None:
        return HealthResponse(status="unhealthy", timestamp=time.time())

    registered = run_manager.registry.kinds()
    complete = SCHEDULABLE_AGENT_KINDS.issubset(registered)
    return HealthResponse(
        status="healthy" if complete else "unhealthy",
        timestamp=time.time(),
        active_runs=run_manager.active_run_count(),
        registered_agents=[kind.value for kind in registered],
    )
