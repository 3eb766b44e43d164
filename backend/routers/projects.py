"""
Project endpoint router

Handles the project lifecycle:
- POST /api/projects: create a draft project from a script
- GET  /api/projects/{project_id}: project with its scenes
- POST /api/projects/{project_id}/analyze: split the script into scenes
- POST /api/projects/{project_id}/generate: start generating all scenes
- POST /api/projects/{project_id}/merge: merge completed scenes
- GET  /api/projects/{project_id}/merge-status: render progress
- POST /api/projects/{project_id}/polling/stop: stop background polling
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, Path
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from database import get_db
from dependencies import get_orchestrator, get_scheduler
from models import Project, ProjectImage, Scene, SceneStatus
from pipeline import state_machine
from pipeline.error_handler import ProjectNotFound
from pipeline.orchestrator import PipelineOrchestrator
from schemas import (
    ASPECT_RATIOS,
    ErrorResponse,
    GenerationStartResponse,
    MergeRequest,
    MergeResponse,
    MergeStatusResponse,
    PollingStopResponse,
    ProjectCreateRequest,
    ProjectResponse,
)
from workers.scheduler import PollingScheduler

logger = structlog.get_logger()

router = APIRouter(prefix="/api/projects", tags=["Projects"])


def _validation_error(message: str, details: str) -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={
            "error": "ValidationError",
            "message": message,
            "details": details
        }
    )


def _load_project(db: Session, project_id: str) -> Project:
    project = db.get(Project, project_id)
    if project is None:
        raise ProjectNotFound(project_id)
    return project


@router.post(
    "",
    response_model=ProjectResponse,
    status_code=201,
    responses={400: {"model": ErrorResponse, "description": "Missing or invalid fields"}},
    summary="Create Project"
)
async def create_project(request: ProjectCreateRequest, db: Session = Depends(get_db)):
    """Create a draft project; the script is analyzed separately."""
    if not request.title or not request.title.strip():
        raise _validation_error("title is required", "The 'title' field cannot be empty")
    if not request.script or not request.script.strip():
        raise _validation_error("script is required", "The 'script' field cannot be empty")
    if request.aspectRatio not in ASPECT_RATIOS:
        raise _validation_error(
            f"Invalid aspect ratio: {request.aspectRatio}",
            f"Valid aspect ratios: {', '.join(ASPECT_RATIOS)}"
        )

    project = Project(
        title=request.title.strip(),
        script=request.script.strip(),
        aspect_ratio=request.aspectRatio,
    )
    db.add(project)
    db.flush()
    if request.characterImageUrl:
        db.add(ProjectImage(project_id=project.id, image_url=request.characterImageUrl))
    db.commit()
    db.refresh(project)

    logger.info("project_created", project_id=project.id, aspect_ratio=project.aspect_ratio)
    return project.to_dict(include_scenes=True)


@router.get(
    "/{project_id}",
    response_model=ProjectResponse,
    responses={404: {"model": ErrorResponse, "description": "Project not found"}},
    summary="Get Project"
)
async def get_project(
    project_id: str = Path(..., description="Project identifier"),
    db: Session = Depends(get_db)
):
    return _load_project(db, project_id).to_dict(include_scenes=True)


@router.post(
    "/{project_id}/analyze",
    response_model=ProjectResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Project not found"},
        409: {"model": ErrorResponse, "description": "Project already analyzed"},
        500: {"model": ErrorResponse, "description": "Analysis provider or key failure"}
    },
    summary="Analyze Script"
)
async def analyze_project(
    project_id: str = Path(..., description="Project identifier"),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
    db: Session = Depends(get_db)
):
    """Split the project's script into pending scenes (draft -> scenes_ready)."""
    await orchestrator.analyzer.analyze(project_id)
    db.expire_all()
    return _load_project(db, project_id).to_dict(include_scenes=True)


@router.post(
    "/{project_id}/generate",
    response_model=GenerationStartResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Project not found"},
        409: {"model": ErrorResponse, "description": "Project cannot start generating"}
    },
    summary="Start Scene Generation"
)
async def start_generation(
    project_id: str = Path(..., description="Project identifier"),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
    scheduler: Optional[PollingScheduler] = Depends(get_scheduler),
    db: Session = Depends(get_db)
):
    """
    Move the project to `generating` and start the polling loop.

    The first sweep submits every pending scene; later sweeps check,
    complete and retry them.
    """
    project = _load_project(db, project_id)
    state_machine.mark_project_generating(project)
    db.commit()

    pending = db.execute(
        select(func.count(Scene.id)).where(
            Scene.project_id == project_id,
            Scene.status == SceneStatus.PENDING,
        )
    ).scalar_one()

    polling = bool(scheduler and scheduler.start_scene_polling(project_id))
    logger.info("generation_started", project_id=project_id, pending_scenes=pending, polling=polling)

    return GenerationStartResponse(
        projectId=project_id,
        status=project.status,
        pendingScenes=pending,
        polling=polling,
    )


@router.post(
    "/{project_id}/merge",
    response_model=MergeResponse,
    responses={
        400: {"model": ErrorResponse, "description": "No scenes, order size mismatch, invalid scenes or incomplete project"},
        404: {"model": ErrorResponse, "description": "Project not found"},
        409: {"model": ErrorResponse, "description": "Project is not in a mergeable state"},
        500: {"model": ErrorResponse, "description": "Render provider or key failure"}
    },
    summary="Merge Scenes"
)
async def merge_project(
    project_id: str = Path(..., description="Project identifier"),
    request: Optional[MergeRequest] = Body(None),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
    scheduler: Optional[PollingScheduler] = Depends(get_scheduler)
):
    """
    Validate the project and submit its timeline for rendering.

    Without `sceneIds`, completed scenes are merged in scene_number order.
    With `sceneIds`, exactly scene_count completed scenes must be listed.
    """
    scene_ids = request.sceneIds if request else None
    result = await orchestrator.merger.merge(project_id, scene_ids)

    if scheduler:
        scheduler.start_merge_polling(project_id)

    return MergeResponse(**result.to_dict())


@router.get(
    "/{project_id}/merge-status",
    response_model=MergeStatusResponse,
    response_model_exclude_none=True,
    responses={
        404: {"model": ErrorResponse, "description": "Project not found"},
        500: {"model": ErrorResponse, "description": "Render provider or key failure"}
    },
    summary="Check Merge Status"
)
async def get_merge_status(
    project_id: str = Path(..., description="Project identifier"),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    result = await orchestrator.merge_poller.check(project_id)
    return MergeStatusResponse(**result.to_dict())


@router.post(
    "/{project_id}/polling/stop",
    response_model=PollingStopResponse,
    responses={404: {"model": ErrorResponse, "description": "Project not found"}},
    summary="Stop Polling"
)
async def stop_polling(
    project_id: str = Path(..., description="Project identifier"),
    scheduler: Optional[PollingScheduler] = Depends(get_scheduler),
    db: Session = Depends(get_db)
):
    """Cancel this process's polling loops for the project; nothing else changes."""
    _load_project(db, project_id)
    stopped = await scheduler.stop(project_id) if scheduler else []
    return PollingStopResponse(projectId=project_id, stopped=stopped)
