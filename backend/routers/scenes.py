"""
Scene endpoint router

Handles:
- POST /api/scenes/generate: submit one pending scene to the generation provider
- POST /api/scenes/status: check one scene against the provider
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException

from dependencies import get_orchestrator
from pipeline.orchestrator import PipelineOrchestrator
from schemas import (
    ASPECT_RATIOS,
    ErrorResponse,
    SceneGenerateRequest,
    SceneGenerateResponse,
    SceneStatusRequest,
    SceneStatusResponse,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/api/scenes", tags=["Scenes"])


def _validation_error(message: str, details: str) -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={
            "error": "ValidationError",
            "message": message,
            "details": details
        }
    )


@router.post(
    "/generate",
    response_model=SceneGenerateResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing or invalid fields"},
        404: {"model": ErrorResponse, "description": "Scene not found"},
        409: {"model": ErrorResponse, "description": "Scene is not pending"},
        500: {"model": ErrorResponse, "description": "Provider or key failure"}
    },
    summary="Submit Scene Generation"
)
async def generate_scene(
    request: SceneGenerateRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    """
    Submit a pending scene to the video generation provider.

    On success the scene is `generating` and the provider task id is
    returned. A provider rejection marks the scene `failed` and answers 500
    with the provider's message.
    """
    if not request.sceneId or not request.sceneId.strip():
        raise _validation_error("sceneId is required", "The 'sceneId' field cannot be empty")
    if not request.prompt or not request.prompt.strip():
        raise _validation_error("prompt is required", "The 'prompt' field cannot be empty")
    if request.aspectRatio and request.aspectRatio not in ASPECT_RATIOS:
        raise _validation_error(
            f"Invalid aspect ratio: {request.aspectRatio}",
            f"Valid aspect ratios: {', '.join(ASPECT_RATIOS)}"
        )

    logger.info("scene_generate_request_received", scene_id=request.sceneId)

    result = await orchestrator.submitter.submit(
        request.sceneId.strip(),
        prompt=request.prompt.strip(),
        reference_image=request.referenceImage or None,
        aspect_ratio=request.aspectRatio or None,
    )

    if not result.success:
        raise HTTPException(
            status_code=500,
            detail={
                "error": "GenerationFailed",
                "message": result.error,
                "details": {"sceneId": result.scene_id, "status": result.status}
            }
        )

    return SceneGenerateResponse(
        sceneId=result.scene_id,
        jobHandle=result.job_handle,
        status=result.status,
    )


@router.post(
    "/status",
    response_model=SceneStatusResponse,
    response_model_exclude_none=True,
    responses={
        400: {"model": ErrorResponse, "description": "Missing sceneId"},
        404: {"model": ErrorResponse, "description": "Scene not found"},
        500: {"model": ErrorResponse, "description": "Provider or key failure"}
    },
    summary="Check Scene Status"
)
async def check_scene_status(
    request: SceneStatusRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    """
    Reconcile one scene with the provider.

    A finished clip is copied to storage before the scene is reported
    `completed` with its `assetUrl`.
    """
    if not request.sceneId or not request.sceneId.strip():
        raise _validation_error("sceneId is required", "The 'sceneId' field cannot be empty")

    result = await orchestrator.poller.check_scene(request.sceneId.strip())
    return SceneStatusResponse(**result.to_dict())
