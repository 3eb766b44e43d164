"""
Scene generation: submission, status polling and bounded retries.

Components:
- GenerationSubmitter: pending scene -> provider task (generating) or failed
- StatusPoller: reconciles generating scenes with the provider, one sweep
  per scheduling tick
- RetryPolicy: failed scene -> pending -> resubmitted, at most
  MAX_SCENE_RETRIES times

Every scene operation opens its own database session and commits its
status change before awaiting anything else, so concurrent sweeps over
sibling scenes never share ORM state.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import settings
from models import Project, ProjectImage, Scene, SceneStatus
from pipeline.error_handler import InvalidTransition, ProjectNotFound, SceneNotFound
from pipeline import state_machine
from redis_client import emit_project_event, publish_project_event
from services.asset_persistence import AssetPersistenceService
from services.key_rotator import KeyRotator
from services.video_generation_client import (
    GenerationStatus,
    VideoGenerationClient,
    build_generation_payload,
)

logger = structlog.get_logger(__name__)

SERVICE_NAME = "video-generation"
DEFAULT_GENERATION_ERROR = "Video generation failed"

EventPublisher = Callable[..., bool]


@dataclass
class SubmissionResult:
    """Outcome of one submission attempt; failures are recorded, not raised"""
    scene_id: str
    success: bool
    job_handle: Optional[str] = None
    error: Optional[str] = None

    @property
    def status(self) -> str:
        return SceneStatus.GENERATING if self.success else SceneStatus.FAILED


@dataclass
class SceneCheckResult:
    """Scene state after a status check"""
    scene_id: str
    status: str
    asset_url: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        result = {"sceneId": self.scene_id, "status": self.status}
        if self.asset_url:
            result["assetUrl"] = self.asset_url
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class SweepReport:
    """Project-level summary produced by one polling sweep"""
    project_id: str
    total: int = 0
    completed: int = 0
    generating: int = 0
    pending: int = 0
    failed: int = 0
    exhausted_scene_numbers: List[int] = field(default_factory=list)
    all_completed: bool = False
    stalled: bool = False

    @property
    def finished(self) -> bool:
        """No further sweep can change anything without outside action"""
        return self.all_completed or self.stalled

    def to_dict(self) -> dict:
        return {
            "projectId": self.project_id,
            "total": self.total,
            "completed": self.completed,
            "generating": self.generating,
            "pending": self.pending,
            "failed": self.failed,
            "exhaustedScenes": self.exhausted_scene_numbers,
            "allCompleted": self.all_completed,
            "stalled": self.stalled,
        }


def _first_reference_image(db: Session, project_id: str) -> Optional[str]:
    stmt = (
        select(ProjectImage.image_url)
        .where(ProjectImage.project_id == project_id)
        .order_by(ProjectImage.created_at.asc(), ProjectImage.id.asc())
        .limit(1)
    )
    return db.execute(stmt).scalar_one_or_none()


class GenerationSubmitter:
    """
    Submits pending scenes to the video generation provider.

    Example:
        >>> submitter = GenerationSubmitter(SessionLocal, rotator)
        >>> result = await submitter.submit(scene_id)
        >>> result.status
        'generating'
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        rotator: KeyRotator,
        client: Optional[VideoGenerationClient] = None,
        publisher: Optional[EventPublisher] = None,
    ):
        self.session_factory = session_factory
        self.rotator = rotator
        self.client = client or VideoGenerationClient()
        self.publish = publisher or publish_project_event

    async def submit(
        self,
        scene_id: str,
        prompt: Optional[str] = None,
        reference_image: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
    ) -> SubmissionResult:
        """
        Create a generation task for a pending scene.

        Missing inputs are looked up fresh: the prompt from the scene, the
        reference image from the project's first image, the aspect ratio
        from the project.

        Raises:
            SceneNotFound: Unknown scene id
            InvalidTransition: Scene is not pending
        """
        with self.session_factory() as db:
            scene = db.get(Scene, scene_id)
            if scene is None:
                raise SceneNotFound(scene_id)
            if scene.status != SceneStatus.PENDING:
                raise InvalidTransition("scene", scene.id, scene.status, SceneStatus.GENERATING)

            project_id = scene.project_id
            scene_number = scene.scene_number
            prompt = prompt or scene.build_prompt()
            if reference_image is None:
                reference_image = _first_reference_image(db, project_id)
            if aspect_ratio is None:
                aspect_ratio = scene.project.aspect_ratio

        payload = build_generation_payload(prompt, aspect_ratio, reference_image)
        logger.info(
            "scene_submission_started",
            scene_id=scene_id,
            scene_number=scene_number,
            has_reference_image=bool(reference_image),
            aspect_ratio=aspect_ratio,
        )

        try:
            job_handle = await self.rotator.with_rotation(
                SERVICE_NAME,
                lambda secret: self.client.submit(secret, payload),
            )
        except Exception as e:
            error = str(e) or type(e).__name__
            self._record_failure(scene_id, error)
            logger.error("scene_submission_failed", scene_id=scene_id, scene_number=scene_number, error=error)
            await emit_project_event(self.publish, project_id, "scene_failed",
                                     scene_id=scene_id, scene_number=scene_number, error=error)
            return SubmissionResult(scene_id=scene_id, success=False, error=error)

        with self.session_factory() as db:
            scene = db.get(Scene, scene_id)
            if scene is None:
                logger.warning("scene_vanished_after_submission", scene_id=scene_id, job_handle=job_handle)
                return SubmissionResult(scene_id=scene_id, success=False, error="Scene not found")
            state_machine.mark_scene_generating(scene, job_handle)
            db.commit()

        logger.info("scene_submitted", scene_id=scene_id, scene_number=scene_number, job_handle=job_handle)
        await emit_project_event(self.publish, project_id, "scene_generating",
                                 scene_id=scene_id, scene_number=scene_number)
        return SubmissionResult(scene_id=scene_id, success=True, job_handle=job_handle)

    def _record_failure(self, scene_id: str, error: str) -> None:
        with self.session_factory() as db:
            scene = db.get(Scene, scene_id)
            if scene is None or scene.status != SceneStatus.PENDING:
                return
            state_machine.mark_scene_failed(scene, error)
            db.commit()


class RetryPolicy:
    """
    Re-queues failed scenes that still have retries left.

    A scene that already used all its retries is left failed; callers get
    `None` back instead of an exception.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        submitter: GenerationSubmitter,
        max_retries: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.submitter = submitter
        self.max_retries = settings.MAX_SCENE_RETRIES if max_retries is None else max_retries

    async def retry(self, scene_id: str) -> Optional[SubmissionResult]:
        with self.session_factory() as db:
            scene = db.get(Scene, scene_id)
            if scene is None:
                return None
            if not state_machine.can_retry(scene, self.max_retries):
                logger.info(
                    "scene_retry_cap_reached",
                    scene_id=scene_id,
                    status=scene.status,
                    retry_count=scene.retry_count,
                )
                return None
            state_machine.reset_scene_for_retry(scene, self.max_retries)
            attempt = scene.retry_count
            db.commit()

        logger.info("scene_retry_scheduled", scene_id=scene_id, attempt=attempt, max_retries=self.max_retries)
        try:
            return await self.submitter.submit(scene_id)
        except InvalidTransition:
            # Another caller picked the scene up between reset and submit
            return None


class StatusPoller:
    """
    Reconciles generating scenes with the provider.

    Usage:
        poller = StatusPoller(SessionLocal, rotator, submitter, retry_policy)
        report = await poller.sweep(project_id)
        if report.all_completed:
            ...
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        rotator: KeyRotator,
        submitter: GenerationSubmitter,
        retry_policy: RetryPolicy,
        client: Optional[VideoGenerationClient] = None,
        assets: Optional[AssetPersistenceService] = None,
        publisher: Optional[EventPublisher] = None,
    ):
        self.session_factory = session_factory
        self.rotator = rotator
        self.submitter = submitter
        self.retry_policy = retry_policy
        self.client = client or VideoGenerationClient()
        self.assets = assets or AssetPersistenceService()
        self.publish = publisher or publish_project_event

    async def check_scene(self, scene_id: str) -> SceneCheckResult:
        """
        Query the provider for one scene and apply the outcome.

        Scenes that are not generating are reported as they are without a
        provider call. In-progress results change nothing.

        Raises:
            SceneNotFound: Unknown scene id
            PipelineError / provider errors: the scene is left unchanged
        """
        with self.session_factory() as db:
            scene = db.get(Scene, scene_id)
            if scene is None:
                raise SceneNotFound(scene_id)
            current = SceneCheckResult(scene.id, scene.status, scene.asset_url, scene.error_message)
            if scene.status != SceneStatus.GENERATING or not scene.job_handle:
                return current
            project_id = scene.project_id
            scene_number = scene.scene_number
            job_handle = scene.job_handle

        status: GenerationStatus = await self.rotator.with_rotation(
            SERVICE_NAME,
            lambda secret: self.client.get_status(secret, job_handle),
        )

        if status.is_success:
            asset_url = await self.assets.persist_scene_video(project_id, scene_id, status.video_url)
            return await self._apply(scene_id, job_handle, completed_url=asset_url) or current

        if status.is_failed:
            error = status.error_message or DEFAULT_GENERATION_ERROR
            return await self._apply(scene_id, job_handle, error=error) or current

        logger.debug("scene_still_generating", scene_id=scene_id, scene_number=scene_number, flag=status.flag)
        return current

    async def _apply(
        self,
        scene_id: str,
        job_handle: str,
        completed_url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Optional[SceneCheckResult]:
        with self.session_factory() as db:
            scene = db.get(Scene, scene_id)
            if scene is None or scene.status != SceneStatus.GENERATING or scene.job_handle != job_handle:
                # Deleted or resubmitted while the provider was being queried
                return None

            if completed_url:
                state_machine.mark_scene_completed(scene, completed_url)
            else:
                state_machine.mark_scene_failed(scene, error)
            db.commit()
            result = SceneCheckResult(scene.id, scene.status, scene.asset_url, scene.error_message)
            project_id = scene.project_id
            scene_number = scene.scene_number

        if completed_url:
            logger.info("scene_completed", scene_id=scene_id, scene_number=scene_number)
            await emit_project_event(self.publish, project_id, "scene_completed", scene_id=scene_id,
                                     scene_number=scene_number, asset_url=completed_url)
        else:
            logger.warning("scene_generation_failed", scene_id=scene_id, scene_number=scene_number, error=error)
            await emit_project_event(self.publish, project_id, "scene_failed",
                                     scene_id=scene_id, scene_number=scene_number, error=error)
        return result

    async def _check_quietly(self, scene_id: str) -> None:
        try:
            await self.check_scene(scene_id)
        except SceneNotFound:
            logger.debug("scene_disappeared", scene_id=scene_id)
        except Exception as e:
            logger.error("scene_status_check_failed", scene_id=scene_id, error=str(e))

    async def _submit_quietly(self, scene_id: str) -> None:
        try:
            await self.submitter.submit(scene_id)
        except (SceneNotFound, InvalidTransition):
            # Picked up or removed by someone else since the query
            pass

    def _scene_ids(self, project_id: str, *conditions) -> List[str]:
        with self.session_factory() as db:
            stmt = (
                select(Scene.id)
                .where(Scene.project_id == project_id, *conditions)
                .order_by(Scene.scene_number)
            )
            return list(db.execute(stmt).scalars().all())

    async def sweep(self, project_id: str) -> SweepReport:
        """
        One scheduling tick for a project.

        1. check every generating scene concurrently
        2. retry failed scenes that have retries left
        3. submit pending scenes (resumes work interrupted by a restart)
        4. summarize

        Raises:
            ProjectNotFound: The project no longer exists
        """
        with self.session_factory() as db:
            if db.get(Project, project_id) is None:
                raise ProjectNotFound(project_id)

        generating = self._scene_ids(project_id, Scene.status == SceneStatus.GENERATING)
        if generating:
            await asyncio.gather(*(self._check_quietly(scene_id) for scene_id in generating))

        retryable = self._scene_ids(
            project_id,
            Scene.status == SceneStatus.FAILED,
            Scene.retry_count < self.retry_policy.max_retries,
        )
        if retryable:
            await asyncio.gather(*(self.retry_policy.retry(scene_id) for scene_id in retryable))

        pending = self._scene_ids(project_id, Scene.status == SceneStatus.PENDING)
        if pending:
            await asyncio.gather(*(self._submit_quietly(scene_id) for scene_id in pending))

        report = self.summarize(project_id)
        logger.info("scene_sweep_finished", **report.to_dict())

        if report.all_completed:
            await emit_project_event(self.publish, project_id, "all_scenes_completed", total=report.total)
        elif report.stalled:
            await emit_project_event(self.publish, project_id, "generation_stalled",
                                     exhausted_scenes=report.exhausted_scene_numbers)
        else:
            await emit_project_event(self.publish, project_id, "generation_progress",
                                     completed=report.completed, total=report.total)
        return report

    def summarize(self, project_id: str) -> SweepReport:
        """Current scene counts plus the all_completed / stalled verdict."""
        with self.session_factory() as db:
            scenes = db.execute(
                select(Scene).where(Scene.project_id == project_id).order_by(Scene.scene_number)
            ).scalars().all()

            report = SweepReport(project_id=project_id, total=len(scenes))
            retryable = 0
            for scene in scenes:
                if scene.status == SceneStatus.COMPLETED:
                    report.completed += 1
                elif scene.status == SceneStatus.GENERATING:
                    report.generating += 1
                elif scene.status == SceneStatus.PENDING:
                    report.pending += 1
                elif scene.status == SceneStatus.FAILED:
                    report.failed += 1
                    if scene.retry_count >= self.retry_policy.max_retries:
                        report.exhausted_scene_numbers.append(scene.scene_number)
                    else:
                        retryable += 1

        report.all_completed = report.total > 0 and report.completed == report.total
        in_flight = report.generating + report.pending + retryable
        # Also true for a project without scenes
        report.stalled = in_flight == 0 and not report.all_completed
        return report
