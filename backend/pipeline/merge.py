"""
Merging completed scenes into one video.

- validate_merge_selection: decides which scenes go into the merge and in
  which order, refusing anything short of a complete project
- build_timeline / build_edit: fixed-duration, strictly concatenated clips
- MergeOrchestrator: validation + render submission -> project merging
- MergeStatusPoller: render progress -> project completed / failed
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

import structlog
from sqlalchemy.orm import Session

from config import settings
from models import Project, ProjectStatus, Scene, SceneStatus
from pipeline import state_machine
from pipeline.error_handler import (
    ClipCountMismatch,
    DuplicateSceneId,
    IncompleteProject,
    InvalidTransition,
    MergeValidationError,
    NoScenes,
    OrderSizeMismatch,
    ProjectNotFound,
    SceneNotReady,
    UnknownSceneId,
)
from redis_client import emit_project_event, publish_project_event
from services.key_rotator import KeyRotator
from services.render_client import RenderClient, RenderState

logger = structlog.get_logger(__name__)

SERVICE_NAME = "video-render"
RENDER_FAILED_MESSAGE = "Video rendering failed"
RENDER_MISSING_URL_MESSAGE = "Render finished without an output URL"


@dataclass
class MergeSelection:
    """Scenes chosen for a merge, in timeline order"""
    scenes: List[Scene]
    custom_order: bool

    @property
    def asset_urls(self) -> List[str]:
        return [scene.asset_url for scene in self.scenes]


@dataclass
class MergeResult:
    project_id: str
    render_job_id: str
    total_scenes: int
    scenes_merged: int
    custom_order: bool
    total_duration: int

    def to_dict(self) -> dict:
        return {
            "success": True,
            "renderId": self.render_job_id,
            "status": ProjectStatus.MERGING,
            "totalScenes": self.total_scenes,
            "scenesMerged": self.scenes_merged,
            "customOrder": self.custom_order,
            "totalDuration": self.total_duration,
        }


@dataclass
class MergeStatusResult:
    status: str
    progress: Optional[int] = None
    video_url: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        result = {"status": self.status}
        if self.progress is not None:
            result["progress"] = self.progress
        if self.video_url:
            result["videoUrl"] = self.video_url
        if self.error:
            result["error"] = self.error
        return result


def validate_merge_selection(
    project: Project,
    scenes: Sequence[Scene],
    explicit_order: Optional[Sequence[str]] = None,
) -> MergeSelection:
    """
    Resolve and validate the scenes to merge.

    Args:
        project: Project being merged (its scene_count is authoritative)
        scenes: All scenes of the project
        explicit_order: Scene ids in the desired order; empty or None means
            completed scenes in scene_number order

    Raises:
        NoScenes: the project has no scenes at all
        OrderSizeMismatch: explicit order does not name scene_count scenes
        MergeValidationError: unknown, duplicated or unfinished scenes in the
            explicit order (all of them, not just the first)
        IncompleteProject: fewer than scene_count mergeable scenes
    """
    expected = project.scene_count
    if expected < 1 or not scenes:
        raise NoScenes(project.id)
    custom_order = bool(explicit_order)

    if custom_order:
        if len(explicit_order) != expected:
            raise OrderSizeMismatch(expected, len(explicit_order))

        by_id: Dict[str, Scene] = {scene.id: scene for scene in scenes}
        problems = []
        selected: List[Scene] = []
        seen = set()
        for scene_id in explicit_order:
            scene = by_id.get(scene_id)
            if scene is None:
                problems.append(UnknownSceneId(scene_id))
                continue
            if scene_id in seen:
                problems.append(DuplicateSceneId(scene_id, scene.scene_number))
                continue
            seen.add(scene_id)
            if scene.status != SceneStatus.COMPLETED:
                problems.append(SceneNotReady(scene.id, scene.scene_number, scene.status))
                continue
            selected.append(scene)

        if problems:
            raise MergeValidationError(problems)
    else:
        selected = sorted(
            (scene for scene in scenes if scene.status == SceneStatus.COMPLETED),
            key=lambda scene: scene.scene_number,
        )

    mergeable = [scene for scene in selected if scene.asset_url]
    if len(mergeable) != expected or len(selected) != expected:
        mergeable_ids = {scene.id for scene in mergeable}
        missing = [
            (scene.scene_number, scene.status)
            for scene in sorted(scenes, key=lambda s: s.scene_number)
            if scene.id not in mergeable_ids
        ]
        raise IncompleteProject(len(mergeable), expected, missing)

    return MergeSelection(scenes=mergeable, custom_order=custom_order)


def build_timeline(asset_urls: Sequence[str], clip_duration: Optional[int] = None) -> List[dict]:
    """
    One clip per asset, back to back.

    Example:
        >>> build_timeline(["a.mp4", "b.mp4"], 10)[1]["start"]
        10
    """
    duration = clip_duration or settings.FIXED_CLIP_DURATION
    return [
        {
            "asset": {"type": "video", "src": url},
            "start": index * duration,
            "length": duration,
            "fit": "crop",
            "scale": 1,
        }
        for index, url in enumerate(asset_urls)
    ]


def build_edit(clips: List[dict]) -> dict:
    """Render request body for a single-track timeline."""
    return {
        "timeline": {
            "background": "#000000",
            "tracks": [{"clips": clips}],
        },
        "output": {
            "format": "mp4",
            "resolution": "hd",
        },
    }


class MergeOrchestrator:
    """
    Validates a project and submits its timeline for rendering.

    Example:
        >>> orchestrator = MergeOrchestrator(SessionLocal, rotator)
        >>> result = await orchestrator.merge(project_id)
        >>> result.render_job_id
        'render-123'
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        rotator: KeyRotator,
        client: Optional[RenderClient] = None,
        publisher: Optional[Callable[..., bool]] = None,
        clip_duration: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.rotator = rotator
        self.client = client or RenderClient()
        self.publish = publisher or publish_project_event
        self.clip_duration = clip_duration or settings.FIXED_CLIP_DURATION

    async def merge(self, project_id: str, scene_ids: Optional[Sequence[str]] = None) -> MergeResult:
        """
        Raises:
            ProjectNotFound: Unknown project
            InvalidTransition: Project is not in a mergeable state
            NoScenes / OrderSizeMismatch / MergeValidationError / IncompleteProject: see
                validate_merge_selection
            ClipCountMismatch: Timeline size differs from scene_count
            NoKeysAvailable / AllKeysExhausted / ProviderError: render submission
        """
        with self.session_factory() as db:
            project = db.get(Project, project_id)
            if project is None:
                raise ProjectNotFound(project_id)
            if project.status not in state_machine.MERGEABLE_PROJECT_STATES:
                raise InvalidTransition("project", project.id, project.status, ProjectStatus.MERGING)

            try:
                selection = validate_merge_selection(project, list(project.scenes), scene_ids)
            except (NoScenes, OrderSizeMismatch, MergeValidationError, IncompleteProject) as e:
                logger.warning("merge_blocked", project_id=project_id, reason=e.code.value, details=e.details)
                raise
            expected = project.scene_count

        clips = build_timeline(selection.asset_urls, self.clip_duration)
        if len(clips) != expected:
            raise ClipCountMismatch(len(clips), expected)

        edit = build_edit(clips)
        total_duration = len(clips) * self.clip_duration
        logger.info(
            "merge_submitting",
            project_id=project_id,
            clips=len(clips),
            total_duration=total_duration,
            custom_order=selection.custom_order,
        )

        render_job_id = await self.rotator.with_rotation(
            SERVICE_NAME,
            lambda secret: self.client.submit(secret, edit),
        )

        with self.session_factory() as db:
            project = db.get(Project, project_id)
            if project is None:
                raise ProjectNotFound(project_id)
            previous = project.render_job_id
            try:
                state_machine.mark_project_merging(project, render_job_id)
            except InvalidTransition:
                # Another merge won the race; this render is left running at the provider
                logger.warning("render_job_orphaned", project_id=project_id,
                               render_job_id=render_job_id, status=project.status)
                raise
            db.commit()

        if previous:
            logger.info("render_job_replaced", project_id=project_id, previous=previous, render_job_id=render_job_id)
        logger.info("merge_submitted", project_id=project_id, render_job_id=render_job_id)
        await emit_project_event(self.publish, project_id, "merge_started",
                                 render_job_id=render_job_id, scenes_merged=len(clips))

        return MergeResult(
            project_id=project_id,
            render_job_id=render_job_id,
            total_scenes=expected,
            scenes_merged=len(clips),
            custom_order=selection.custom_order,
            total_duration=total_duration,
        )


class MergeStatusPoller:
    """Tracks an in-flight render until the project completes or fails."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        rotator: KeyRotator,
        client: Optional[RenderClient] = None,
        publisher: Optional[Callable[..., bool]] = None,
    ):
        self.session_factory = session_factory
        self.rotator = rotator
        self.client = client or RenderClient()
        self.publish = publisher or publish_project_event

    async def check(self, project_id: str) -> MergeStatusResult:
        """
        Query the render provider while the project is merging.

        Any other project state is reported without a provider call.

        Raises:
            ProjectNotFound: Unknown project
        """
        with self.session_factory() as db:
            project = db.get(Project, project_id)
            if project is None:
                raise ProjectNotFound(project_id)
            if project.status == ProjectStatus.COMPLETED:
                return MergeStatusResult(status=ProjectStatus.COMPLETED, progress=100,
                                         video_url=project.final_video_url)
            if project.status != ProjectStatus.MERGING or not project.render_job_id:
                return MergeStatusResult(status=project.status, error=project.error_message)
            render_job_id = project.render_job_id

        render = await self.rotator.with_rotation(
            SERVICE_NAME,
            lambda secret: self.client.get_status(secret, render_job_id),
        )

        if render.is_done and render.url:
            return await self._finish(project_id, render_job_id, video_url=render.url)

        if render.is_done:
            return await self._finish(project_id, render_job_id, error=RENDER_MISSING_URL_MESSAGE)

        if render.is_failed:
            return await self._finish(project_id, render_job_id, error=render.error or RENDER_FAILED_MESSAGE)

        progress = render.progress if render.status == RenderState.RENDERING else None
        logger.debug("render_in_progress", project_id=project_id, render_status=render.status, progress=progress)
        await emit_project_event(self.publish, project_id, "merge_progress",
                                 render_status=render.status, progress=progress)
        return MergeStatusResult(status=render.status, progress=progress)

    async def _finish(
        self,
        project_id: str,
        render_job_id: str,
        video_url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> MergeStatusResult:
        with self.session_factory() as db:
            project = db.get(Project, project_id)
            if project is None:
                raise ProjectNotFound(project_id)
            if project.status != ProjectStatus.MERGING or project.render_job_id != render_job_id:
                # Superseded by a newer merge
                return MergeStatusResult(status=project.status, video_url=project.final_video_url)

            if video_url:
                state_machine.mark_project_completed(project, video_url)
            else:
                state_machine.mark_project_failed(project, RENDER_FAILED_MESSAGE)
            db.commit()

        if video_url:
            logger.info("merge_completed", project_id=project_id, render_job_id=render_job_id)
            await emit_project_event(self.publish, project_id, "merge_completed", video_url=video_url)
            return MergeStatusResult(status=ProjectStatus.COMPLETED, progress=100, video_url=video_url)

        logger.error("merge_failed", project_id=project_id, render_job_id=render_job_id, error=error)
        await emit_project_event(self.publish, project_id, "merge_failed", error=error)
        return MergeStatusResult(status=ProjectStatus.FAILED, error=RENDER_FAILED_MESSAGE)
