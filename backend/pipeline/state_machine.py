"""
Status transitions for scenes and projects.

Every status change in the orchestration layer goes through one of these
functions. They validate the current state, mutate the ORM object and
leave committing to the caller.

Scene lifecycle:
    pending -> generating -> completed
    pending -> failed                 (submission rejected)
    generating -> failed              (provider reported failure)
    failed -> pending                 (retry, bounded by MAX_SCENE_RETRIES)

Project lifecycle:
    draft -> analyzing -> scenes_ready -> generating -> merging -> completed
    any non-terminal -> failed
"""

from typing import Dict, FrozenSet, Optional

from config import settings
from models import Project, ProjectStatus, Scene, SceneStatus
from pipeline.error_handler import InvalidTransition

SCENE_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    SceneStatus.PENDING: frozenset({SceneStatus.GENERATING, SceneStatus.FAILED}),
    SceneStatus.GENERATING: frozenset({SceneStatus.COMPLETED, SceneStatus.FAILED}),
    SceneStatus.FAILED: frozenset({SceneStatus.PENDING}),
    SceneStatus.COMPLETED: frozenset(),
}

PROJECT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    ProjectStatus.DRAFT: frozenset({ProjectStatus.ANALYZING}),
    ProjectStatus.ANALYZING: frozenset({ProjectStatus.SCENES_READY, ProjectStatus.FAILED}),
    ProjectStatus.SCENES_READY: frozenset({ProjectStatus.GENERATING, ProjectStatus.MERGING, ProjectStatus.FAILED}),
    ProjectStatus.GENERATING: frozenset({ProjectStatus.MERGING, ProjectStatus.FAILED}),
    ProjectStatus.MERGING: frozenset({ProjectStatus.COMPLETED, ProjectStatus.FAILED}),
    ProjectStatus.FAILED: frozenset({ProjectStatus.ANALYZING, ProjectStatus.GENERATING, ProjectStatus.MERGING}),
    ProjectStatus.COMPLETED: frozenset(),
}

# States from which a merge may be requested
MERGEABLE_PROJECT_STATES = frozenset({
    ProjectStatus.GENERATING,
    ProjectStatus.SCENES_READY,
    ProjectStatus.FAILED,
})


def _check_scene(scene: Scene, target: str) -> None:
    if target not in SCENE_TRANSITIONS.get(scene.status, frozenset()):
        raise InvalidTransition("scene", scene.id, scene.status, target)


def _check_project(project: Project, target: str) -> None:
    if target not in PROJECT_TRANSITIONS.get(project.status, frozenset()):
        raise InvalidTransition("project", project.id, project.status, target)


# ===== Scene =====

def mark_scene_generating(scene: Scene, job_handle: str) -> None:
    """pending -> generating, remembering the provider's task id."""
    _check_scene(scene, SceneStatus.GENERATING)
    scene.status = SceneStatus.GENERATING
    scene.job_handle = job_handle
    scene.error_message = None


def mark_scene_completed(scene: Scene, asset_url: str) -> None:
    _check_scene(scene, SceneStatus.COMPLETED)
    if not asset_url:
        raise ValueError("A completed scene needs an asset URL")
    scene.status = SceneStatus.COMPLETED
    scene.asset_url = asset_url
    scene.error_message = None


def mark_scene_failed(scene: Scene, message: str) -> None:
    """
    pending -> failed (submission) or generating -> failed (provider).

    retry_count is never touched here.
    """
    _check_scene(scene, SceneStatus.FAILED)
    scene.status = SceneStatus.FAILED
    scene.asset_url = None
    scene.error_message = message


def can_retry(scene: Scene, max_retries: Optional[int] = None) -> bool:
    limit = settings.MAX_SCENE_RETRIES if max_retries is None else max_retries
    return scene.status == SceneStatus.FAILED and scene.retry_count < limit


def reset_scene_for_retry(scene: Scene, max_retries: Optional[int] = None) -> None:
    """failed -> pending with retry_count incremented and the old attempt cleared."""
    _check_scene(scene, SceneStatus.PENDING)
    if not can_retry(scene, max_retries):
        raise InvalidTransition("scene", scene.id, scene.status, SceneStatus.PENDING)
    scene.retry_count += 1
    scene.status = SceneStatus.PENDING
    scene.job_handle = None
    scene.error_message = None


# ===== Project =====

def mark_project_analyzing(project: Project) -> None:
    _check_project(project, ProjectStatus.ANALYZING)
    project.status = ProjectStatus.ANALYZING
    project.error_message = None


def mark_project_scenes_ready(project: Project, scene_count: int) -> None:
    """analyzing -> scenes_ready; the only place scene_count is written."""
    _check_project(project, ProjectStatus.SCENES_READY)
    if scene_count < 1:
        raise ValueError("A project needs at least one scene")
    project.status = ProjectStatus.SCENES_READY
    project.scene_count = scene_count


def mark_project_generating(project: Project) -> None:
    """Requires analyzed scenes; a no-op when already generating."""
    if project.status == ProjectStatus.GENERATING:
        return
    _check_project(project, ProjectStatus.GENERATING)
    if project.scene_count < 1:
        raise InvalidTransition("project", project.id, project.status, ProjectStatus.GENERATING)
    project.status = ProjectStatus.GENERATING
    project.error_message = None


def mark_project_merging(project: Project, render_job_id: str) -> None:
    """Any mergeable state -> merging; a previous render handle is replaced."""
    if project.status not in MERGEABLE_PROJECT_STATES:
        raise InvalidTransition("project", project.id, project.status, ProjectStatus.MERGING)
    project.status = ProjectStatus.MERGING
    project.output_ref = render_job_id
    project.error_message = None


def mark_project_completed(project: Project, video_url: str) -> None:
    _check_project(project, ProjectStatus.COMPLETED)
    project.status = ProjectStatus.COMPLETED
    project.output_ref = video_url


def mark_project_failed(project: Project, message: str) -> None:
    _check_project(project, ProjectStatus.FAILED)
    project.status = ProjectStatus.FAILED
    project.error_message = message
