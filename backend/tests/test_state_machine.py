"""
Tests for scene and project status transitions.
"""

import pytest

from models import Project, ProjectStatus, Scene, SceneStatus
from pipeline import state_machine
from pipeline.error_handler import InvalidTransition


def _scene(status=SceneStatus.PENDING, retry_count=0):
    return Scene(id="s-1", project_id="p-1", scene_number=1, text_content="text",
                 status=status, retry_count=retry_count)


def _project(status=ProjectStatus.DRAFT, scene_count=0):
    return Project(id="p-1", title="t", script="s", status=status, scene_count=scene_count)


class TestSceneTransitions:

    def test_pending_to_generating_sets_handle(self):
        scene = _scene()
        state_machine.mark_scene_generating(scene, "task-1")
        assert scene.status == SceneStatus.GENERATING
        assert scene.job_handle == "task-1"

    def test_generating_to_completed_requires_asset(self):
        scene = _scene(SceneStatus.GENERATING)
        with pytest.raises(ValueError):
            state_machine.mark_scene_completed(scene, "")
        state_machine.mark_scene_completed(scene, "https://a/1.mp4")
        assert scene.status == SceneStatus.COMPLETED
        assert scene.asset_url == "https://a/1.mp4"

    @pytest.mark.parametrize("status", [SceneStatus.PENDING, SceneStatus.GENERATING])
    def test_failure_keeps_retry_count(self, status):
        scene = _scene(status, retry_count=2)
        state_machine.mark_scene_failed(scene, "boom")
        assert scene.status == SceneStatus.FAILED
        assert scene.error_message == "boom"
        assert scene.retry_count == 2

    def test_completed_is_terminal(self):
        scene = _scene(SceneStatus.COMPLETED)
        with pytest.raises(InvalidTransition) as exc_info:
            state_machine.mark_scene_failed(scene, "late failure")
        assert exc_info.value.http_status == 409

    def test_pending_cannot_complete_directly(self):
        with pytest.raises(InvalidTransition):
            state_machine.mark_scene_completed(_scene(), "https://a/1.mp4")

    def test_retry_resets_scene(self):
        scene = _scene(SceneStatus.FAILED, retry_count=1)
        scene.job_handle = "task-old"
        scene.error_message = "boom"

        state_machine.reset_scene_for_retry(scene, max_retries=3)

        assert scene.status == SceneStatus.PENDING
        assert scene.retry_count == 2
        assert scene.job_handle is None
        assert scene.error_message is None

    def test_retry_refused_at_cap(self):
        scene = _scene(SceneStatus.FAILED, retry_count=3)
        assert state_machine.can_retry(scene, 3) is False
        with pytest.raises(InvalidTransition):
            state_machine.reset_scene_for_retry(scene, max_retries=3)
        assert scene.retry_count == 3


class TestProjectTransitions:

    def test_analysis_path(self):
        project = _project()
        state_machine.mark_project_analyzing(project)
        state_machine.mark_project_scenes_ready(project, 4)
        assert project.status == ProjectStatus.SCENES_READY
        assert project.scene_count == 4

    def test_scenes_ready_needs_scenes(self):
        project = _project(ProjectStatus.ANALYZING)
        with pytest.raises(ValueError):
            state_machine.mark_project_scenes_ready(project, 0)

    def test_generating_is_idempotent(self):
        project = _project(ProjectStatus.GENERATING, 3)
        state_machine.mark_project_generating(project)
        assert project.status == ProjectStatus.GENERATING

    def test_draft_cannot_generate(self):
        with pytest.raises(InvalidTransition):
            state_machine.mark_project_generating(_project())

    def test_failed_project_without_scenes_cannot_generate(self):
        project = _project(ProjectStatus.FAILED, 0)
        with pytest.raises(InvalidTransition):
            state_machine.mark_project_generating(project)
        assert project.status == ProjectStatus.FAILED

    def test_failed_project_with_scenes_can_generate_again(self):
        project = _project(ProjectStatus.FAILED, 2)
        project.error_message = "earlier failure"
        state_machine.mark_project_generating(project)
        assert project.status == ProjectStatus.GENERATING
        assert project.error_message is None

    @pytest.mark.parametrize("status", [
        ProjectStatus.GENERATING, ProjectStatus.SCENES_READY, ProjectStatus.FAILED,
    ])
    def test_merge_allowed_states(self, status):
        project = _project(status, 2)
        project.output_ref = "render-old"
        state_machine.mark_project_merging(project, "render-new")
        assert project.status == ProjectStatus.MERGING
        assert project.render_job_id == "render-new"

    @pytest.mark.parametrize("status", [
        ProjectStatus.DRAFT, ProjectStatus.ANALYZING, ProjectStatus.MERGING, ProjectStatus.COMPLETED,
    ])
    def test_merge_refused_states(self, status):
        with pytest.raises(InvalidTransition):
            state_machine.mark_project_merging(_project(status, 2), "render-1")

    def test_completed_exposes_final_url(self):
        project = _project(ProjectStatus.MERGING, 2)
        project.output_ref = "render-1"
        state_machine.mark_project_completed(project, "https://cdn/final.mp4")
        assert project.final_video_url == "https://cdn/final.mp4"
        assert project.render_job_id is None

    def test_completed_cannot_fail(self):
        with pytest.raises(InvalidTransition):
            state_machine.mark_project_failed(_project(ProjectStatus.COMPLETED, 2), "late")
