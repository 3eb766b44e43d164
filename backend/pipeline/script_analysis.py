"""
Script analysis: splits a project's script into pending scenes.

This is the only place a project's scene_count is written.
"""

from typing import Callable, Optional

import structlog
from sqlalchemy.orm import Session

from models import Project, ProjectImage, ProjectStatus, Scene, SceneStatus
from pipeline import state_machine
from pipeline.error_handler import InvalidTransition, ProjectNotFound
from redis_client import emit_project_event, publish_project_event
from services.key_rotator import KeyRotator
from services.script_analysis_client import AnalysisResult, ScriptAnalysisClient

logger = structlog.get_logger(__name__)

SERVICE_NAME = "script-analysis"


class ScriptAnalyzer:
    """
    Drives a project from draft to scenes_ready.

    Example:
        >>> analyzer = ScriptAnalyzer(SessionLocal, rotator)
        >>> project = await analyzer.analyze(project_id)
        >>> project.scene_count
        5
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        rotator: KeyRotator,
        client: Optional[ScriptAnalysisClient] = None,
        publisher: Optional[Callable[..., bool]] = None,
    ):
        self.session_factory = session_factory
        self.rotator = rotator
        self.client = client or ScriptAnalysisClient()
        self.publish = publisher or publish_project_event

    async def analyze(
        self,
        project_id: str,
        script: Optional[str] = None,
        character_image: Optional[str] = None,
    ) -> Project:
        """
        Analyze the project's script and persist the resulting scenes.

        Args:
            project_id: Project to analyze (draft or failed)
            script: Overrides the stored script when given
            character_image: Reference image URL stored as the project's
                character image

        Raises:
            ProjectNotFound: Unknown project
            InvalidTransition: Project is not draft or failed
            Exception: Analysis failures, after the project is marked failed
        """
        with self.session_factory() as db:
            project = db.get(Project, project_id)
            if project is None:
                raise ProjectNotFound(project_id)
            if project.scene_count:
                # scene_count is fixed once set
                raise InvalidTransition("project", project.id, project.status, ProjectStatus.ANALYZING)
            state_machine.mark_project_analyzing(project)
            if script:
                project.script = script
            if character_image:
                db.add(ProjectImage(project_id=project_id, image_url=character_image))
            script_text = project.script
            has_character_image = bool(character_image) or bool(project.images)
            db.commit()

        await emit_project_event(self.publish, project_id, "analysis_started")
        logger.info("script_analysis_started", project_id=project_id, has_character_image=has_character_image)

        try:
            result: AnalysisResult = await self.rotator.with_rotation(
                SERVICE_NAME,
                lambda secret: self.client.analyze(secret, script_text, has_character_image),
            )
        except Exception as e:
            error = str(e) or type(e).__name__
            self._fail(project_id, error)
            logger.error("script_analysis_failed", project_id=project_id, error=error)
            await emit_project_event(self.publish, project_id, "analysis_failed", error=error)
            raise

        with self.session_factory() as db:
            project = db.get(Project, project_id)
            if project is None:
                raise ProjectNotFound(project_id)

            ordered = sorted(result.scenes, key=lambda s: s.sceneNumber)
            for number, analyzed in enumerate(ordered, start=1):
                db.add(Scene(
                    project_id=project_id,
                    scene_number=number,
                    text_content=analyzed.textContent,
                    word_count=analyzed.wordCount,
                    estimated_duration=analyzed.estimatedDuration,
                    character_prompt=analyzed.characterPrompt,
                    status=SceneStatus.PENDING,
                ))

            project.language = result.language
            project.dialect = result.dialect
            project.content_type = result.contentType
            state_machine.mark_project_scenes_ready(project, len(ordered))
            db.commit()
            db.refresh(project)
            scene_count = len(project.scenes)

        logger.info("script_analysis_completed", project_id=project_id, scene_count=scene_count)
        await emit_project_event(self.publish, project_id, "scenes_ready", scene_count=scene_count)
        return project

    def _fail(self, project_id: str, error: str) -> None:
        with self.session_factory() as db:
            project = db.get(Project, project_id)
            if project is None:
                return
            state_machine.mark_project_failed(project, error)
            db.commit()
