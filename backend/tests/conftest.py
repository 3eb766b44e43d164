"""
Shared fixtures: isolated SQLite database per test, fake key store,
mocked provider clients and a fully wired orchestrator.
"""

import os
import tempfile

# Module-level settings are read at import time; point them away from any
# developer .env before application modules are imported.
_TEST_ROOT = tempfile.mkdtemp(prefix="script-to-video-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_ROOT}/import.db"
os.environ["LOCAL_STORAGE_PATH"] = os.path.join(_TEST_ROOT, "storage")
os.environ["STORAGE_BACKEND"] = "local"
os.environ["ENABLE_POLLING_SCHEDULER"] = "false"
os.environ.pop("API_KEY", None)
os.environ.pop("ADMIN_API_KEYS", None)

from typing import Optional, Sequence
from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy.orm import sessionmaker

from database import build_engine, init_db
from models import Project, ProjectImage, ProjectStatus, Scene, SceneStatus
from pipeline.orchestrator import create_pipeline_orchestrator
from services.asset_persistence import AssetPersistenceService
from services.render_client import RenderClient, RenderStatus
from services.script_analysis_client import ScriptAnalysisClient
from services.video_generation_client import GenerationFlag, GenerationStatus, VideoGenerationClient
from tests.fakes import FakeKeyStore, make_key


@pytest.fixture
def engine(tmp_path):
    """Fresh SQLite database file per test"""
    db_engine = build_engine(f"sqlite:///{tmp_path}/test.db")
    init_db(bind=db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def create_project(session_factory):
    """
    Factory creating a project with one scene per given status.

    Completed scenes get an asset URL; generating/completed scenes get a
    job handle. Returns (project_id, [scene_id, ...]) in scene_number order.
    """

    def _create(
        scene_statuses: Sequence[str] = (SceneStatus.PENDING,),
        status: str = ProjectStatus.GENERATING,
        aspect_ratio: str = "16:9",
        scene_count: Optional[int] = None,
        retry_counts: Optional[Sequence[int]] = None,
        image_url: Optional[str] = None,
    ):
        with session_factory() as db:
            project = Project(
                title="Test project",
                script="First sentence. Second sentence.",
                aspect_ratio=aspect_ratio,
                status=status,
                scene_count=len(scene_statuses) if scene_count is None else scene_count,
            )
            db.add(project)
            db.flush()

            scene_ids = []
            for index, scene_status in enumerate(scene_statuses):
                number = index + 1
                scene = Scene(
                    project_id=project.id,
                    scene_number=number,
                    text_content=f"Scene {number} text",
                    character_prompt="A tall woman in a red coat",
                    status=scene_status,
                    retry_count=retry_counts[index] if retry_counts else 0,
                )
                if scene_status in (SceneStatus.GENERATING, SceneStatus.COMPLETED):
                    scene.job_handle = f"task-{number}"
                if scene_status == SceneStatus.COMPLETED:
                    scene.asset_url = f"https://assets.example.com/scene-{number}.mp4"
                if scene_status == SceneStatus.FAILED:
                    scene.error_message = "earlier failure"
                db.add(scene)
                db.flush()
                scene_ids.append(scene.id)

            if image_url:
                db.add(ProjectImage(project_id=project.id, image_url=image_url))

            db.commit()
            return project.id, scene_ids

    return _create


@pytest.fixture
def key_store():
    return FakeKeyStore([
        make_key("gen-1", "video-generation"),
        make_key("render-1", "video-render"),
        make_key("analysis-1", "script-analysis"),
    ])


@pytest.fixture
def generation_client():
    client = Mock(spec=VideoGenerationClient)
    client.submit = AsyncMock(return_value="task-new")
    client.get_status = AsyncMock(return_value=GenerationStatus(flag=GenerationFlag.IN_PROGRESS))
    return client


@pytest.fixture
def render_client():
    client = Mock(spec=RenderClient)
    client.submit = AsyncMock(return_value="render-1")
    client.get_status = AsyncMock(return_value=RenderStatus(status="queued"))
    return client


@pytest.fixture
def analysis_client():
    client = Mock(spec=ScriptAnalysisClient)
    client.analyze = AsyncMock()
    return client


@pytest.fixture
def assets():
    service = Mock(spec=AssetPersistenceService)
    service.persist_scene_video = AsyncMock(
        side_effect=lambda project_id, scene_id, url: f"https://storage.example.com/projects/{project_id}/scenes/{scene_id}.mp4"
    )
    return service


@pytest.fixture
def publisher():
    return Mock(return_value=True)


@pytest.fixture
def orchestrator(session_factory, key_store, generation_client, render_client, analysis_client, assets, publisher):
    return create_pipeline_orchestrator(
        session_factory,
        key_store=key_store,
        generation_client=generation_client,
        render_client=render_client,
        analysis_client=analysis_client,
        assets=assets,
        publisher=publisher,
        max_retries=3,
        clip_duration=10,
    )
