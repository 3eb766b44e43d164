"""
Integration tests for the HTTP API.

The app is driven through TestClient without its lifespan; the orchestrator,
scheduler, key store and database session are swapped for test instances
through dependency overrides.

Run with: pytest backend/tests/test_routes.py -v
"""

from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from database import get_db
from dependencies import get_key_store, get_orchestrator, get_scheduler
from main import app
from models import ProjectStatus, SceneStatus
from pipeline.error_handler import ProviderError
from services.key_store import SqlKeyStore
from services.render_client import RenderStatus
from services.script_analysis_client import AnalysisResult, AnalyzedScene
from services.video_generation_client import GenerationFlag, GenerationStatus
from workers.scheduler import PollingScheduler


@pytest.fixture
def scheduler():
    mock = Mock(spec=PollingScheduler)
    mock.start_scene_polling.return_value = True
    mock.start_merge_polling.return_value = True
    mock.stop = AsyncMock(return_value=["scenes"])
    return mock


@pytest.fixture
def client(orchestrator, scheduler, session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_scheduler] = lambda: scheduler
    app.dependency_overrides[get_key_store] = lambda: SqlKeyStore(session_factory)
    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


# ============================================================================
# Projects
# ============================================================================

class TestProjects:

    def test_create_project(self, client):
        response = client.post("/api/projects", json={
            "title": "Launch video",
            "script": "Meet the new app. It does everything.",
            "aspectRatio": "9:16",
            "characterImageUrl": "https://img.example.com/hero.png",
        })

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == ProjectStatus.DRAFT
        assert data["aspect_ratio"] == "9:16"
        assert data["scene_count"] == 0
        assert data["character_image_url"] == "https://img.example.com/hero.png"
        assert data["scenes"] == []

    @pytest.mark.parametrize("body, message", [
        ({"title": "", "script": "text"}, "title is required"),
        ({"title": "t", "script": "   "}, "script is required"),
        ({"title": "t", "script": "text", "aspectRatio": "4:3"}, "Invalid aspect ratio: 4:3"),
    ])
    def test_create_project_validation(self, client, body, message):
        response = client.post("/api/projects", json=body)

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "ValidationError"
        assert response.json()["detail"]["message"] == message

    def test_get_project_with_scenes(self, client, create_project):
        project_id, scene_ids = create_project([SceneStatus.COMPLETED, SceneStatus.PENDING])

        response = client.get(f"/api/projects/{project_id}")

        assert response.status_code == 200
        scenes = response.json()["scenes"]
        assert [scene["id"] for scene in scenes] == scene_ids
        assert scenes[0]["asset_url"] == "https://assets.example.com/scene-1.mp4"

    def test_get_unknown_project(self, client):
        response = client.get("/api/projects/missing")

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "PROJECT_NOT_FOUND"

    def test_analyze_creates_pending_scenes(self, client, create_project, analysis_client):
        project_id, _ = create_project([], status=ProjectStatus.DRAFT)
        analysis_client.analyze.return_value = AnalysisResult(
            language="en",
            scenes=[
                AnalyzedScene(sceneNumber=2, textContent="Second"),
                AnalyzedScene(sceneNumber=1, textContent="First", characterPrompt="A chef"),
            ],
        )

        response = client.post(f"/api/projects/{project_id}/analyze")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == ProjectStatus.SCENES_READY
        assert data["scene_count"] == 2
        assert data["language"] == "en"
        assert [(s["scene_number"], s["text_content"]) for s in data["scenes"]] == [(1, "First"), (2, "Second")]
        assert all(s["status"] == SceneStatus.PENDING for s in data["scenes"])

    def test_analyze_twice_is_conflict(self, client, create_project):
        project_id, _ = create_project([SceneStatus.PENDING], status=ProjectStatus.SCENES_READY)

        response = client.post(f"/api/projects/{project_id}/analyze")

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "INVALID_TRANSITION"

    def test_analysis_failure_marks_project_failed(self, client, create_project, analysis_client):
        project_id, _ = create_project([], status=ProjectStatus.DRAFT)
        analysis_client.analyze.side_effect = ProviderError("Script analysis", "Analysis returned no scenes")

        response = client.post(f"/api/projects/{project_id}/analyze")

        assert response.status_code == 500
        assert client.get(f"/api/projects/{project_id}").json()["status"] == ProjectStatus.FAILED

    def test_start_generation(self, client, create_project, scheduler):
        project_id, _ = create_project(
            [SceneStatus.PENDING, SceneStatus.PENDING], status=ProjectStatus.SCENES_READY
        )

        response = client.post(f"/api/projects/{project_id}/generate")

        assert response.status_code == 200
        assert response.json() == {
            "projectId": project_id,
            "status": ProjectStatus.GENERATING,
            "pendingScenes": 2,
            "polling": True,
        }
        scheduler.start_scene_polling.assert_called_once_with(project_id)

    def test_start_generation_from_draft_is_conflict(self, client, create_project, scheduler):
        project_id, _ = create_project([], status=ProjectStatus.DRAFT)

        response = client.post(f"/api/projects/{project_id}/generate")

        assert response.status_code == 409
        scheduler.start_scene_polling.assert_not_called()

    def test_start_generation_without_scenes_is_conflict(self, client, create_project, scheduler):
        project_id, _ = create_project([], status=ProjectStatus.FAILED)

        response = client.post(f"/api/projects/{project_id}/generate")

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "INVALID_TRANSITION"
        scheduler.start_scene_polling.assert_not_called()

    def test_stop_polling(self, client, create_project, scheduler):
        project_id, _ = create_project([SceneStatus.GENERATING])

        response = client.post(f"/api/projects/{project_id}/polling/stop")

        assert response.json() == {"projectId": project_id, "stopped": ["scenes"]}
        scheduler.stop.assert_awaited_once_with(project_id)


# ============================================================================
# Merge
# ============================================================================

class TestMerge:

    def test_merge_default_order(self, client, create_project, scheduler):
        project_id, _ = create_project([SceneStatus.COMPLETED, SceneStatus.COMPLETED])

        response = client.post(f"/api/projects/{project_id}/merge")

        assert response.status_code == 200
        data = response.json()
        assert data["renderId"] == "render-1"
        assert data["status"] == "merging"
        assert data["customOrder"] is False
        assert data["totalDuration"] == 20
        scheduler.start_merge_polling.assert_called_once_with(project_id)

    def test_merge_custom_order(self, client, create_project):
        project_id, scene_ids = create_project([SceneStatus.COMPLETED, SceneStatus.COMPLETED])

        response = client.post(f"/api/projects/{project_id}/merge", json={"sceneIds": scene_ids[::-1]})

        assert response.status_code == 200
        assert response.json()["customOrder"] is True

    def test_merge_incomplete_project(self, client, create_project, render_client):
        project_id, _ = create_project([SceneStatus.COMPLETED, SceneStatus.FAILED])

        response = client.post(f"/api/projects/{project_id}/merge")

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["error"] == "INCOMPLETE_PROJECT"
        assert detail["message"] == "Cannot merge: 1/2 scenes completed"
        assert detail["details"]["missingScenes"] == ["Scene 2 (failed)"]
        render_client.submit.assert_not_awaited()

    def test_merge_project_without_scenes(self, client, create_project, render_client, scheduler):
        project_id, _ = create_project([], status=ProjectStatus.FAILED)

        response = client.post(f"/api/projects/{project_id}/merge")

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["error"] == "NO_SCENES"
        assert detail["message"] == "No completed scenes found"
        render_client.submit.assert_not_awaited()
        scheduler.start_merge_polling.assert_not_called()

    def test_merge_order_size_mismatch(self, client, create_project):
        project_id, scene_ids = create_project([SceneStatus.COMPLETED, SceneStatus.COMPLETED])

        response = client.post(f"/api/projects/{project_id}/merge", json={"sceneIds": scene_ids[:1]})

        assert response.status_code == 400
        assert response.json()["detail"]["details"] == {"receivedCount": 1, "expectedCount": 2}

    def test_merge_while_merging_is_conflict(self, client, create_project):
        project_id, _ = create_project([SceneStatus.COMPLETED], status=ProjectStatus.MERGING)

        response = client.post(f"/api/projects/{project_id}/merge")

        assert response.status_code == 409

    def test_merge_status(self, client, create_project, render_client):
        project_id, _ = create_project([SceneStatus.COMPLETED])
        client.post(f"/api/projects/{project_id}/merge")
        render_client.get_status.return_value = RenderStatus(status="rendering", progress=55)

        response = client.get(f"/api/projects/{project_id}/merge-status")

        assert response.json() == {"status": "rendering", "progress": 55}


# ============================================================================
# Scenes
# ============================================================================

class TestScenes:

    def test_generate_scene(self, client, create_project):
        _, (scene_id,) = create_project([SceneStatus.PENDING])

        response = client.post("/api/scenes/generate", json={"sceneId": scene_id, "prompt": "A chef cooks"})

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "sceneId": scene_id,
            "jobHandle": "task-new",
            "status": SceneStatus.GENERATING,
        }

    @pytest.mark.parametrize("body, message", [
        ({"prompt": "p"}, "sceneId is required"),
        ({"sceneId": "s", "prompt": " "}, "prompt is required"),
        ({"sceneId": "s", "prompt": "p", "aspectRatio": "1:1"}, "Invalid aspect ratio: 1:1"),
    ])
    def test_generate_scene_validation(self, client, body, message):
        response = client.post("/api/scenes/generate", json=body)

        assert response.status_code == 400
        assert response.json()["detail"]["message"] == message

    def test_generate_unknown_scene(self, client):
        response = client.post("/api/scenes/generate", json={"sceneId": "missing", "prompt": "p"})

        assert response.status_code == 404

    def test_generate_scene_provider_failure(self, client, create_project, generation_client):
        _, (scene_id,) = create_project([SceneStatus.PENDING])
        generation_client.submit.side_effect = ProviderError("Sora2API", "prompt rejected")

        response = client.post("/api/scenes/generate", json={"sceneId": scene_id, "prompt": "p"})

        assert response.status_code == 500
        detail = response.json()["detail"]
        assert detail["error"] == "GenerationFailed"
        assert "prompt rejected" in detail["message"]
        assert detail["details"]["status"] == SceneStatus.FAILED

    def test_scene_status_completed(self, client, create_project, generation_client):
        project_id, (scene_id,) = create_project([SceneStatus.GENERATING])
        generation_client.get_status.return_value = GenerationStatus(
            flag=GenerationFlag.SUCCESS, video_url="https://provider/1.mp4"
        )

        response = client.post("/api/scenes/status", json={"sceneId": scene_id})

        assert response.status_code == 200
        assert response.json() == {
            "sceneId": scene_id,
            "status": SceneStatus.COMPLETED,
            "assetUrl": f"https://storage.example.com/projects/{project_id}/scenes/{scene_id}.mp4",
        }

    def test_scene_status_requires_scene_id(self, client):
        response = client.post("/api/scenes/status", json={})

        assert response.status_code == 400


# ============================================================================
# Authentication and key management
# ============================================================================

class TestAuthentication:

    def test_api_key_required_when_configured(self, client, monkeypatch):
        monkeypatch.setenv("API_KEY", "secret-key")

        assert client.get("/api/projects/missing").status_code == 401
        assert client.get("/api/projects/missing", headers={"X-API-Key": "wrong"}).status_code == 401
        assert client.get("/api/projects/missing", headers={"X-API-Key": "secret-key"}).status_code == 404

    def test_health_is_public(self, client, monkeypatch):
        monkeypatch.setenv("API_KEY", "secret-key")

        assert client.get("/health").status_code == 200

    def test_admin_routes_need_admin_key(self, client, monkeypatch):
        monkeypatch.setenv("ADMIN_API_KEYS", "admin-1,admin-2")

        assert client.get("/api/admin/keys").status_code == 401
        assert client.get("/api/admin/keys", headers={"X-API-Key": "user"}).status_code == 403
        assert client.get("/api/admin/keys", headers={"X-API-Key": "admin-2"}).status_code == 200

    def test_admin_key_passes_api_middleware(self, client, monkeypatch):
        monkeypatch.setenv("API_KEY", "secret-key")
        monkeypatch.setenv("ADMIN_API_KEYS", "admin-1")

        assert client.get("/api/admin/keys", headers={"X-API-Key": "admin-1"}).status_code == 200


class TestApiKeyManagement:

    @pytest.fixture(autouse=True)
    def admin_env(self, monkeypatch):
        monkeypatch.setenv("ADMIN_API_KEYS", "admin-1")

    @property
    def headers(self):
        return {"X-API-Key": "admin-1"}

    def test_add_list_toggle_delete(self, client):
        created = client.post("/api/admin/keys", headers=self.headers,
                              json={"service": "Video-Generation", "apiKey": "sk-abcdef123456"})
        assert created.status_code == 201
        key = created.json()
        assert key["service_name"] == "video-generation"
        assert key["api_key"].endswith("3456")
        assert "sk-abcdef" not in key["api_key"]

        listed = client.get("/api/admin/keys", headers=self.headers).json()["keys"]
        assert [k["id"] for k in listed] == [key["id"]]

        toggled = client.patch(f"/api/admin/keys/{key['id']}/toggle", headers=self.headers)
        assert toggled.json()["is_active"] is False

        deleted = client.delete(f"/api/admin/keys/{key['id']}", headers=self.headers)
        assert deleted.json() == {"success": True}
        assert client.get("/api/admin/keys", headers=self.headers).json()["keys"] == []

    def test_add_requires_fields(self, client):
        response = client.post("/api/admin/keys", headers=self.headers, json={"service": "video-render"})

        assert response.status_code == 400

    def test_unknown_key(self, client):
        assert client.patch("/api/admin/keys/missing/toggle", headers=self.headers).status_code == 404
        assert client.delete("/api/admin/keys/missing", headers=self.headers).status_code == 404
