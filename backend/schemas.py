"""
Pydantic schemas for request/response validation

Request fields the routers must report as 400 (rather than FastAPI's 422)
are declared Optional and checked explicitly.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any

ASPECT_RATIOS = ("16:9", "9:16")


# ===== Scenes =====

class SceneGenerateRequest(BaseModel):
    """Request model for submitting one scene to the video generation provider"""
    sceneId: Optional[str] = Field(None, description="Scene to generate (must be pending)")
    prompt: Optional[str] = Field(None, description="Generation prompt")
    referenceImage: Optional[str] = Field(None, description="Character reference image URL")
    aspectRatio: Optional[str] = Field(None, description="16:9 or 9:16; defaults to the project's")

    class Config:
        json_schema_extra = {
            "example": {
                "sceneId": "2c1f1f4e-8a53-4b7e-9d7c-3f4d2b6a9e10",
                "prompt": "A young man in a blue jacket. He opens the shop at dawn.",
                "referenceImage": "https://cdn.example.com/character.png",
                "aspectRatio": "16:9"
            }
        }


class SceneGenerateResponse(BaseModel):
    success: bool = True
    sceneId: str
    jobHandle: str = Field(..., description="Provider task id")
    status: str


class SceneStatusRequest(BaseModel):
    sceneId: Optional[str] = None


class SceneStatusResponse(BaseModel):
    sceneId: str
    status: str
    assetUrl: Optional[str] = None
    error: Optional[str] = None


class SceneResponse(BaseModel):
    id: str
    project_id: str
    scene_number: int
    text_content: str
    word_count: Optional[int] = None
    estimated_duration: Optional[float] = None
    character_prompt: Optional[str] = None
    status: str
    job_handle: Optional[str] = None
    retry_count: int = 0
    asset_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# ===== Projects =====

class ProjectCreateRequest(BaseModel):
    """Request model for creating a project from a script"""
    title: Optional[str] = Field(None, max_length=200)
    script: Optional[str] = None
    aspectRatio: str = Field(default="16:9", description="16:9 or 9:16")
    characterImageUrl: Optional[str] = Field(None, description="Character reference image URL")

    class Config:
        json_schema_extra = {
            "example": {
                "title": "Coffee shop ad",
                "script": "Every morning, Sam opens the shop before sunrise...",
                "aspectRatio": "9:16",
                "characterImageUrl": "https://cdn.example.com/sam.png"
            }
        }


class ProjectResponse(BaseModel):
    id: str
    title: str
    script: str
    language: Optional[str] = None
    dialect: Optional[str] = None
    content_type: Optional[str] = None
    aspect_ratio: str
    status: str
    scene_count: int
    render_job_id: Optional[str] = None
    final_video_url: Optional[str] = None
    error_message: Optional[str] = None
    character_image_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    scenes: Optional[List[SceneResponse]] = None


class GenerationStartResponse(BaseModel):
    projectId: str
    status: str
    pendingScenes: int
    polling: bool = Field(..., description="Whether this process started a polling loop")


class PollingStopResponse(BaseModel):
    projectId: str
    stopped: List[str]


# ===== Merge =====

class MergeRequest(BaseModel):
    """Optional explicit merge order"""
    sceneIds: Optional[List[str]] = Field(None, description="Scene ids in timeline order")


class MergeResponse(BaseModel):
    success: bool
    renderId: str
    status: str
    totalScenes: int
    scenesMerged: int
    customOrder: bool
    totalDuration: int

    class Config:
        json_schema_extra = {
            "example": {
                "success": True,
                "renderId": "d2b46ed6-998a-4d6b-9d91-b8cf0193a655",
                "status": "merging",
                "totalScenes": 5,
                "scenesMerged": 5,
                "customOrder": False,
                "totalDuration": 50
            }
        }


class MergeStatusResponse(BaseModel):
    status: str
    progress: Optional[int] = Field(None, ge=0, le=100)
    videoUrl: Optional[str] = None
    error: Optional[str] = None


# ===== API keys =====

class ApiKeyCreateRequest(BaseModel):
    service: Optional[str] = Field(None, description="External service name, e.g. video-generation")
    apiKey: Optional[str] = None


class ApiKeyResponse(BaseModel):
    id: str
    service_name: str
    api_key: str = Field(..., description="Masked secret")
    is_active: bool
    usage_count: int
    error_count: int
    last_used_at: Optional[str] = None
    created_at: Optional[str] = None


class ApiKeyListResponse(BaseModel):
    keys: List[ApiKeyResponse]


# ===== Errors =====

class ErrorResponse(BaseModel):
    """Error response model"""
    error: str = Field(..., description="Error code")
    message: str = Field(..., description="Error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Structured error details")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "INCOMPLETE_PROJECT",
                "message": "Cannot merge: 3/5 scenes completed",
                "details": {
                    "completedCount": 3,
                    "totalScenes": 5,
                    "missingScenes": ["Scene 2 (failed)", "Scene 5 (generating)"],
                    "missingSceneNumbers": [2, 5]
                }
            }
        }
