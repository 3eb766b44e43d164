"""
Configuration management for the orchestration backend
"""

import os
from typing import List, Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Settings:
    """Application settings"""

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./script_to_video.db")

    # Redis (progress events)
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    REDIS_MAX_CONNECTIONS: int = int(os.getenv("REDIS_MAX_CONNECTIONS", "50"))
    REDIS_SOCKET_TIMEOUT: int = int(os.getenv("REDIS_SOCKET_TIMEOUT", "5"))
    REDIS_SOCKET_CONNECT_TIMEOUT: int = int(os.getenv("REDIS_SOCKET_CONNECT_TIMEOUT", "5"))
    REDIS_HEALTH_CHECK_INTERVAL: int = int(os.getenv("REDIS_HEALTH_CHECK_INTERVAL", "30"))
    PROJECT_EVENTS_CHANNEL: str = os.getenv("PROJECT_EVENTS_CHANNEL", "project_events")

    # CORS
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "http://localhost:3000")

    # Application
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))

    # Inbound authentication (comma-separated lists)
    API_KEY: str = os.getenv("API_KEY", "")
    ADMIN_API_KEYS: str = os.getenv("ADMIN_API_KEYS", "")

    # External providers
    VIDEO_GENERATION_BASE_URL: str = os.getenv(
        "VIDEO_GENERATION_BASE_URL", "https://api.sora2api.ai/api/v1/sora2api"
    )
    VIDEO_RENDER_BASE_URL: str = os.getenv("VIDEO_RENDER_BASE_URL", "https://api.shotstack.io/v1")
    SCRIPT_ANALYSIS_BASE_URL: str = os.getenv("SCRIPT_ANALYSIS_BASE_URL", "https://api.atlascloud.ai/v1")
    SCRIPT_ANALYSIS_MODEL: str = os.getenv("SCRIPT_ANALYSIS_MODEL", "openai/gpt-5.2")
    PROVIDER_TIMEOUT: float = float(os.getenv("PROVIDER_TIMEOUT", "60"))
    ASSET_DOWNLOAD_TIMEOUT: float = float(os.getenv("ASSET_DOWNLOAD_TIMEOUT", "300"))

    # Orchestration
    SCENE_POLL_INTERVAL: float = float(os.getenv("SCENE_POLL_INTERVAL", "5"))
    MERGE_POLL_INTERVAL: float = float(os.getenv("MERGE_POLL_INTERVAL", "5"))
    MAX_SCENE_RETRIES: int = int(os.getenv("MAX_SCENE_RETRIES", "3"))
    FIXED_CLIP_DURATION: int = int(os.getenv("FIXED_CLIP_DURATION", "10"))
    ENABLE_POLLING_SCHEDULER: bool = os.getenv("ENABLE_POLLING_SCHEDULER", "true").lower() == "true"

    # Asset storage
    STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "local")  # Options: "local" or "s3"
    LOCAL_STORAGE_PATH: str = os.getenv("LOCAL_STORAGE_PATH", "./storage")
    PUBLIC_ASSET_BASE_URL: str = os.getenv("PUBLIC_ASSET_BASE_URL", "http://localhost:8000/assets")
    STORAGE_BUCKET: str = os.getenv("STORAGE_BUCKET", "")
    AWS_ACCESS_KEY_ID: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    AWS_SECRET_ACCESS_KEY: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    AWS_REGION: str = os.getenv("AWS_REGION", "us-east-1")

    @staticmethod
    def fallback_env_name(service: str) -> str:
        """Environment variable holding the fallback secret for a service"""
        return f"{service.upper().replace('-', '_')}_API_KEY"

    def fallback_api_key(self, service: str) -> Optional[str]:
        """
        Resolve the environment fallback secret for an external service.

        Read at call time so keys rotated in the environment are picked up
        without a restart.
        """
        value = os.getenv(self.fallback_env_name(service), "").strip()
        return value or None

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins into a list"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def admin_api_keys_list(self) -> List[str]:
        """Parse admin API keys into a list"""
        return [key.strip() for key in self.ADMIN_API_KEYS.split(",") if key.strip()]


# Global settings instance
settings = Settings()
