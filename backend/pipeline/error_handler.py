"""
Error taxonomy for the generation and merge orchestration.

Provides structured error handling with:
- Categorized error codes for every orchestration failure
- HTTP status mapping used by the routers
- Structured details (per-scene problem lists) for API responses
"""

from enum import Enum
from typing import Optional, Dict, Any, List, Tuple
import structlog

logger = structlog.get_logger()


class ErrorCode(Enum):
    """
    Enumeration of all error codes raised by the orchestration layer.

    Organized by category:
    - Key rotation errors
    - External provider errors
    - State machine errors
    - Merge validation errors
    - Lookup errors
    """

    # Key rotation
    NO_KEYS_AVAILABLE = "NO_KEYS_AVAILABLE"
    ALL_KEYS_EXHAUSTED = "ALL_KEYS_EXHAUSTED"

    # External providers
    PROVIDER_ERROR = "PROVIDER_ERROR"
    ASSET_DOWNLOAD_FAILED = "ASSET_DOWNLOAD_FAILED"
    STORAGE_ERROR = "STORAGE_ERROR"

    # State machines
    INVALID_TRANSITION = "INVALID_TRANSITION"

    # Merge validation
    ORDER_SIZE_MISMATCH = "ORDER_SIZE_MISMATCH"
    MERGE_VALIDATION_FAILED = "MERGE_VALIDATION_FAILED"
    INCOMPLETE_PROJECT = "INCOMPLETE_PROJECT"
    NO_SCENES = "NO_SCENES"
    CLIP_COUNT_MISMATCH = "CLIP_COUNT_MISMATCH"

    # Lookups
    PROJECT_NOT_FOUND = "PROJECT_NOT_FOUND"
    SCENE_NOT_FOUND = "SCENE_NOT_FOUND"


HTTP_STATUS_BY_CODE = {
    ErrorCode.NO_KEYS_AVAILABLE: 500,
    ErrorCode.ALL_KEYS_EXHAUSTED: 500,
    ErrorCode.PROVIDER_ERROR: 500,
    ErrorCode.ASSET_DOWNLOAD_FAILED: 500,
    ErrorCode.STORAGE_ERROR: 500,
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.ORDER_SIZE_MISMATCH: 400,
    ErrorCode.MERGE_VALIDATION_FAILED: 400,
    ErrorCode.INCOMPLETE_PROJECT: 400,
    ErrorCode.NO_SCENES: 400,
    ErrorCode.CLIP_COUNT_MISMATCH: 500,
    ErrorCode.PROJECT_NOT_FOUND: 404,
    ErrorCode.SCENE_NOT_FOUND: 404,
}


class PipelineError(Exception):
    """
    Base exception for orchestration errors.

    Carries an error code for categorization, a message for logs and API
    responses, and a details dictionary for structured reporting.

    Example:
        >>> raise PipelineError(
        ...     ErrorCode.SCENE_NOT_FOUND,
        ...     "Scene not found",
        ...     {"scene_id": "abc"}
        ... )
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_CODE.get(self.code, 500)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error to dictionary for API responses.

        Returns:
            Dictionary with error information
        """
        return {
            "error": self.code.value,
            "message": self.message,
            "details": self.details,
        }

    def log_error(self) -> None:
        """
        Log error with appropriate level and context.

        Client-correctable problems (4xx) are warnings, everything else is
        an error.
        """
        if self.http_status < 500:
            logger.warning("pipeline_client_error", error_code=self.code.value,
                           message=self.message, details=self.details)
        else:
            logger.error("pipeline_error", error_code=self.code.value,
                         message=self.message, details=self.details)

    def __str__(self) -> str:
        return self.message


# ===== Key rotation =====

class NoKeysAvailable(PipelineError):
    """No active stored key and no environment fallback for a service."""

    def __init__(self, service: str):
        self.service = service
        super().__init__(
            ErrorCode.NO_KEYS_AVAILABLE,
            f"No API keys available for {service}",
            {"service": service},
        )


class AllKeysExhausted(PipelineError):
    """Every candidate key failed with a key fault."""

    def __init__(self, service: str, attempts: List[Tuple[str, str]]):
        self.service = service
        self.attempts = list(attempts)
        summary = "; ".join(f"{label}: {error}" for label, error in self.attempts)
        super().__init__(
            ErrorCode.ALL_KEYS_EXHAUSTED,
            f"All {len(self.attempts)} key(s) failed for {service}. Errors: {summary}",
            {
                "service": service,
                "attempts": [{"key": label, "error": error} for label, error in self.attempts],
            },
        )


# ===== External providers =====

class ProviderError(PipelineError):
    """
    An external provider rejected a call or returned an unusable response.

    The message keeps the provider's own error text so the key rotator can
    classify it.
    """

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        details = {"provider": provider}
        if status_code:
            details["status_code"] = status_code
        super().__init__(ErrorCode.PROVIDER_ERROR, f"{provider}: {message}", details)


class AssetDownloadError(PipelineError):
    def __init__(self, url: str, reason: str):
        super().__init__(
            ErrorCode.ASSET_DOWNLOAD_FAILED,
            f"Failed to download asset: {reason}",
            {"url": url},
        )


class StorageError(PipelineError):
    def __init__(self, path: str, reason: str):
        super().__init__(ErrorCode.STORAGE_ERROR, f"Failed to store asset: {reason}", {"path": path})


# ===== State machines =====

class InvalidTransition(PipelineError):
    """A status change was requested from a state that does not allow it."""

    def __init__(self, entity: str, entity_id: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(
            ErrorCode.INVALID_TRANSITION,
            f"Cannot move {entity} {entity_id} from '{current}' to '{target}'",
            {"entity": entity, "id": entity_id, "current": current, "target": target},
        )


# ===== Lookups =====

class ProjectNotFound(PipelineError):
    def __init__(self, project_id: str):
        super().__init__(ErrorCode.PROJECT_NOT_FOUND, "Project not found", {"project_id": project_id})


class SceneNotFound(PipelineError):
    def __init__(self, scene_id: str):
        super().__init__(ErrorCode.SCENE_NOT_FOUND, "Scene not found", {"scene_id": scene_id})


# ===== Merge validation =====

class OrderSizeMismatch(PipelineError):
    """Explicit merge order does not name exactly scene_count scenes."""

    def __init__(self, expected: int, received: int):
        self.expected = expected
        self.received = received
        super().__init__(
            ErrorCode.ORDER_SIZE_MISMATCH,
            f"Incorrect number of scenes: received {received}, expected {expected}",
            {"receivedCount": received, "expectedCount": expected},
        )


class UnknownSceneId:
    """Validation item: an ordered id that does not belong to the project."""

    kind = "unknown_scene_id"

    def __init__(self, scene_id: str):
        self.scene_id = scene_id

    def describe(self) -> str:
        return f"Scene id {self.scene_id} not found"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "sceneId": self.scene_id}


class DuplicateSceneId:
    """Validation item: the same scene appears more than once in the order."""

    kind = "duplicate_scene_id"

    def __init__(self, scene_id: str, scene_number: int):
        self.scene_id = scene_id
        self.scene_number = scene_number

    def describe(self) -> str:
        return f"Scene {self.scene_number} listed more than once"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "sceneId": self.scene_id, "sceneNumber": self.scene_number}


class SceneNotReady:
    """Validation item: an ordered scene that is not completed."""

    kind = "scene_not_ready"

    def __init__(self, scene_id: str, scene_number: int, status: str):
        self.scene_id = scene_id
        self.scene_number = scene_number
        self.status = status

    def describe(self) -> str:
        return f"Scene {self.scene_number} ({self.status})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "sceneId": self.scene_id,
            "sceneNumber": self.scene_number,
            "status": self.status,
        }


class MergeValidationError(PipelineError):
    """All problems found while resolving an explicit merge order."""

    def __init__(self, problems: List[Any]):
        self.problems = list(problems)
        super().__init__(
            ErrorCode.MERGE_VALIDATION_FAILED,
            "Cannot merge: " + ", ".join(problem.describe() for problem in self.problems),
            {"problems": [problem.to_dict() for problem in self.problems]},
        )


class NoScenes(PipelineError):
    """The project has no scenes (analysis never produced any)."""

    def __init__(self, project_id: str):
        super().__init__(ErrorCode.NO_SCENES, "No completed scenes found", {"project_id": project_id})


class IncompleteProject(PipelineError):
    """Fewer mergeable scenes than the project's scene_count."""

    def __init__(self, completed_count: int, total_scenes: int, missing: List[Tuple[int, str]]):
        self.completed_count = completed_count
        self.total_scenes = total_scenes
        self.missing = list(missing)
        missing_details = [f"Scene {number} ({status})" for number, status in self.missing]
        super().__init__(
            ErrorCode.INCOMPLETE_PROJECT,
            f"Cannot merge: {completed_count}/{total_scenes} scenes completed",
            {
                "completedCount": completed_count,
                "totalScenes": total_scenes,
                "missingScenes": missing_details,
                "missingSceneNumbers": [number for number, _ in self.missing],
            },
        )


class ClipCountMismatch(PipelineError):
    """Timeline size differs from scene_count; never a client error."""

    def __init__(self, clips: int, expected: int):
        super().__init__(
            ErrorCode.CLIP_COUNT_MISMATCH,
            f"Failed to prepare all clips: {clips}/{expected}",
            {"clipsCreated": clips, "expectedClips": expected},
        )
