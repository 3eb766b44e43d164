"""
Scene generation and merge orchestration package.

This package contains the core orchestration components:
- Error taxonomy shared by every layer
- Scene and project state machines
- Scene submission, status polling and retries
- Merge validation, timeline building and render polling
- Script analysis into scenes
"""

__version__ = "0.1.0"

from .error_handler import PipelineError, ErrorCode

__all__ = [
    "PipelineError",
    "ErrorCode",
]
