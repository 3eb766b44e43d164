"""
FastAPI dependencies for the orchestration objects built at startup
"""

from typing import Optional

from fastapi import Request

from pipeline.orchestrator import PipelineOrchestrator
from services.key_store import SqlKeyStore
from workers.scheduler import PollingScheduler


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    return request.app.state.orchestrator


def get_scheduler(request: Request) -> Optional[PollingScheduler]:
    """Polling scheduler, or None when loops run in the standalone worker"""
    return getattr(request.app.state, "scheduler", None)


def get_key_store(request: Request) -> SqlKeyStore:
    return request.app.state.key_store
