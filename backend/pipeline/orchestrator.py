"""
Pipeline Orchestrator

Wires the orchestration components around one key rotator and one
session factory:
1. Script analysis (draft -> scenes_ready)
2. Scene submission, status polling and retries
3. Merge validation, render submission and render polling

The API process and the standalone worker each build one instance.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from pipeline.merge import MergeOrchestrator, MergeStatusPoller
from pipeline.scene_generation import GenerationSubmitter, RetryPolicy, StatusPoller
from pipeline.script_analysis import ScriptAnalyzer
from redis_client import publish_project_event
from services.asset_persistence import AssetPersistenceService
from services.key_rotator import KeyRotator
from services.key_store import KeyStore, SqlKeyStore
from services.render_client import RenderClient
from services.script_analysis_client import ScriptAnalysisClient
from services.video_generation_client import VideoGenerationClient


@dataclass
class PipelineOrchestrator:
    """
    Orchestration components sharing one rotator and session factory.

    Example:
        >>> orchestrator = create_pipeline_orchestrator()
        >>> report = await orchestrator.poller.sweep(project_id)
    """
    session_factory: Callable[[], Session]
    rotator: KeyRotator
    analyzer: ScriptAnalyzer
    submitter: GenerationSubmitter
    retry_policy: RetryPolicy
    poller: StatusPoller
    merger: MergeOrchestrator
    merge_poller: MergeStatusPoller


def create_pipeline_orchestrator(
    session_factory: Optional[Callable[[], Session]] = None,
    key_store: Optional[KeyStore] = None,
    generation_client: Optional[VideoGenerationClient] = None,
    render_client: Optional[RenderClient] = None,
    analysis_client: Optional[ScriptAnalysisClient] = None,
    assets: Optional[AssetPersistenceService] = None,
    publisher: Optional[Callable[..., bool]] = None,
    max_retries: Optional[int] = None,
    clip_duration: Optional[int] = None,
) -> PipelineOrchestrator:
    """
    Factory function to create a PipelineOrchestrator.

    Every collaborator defaults to the production implementation; tests
    pass fakes for the providers and an isolated session factory.
    """
    if session_factory is None:
        from database import SessionLocal
        session_factory = SessionLocal

    publisher = publisher or publish_project_event
    generation_client = generation_client or VideoGenerationClient()
    render_client = render_client or RenderClient()

    rotator = KeyRotator(key_store or SqlKeyStore(session_factory))
    submitter = GenerationSubmitter(session_factory, rotator, generation_client, publisher)
    retry_policy = RetryPolicy(session_factory, submitter, max_retries)
    poller = StatusPoller(
        session_factory,
        rotator,
        submitter,
        retry_policy,
        client=generation_client,
        assets=assets,
        publisher=publisher,
    )

    return PipelineOrchestrator(
        session_factory=session_factory,
        rotator=rotator,
        analyzer=ScriptAnalyzer(session_factory, rotator, analysis_client, publisher),
        submitter=submitter,
        retry_policy=retry_policy,
        poller=poller,
        merger=MergeOrchestrator(session_factory, rotator, render_client, publisher, clip_duration),
        merge_poller=MergeStatusPoller(session_factory, rotator, render_client, publisher),
    )
