"""
Polling scheduler: one asyncio task per (project, kind).

Kinds:
- "scenes": repeated StatusPoller sweeps until every scene is completed or
  the project stalls on exhausted retries
- "merge": repeated MergeStatusPoller checks until the render is done or
  failed

Loops are restartable: `resume_in_flight()` recreates them from the
database after a restart, so nothing depends on in-memory state.
"""

import asyncio
from typing import Dict, List, Optional, Tuple

import structlog
from sqlalchemy import select

from config import settings
from models import Project, ProjectStatus
from pipeline.error_handler import ProjectNotFound
from pipeline.orchestrator import PipelineOrchestrator
from services.render_client import RenderState

logger = structlog.get_logger()

SCENES = "scenes"
MERGE = "merge"
KINDS = (SCENES, MERGE)


class PollingScheduler:
    """
    Owns the background polling loops of one process.

    Example:
        >>> scheduler = PollingScheduler(create_pipeline_orchestrator())
        >>> scheduler.start_scene_polling(project_id)
        True
        >>> await scheduler.shutdown()
    """

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        scene_interval: Optional[float] = None,
        merge_interval: Optional[float] = None,
    ):
        self.orchestrator = orchestrator
        self.scene_interval = settings.SCENE_POLL_INTERVAL if scene_interval is None else scene_interval
        self.merge_interval = settings.MERGE_POLL_INTERVAL if merge_interval is None else merge_interval
        self._tasks: Dict[Tuple[str, str], asyncio.Task] = {}

    def is_running(self, project_id: str, kind: str) -> bool:
        task = self._tasks.get((project_id, kind))
        return task is not None and not task.done()

    def running_loops(self) -> List[Tuple[str, str]]:
        return [key for key, task in self._tasks.items() if not task.done()]

    def start_scene_polling(self, project_id: str) -> bool:
        """Start sweeping a project's scenes; no-op if already running."""
        return self._start(project_id, SCENES)

    def start_merge_polling(self, project_id: str) -> bool:
        """Start polling a project's render; no-op if already running."""
        return self._start(project_id, MERGE)

    def _start(self, project_id: str, kind: str) -> bool:
        if self.is_running(project_id, kind):
            logger.debug("polling_already_running", project_id=project_id, kind=kind)
            return False

        loop = self._scene_loop if kind == SCENES else self._merge_loop
        task = asyncio.create_task(loop(project_id), name=f"poll-{kind}-{project_id}")
        self._tasks[(project_id, kind)] = task
        task.add_done_callback(lambda t, key=(project_id, kind): self._forget(key, t))
        logger.info("polling_started", project_id=project_id, kind=kind)
        return True

    def _forget(self, key: Tuple[str, str], task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    async def stop(self, project_id: str, kind: Optional[str] = None) -> List[str]:
        """
        Cancel a project's loops (both kinds unless one is named).

        Returns:
            Kinds that were running and got stopped
        """
        kinds = [kind] if kind else list(KINDS)
        stopped = []
        for k in kinds:
            task = self._tasks.pop((project_id, k), None)
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            stopped.append(k)
            logger.info("polling_stopped", project_id=project_id, kind=k)
        return stopped

    async def shutdown(self) -> None:
        """Cancel every loop and wait for them to unwind."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("polling_scheduler_shutdown", cancelled=len(tasks))

    def resume_in_flight(self) -> int:
        """
        Restart loops for every project left generating or merging.

        Returns:
            Number of loops started
        """
        stmt = select(Project.id, Project.status).where(
            Project.status.in_([ProjectStatus.GENERATING, ProjectStatus.MERGING])
        )
        with self.orchestrator.session_factory() as db:
            rows = db.execute(stmt).all()

        started = 0
        for project_id, status in rows:
            if status == ProjectStatus.GENERATING:
                started += self.start_scene_polling(project_id)
            else:
                started += self.start_merge_polling(project_id)

        logger.info("polling_resumed", projects=len(rows), loops_started=started)
        return started

    async def _scene_loop(self, project_id: str) -> None:
        poller = self.orchestrator.poller
        while True:
            try:
                report = await poller.sweep(project_id)
            except ProjectNotFound:
                logger.warning("polling_project_vanished", project_id=project_id, kind=SCENES)
                return
            except Exception as e:
                logger.error("scene_sweep_failed", project_id=project_id, error=str(e))
            else:
                if report.all_completed:
                    logger.info("all_scenes_completed", project_id=project_id, total=report.total)
                    return
                if report.stalled:
                    logger.warning(
                        "generation_stalled",
                        project_id=project_id,
                        exhausted_scenes=report.exhausted_scene_numbers,
                    )
                    return

            await asyncio.sleep(self.scene_interval)

    async def _merge_loop(self, project_id: str) -> None:
        merge_poller = self.orchestrator.merge_poller
        while True:
            try:
                result = await merge_poller.check(project_id)
            except ProjectNotFound:
                logger.warning("polling_project_vanished", project_id=project_id, kind=MERGE)
                return
            except Exception as e:
                logger.error("merge_status_check_failed", project_id=project_id, error=str(e))
            else:
                if result.status not in (*RenderState.IN_PROGRESS, ProjectStatus.MERGING):
                    logger.info("merge_polling_finished", project_id=project_id, status=result.status)
                    return

            await asyncio.sleep(self.merge_interval)
