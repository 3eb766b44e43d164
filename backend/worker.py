"""
Polling Worker for scene generation and merge tracking

This worker:
- Runs the per-project polling loops outside the API process
  (set ENABLE_POLLING_SCHEDULER=false on the API when using it)
- Periodically picks up every project that is generating or merging,
  so projects started through the API are adopted on the next scan
- Supports graceful shutdown (SIGTERM, SIGINT)
"""

import asyncio
import logging
import signal
import sys
import structlog
from typing import Optional

from config import settings
from database import SessionLocal, init_db
from pipeline.orchestrator import create_pipeline_orchestrator
from workers.scheduler import PollingScheduler

logger = structlog.get_logger()


class WorkerState:
    """Worker state management for graceful shutdown"""

    def __init__(self):
        self.running = True
        self.shutdown_requested = False

    def request_shutdown(self):
        """Request graceful shutdown"""
        self.shutdown_requested = True
        logger.info("shutdown_requested")

    def is_running(self) -> bool:
        """Check if worker should continue running"""
        return self.running and not self.shutdown_requested

    def stop(self):
        """Stop the worker"""
        self.running = False
        logger.info("worker_stopped")


class PollingWorker:
    """
    Hosts a PollingScheduler in its own process.

    Scans for in-flight projects every `scan_interval` seconds; starting a
    loop that already runs is a no-op, so rescans are cheap.
    """

    def __init__(self, worker_id: Optional[str] = None, scan_interval: Optional[float] = None):
        self.worker_id = worker_id or f"worker-{id(self)}"
        self.state = WorkerState()
        self.scan_interval = scan_interval or settings.SCENE_POLL_INTERVAL
        self.scheduler: Optional[PollingScheduler] = None

        logger.info("worker_initialized", worker_id=self.worker_id, scan_interval=self.scan_interval)

    def _handle_shutdown_signal(self, signum, frame=None):
        """Handle shutdown signals (SIGTERM, SIGINT)"""
        signal_name = "SIGTERM" if signum == signal.SIGTERM else "SIGINT"
        logger.info("shutdown_signal_received", signal=signal_name)
        self.state.request_shutdown()

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(signum, self._handle_shutdown_signal, signum)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                signal.signal(signum, self._handle_shutdown_signal)

    async def run(self):
        """
        Main worker loop

        Adopts in-flight projects until a shutdown signal arrives, then
        cancels every polling loop.
        """
        logger.info("worker_started", worker_id=self.worker_id)

        try:
            init_db()
        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            return

        self._install_signal_handlers()
        self.scheduler = PollingScheduler(create_pipeline_orchestrator(SessionLocal))

        while self.state.is_running():
            try:
                self.scheduler.resume_in_flight()
            except Exception as e:
                logger.error("worker_scan_error", error=str(e))

            # Sleep in short steps so shutdown is prompt
            waited = 0.0
            while waited < self.scan_interval and self.state.is_running():
                await asyncio.sleep(0.5)
                waited += 0.5

        await self.scheduler.shutdown()
        self.state.stop()
        logger.info("worker_shutdown_complete", worker_id=self.worker_id)


def configure_logging():
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if settings.DEBUG else logging.INFO
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def main():
    """Worker entry point"""
    configure_logging()
    worker_id = sys.argv[1] if len(sys.argv) > 1 else None
    asyncio.run(PollingWorker(worker_id=worker_id).run())


if __name__ == "__main__":
    main()
