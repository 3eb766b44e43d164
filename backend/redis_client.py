"""
Redis client for project progress events (pub/sub)
"""

import asyncio
import json
import structlog
from datetime import datetime, timezone
from typing import Callable, Optional
from redis import Redis, ConnectionPool
from redis.exceptions import RedisError
from config import settings

logger = structlog.get_logger()


class RedisClient:
    """
    Redis client with connection pooling and helper methods.

    The connection is opened on first use so that the API and the worker
    start even when Redis is down; events are best effort.
    """

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.REDIS_URL
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None

    def _connect(self):
        """Establish Redis connection with connection pool"""
        self._pool = ConnectionPool.from_url(
            self.url,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
            socket_connect_timeout=settings.REDIS_SOCKET_CONNECT_TIMEOUT,
            health_check_interval=settings.REDIS_HEALTH_CHECK_INTERVAL,
            decode_responses=True
        )
        self._client = Redis(connection_pool=self._pool)
        logger.info("redis_pool_created", url=self.url)

    def get_client(self) -> Redis:
        """Get Redis client instance"""
        if self._client is None:
            self._connect()
        return self._client

    def close(self):
        """Close Redis connection"""
        if self._client:
            self._client.close()
            self._client = None
            logger.info("redis_connection_closed")

    # ===== Pub/Sub Operations =====

    def publish_project_event(self, project_id: str, event: str, **kwargs) -> bool:
        """
        Publish a project progress event to subscribers

        Args:
            project_id: Project identifier
            event: Event name (e.g. "scene_completed", "merge_progress")
            **kwargs: Additional metadata

        Returns:
            bool: Success status
        """
        try:
            message = json.dumps({
                "project_id": project_id,
                "event": event,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                **kwargs
            }, default=str)

            self.get_client().publish(settings.PROJECT_EVENTS_CHANNEL, message)
            logger.debug("project_event_published", project_id=project_id, project_event=event)
            return True

        except RedisError as e:
            logger.warning("publish_project_event_failed", project_id=project_id,
                           project_event=event, error=str(e))
            return False

    def subscribe_to_project_events(self):
        """
        Subscribe to project progress events

        Returns:
            PubSub: Redis PubSub instance
        """
        pubsub = self.get_client().pubsub()
        pubsub.subscribe(settings.PROJECT_EVENTS_CHANNEL)
        return pubsub


# Global Redis client instance
redis_client = RedisClient()


def publish_project_event(project_id: str, event: str, **kwargs) -> bool:
    """Module-level shortcut used as the default event publisher."""
    return redis_client.publish_project_event(project_id, event, **kwargs)


async def emit_project_event(
    publisher: Callable[..., bool],
    project_id: str,
    event: str,
    **kwargs,
) -> bool:
    """
    Run a publisher from async code.

    Redis calls block for up to REDIS_SOCKET_TIMEOUT, so they run in a
    worker thread instead of on the event loop.
    """
    return await asyncio.to_thread(publisher, project_id, event, **kwargs)
