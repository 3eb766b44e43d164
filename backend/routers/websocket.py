"""
WebSocket endpoint router

Handles WebSocket connections at /ws/projects/{project_id} for real-time
scene and merge progress events.
"""

import json
import asyncio
import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Path
from typing import Dict, Set

from models import Project
from database import get_db_context
from redis_client import redis_client

logger = structlog.get_logger()

router = APIRouter(tags=["WebSocket"])


class ConnectionManager:
    """
    Manages WebSocket connections for real-time project progress updates.

    Maintains a registry of active connections per project and handles
    message broadcasting and cleanup.
    """

    def __init__(self):
        # Dict[project_id, Set[WebSocket]]
        self.active_connections: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, project_id: str):
        """Accept and register a new WebSocket connection."""
        await websocket.accept()

        async with self._lock:
            self.active_connections.setdefault(project_id, set()).add(websocket)

        logger.info(
            "websocket_connected",
            project_id=project_id,
            connection_count=len(self.active_connections[project_id])
        )

    async def disconnect(self, websocket: WebSocket, project_id: str):
        """Remove and cleanup a WebSocket connection."""
        async with self._lock:
            if project_id in self.active_connections:
                self.active_connections[project_id].discard(websocket)

                # Remove project entry if no more connections
                if not self.active_connections[project_id]:
                    del self.active_connections[project_id]

        logger.info(
            "websocket_disconnected",
            project_id=project_id,
            remaining_connections=len(self.active_connections.get(project_id, set()))
        )

    async def send_message(self, project_id: str, message: dict):
        """Send message to all connections watching a project."""
        if project_id not in self.active_connections:
            return

        # Copy to avoid modification during iteration
        async with self._lock:
            connections = list(self.active_connections.get(project_id, set()))

        dead_connections = []
        for connection in connections:
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.warning("websocket_send_failed", project_id=project_id, error=str(e))
                dead_connections.append(connection)

        # Clean up dead connections
        if dead_connections:
            async with self._lock:
                remaining = self.active_connections.get(project_id, set())
                for connection in dead_connections:
                    remaining.discard(connection)
                if not remaining:
                    self.active_connections.pop(project_id, None)

    def get_connection_count(self, project_id: str) -> int:
        return len(self.active_connections.get(project_id, set()))


# Global connection manager instance
manager = ConnectionManager()


async def subscribe_to_redis_updates(project_id: str):
    """
    Relay Redis project events to the project's WebSocket clients.

    Runs until the last connection for the project goes away.
    """
    pubsub = None
    try:
        pubsub = await asyncio.to_thread(redis_client.subscribe_to_project_events)
        logger.info("redis_pubsub_subscribed", project_id=project_id)

        while manager.get_connection_count(project_id) > 0:
            try:
                message = await asyncio.to_thread(pubsub.get_message, timeout=1.0)

                if message and message["type"] == "message":
                    try:
                        data = json.loads(message["data"])

                        # Only broadcast if message is for this project
                        if data.get("project_id") == project_id:
                            await manager.send_message(project_id, data)

                    except json.JSONDecodeError as e:
                        logger.warning("invalid_redis_message", error=str(e))

                # Small sleep to prevent tight loop
                await asyncio.sleep(0.1)

            except Exception as e:
                logger.error("redis_message_error", project_id=project_id, error=str(e))
                await asyncio.sleep(1)  # Back off on errors

    except Exception as e:
        logger.error("redis_subscription_error", project_id=project_id, error=str(e))
    finally:
        if pubsub is not None:
            try:
                pubsub.unsubscribe()
                pubsub.close()
                logger.info("redis_pubsub_unsubscribed", project_id=project_id)
            except Exception as e:
                logger.warning("redis_pubsub_cleanup_error", error=str(e))


@router.websocket("/ws/projects/{project_id}")
async def websocket_endpoint(
    websocket: WebSocket,
    project_id: str = Path(..., description="Project identifier")
):
    """
    WebSocket endpoint for real-time project progress.

    **Message Format:**
    ```json
    {
      "project_id": "550e8400-e29b-41d4-a716-446655440000",
      "event": "scene_completed",
      "scene_number": 3,
      "asset_url": "https://.../projects/.../scenes/....mp4",
      "timestamp": "2025-01-14T10:05:00+00:00"
    }
    ```
    """
    logger.info("websocket_connection_attempt", project_id=project_id)

    with get_db_context() as db:
        project = db.get(Project, project_id)
        status = project.status if project else None

    if status is None:
        logger.warning("websocket_project_not_found", project_id=project_id)
        await websocket.close(code=1008, reason=f"Project '{project_id}' not found")
        return

    await manager.connect(websocket, project_id)
    subscription_task = None

    try:
        await websocket.send_json({
            "type": "connected",
            "project_id": project_id,
            "status": status,
        })

        # Only the first connection for a project starts the relay
        if manager.get_connection_count(project_id) == 1:
            subscription_task = asyncio.create_task(subscribe_to_redis_updates(project_id))

        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=30.0)
                try:
                    client_msg = json.loads(data)
                    if client_msg.get("type") == "ping":
                        await websocket.send_json({"type": "pong"})
                except json.JSONDecodeError:
                    pass

            except asyncio.TimeoutError:
                # Keepalive
                try:
                    await websocket.send_json({"type": "ping"})
                except Exception:
                    break  # Connection dead

    except WebSocketDisconnect:
        logger.info("websocket_client_disconnected", project_id=project_id)

    finally:
        await manager.disconnect(websocket, project_id)

        if manager.get_connection_count(project_id) == 0 and subscription_task:
            subscription_task.cancel()
            try:
                await subscription_task
            except asyncio.CancelledError:
                pass
            logger.info("redis_subscription_cancelled", project_id=project_id)
