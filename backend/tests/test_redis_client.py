"""
Tests for best-effort project event publishing.
"""

import asyncio
import json
import threading
import time
from unittest.mock import Mock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from config import settings
from redis_client import RedisClient, emit_project_event


def test_publish_project_event_message_shape():
    client = RedisClient("redis://localhost:6379/15")
    client._client = Mock()

    assert client.publish_project_event("p-1", "scene_completed", scene_number=2) is True

    channel, raw = client._client.publish.call_args.args
    assert channel == settings.PROJECT_EVENTS_CHANNEL
    message = json.loads(raw)
    assert message["project_id"] == "p-1"
    assert message["event"] == "scene_completed"
    assert message["scene_number"] == 2
    assert "timestamp" in message


def test_publish_failure_returns_false():
    client = RedisClient("redis://localhost:6379/15")
    client._client = Mock()
    client._client.publish.side_effect = RedisConnectionError("Connection refused")

    assert client.publish_project_event("p-1", "merge_started") is False


@pytest.mark.asyncio
async def test_emit_runs_publisher_off_the_event_loop_thread():
    threads = []

    def publisher(project_id, event, **kwargs):
        threads.append(threading.current_thread())
        return True

    assert await emit_project_event(publisher, "p-1", "merge_started", render_job_id="r-1") is True

    assert len(threads) == 1
    assert threads[0] is not threading.main_thread()


@pytest.mark.asyncio
async def test_slow_publisher_does_not_block_other_tasks():
    ticks = []

    def slow_publisher(project_id, event, **kwargs):
        time.sleep(0.3)
        return True

    async def ticker():
        for _ in range(5):
            ticks.append(time.monotonic())
            await asyncio.sleep(0.01)

    started = time.monotonic()
    await asyncio.gather(emit_project_event(slow_publisher, "p-1", "scene_completed"), ticker())

    assert len(ticks) == 5
    assert ticks[-1] - started < 0.25
