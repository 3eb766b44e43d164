"""
Unit tests for KeyRotator and the key-fault classifier.
"""

import pytest
from unittest.mock import AsyncMock, Mock

from sqlalchemy.exc import OperationalError

from pipeline.error_handler import AllKeysExhausted, NoKeysAvailable, ProviderError
from services.key_rotator import FailureKind, KeyRotator, classify_failure
from tests.fakes import FakeKeyStore, make_key


# ============================================================================
# Classifier
# ============================================================================

@pytest.mark.parametrize("message", [
    "401 Unauthorized",
    "Invalid API key",
    "Quota exceeded for this month",
    "Rate limit reached, slow down",
    "Insufficient credits",
    "Token expired",
    "Authentication failed",
    "403 Forbidden",
    "RATE LIMIT",
])
def test_classify_key_faults(message):
    assert classify_failure(Exception(message)) is FailureKind.KEY_FAULT


@pytest.mark.parametrize("message", [
    "prompt is required",
    "Internal server error",
    "Connection reset by peer",
])
def test_classify_non_key_faults(message):
    assert classify_failure(Exception(message)) is FailureKind.NON_KEY_FAULT


def test_classify_extra_patterns():
    error = Exception("account suspended")
    assert classify_failure(error) is FailureKind.NON_KEY_FAULT
    assert classify_failure(error, ["Suspended"]) is FailureKind.KEY_FAULT


def test_classify_provider_error_uses_provider_text():
    error = ProviderError("Sora2API", "Your credits are insufficient", 402)
    assert classify_failure(error) is FailureKind.KEY_FAULT


# ============================================================================
# Rotation
# ============================================================================

class TestWithRotation:
    """Test key failover behavior"""

    @pytest.mark.asyncio
    async def test_first_key_succeeds(self):
        store = FakeKeyStore([make_key("a"), make_key("b")])
        rotator = KeyRotator(store)
        operation = AsyncMock(return_value="task-1")

        result = await rotator.with_rotation("video-generation", operation)

        assert result == "task-1"
        operation.assert_awaited_once_with("secret-a")
        assert store.successes == ["a"]
        assert store.errors == []

    @pytest.mark.asyncio
    async def test_key_fault_moves_to_next_key(self):
        store = FakeKeyStore([make_key("a"), make_key("b"), make_key("c")])
        rotator = KeyRotator(store)
        operation = AsyncMock(side_effect=[ProviderError("Sora2API", "Quota exceeded"), "task-2"])

        result = await rotator.with_rotation("video-generation", operation)

        assert result == "task-2"
        assert [call.args[0] for call in operation.await_args_list] == ["secret-a", "secret-b"]
        assert store.errors == ["a"]
        assert store.successes == ["b"]

    @pytest.mark.asyncio
    async def test_non_key_fault_stops_and_propagates_original(self):
        store = FakeKeyStore([make_key("a"), make_key("b")])
        rotator = KeyRotator(store)
        original = ValueError("prompt is required")
        operation = AsyncMock(side_effect=original)

        with pytest.raises(ValueError) as exc_info:
            await rotator.with_rotation("video-generation", operation)

        assert exc_info.value is original
        operation.assert_awaited_once_with("secret-a")
        assert store.errors == ["a"]
        assert store.successes == []

    @pytest.mark.asyncio
    async def test_all_keys_exhausted_lists_every_attempt(self):
        store = FakeKeyStore([make_key("a"), make_key("b")])
        rotator = KeyRotator(store)
        operation = AsyncMock(side_effect=[Exception("Invalid key"), Exception("rate limit hit")])

        with pytest.raises(AllKeysExhausted) as exc_info:
            await rotator.with_rotation("video-generation", operation)

        error = exc_info.value
        assert error.attempts == [("#1", "Invalid key"), ("#2", "rate limit hit")]
        assert "All 2 key(s) failed for video-generation" in error.message
        assert store.errors == ["a", "b"]
        assert error.http_status == 500

    @pytest.mark.asyncio
    async def test_no_keys_and_no_env_raises(self, monkeypatch):
        monkeypatch.delenv("VIDEO_RENDER_API_KEY", raising=False)
        rotator = KeyRotator(FakeKeyStore([make_key("a", "video-generation")]))
        operation = AsyncMock()

        with pytest.raises(NoKeysAvailable):
            await rotator.with_rotation("video-render", operation)

        operation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_only_keys_of_requested_service_are_used(self):
        store = FakeKeyStore([make_key("gen", "video-generation"), make_key("render", "video-render")])
        rotator = KeyRotator(store)
        operation = AsyncMock(return_value="ok")

        await rotator.with_rotation("video-render", operation)

        operation.assert_awaited_once_with("secret-render")


class TestEnvironmentFallback:
    """Test fallback to <SERVICE>_API_KEY"""

    @pytest.mark.asyncio
    async def test_empty_store_uses_env_key(self, monkeypatch):
        monkeypatch.setenv("VIDEO_GENERATION_API_KEY", "env-secret")
        store = FakeKeyStore([])
        rotator = KeyRotator(store)
        operation = AsyncMock(return_value="task-env")

        result = await rotator.with_rotation("video-generation", operation)

        assert result == "task-env"
        operation.assert_awaited_once_with("env-secret")
        # The environment key is never counted
        assert store.successes == []

    @pytest.mark.asyncio
    async def test_unreachable_store_uses_env_key(self, monkeypatch):
        monkeypatch.setenv("SCRIPT_ANALYSIS_API_KEY", "env-secret")
        rotator = KeyRotator(FakeKeyStore(unavailable=True))
        operation = AsyncMock(return_value="done")

        assert await rotator.with_rotation("script-analysis", operation) == "done"
        operation.assert_awaited_once_with("env-secret")

    @pytest.mark.asyncio
    async def test_env_key_failure_is_labelled_env(self, monkeypatch):
        monkeypatch.setenv("VIDEO_GENERATION_API_KEY", "env-secret")
        store = FakeKeyStore([])
        rotator = KeyRotator(store)

        with pytest.raises(AllKeysExhausted) as exc_info:
            await rotator.with_rotation("video-generation", AsyncMock(side_effect=Exception("Unauthorized")))

        assert exc_info.value.attempts == [("ENV", "Unauthorized")]
        assert store.errors == []

    @pytest.mark.asyncio
    async def test_stored_keys_take_precedence_over_env(self, monkeypatch):
        monkeypatch.setenv("VIDEO_GENERATION_API_KEY", "env-secret")
        rotator = KeyRotator(FakeKeyStore([make_key("a")]))
        operation = AsyncMock(return_value="ok")

        await rotator.with_rotation("video-generation", operation)

        operation.assert_awaited_once_with("secret-a")


@pytest.mark.asyncio
async def test_counter_failure_does_not_change_outcome():
    store = FakeKeyStore([make_key("a")])
    store.record_success = Mock(
        side_effect=OperationalError("UPDATE api_keys", {}, Exception("database is locked"))
    )
    rotator = KeyRotator(store)

    assert await rotator.with_rotation("video-generation", AsyncMock(return_value="ok")) == "ok"
