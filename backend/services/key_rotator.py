"""
Multi-key rotation for outbound calls to paid external APIs.

Every provider call goes through `KeyRotator.with_rotation`:
- candidate keys come from the key store, healthiest first
- a key-fault (quota, auth, rate limit...) moves on to the next key
- any other failure stops rotation and propagates unchanged
- when the store is unreachable or empty, a single environment key is used

Usage:
    rotator = KeyRotator(SqlKeyStore(SessionLocal))
    task_id = await rotator.with_rotation(
        "video-generation",
        lambda secret: client.submit(secret, payload),
    )
"""

from enum import Enum
from typing import Awaitable, Callable, Iterable, List, Tuple, TypeVar

import structlog
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from pipeline.error_handler import AllKeysExhausted, NoKeysAvailable
from services.key_store import ApiKeyRecord, KeyStore

logger = structlog.get_logger()

T = TypeVar("T")

ENV_KEY_ID = "env"

KEY_FAULT_PATTERNS = (
    "unauthorized",
    "invalid",
    "quota",
    "rate limit",
    "insufficient",
    "expired",
    "authentication",
    "forbidden",
)


class FailureKind(Enum):
    """Classification of a failed provider call"""
    KEY_FAULT = "key_fault"
    NON_KEY_FAULT = "non_key_fault"


def classify_failure(error: BaseException, extra_patterns: Iterable[str] = ()) -> FailureKind:
    """
    Decide whether a failure is attributable to the credential itself.

    Case-insensitive substring match over the error text.

    Example:
        >>> classify_failure(Exception("Quota exceeded for this key"))
        <FailureKind.KEY_FAULT: 'key_fault'>
        >>> classify_failure(Exception("prompt is required"))
        <FailureKind.NON_KEY_FAULT: 'non_key_fault'>
    """
    text = (str(error) or type(error).__name__).lower()
    for pattern in (*KEY_FAULT_PATTERNS, *extra_patterns):
        if pattern.lower() in text:
            return FailureKind.KEY_FAULT
    return FailureKind.NON_KEY_FAULT


class KeyRotator:
    """
    Executes an operation against each candidate key in preference order.

    Attempts within one call are strictly sequential; separate calls are
    independent and may run concurrently.
    """

    def __init__(self, key_store: KeyStore, extra_key_fault_patterns: Iterable[str] = ()):
        self.key_store = key_store
        self.extra_key_fault_patterns = tuple(extra_key_fault_patterns)

    def candidate_keys(self, service: str) -> List[ApiKeyRecord]:
        """
        Active keys for a service, or the environment fallback.

        The environment key is only consulted when the store is unreachable
        or holds no active key for the service.
        """
        keys: List[ApiKeyRecord] = []
        try:
            keys = self.key_store.list_active(service)
        except SQLAlchemyError as e:
            logger.error("key_store_unavailable", service=service, error=str(e))

        if keys:
            return keys

        env_secret = settings.fallback_api_key(service)
        if env_secret:
            logger.info("key_rotation_env_fallback", service=service)
            return [ApiKeyRecord(
                id=ENV_KEY_ID,
                service_name=service,
                secret=env_secret,
                persistent=False,
            )]
        return []

    async def with_rotation(self, service: str, operation: Callable[[str], Awaitable[T]]) -> T:
        """
        Run `operation(secret)` with automatic key failover.

        Args:
            service: External service name (e.g. "video-generation")
            operation: Async callable taking the key secret

        Returns:
            Whatever the first successful operation returns

        Raises:
            NoKeysAvailable: No stored key and no environment fallback
            AllKeysExhausted: Every key failed with a key-fault
            Exception: The original error of the first non-key failure
        """
        keys = self.candidate_keys(service)
        if not keys:
            raise NoKeysAvailable(service)

        logger.info("key_rotation_started", service=service, key_count=len(keys))
        attempts: List[Tuple[str, str]] = []

        for index, key in enumerate(keys):
            label = "ENV" if not key.persistent else f"#{index + 1}"
            logger.info(
                "key_rotation_attempt",
                service=service,
                key=label,
                usage_count=key.usage_count,
                error_count=key.error_count,
            )

            try:
                result = await operation(key.secret)
            except Exception as e:
                error_text = str(e) or type(e).__name__
                attempts.append((label, error_text))
                self._record(key, success=False)

                kind = classify_failure(e, self.extra_key_fault_patterns)
                if kind is FailureKind.NON_KEY_FAULT:
                    logger.error("key_rotation_stopped_non_key_failure", service=service,
                                 key=label, error=error_text)
                    raise

                logger.warning("key_rotation_key_fault", service=service, key=label, error=error_text)
                continue

            self._record(key, success=True)
            logger.info("key_rotation_succeeded", service=service, key=label)
            return result

        logger.error("key_rotation_exhausted", service=service, attempts=len(attempts))
        raise AllKeysExhausted(service, attempts)

    def _record(self, key: ApiKeyRecord, success: bool) -> None:
        if not key.persistent:
            return
        try:
            if success:
                self.key_store.record_success(key.id)
            else:
                self.key_store.record_error(key.id)
        except SQLAlchemyError as e:
            # Counters only steer preference order; the call outcome stands
            logger.warning("key_counter_update_failed", key_id=key.id, success=success, error=str(e))
