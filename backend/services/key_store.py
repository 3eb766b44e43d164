"""
Key Store: persistent credentials for external services.

The rotator only depends on the `KeyStore` interface:
    list_active(service)  -> keys in preference order
    record_success(key_id)
    record_error(key_id)

Administrative operations (list/add/toggle/delete) live on the SQL
implementation and back the manage-keys API.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models import ApiKey

logger = structlog.get_logger()


@dataclass(frozen=True)
class ApiKeyRecord:
    """Snapshot of a candidate key handed to the rotator"""

    id: str
    service_name: str
    secret: str
    usage_count: int = 0
    error_count: int = 0
    persistent: bool = True


class KeyStore(ABC):
    """Abstract interface over the credential store."""

    @abstractmethod
    def list_active(self, service: str) -> List[ApiKeyRecord]:
        """
        Active keys for a service, healthiest and least used first.

        Raises whatever the backing store raises when it is unreachable.
        """

    @abstractmethod
    def record_success(self, key_id: str) -> None:
        """Increment usage_count and stamp last_used_at."""

    @abstractmethod
    def record_error(self, key_id: str) -> None:
        """Increment error_count."""


class SqlKeyStore(KeyStore):
    """
    SQLAlchemy-backed key store.

    Each call opens its own short session so counter updates commit
    independently of whatever the caller is doing.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def list_active(self, service: str) -> List[ApiKeyRecord]:
        stmt = (
            select(ApiKey)
            .where(ApiKey.service_name == service.lower(), ApiKey.is_active.is_(True))
            .order_by(ApiKey.error_count.asc(), ApiKey.usage_count.asc(), ApiKey.id.asc())
        )
        with self.session_factory() as db:
            rows = db.execute(stmt).scalars().all()
            return [
                ApiKeyRecord(
                    id=row.id,
                    service_name=row.service_name,
                    secret=row.api_key,
                    usage_count=row.usage_count,
                    error_count=row.error_count,
                )
                for row in rows
            ]

    def record_success(self, key_id: str) -> None:
        # Atomic increment; concurrent pollers must not undercount
        stmt = (
            update(ApiKey)
            .where(ApiKey.id == key_id)
            .values(usage_count=ApiKey.usage_count + 1, last_used_at=datetime.now(timezone.utc))
        )
        self._execute(stmt)

    def record_error(self, key_id: str) -> None:
        stmt = update(ApiKey).where(ApiKey.id == key_id).values(error_count=ApiKey.error_count + 1)
        self._execute(stmt)

    def _execute(self, stmt) -> None:
        with self.session_factory() as db:
            db.execute(stmt)
            db.commit()

    # ===== Administrative operations =====

    def list_all(self) -> List[ApiKey]:
        with self.session_factory() as db:
            return list(db.execute(select(ApiKey).order_by(ApiKey.created_at.desc())).scalars().all())

    def get(self, key_id: str) -> Optional[ApiKey]:
        with self.session_factory() as db:
            return db.get(ApiKey, key_id)

    def add(self, service: str, secret: str) -> ApiKey:
        key = ApiKey(service_name=service.strip().lower(), api_key=secret.strip(), is_active=True)
        with self.session_factory() as db:
            db.add(key)
            db.commit()
            db.refresh(key)
        logger.info("api_key_added", key_id=key.id, service=key.service_name)
        return key

    def toggle(self, key_id: str) -> Optional[ApiKey]:
        with self.session_factory() as db:
            key = db.get(ApiKey, key_id)
            if key is None:
                return None
            key.is_active = not key.is_active
            db.commit()
            db.refresh(key)
        logger.info("api_key_toggled", key_id=key_id, is_active=key.is_active)
        return key

    def delete(self, key_id: str) -> bool:
        with self.session_factory() as db:
            key = db.get(ApiKey, key_id)
            if key is None:
                return False
            db.delete(key)
            db.commit()
        logger.info("api_key_deleted", key_id=key_id)
        return True
