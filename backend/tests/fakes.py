"""
In-memory test doubles shared by the test modules.
"""

from typing import List, Optional, Sequence

from sqlalchemy.exc import OperationalError

from services.key_store import ApiKeyRecord, KeyStore


class FakeKeyStore(KeyStore):
    """In-memory key store recording counter updates"""

    def __init__(self, keys: Optional[Sequence[ApiKeyRecord]] = None, unavailable: bool = False):
        self.keys = list(keys or [])
        self.unavailable = unavailable
        self.successes: List[str] = []
        self.errors: List[str] = []

    def list_active(self, service: str) -> List[ApiKeyRecord]:
        if self.unavailable:
            raise OperationalError("SELECT api_keys", {}, Exception("unable to open database file"))
        return [key for key in self.keys if key.service_name == service]

    def record_success(self, key_id: str) -> None:
        self.successes.append(key_id)

    def record_error(self, key_id: str) -> None:
        self.errors.append(key_id)


def make_key(key_id: str, service: str = "video-generation", secret: Optional[str] = None) -> ApiKeyRecord:
    return ApiKeyRecord(id=key_id, service_name=service, secret=secret or f"secret-{key_id}")
