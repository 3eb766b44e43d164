"""
Services module: key management, provider clients and asset storage
"""

from .key_rotator import KeyRotator, classify_failure
from .key_store import KeyStore, SqlKeyStore

__all__ = ["KeyRotator", "classify_failure", "KeyStore", "SqlKeyStore"]
