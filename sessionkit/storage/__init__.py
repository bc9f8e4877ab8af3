"""
Persistence providers.

    from sessionkit.storage import MemoryStorage, SQLiteStorage
"""

from __future__ import annotations

from sessionkit.storage.base import KeyValueStorage, ObservableStorage, StorageListener
from sessionkit.storage.encryption import DecryptionError, EncryptedValue, SessionCipher
from sessionkit.storage.memory import MemoryStorage
from sessionkit.storage.sqlite_storage import SQLiteStorage

__all__ = [
    "DecryptionError",
    "EncryptedValue",
    "KeyValueStorage",
    "MemoryStorage",
    "ObservableStorage",
    "SQLiteStorage",
    "SessionCipher",
    "StorageListener",
]
