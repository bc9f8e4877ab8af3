"""
Durable Key/Value Storage.

SQLite-backed ``KeyValueStorage`` for the persisted session record.
Values are optionally encrypted with ``SessionCipher`` (AES-256-GCM);
the nonce and tag are stored beside the ciphertext.

Blocking SQLite calls run on a worker thread via ``asyncio.to_thread``.
All statements are serialised by a re-entrant lock so one connection
can be shared across threads.

Usage::

    storage = SQLiteStorage(
        path=Path("sessionkit.db"),
        logger=StructuredLogger(name="storage"),
        cipher=SessionCipher(salt_path, logger),
    )
    await storage.set_item("user", record)
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sessionkit.logger import StructuredLogger
from sessionkit.storage.base import ObservableStorage
from sessionkit.storage.encryption import (
    DecryptionError,
    EncryptedValue,
    SessionCipher,
)

_SCHEMA: str = """
CREATE TABLE IF NOT EXISTS kv_store (
    key         TEXT PRIMARY KEY,
    value       BLOB NOT NULL,
    nonce       BLOB,
    tag         BLOB,
    updated_at  TEXT NOT NULL
)
"""


class SQLiteStorage(ObservableStorage):
    """Key/value storage in a local SQLite file.

    Parameters
    ----------
    path:
        Filesystem path for the database file.  Use ``":memory:"`` for a
        throwaway database.
    logger:
        Structured logger.
    cipher:
        When given, values are encrypted at rest.  A row that fails
        decryption reads as ``None`` and is logged.

    Raises
    ------
    PermissionError
        If the OS denies access to the database file or its directory.
    """

    def __init__(
        self,
        path: Path | str,
        logger: StructuredLogger,
        cipher: Optional[SessionCipher] = None,
    ) -> None:
        super().__init__(logger)
        self._logger: StructuredLogger = logger
        self._cipher: Optional[SessionCipher] = cipher
        self._lock: threading.RLock = threading.RLock()
        self._closed: bool = False
        self._conn: sqlite3.Connection = self._connect_sqlite(path)
        with self._lock:
            self._conn.execute(_SCHEMA)
            self._conn.commit()

    # ------------------------------------------------------------------
    # KeyValueStorage
    # ------------------------------------------------------------------

    async def get_item(self, key: str) -> Optional[str]:
        return await asyncio.to_thread(self._get_sync, key)

    async def set_item(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._set_sync, key, value)
        self._emit(key, value)

    async def remove_item(self, key: str) -> None:
        removed = await asyncio.to_thread(self._remove_sync, [key])
        for removed_key in removed:
            self._emit(removed_key, None)

    async def multi_remove(self, keys: Iterable[str]) -> None:
        """Remove every key in *keys* in a single transaction."""
        removed = await asyncio.to_thread(self._remove_sync, list(keys))
        for removed_key in removed:
            self._emit(removed_key, None)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the connection.  Subsequent calls are no-ops."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                self._conn.close()
                self._logger.info("Session storage closed.")
            except sqlite3.ProgrammingError:
                pass

    # ------------------------------------------------------------------
    # Synchronous workers
    # ------------------------------------------------------------------

    def _get_sync(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute(
                "SELECT value, nonce, tag FROM kv_store WHERE key = ?", (key,),
            ).fetchone()
        if row is None:
            return None

        if row["nonce"] is None or row["tag"] is None:
            if self._cipher is not None:
                self._logger.warning(
                    "Unencrypted value found for key %s with encryption enabled.",
                    key,
                )
            return bytes(row["value"]).decode("utf-8")

        if self._cipher is None:
            self._logger.warning(
                "Encrypted value for key %s cannot be read without a cipher.", key,
            )
            return None

        try:
            return self._cipher.decrypt(EncryptedValue(
                ciphertext=bytes(row["value"]),
                nonce=bytes(row["nonce"]),
                tag=bytes(row["tag"]),
            ))
        except DecryptionError:
            self._logger.warning(
                "Stored value for key %s could not be decrypted; treating as absent.",
                key,
                extra={"event": "storage_decrypt_failed"},
            )
            return None

    def _set_sync(self, key: str, value: str) -> None:
        nonce: Optional[bytes] = None
        tag: Optional[bytes] = None
        payload: bytes
        if self._cipher is not None:
            encrypted = self._cipher.encrypt(value)
            payload, nonce, tag = encrypted.ciphertext, encrypted.nonce, encrypted.tag
        else:
            payload = value.encode("utf-8")

        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT OR REPLACE INTO kv_store (key, value, nonce, tag, updated_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (key, payload, nonce, tag, now),
                )
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise

    def _remove_sync(self, keys: list[str]) -> list[str]:
        removed: list[str] = []
        with self._lock:
            try:
                for key in keys:
                    cursor = self._conn.execute(
                        "DELETE FROM kv_store WHERE key = ?", (key,),
                    )
                    if cursor.rowcount:
                        removed.append(key)
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
        return removed

    def _connect_sqlite(self, path: Path | str) -> sqlite3.Connection:
        """Open (or create) the database file in WAL mode.

        Raises
        ------
        PermissionError
            With a readable message when the file or directory is locked
            or read-only.
        """
        try:
            conn = sqlite3.connect(str(path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            self._logger.info("Session storage opened at %s", path)
            return conn
        except PermissionError as exc:
            msg = (
                f"Cannot open the session storage at '{path}'. "
                "The file or its directory may be read-only or locked by "
                "another process."
            )
            self._logger.error(msg)
            raise PermissionError(msg) from exc
