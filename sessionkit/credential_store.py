"""
Credential Store.

Durable, best-effort persistence of the serialised ``User`` record.
The store is a leaf component: it knows the storage keys and the record
format, nothing about login flows.

Usage::

    store = CredentialStore(storage=SQLiteStorage(...), logger=logger)
    await store.persist(user)
    restored = await store.load()   # None when absent, invalid or slow
    await store.clear()
"""

from __future__ import annotations

import asyncio
from typing import Optional

from pydantic import ValidationError

from sessionkit.errors import StorageError
from sessionkit.logger import StructuredLogger
from sessionkit.models.user import User
from sessionkit.storage.base import KeyValueStorage

SESSION_KEY: str = "user"

# Token keys written by older clients that stored tokens outside the
# user record.  Cleared on logout so they cannot resurrect a session.
LEGACY_TOKEN_KEYS: tuple[str, ...] = ("authToken", "refreshToken")


class CredentialStore:
    """Persists the current ``User`` under a single well-known key.

    Parameters
    ----------
    storage:
        Any ``KeyValueStorage`` provider.
    logger:
        Structured logger.
    load_timeout_s:
        Upper bound for ``load``.  A slower read behaves as an empty
        store so session restoration never blocks startup.
    session_key:
        Storage key of the serialised record.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        logger: StructuredLogger,
        load_timeout_s: float = 2.0,
        session_key: str = SESSION_KEY,
    ) -> None:
        self._storage: KeyValueStorage = storage
        self._logger: StructuredLogger = logger
        self._load_timeout_s: float = load_timeout_s
        self._session_key: str = session_key
        self._last_load_timed_out: bool = False

    @property
    def last_load_timed_out(self) -> bool:
        """``True`` when the most recent ``load`` gave up on a slow read."""
        return self._last_load_timed_out

    @property
    def keys(self) -> tuple[str, ...]:
        """Every key ``clear`` removes."""
        return (self._session_key, *LEGACY_TOKEN_KEYS)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def persist(self, user: User) -> None:
        """Serialise *user* and write it under the session key.

        Raises
        ------
        StorageError
            If the provider fails.  Callers that rely on the write having
            happened must not swallow it.
        """
        try:
            await self._storage.set_item(self._session_key, user.to_record())
        except Exception as exc:
            self._logger.error(
                "Failed to persist session for user %s: %s", user.id, exc,
                extra={"event": "SESSION_PERSIST_FAILED"},
            )
            raise StorageError(f"Could not persist session: {exc}") from exc

    async def load(self) -> Optional[User]:
        """Return the stored ``User``, or ``None``.

        ``None`` covers an absent key, an unparsable record, a failing
        provider and a read slower than ``load_timeout_s``.
        """
        self._last_load_timed_out = False
        try:
            raw = await asyncio.wait_for(
                self._storage.get_item(self._session_key),
                timeout=self._load_timeout_s,
            )
        except asyncio.TimeoutError:
            self._last_load_timed_out = True
            self._logger.warning(
                "Session load exceeded %.1fs; continuing without a stored session.",
                self._load_timeout_s,
                extra={"event": "SESSION_LOAD_TIMEOUT"},
            )
            return None
        except Exception as exc:
            self._logger.warning(
                "Session storage unreadable (%s); continuing without a stored session.",
                exc,
            )
            return None

        if raw is None:
            return None

        try:
            return User.from_record(raw)
        except ValidationError:
            self._logger.warning(
                "Stored session record is invalid; treating as no session.",
                extra={"event": "SESSION_RECORD_INVALID"},
            )
            return None

    async def clear(self) -> None:
        """Remove the session record and legacy token keys.

        Tries the provider's bulk remove first and falls back to removing
        each key on its own, so a failing bulk call does not leave stale
        credentials behind.

        Raises
        ------
        StorageError
            If at least one key could not be removed individually.
        """
        keys = list(self.keys)
        try:
            await self._storage.multi_remove(keys)
            return
        except Exception as exc:
            self._logger.warning(
                "Bulk session clear failed (%s); removing keys individually.", exc,
            )

        failed: list[str] = []
        for key in keys:
            try:
                await self._storage.remove_item(key)
            except Exception as exc:
                failed.append(key)
                self._logger.error("Failed to remove key %s: %s", key, exc)

        if failed:
            raise StorageError(
                f"Could not remove session keys: {', '.join(failed)}"
            )
