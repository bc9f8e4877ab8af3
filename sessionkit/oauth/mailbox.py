"""
Cross-Context Mailbox.

The completing context of an OAuth handshake (the popup) hands its
result to the initiating context through a mailbox: a single slot that
one side writes and the other reads exactly once.

- ``StorageMailbox`` keeps the slot under one key of an observable
  key/value storage (both contexts share the storage object).
- ``FileMailbox`` keeps it in a JSON file in a shared directory and
  reports writes with ``watchdog``, so separate processes can relay.

Change handlers may run on a foreign thread (the watchdog observer);
consumers marshal to their own loop.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
import threading
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from sessionkit.logger import StructuredLogger
from sessionkit.storage.base import ObservableStorage
from sessionkit.storage.memory import MemoryStorage

ChangeHandler = Callable[[], None]


@runtime_checkable
class Mailbox(Protocol):
    """Single-slot, single-consumer channel between two contexts."""

    async def write(self, payload: str) -> None:
        """Store *payload*, replacing any unread one."""
        ...

    async def read_and_clear(self) -> Optional[str]:
        """Return the unread payload and empty the slot; ``None`` if empty."""
        ...

    def on_change(self, handler: ChangeHandler) -> Callable[[], None]:
        """Call *handler* after each write; return an unsubscribe function."""
        ...


class _ObservableKeyValueStorage(Protocol):
    async def get_item(self, key: str) -> Optional[str]: ...  # noqa: E704

    async def set_item(self, key: str, value: str) -> None: ...  # noqa: E704

    async def remove_item(self, key: str) -> None: ...  # noqa: E704

    def subscribe(
        self, listener: Callable[[str, Optional[str]], None],
    ) -> Callable[[], None]: ...  # noqa: E704


# ---------------------------------------------------------------------------
# Storage-backed mailbox
# ---------------------------------------------------------------------------

class StorageMailbox:
    """Mailbox stored under *key* of an observable storage.

    Parameters
    ----------
    storage:
        Storage shared by both contexts.  Defaults to a fresh
        ``MemoryStorage`` (single-process relay).
    key:
        Storage key of the slot.
    """

    def __init__(
        self,
        key: str,
        storage: Optional[_ObservableKeyValueStorage] = None,
    ) -> None:
        self._key: str = key
        self._storage: _ObservableKeyValueStorage = storage or MemoryStorage()
        self._read_lock: asyncio.Lock = asyncio.Lock()

    async def write(self, payload: str) -> None:
        await self._storage.set_item(self._key, payload)

    async def read_and_clear(self) -> Optional[str]:
        async with self._read_lock:
            raw = await self._storage.get_item(self._key)
            if raw is None:
                return None
            await self._storage.remove_item(self._key)
            return raw

    def on_change(self, handler: ChangeHandler) -> Callable[[], None]:
        def _listener(key: str, value: Optional[str]) -> None:
            if key == self._key and value is not None:
                handler()

        return self._storage.subscribe(_listener)


# ---------------------------------------------------------------------------
# File-backed mailbox
# ---------------------------------------------------------------------------

class _MailboxEventHandler(FileSystemEventHandler):
    """Watchdog handler that reacts to the mailbox file appearing."""

    def __init__(self, filename: str, on_write: Callable[[], None]) -> None:
        super().__init__()
        self._filename = filename
        self._on_write = on_write

    def on_created(self, event: FileSystemEvent) -> None:
        self._handle(str(event.src_path), event.is_directory)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._handle(str(event.src_path), event.is_directory)

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic writes land through a rename onto the mailbox file.
        self._handle(str(event.dest_path), event.is_directory)

    def _handle(self, path: str, is_directory: bool) -> None:
        if is_directory or Path(path).name != self._filename:
            return
        self._on_write()


class FileMailbox(ObservableStorage):
    """Mailbox kept as one JSON file in *directory*.

    Writes are atomic (temporary file + ``os.replace``).  A read claims
    the file by renaming it first, so two readers racing for the same
    payload cannot both receive it.

    Parameters
    ----------
    directory:
        Directory shared by the contexts.  Created when missing.
    logger:
        Structured logger.
    filename:
        Name of the mailbox file.
    """

    def __init__(
        self,
        directory: Path,
        logger: StructuredLogger,
        filename: str = "google-web-oauth-result.json",
    ) -> None:
        super().__init__(logger)
        self._directory: Path = directory
        self._logger: StructuredLogger = logger
        self._filename: str = filename
        self._observer: Optional[Observer] = None
        self._observer_lock: threading.Lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._directory / self._filename

    @property
    def is_watching(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    # ------------------------------------------------------------------
    # Mailbox
    # ------------------------------------------------------------------

    async def write(self, payload: str) -> None:
        await asyncio.to_thread(self._write_sync, payload)

    async def read_and_clear(self) -> Optional[str]:
        return await asyncio.to_thread(self._claim_sync)

    def on_change(self, handler: ChangeHandler) -> Callable[[], None]:
        """Subscribe *handler*; starts the watchdog observer on first use.

        *handler* runs on the observer thread.
        """
        unsubscribe = self.subscribe(lambda _key, _value: handler())
        self._start_observer()
        return unsubscribe

    def stop(self) -> None:
        """Stop the observer thread.  Safe when it is not running."""
        with self._observer_lock:
            observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=5.0)
        self._logger.info("Mailbox watcher stopped.")

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _start_observer(self) -> None:
        with self._observer_lock:
            if self._observer is not None and self._observer.is_alive():
                return
            self._directory.mkdir(parents=True, exist_ok=True)
            handler = _MailboxEventHandler(
                filename=self._filename,
                on_write=lambda: self._emit(self._filename, ""),
            )
            observer = Observer()
            observer.daemon = True
            observer.schedule(handler, str(self._directory), recursive=False)
            observer.start()
            self._observer = observer
        self._logger.info("Mailbox watcher started on: %s", self._directory)

    def _write_sync(self, payload: str) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=".mailbox-", suffix=".tmp", dir=str(self._directory),
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, self.path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _claim_sync(self) -> Optional[str]:
        claimed = self._directory / f".claimed-{uuid.uuid4().hex}"
        try:
            os.replace(self.path, claimed)
        except FileNotFoundError:
            return None
        try:
            return claimed.read_text(encoding="utf-8")
        finally:
            claimed.unlink(missing_ok=True)
