"""
Persistence Provider Contract.

Every component that persists state talks to a ``KeyValueStorage``:
string keys, string values, asynchronous access.  Providers that can
report writes (so another context can react to them) derive from
``ObservableStorage``.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from typing import Optional, Protocol, runtime_checkable

from sessionkit.logger import StructuredLogger

StorageListener = Callable[[str, Optional[str]], None]
"""Called with ``(key, new_value)``; ``new_value`` is ``None`` on removal."""


@runtime_checkable
class KeyValueStorage(Protocol):
    """Contract a persistence provider must satisfy.

    Reads of a missing key return ``None``.  Any failure raises; callers
    decide whether a failure is fatal.
    """

    async def get_item(self, key: str) -> Optional[str]: ...  # noqa: E704

    async def set_item(self, key: str, value: str) -> None: ...  # noqa: E704

    async def remove_item(self, key: str) -> None: ...  # noqa: E704

    async def multi_remove(self, keys: Iterable[str]) -> None: ...  # noqa: E704


class ObservableStorage:
    """Mixin delivering change notifications to subscribers.

    Listeners run synchronously on the thread that performed the write.
    With a logger, a failing listener is logged and delivery continues;
    without one the listener error propagates to the writer.
    """

    def __init__(self, logger: Optional[StructuredLogger] = None) -> None:
        self._listeners: list[StorageListener] = []
        self._listeners_lock: threading.Lock = threading.Lock()
        self._listener_logger: Optional[StructuredLogger] = logger

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        """Register *listener* and return a function that removes it."""
        with self._listeners_lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, key: str, value: Optional[str]) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(key, value)
            except Exception:
                if self._listener_logger is None:
                    raise
                self._listener_logger.error(
                    "Storage listener failed for key %s.", key, exc_info=True,
                )
