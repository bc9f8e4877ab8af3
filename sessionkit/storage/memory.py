"""In-process key/value storage.

Backs session-scoped state (the OAuth CSRF nonce) and serves as the
storage double in tests.  Contents vanish with the process.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Optional

from sessionkit.logger import StructuredLogger
from sessionkit.storage.base import ObservableStorage


class MemoryStorage(ObservableStorage):
    """Dictionary-backed ``KeyValueStorage``."""

    def __init__(
        self,
        initial: Optional[dict[str, str]] = None,
        logger: Optional[StructuredLogger] = None,
    ) -> None:
        super().__init__(logger)
        self._items: dict[str, str] = dict(initial or {})

    async def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self._items[key] = value
        self._emit(key, value)

    async def remove_item(self, key: str) -> None:
        if self._items.pop(key, None) is not None:
            self._emit(key, None)

    async def multi_remove(self, keys: Iterable[str]) -> None:
        for key in list(keys):
            await self.remove_item(key)

    def keys(self) -> list[str]:
        return list(self._items)
