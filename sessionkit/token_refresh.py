"""
Token Refresh Coordinator.

Exchanges a refresh token for a new ``TokenPair`` and hands it to the
single active session.  Holds no retry loop: a failed refresh raises
``TokenRefreshError`` and the session owner logs out.

Usage::

    coordinator = TokenRefreshCoordinator(client.refresh_tokens, logger)
    coordinator.set_active_session(session.apply_token_pair)
    pair = await coordinator.refresh(user.refresh_token)
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Optional, Union

from sessionkit.errors import TokenRefreshError
from sessionkit.logger import StructuredLogger
from sessionkit.models.auth_models import TokenPair
from sessionkit.base_service import BaseService

RefreshFunction = Callable[[str], Awaitable[TokenPair]]
TokenUpdateHandler = Callable[[TokenPair], Union[None, Awaitable[None]]]


class TokenRefreshCoordinator(BaseService):
    """Single-slot holder of the session that receives refreshed tokens.

    Parameters
    ----------
    refresh_fn:
        Coroutine function calling the backend refresh endpoint.
    logger:
        Structured logger.

    Notes
    -----
    Concurrent ``refresh`` calls for the same refresh token share one
    backend request, and its pair reaches the handler once.
    ``clear_state`` bumps a generation counter; a request started before
    it cannot deliver tokens afterwards.
    """

    def __init__(
        self,
        refresh_fn: RefreshFunction,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(logger)
        self._refresh_fn: RefreshFunction = refresh_fn
        self._handler: Optional[TokenUpdateHandler] = None
        self._in_flight: dict[str, asyncio.Task[TokenPair]] = {}
        self._generation: int = 0

    # ------------------------------------------------------------------
    # Active session slot
    # ------------------------------------------------------------------

    def set_active_session(self, handler: Optional[TokenUpdateHandler]) -> None:
        """Install *handler* as the receiver of new token pairs.

        Replaces any previous handler.  ``None`` empties the slot.
        """
        if handler is not None and self._handler is not None:
            self._logger.debug("Replacing the active token update handler.")
        self._handler = handler

    def register_update_callback(self, handler: Optional[TokenUpdateHandler]) -> None:
        """Alias of ``set_active_session``."""
        self.set_active_session(handler)

    @property
    def has_active_session(self) -> bool:
        return self._handler is not None

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange *refresh_token* for a new pair and deliver it.

        Returns
        -------
        TokenPair
            The pair delivered to the active handler.

        Raises
        ------
        TokenRefreshError
            If the token is empty, the backend call fails, the handler
            fails, or ``clear_state`` ran while the request was in flight.
        """
        if not refresh_token:
            raise TokenRefreshError("No refresh token available.")

        task = self._in_flight.get(refresh_token)
        if task is None:
            task = asyncio.ensure_future(
                self._exchange(refresh_token, self._generation)
            )
            self._in_flight[refresh_token] = task
            task.add_done_callback(
                lambda done, key=refresh_token: self._forget(key, done)
            )

        return await asyncio.shield(task)

    def clear_state(self) -> None:
        """Forget in-flight refreshes so none can revive a cleared session."""
        self._generation += 1
        self._in_flight.clear()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _exchange(self, refresh_token: str, generation: int) -> TokenPair:
        """Run one backend refresh and deliver its pair exactly once."""
        try:
            pair = await self._refresh_fn(refresh_token)
        except Exception as exc:
            self._logger.warning(
                "Token refresh failed: %s", exc,
                extra={"event": "TOKEN_REFRESH_FAILED"},
            )
            raise TokenRefreshError(f"Token refresh failed: {exc}") from exc

        if generation != self._generation:
            raise TokenRefreshError("Session was cleared during token refresh.")

        handler = self._handler
        if handler is not None:
            try:
                outcome = handler(pair)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:
                raise TokenRefreshError(
                    f"Applying refreshed tokens failed: {exc}"
                ) from exc

        self._audit("TOKEN_REFRESHED", "Access token refreshed.")
        return pair

    def _forget(self, key: str, task: asyncio.Task[TokenPair]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled():
            # Mark the failure as retrieved.
            task.exception()
