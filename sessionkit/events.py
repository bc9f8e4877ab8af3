"""
Session Event Bus.

Process-wide publish/subscribe channel for the single
``SessionEvent.SESSION_EXPIRED`` event.  Code that detects an invalid
session (typically an HTTP client receiving a 401) publishes without a
reference to the session owner; the ``SessionManager`` subscribes and
logs out.

Usage::

    bus = SessionEventBus(logger)
    unsubscribe = bus.subscribe(session.logout)
    bus.publish()
    await bus.join()
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from collections.abc import Awaitable, Callable
from typing import Optional, Union

from sessionkit.logger import StructuredLogger, get_logger
from sessionkit.models.enums import SessionEvent

SessionExpiredHandler = Callable[[], Union[None, Awaitable[None]]]


class SessionEventBus:
    """Typed channel for session-expired notifications.

    ``publish`` calls every subscriber synchronously in registration
    order.  A handler that returns an awaitable has it scheduled on the
    running loop; ``join`` waits for those tasks.  A failing handler is
    logged and does not stop delivery to the rest.
    """

    event: SessionEvent = SessionEvent.SESSION_EXPIRED

    def __init__(self, logger: StructuredLogger) -> None:
        self._logger: StructuredLogger = logger
        self._handlers: list[SessionExpiredHandler] = []
        self._pending: set[asyncio.Future[None]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def subscribe(self, handler: SessionExpiredHandler) -> Callable[[], None]:
        """Register *handler*; return a function that removes it."""
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    def publish(self) -> None:
        """Deliver ``SESSION_EXPIRED`` to every current subscriber.

        With no subscribers this is a no-op.
        """
        self._logger.info(
            "Session expired event published to %d subscriber(s).",
            len(self._handlers),
            extra={"event": "SESSION_EXPIRED"},
        )
        for handler in list(self._handlers):
            try:
                outcome = handler()
            except Exception:
                self._logger.error("Session-expired handler failed.", exc_info=True)
                continue
            if inspect.isawaitable(outcome):
                self._schedule(outcome)

    def handle_unauthorized(self) -> None:
        """Entry point for HTTP clients that received a 401."""
        self.publish()

    async def join(self) -> None:
        """Wait for asynchronous handlers started by ``publish``."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _schedule(self, outcome: Awaitable[None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop: the coroutine can never run.
            if inspect.iscoroutine(outcome):
                outcome.close()
            self._logger.error(
                "Async session-expired handler dropped: no running event loop.",
            )
            return
        task = asyncio.ensure_future(outcome, loop=loop)
        self._pending.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Future[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error(
                "Session-expired handler failed: %s", exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )


# ---------------------------------------------------------------------------
# Module-level singleton factory
# ---------------------------------------------------------------------------

_bus_instance: Optional[SessionEventBus] = None
_bus_lock: threading.Lock = threading.Lock()


def get_session_events() -> SessionEventBus:
    """Return the process-wide ``SessionEventBus``.

    Prefer injecting a bus explicitly; this default exists for code that
    has no access to the composition root.
    """
    global _bus_instance
    if _bus_instance is None:
        with _bus_lock:
            if _bus_instance is None:
                _bus_instance = SessionEventBus(get_logger("sessionkit.events"))
    return _bus_instance
