"""
Base Service Class.

Gives every session-layer service an injected logger and a single way
to emit audit events (``LOGIN``, ``LOGOUT``, ``TOKEN_REFRESHED`` ...).
"""

from __future__ import annotations

from sessionkit.logger import StructuredLogger


class BaseService:
    """Base class for the session-layer services."""

    def __init__(self, logger: StructuredLogger) -> None:
        self._logger: StructuredLogger = logger

    def _audit(self, event: str, message: str, *args: object, **fields: object) -> None:
        """Log *message* at INFO with ``event`` and *fields* as structured extras.

        Credential-named fields are masked by the formatter.
        """
        self._logger.info(message, *args, extra={"event": event, **fields})
