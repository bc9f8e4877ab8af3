"""
Browser Window Abstraction.

The OAuth relay never touches a concrete browser.  It sees a
``BrowserWindow``: a name (the popup is recognised by it), an origin,
the current URL fragment, and the few navigation primitives the flow
needs.

- ``SystemBrowserWindow`` is the initiating context on a desktop: it
  opens the authorization URL in the user's default browser.
- ``CallbackWindow`` is a completing context: it carries the fragment
  the browser posted back to the local callback server.
"""

from __future__ import annotations

import webbrowser
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from sessionkit.logger import StructuredLogger


@runtime_checkable
class BrowserWindow(Protocol):
    """Execution context taking part in the OAuth handshake."""

    @property
    def name(self) -> str: ...  # noqa: E704

    @property
    def origin(self) -> str: ...  # noqa: E704

    @property
    def location_hash(self) -> str: ...  # noqa: E704

    def open_popup(self, url: str, name: str, features: str) -> bool:
        """Open *url* in a new named window; ``False`` when blocked."""
        ...

    def navigate(self, url: str) -> None: ...  # noqa: E704

    def clear_hash(self) -> None: ...  # noqa: E704

    def close(self) -> None: ...  # noqa: E704


class SystemBrowserWindow:
    """Initiating context backed by the platform's default browser.

    Parameters
    ----------
    origin:
        Origin the redirect URI is built from (the local callback server).
    logger:
        Structured logger.
    """

    def __init__(self, origin: str, logger: StructuredLogger) -> None:
        self._origin: str = origin.rstrip("/")
        self._logger: StructuredLogger = logger

    @property
    def name(self) -> str:
        return "main"

    @property
    def origin(self) -> str:
        return self._origin

    @property
    def location_hash(self) -> str:
        # The desktop process has no URL of its own.
        return ""

    def open_popup(self, url: str, name: str, features: str) -> bool:
        opened = webbrowser.open(url, new=1)
        if not opened:
            self._logger.warning("Default browser refused to open the sign-in window.")
        return opened

    def navigate(self, url: str) -> None:
        if not webbrowser.open(url, new=0):
            self._logger.error("Could not open %s in the default browser.", url)

    def clear_hash(self) -> None:
        pass

    def close(self) -> None:
        pass


@dataclass
class CallbackWindow:
    """Completing context built from a fragment the browser posted back.

    ``closed`` flips when the relay asks the window to close, which the
    callback server reports to the page.
    """

    fragment: str
    origin: str
    name: str = "google-oauth"
    closed: bool = False
    opened: list[str] = field(default_factory=list)

    @property
    def location_hash(self) -> str:
        return self.fragment

    def open_popup(self, url: str, name: str, features: str) -> bool:
        self.opened.append(url)
        return False

    def navigate(self, url: str) -> None:
        self.opened.append(url)

    def clear_hash(self) -> None:
        self.fragment = ""

    def close(self) -> None:
        self.closed = True
