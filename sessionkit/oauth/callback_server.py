"""
Local OAuth Callback Server.

On desktop the redirect URI points at this server.  Google puts the
tokens in the URL fragment, which never reaches a server, so the
callback page posts ``location.hash`` back to ``<path>/fragment``.  The
handler completes the handshake in a ``CallbackWindow`` named like the
popup, so the result goes to the mailbox and the initiating process
drains it.

The server runs uvicorn on a daemon thread and is started only for the
duration of a sign-in.
"""

from __future__ import annotations

import asyncio
import socket
import threading
import time
from collections.abc import Callable
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel

from sessionkit.config import AppConfig
from sessionkit.errors import OAuthCancelledError, OAuthError
from sessionkit.logger import StructuredLogger
from sessionkit.oauth.browser import CallbackWindow
from sessionkit.oauth.web_relay import POPUP_WINDOW_NAME, GoogleWebRelay

RelayFactory = Callable[[CallbackWindow], GoogleWebRelay]

_CALLBACK_PAGE: str = """<!DOCTYPE html>
<html>
<head>
    <title>Signing in</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            display: flex;
            justify-content: center;
            align-items: center;
            min-height: 100vh;
            margin: 0;
            background: #f4f5f7;
        }}
        .container {{
            background: white;
            padding: 40px;
            border-radius: 12px;
            box-shadow: 0 10px 40px rgba(0,0,0,0.1);
            text-align: center;
            max-width: 400px;
        }}
    </style>
</head>
<body>
    <div class="container">
        <h1 id="title">Completing sign-in...</h1>
        <p id="detail"></p>
    </div>
    <script>
        const title = document.getElementById("title");
        const detail = document.getElementById("detail");
        const fragment = window.location.hash;
        history.replaceState(null, document.title, window.location.pathname);
        fetch("{fragment_path}", {{
            method: "POST",
            headers: {{"Content-Type": "application/json"}},
            body: JSON.stringify({{fragment: fragment}})
        }})
            .then((response) => response.json())
            .then((body) => {{
                title.textContent = body.title;
                detail.textContent = body.message || "";
                if (body.closed) {{
                    window.close();
                }}
            }})
            .catch(() => {{
                title.textContent = "Sign-in failed";
                detail.textContent = "The application could not be reached.";
            }});
    </script>
</body>
</html>
"""


class FragmentPayload(BaseModel):
    """Body posted by the callback page."""

    fragment: str = ""


class OAuthCallbackServer:
    """FastAPI app receiving the Google redirect on the loopback interface.

    Parameters
    ----------
    config:
        Supplies host, port and redirect path.
    relay_factory:
        Builds a relay bound to the given completing window.  The relay
        must share the initiator's nonce storage and mailbox.
    logger:
        Structured logger.
    """

    def __init__(
        self,
        config: AppConfig,
        relay_factory: RelayFactory,
        logger: StructuredLogger,
    ) -> None:
        self._config: AppConfig = config
        self._relay_factory: RelayFactory = relay_factory
        self._logger: StructuredLogger = logger
        self._host: str = config.CALLBACK_HOST
        self._port: int = config.CALLBACK_PORT

        path = config.GOOGLE_WEB_REDIRECT_PATH.strip() or "/"
        self._callback_path: str = path if path.startswith("/") else f"/{path}"
        self._fragment_path: str = f"{self._callback_path.rstrip('/')}/fragment"

        self.app: FastAPI = FastAPI()
        self._server: Optional[uvicorn.Server] = None
        self._server_thread: Optional[threading.Thread] = None
        self.is_running: bool = False

        self._setup_routes()

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    def _setup_routes(self) -> None:
        page = _CALLBACK_PAGE.format(fragment_path=self._fragment_path)

        @self.app.get(self._callback_path)
        async def oauth_callback() -> HTMLResponse:
            return HTMLResponse(content=page)

        @self.app.post(self._fragment_path)
        async def oauth_fragment(payload: FragmentPayload) -> JSONResponse:
            return await self._complete(payload.fragment)

    async def _complete(self, fragment: str) -> JSONResponse:
        window = CallbackWindow(
            fragment=fragment,
            origin=self._config.callback_origin,
            name=POPUP_WINDOW_NAME,
        )
        relay = self._relay_factory(window)
        try:
            await relay.consume_pending()
        except OAuthCancelledError:
            return JSONResponse({
                "status": "cancelled",
                "title": "Sign-in cancelled",
                "message": "You can close this window.",
                "closed": True,
            })
        except OAuthError as exc:
            self._logger.warning("OAuth callback rejected: %s", exc)
            return JSONResponse(
                {
                    "status": "error",
                    "code": exc.code.value,
                    "title": "Sign-in failed",
                    "message": str(exc),
                    "closed": False,
                },
                status_code=400,
            )

        return JSONResponse({
            "status": "complete",
            "title": "Signed in",
            "message": "You can close this window and return to the application.",
            "closed": window.closed,
        })

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def redirect_uri(self) -> str:
        return f"{self._config.callback_origin}{self._callback_path}"

    def start(self) -> tuple[bool, str]:
        """Start uvicorn on a daemon thread.

        Returns
        -------
        tuple[bool, str]
            ``(True, "")`` once the port accepts connections, otherwise
            ``(False, reason)``.
        """
        if self.is_running:
            return True, ""

        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                sock.bind((self._host, self._port))
        except OSError:
            error_msg = f"Port {self._port} is already in use"
            self._logger.error(error_msg)
            return False, error_msg

        server = uvicorn.Server(uvicorn.Config(
            self.app,
            host=self._host,
            port=self._port,
            log_level="warning",
            access_log=False,
        ))
        self._server = server

        def run_server() -> None:
            try:
                asyncio.run(server.serve())
            except Exception:
                self._logger.error("OAuth callback server crashed.", exc_info=True)
                self.is_running = False

        self._server_thread = threading.Thread(target=run_server, daemon=True)
        self._server_thread.start()

        deadline = time.monotonic() + 3.0
        while time.monotonic() < deadline:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                if sock.connect_ex((self._host, self._port)) == 0:
                    self.is_running = True
                    self._logger.info(
                        "OAuth callback server listening on %s:%d",
                        self._host, self._port,
                    )
                    return True, ""
            time.sleep(0.1)

        error_msg = f"Failed to start OAuth callback server on {self._host}:{self._port}"
        self._logger.error(error_msg)
        return False, error_msg

    def stop(self) -> None:
        """Ask uvicorn to exit and wait for its thread."""
        if self._server is not None:
            self._server.should_exit = True
        if self._server_thread is not None and self._server_thread.is_alive():
            self._server_thread.join(timeout=3.0)
        self._server = None
        self._server_thread = None
        if self.is_running:
            self.is_running = False
            self._logger.info("OAuth callback server stopped.")
