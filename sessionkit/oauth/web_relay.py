"""
Google OAuth Web Relay.

Completes a Google OAuth2 implicit-flow handshake
(``response_type=token id_token``) across two execution contexts, with
no backend redirect endpoint and no direct messaging between them:

1. The initiating window calls ``initiate()``.  A CSRF nonce is stored
   in session-scoped storage and the authorization URL opens in a popup
   named ``google-oauth`` (or in the current window when the popup is
   blocked).  ``initiate()`` returns immediately.
2. Whichever window receives the redirect calls ``consume_pending()``.
   The URL fragment is validated against the stored nonce, the profile
   is fetched, and then either
   - the popup writes the result to the mailbox and closes itself, or
   - any other window gets the result back directly.
3. The initiating window calls ``drain()`` (or keeps a ``watch()``
   active) to pick up a result the popup left in the mailbox.

Only one handshake should be in flight; a second ``initiate()``
replaces the stored nonce and the later handshake wins.
"""

from __future__ import annotations

import asyncio
import inspect
import secrets
import time
from collections.abc import Awaitable, Callable
from typing import Optional, Union
from urllib.parse import parse_qsl, urlencode

import httpx
from pydantic import ValidationError

from sessionkit.config import AppConfig
from sessionkit.errors import (
    ConfigurationError,
    OAuthCancelledError,
    OAuthMissingTokenError,
    OAuthProviderError,
    OAuthStateMismatchError,
)
from sessionkit.logger import StructuredLogger
from sessionkit.models.auth_models import (
    GoogleProfile,
    GoogleWebSignInResult,
    OAuthRedirectParams,
    PendingWebResult,
)
from sessionkit.oauth.browser import BrowserWindow
from sessionkit.oauth.jwt import decode_jwt_payload
from sessionkit.oauth.mailbox import Mailbox
from sessionkit.storage.base import KeyValueStorage

POPUP_WINDOW_NAME: str = "google-oauth"
STATE_STORAGE_KEY: str = "google-web-oauth-state"
RESULT_STORAGE_KEY: str = "google-web-oauth-result"
POPUP_FEATURES: str = (
    "width=500,height=700,menubar=no,toolbar=no,status=no,resizable=yes,scrollbars=yes"
)
RESPONSE_TYPE: str = "token id_token"
CANCELLED_ERROR: str = "access_denied"

ResultHandler = Callable[[GoogleWebSignInResult], Union[None, Awaitable[None]]]


def parse_redirect_fragment(fragment: str) -> OAuthRedirectParams:
    """Parse an OAuth redirect fragment (with or without the leading ``#``)."""
    raw = fragment[1:] if fragment.startswith("#") else fragment
    values = dict(parse_qsl(raw, keep_blank_values=True))
    return OAuthRedirectParams(
        id_token=values.get("id_token") or None,
        access_token=values.get("access_token") or None,
        state=values.get("state") or None,
        error=values.get("error") or None,
        error_description=values.get("error_description") or None,
    )


class GoogleWebRelay:
    """Google implicit-flow handshake relayed through a mailbox.

    Parameters
    ----------
    config:
        Supplies the client id, redirect path, endpoints, scopes and the
        maximum age of a pending result.
    window:
        The execution context this relay runs in.
    state_storage:
        Session-scoped storage holding the CSRF nonce.
    mailbox:
        Cross-context slot for the popup's result.
    logger:
        Structured logger.
    http_transport:
        Optional ``httpx`` transport for the userinfo call.
    nonce_factory:
        Produces CSRF nonces; defaults to ``secrets.token_urlsafe``.
    clock:
        Seconds since the epoch; used to timestamp and age pending results.

    Notes
    -----
    The fragment present when the relay is constructed is kept as a
    snapshot.  The first ``consume_pending`` call may use it if the live
    fragment has already been cleared by the host.
    """

    def __init__(
        self,
        config: AppConfig,
        window: BrowserWindow,
        state_storage: KeyValueStorage,
        mailbox: Mailbox,
        logger: StructuredLogger,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        nonce_factory: Optional[Callable[[], str]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config: AppConfig = config
        self._window: BrowserWindow = window
        self._state_storage: KeyValueStorage = state_storage
        self._mailbox: Mailbox = mailbox
        self._logger: StructuredLogger = logger
        self._http_transport: Optional[httpx.AsyncBaseTransport] = http_transport
        self._nonce_factory: Callable[[], str] = (
            nonce_factory or (lambda: secrets.token_urlsafe(24))
        )
        self._clock: Callable[[], float] = clock

        self._initial_hash_snapshot: str = window.location_hash
        self._initial_hash_consumed: bool = False
        self._watch_tasks: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def client_id(self) -> str:
        return self._config.GOOGLE_WEB_CLIENT_ID.strip()

    @property
    def is_available(self) -> bool:
        """``True`` when a web client id is configured."""
        return bool(self.client_id)

    @property
    def is_popup(self) -> bool:
        return self._window.name == POPUP_WINDOW_NAME

    def build_redirect_uri(self) -> str:
        """Origin (configured or the window's) plus the redirect path."""
        origin = (self._config.GOOGLE_WEB_ORIGIN or self._window.origin).rstrip("/")
        path = self._config.GOOGLE_WEB_REDIRECT_PATH.strip()
        if not path:
            return origin
        return f"{origin}{path if path.startswith('/') else '/' + path}"

    def build_authorization_url(self, state: str) -> str:
        """Authorization URL carrying *state* as both ``state`` and ``nonce``."""
        query = urlencode({
            "client_id": self.client_id,
            "redirect_uri": self.build_redirect_uri(),
            "response_type": RESPONSE_TYPE,
            "scope": self._config.GOOGLE_OAUTH_SCOPES,
            "state": state,
            "nonce": state,
        })
        return f"{self._config.GOOGLE_AUTHORIZATION_ENDPOINT}?{query}"

    # ------------------------------------------------------------------
    # Initiating context
    # ------------------------------------------------------------------

    async def initiate(self) -> None:
        """Start a handshake and return without waiting for it.

        Raises
        ------
        ConfigurationError
            If no client id is configured.  Raised before any nonce is
            stored or window opened.
        """
        if not self.is_available:
            raise ConfigurationError(
                "GOOGLE_WEB_CLIENT_ID is not configured; cannot start Google sign-in."
            )

        state = self._nonce_factory()
        await self._store_state(state)
        url = self.build_authorization_url(state)

        if not self._window.open_popup(url, POPUP_WINDOW_NAME, POPUP_FEATURES):
            self._logger.warning(
                "Sign-in popup was blocked; redirecting the current window.",
            )
            self._window.navigate(url)

        self._logger.info(
            "Google web sign-in initiated.",
            extra={"event": "OAUTH_INITIATED", "state": state},
        )

    async def drain(self) -> Optional[GoogleWebSignInResult]:
        """Read and remove a result left in the mailbox.

        Returns ``None`` when the mailbox is empty, unreadable, holds an
        invalid envelope, or holds one older than
        ``PENDING_RESULT_MAX_AGE_S``.  Safe to call repeatedly.
        """
        try:
            raw = await self._mailbox.read_and_clear()
        except Exception as exc:
            self._logger.warning("Could not read the pending sign-in result: %s", exc)
            return None
        if raw is None:
            return None

        try:
            envelope = PendingWebResult.model_validate_json(raw)
        except ValidationError:
            self._logger.warning("Discarding an invalid pending sign-in result.")
            return None

        age_s = self._clock() - envelope.timestamp / 1000
        if age_s > self._config.PENDING_RESULT_MAX_AGE_S:
            self._logger.warning(
                "Discarding a pending sign-in result %.0fs old.", age_s,
                extra={"event": "OAUTH_RESULT_STALE"},
            )
            return None

        self._logger.info(
            "Pending Google sign-in result retrieved.",
            extra={"event": "OAUTH_RESULT_DRAINED"},
        )
        return envelope.result

    def watch(self, handler: ResultHandler) -> Callable[[], None]:
        """Drain whenever the mailbox reports a write.

        Must be called from a running event loop; mailbox notifications
        from other threads are marshalled onto it.  *handler* receives
        each drained result.  Returns a function that stops watching.
        """
        loop = asyncio.get_running_loop()

        def _on_change() -> None:
            loop.call_soon_threadsafe(self._start_watch_drain, handler)

        return self._mailbox.on_change(_on_change)

    # ------------------------------------------------------------------
    # Completing context
    # ------------------------------------------------------------------

    async def consume_pending(self) -> Optional[GoogleWebSignInResult]:
        """Complete a handshake from the current fragment, or drain.

        Returns
        -------
        GoogleWebSignInResult or None
            The result in a non-popup window; ``None`` in the popup (the
            result went to the mailbox) or when nothing is pending.

        Raises
        ------
        OAuthStateMismatchError
            The returned ``state`` differs from the stored nonce.
        OAuthCancelledError
            The user declined consent.
        OAuthProviderError
            Any other provider error.
        OAuthMissingTokenError
            The redirect carried no ``id_token``.
        """
        fragment = self._window.location_hash
        if len(fragment) <= 1:
            snapshot = self._initial_hash_snapshot
            if not self._initial_hash_consumed and len(snapshot) > 1:
                self._logger.debug("Using the fragment captured at startup.")
                fragment = snapshot
                self._initial_hash_consumed = True
            else:
                return await self.drain()
        else:
            self._initial_hash_consumed = True

        params = parse_redirect_fragment(fragment)
        if not params.has_oauth_params:
            return await self.drain()

        stored_state = await self._read_state()
        if stored_state and params.state and params.state != stored_state:
            await self._discard_handshake()
            self._logger.warning(
                "OAuth state mismatch; handshake discarded.",
                extra={"event": "OAUTH_STATE_MISMATCH"},
            )
            raise OAuthStateMismatchError("Returned OAuth state does not match.")

        if params.error:
            await self._discard_handshake()
            if params.error == CANCELLED_ERROR:
                self._logger.info(
                    "Google sign-in cancelled by the user.",
                    extra={"event": "OAUTH_CANCELLED"},
                )
                raise OAuthCancelledError("Google sign-in was cancelled.")
            self._logger.warning("Google returned error %s.", params.error)
            raise OAuthProviderError(params.error, params.error_description)

        if not params.id_token:
            await self._discard_handshake()
            raise OAuthMissingTokenError("Google redirect carried no id_token.")

        await self._discard_handshake()

        claims = await self._fetch_user_info(params.access_token, params.id_token)
        result = GoogleWebSignInResult(
            id_token=params.id_token,
            access_token=params.access_token,
            user=GoogleProfile.from_claims(claims),
        )

        if self.is_popup:
            await self._store_result(result)
            self._window.close()
            return None
        return result

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _store_state(self, state: str) -> None:
        try:
            await self._state_storage.set_item(STATE_STORAGE_KEY, state)
        except Exception as exc:
            self._logger.warning("Could not persist OAuth state: %s", exc)

    async def _read_state(self) -> Optional[str]:
        try:
            return await self._state_storage.get_item(STATE_STORAGE_KEY)
        except Exception as exc:
            self._logger.warning("Could not read OAuth state: %s", exc)
            return None

    async def _discard_handshake(self) -> None:
        """Forget the nonce and the fragment so neither is processed twice."""
        try:
            await self._state_storage.remove_item(STATE_STORAGE_KEY)
        except Exception as exc:
            self._logger.warning("Could not clear OAuth state: %s", exc)
        self._window.clear_hash()

    async def _store_result(self, result: GoogleWebSignInResult) -> None:
        envelope = PendingWebResult(
            result=result,
            timestamp=int(self._clock() * 1000),
        )
        try:
            await self._mailbox.write(envelope.model_dump_json(by_alias=True))
        except Exception as exc:
            self._logger.error(
                "Could not hand the sign-in result to the main window: %s", exc,
            )
            return
        self._logger.info(
            "Google sign-in result stored for the main window.",
            extra={"event": "OAUTH_RESULT_RELAYED"},
        )

    async def _fetch_user_info(
        self,
        access_token: Optional[str],
        id_token: str,
    ) -> dict[str, object]:
        """Userinfo claims, falling back to the ``id_token`` payload."""
        if access_token:
            try:
                async with httpx.AsyncClient(
                    timeout=self._config.API_TIMEOUT_S,
                    transport=self._http_transport,
                ) as client:
                    response = await client.get(
                        self._config.GOOGLE_USERINFO_ENDPOINT,
                        headers={"Authorization": f"Bearer {access_token}"},
                    )
                if response.is_success:
                    claims = response.json()
                    if isinstance(claims, dict):
                        return claims
                else:
                    self._logger.warning(
                        "Userinfo request returned %d.", response.status_code,
                    )
            except (httpx.HTTPError, ValueError) as exc:
                self._logger.warning("Userinfo request failed: %s", exc)
        return decode_jwt_payload(id_token, self._logger)

    def _start_watch_drain(self, handler: ResultHandler) -> None:
        task = asyncio.ensure_future(self._watch_drain(handler))
        self._watch_tasks.add(task)
        task.add_done_callback(self._watch_tasks.discard)

    async def _watch_drain(self, handler: ResultHandler) -> None:
        result = await self.drain()
        if result is None:
            return
        try:
            outcome = handler(result)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            self._logger.error("Sign-in result handler failed.", exc_info=True)

    async def join(self) -> None:
        """Wait for drains started by ``watch`` notifications."""
        while self._watch_tasks:
            await asyncio.gather(*list(self._watch_tasks), return_exceptions=True)
