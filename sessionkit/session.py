"""
Authentication & Session State.

``SessionManager`` is the single source of truth for "who is logged
in".  It owns the current ``User``, persists it through the
``CredentialStore``, keeps its tokens current through the
``TokenRefreshCoordinator`` and logs out whenever the
``SessionEventBus`` reports an expired session.

Usage::

    session = SessionManager(store, refresher, events, logger,
                             profile_fetcher=client.get_profile)
    await session.initialize()
    await session.login(user)
    session.add_listener(lambda user: render(user))
    await session.logout()
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Optional

from sessionkit.base_service import BaseService
from sessionkit.credential_store import CredentialStore
from sessionkit.errors import AuthenticationError, StorageError, TokenRefreshError
from sessionkit.events import SessionEventBus
from sessionkit.logger import StructuredLogger
from sessionkit.mapping import merge_profile_sync
from sessionkit.models.auth_models import ApiUser, TokenPair
from sessionkit.models.user import User
from sessionkit.oauth.jwt import token_expiry
from sessionkit.token_refresh import TokenRefreshCoordinator

ProfileFetcher = Callable[[str], Awaitable[ApiUser]]
SessionListener = Callable[[Optional[User]], None]

_EXPIRY_SKEW: timedelta = timedelta(seconds=30)


class SessionManager(BaseService):
    """Injectable holder of the authenticated session.

    Construct one per application and pass it through the dependency
    graph; every component shares the same state.

    Parameters
    ----------
    store:
        Persists the ``User`` record.
    refresher:
        Token refresh coordinator; this manager registers itself as the
        active session on login and restore.
    events:
        Bus whose session-expired event triggers ``logout``.  Subscribed
        for the lifetime of the manager (see ``close``).
    logger:
        Structured logger.
    profile_fetcher:
        Reads the authoritative profile with an access token.  ``None``
        disables profile sync.
    profile_sync_timeout_s:
        Upper bound for the profile sync during ``initialize``.
    """

    def __init__(
        self,
        store: CredentialStore,
        refresher: TokenRefreshCoordinator,
        events: SessionEventBus,
        logger: StructuredLogger,
        profile_fetcher: Optional[ProfileFetcher] = None,
        profile_sync_timeout_s: float = 5.0,
    ) -> None:
        super().__init__(logger)
        self._store: CredentialStore = store
        self._refresher: TokenRefreshCoordinator = refresher
        self._profile_fetcher: Optional[ProfileFetcher] = profile_fetcher
        self._profile_sync_timeout_s: float = profile_sync_timeout_s

        self._user: Optional[User] = None
        self._is_loading: bool = True
        self._initialized: bool = False
        self._session_epoch: int = 0
        self._init_lock: asyncio.Lock = asyncio.Lock()
        self._listeners: list[SessionListener] = []
        self._unsubscribe_events: Optional[Callable[[], None]] = events.subscribe(
            self._on_session_expired
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def user(self) -> Optional[User]:
        return self._user

    @property
    def is_loading(self) -> bool:
        """``True`` until ``initialize`` has finished."""
        return self._is_loading

    @property
    def is_authenticated(self) -> bool:
        """``True`` when a user is currently logged in."""
        return self._user is not None

    def get_current_user(self) -> User:
        """Return the authenticated user.

        Raises
        ------
        AuthenticationError
            If no user is currently authenticated.
        """
        if self._user is None:
            raise AuthenticationError(
                "No user is currently authenticated. Login required."
            )
        return self._user

    @property
    def access_token(self) -> Optional[str]:
        return self._user.auth_token if self._user else None

    @property
    def refresh_token(self) -> Optional[str]:
        return self._user.refresh_token if self._user else None

    @property
    def is_token_expired(self) -> bool:
        """``True`` when the access token is missing or within 30s of ``exp``.

        A token without a readable ``exp`` claim counts as valid; the
        backend rejects it with 401 when it is not.
        """
        token = self.access_token
        if not token:
            return True
        expiry: Optional[datetime] = token_expiry(token)
        if expiry is None:
            return False
        return datetime.now(timezone.utc) >= expiry - _EXPIRY_SKEW

    def add_listener(self, listener: SessionListener) -> Callable[[], None]:
        """Call *listener* with the new user after every state change."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> Optional[User]:
        """Restore a prior session; runs once.

        The stored record is loaded within the store's timeout.  When it
        carries an access token the profile is synced within
        ``profile_sync_timeout_s``; any sync failure keeps the stored
        user as is.
        """
        async with self._init_lock:
            if self._initialized:
                return self._user
            try:
                stored = await self._store.load()
                if stored is None:
                    self._logger.info("No stored session found.")
                    return None

                self._set_user(stored)
                self._refresher.set_active_session(self._apply_token_pair)
                self._audit("SESSION_RESTORED", "Session restored for %s.", stored.id)

                if stored.auth_token and self._profile_fetcher is not None:
                    await self._sync_profile(
                        stored, self._profile_fetcher, stored.auth_token
                    )
                return self._user
            finally:
                self._is_loading = False
                self._initialized = True
                self._notify()

    async def login(self, user: User) -> None:
        """Make *user* the current session and persist it.

        No validation of the tokens is done here.

        Raises
        ------
        StorageError
            If the record could not be persisted.
        """
        self._begin_session()
        self._set_user(user)
        self._refresher.set_active_session(self._apply_token_pair)
        await self._store.persist(user)
        self._audit(
            "LOGIN", "User %s logged in.", user.id,
            provider=user.provider.value if user.provider else None,
        )

    async def logout(self) -> None:
        """End the session.

        In-memory state is cleared before storage is touched and again
        afterwards, so ``is_authenticated`` is ``False`` on return even
        if clearing storage fails, unless a new ``login`` ran meanwhile.
        """
        self._begin_session()
        epoch = self._session_epoch
        try:
            self._refresher.set_active_session(None)
            self._set_user(None)
            try:
                await self._store.clear()
            except StorageError as exc:
                self._logger.error(
                    "Stored credentials could not be fully cleared: %s", exc,
                    extra={"event": "LOGOUT_STORAGE_FAILED"},
                )
        finally:
            # A login that ran while storage was clearing keeps its session.
            if epoch == self._session_epoch:
                self._refresher.set_active_session(None)
                if self._user is not None:
                    self._set_user(None)
        self._audit("LOGOUT", "User logged out.")

    async def update_user(self, partial: Mapping[str, object]) -> Optional[User]:
        """Shallow-merge *partial* into the current user and persist it.

        Returns ``None`` (and changes nothing) when nobody is logged in.

        Raises
        ------
        pydantic.ValidationError
            If the merged record is invalid.
        StorageError
            If the record could not be persisted.
        """
        current = self._user
        if current is None:
            self._logger.warning("update_user called without a session; ignored.")
            return None
        updated = current.merged(partial)
        self._set_user(updated)
        await self._store.persist(updated)
        return updated

    async def refresh_user_tokens(self) -> bool:
        """Refresh the access token; log out on any failure.

        Returns
        -------
        bool
            ``True`` when new tokens were applied.
        """
        user = self._user
        if user is None:
            return False
        if not user.refresh_token:
            self._logger.warning("Session has no refresh token; logging out.")
            await self.logout()
            return False
        epoch = self._session_epoch
        try:
            await self._refresher.refresh(user.refresh_token)
        except TokenRefreshError as exc:
            if epoch != self._session_epoch:
                self._logger.info(
                    "Token refresh for a replaced session ended (%s); ignored.", exc,
                )
                return False
            self._logger.warning(
                "Token refresh failed (%s); logging out.", exc,
                extra={"event": "SESSION_EXPIRED"},
            )
            await self.logout()
            return False
        return True

    def close(self) -> None:
        """Detach from the event bus and the refresh coordinator."""
        if self._unsubscribe_events is not None:
            self._unsubscribe_events()
            self._unsubscribe_events = None
        self._refresher.set_active_session(None)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _begin_session(self) -> None:
        # Refreshes started for the previous session must not reach this one.
        self._session_epoch += 1
        self._refresher.clear_state()

    def _set_user(self, user: Optional[User]) -> None:
        self._user = user
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._user)
            except Exception:
                self._logger.error("Session listener failed.", exc_info=True)

    async def _sync_profile(
        self,
        stored: User,
        fetcher: ProfileFetcher,
        access_token: str,
    ) -> None:
        try:
            api_user = await asyncio.wait_for(
                fetcher(access_token),
                timeout=self._profile_sync_timeout_s,
            )
        except asyncio.TimeoutError:
            self._logger.warning(
                "Profile sync exceeded %.1fs; using stored data.",
                self._profile_sync_timeout_s,
            )
            return
        except Exception as exc:
            self._logger.warning("Profile sync failed (%s); using stored data.", exc)
            return

        if self._user is not stored:
            # Logged out or replaced while the request was in flight.
            return

        synced = merge_profile_sync(stored, api_user)
        self._set_user(synced)
        try:
            await self._store.persist(synced)
        except StorageError as exc:
            self._logger.warning("Synced profile could not be persisted: %s", exc)
        self._logger.info("Profile synced from backend.", extra={"event": "PROFILE_SYNCED"})

    async def _apply_token_pair(self, tokens: TokenPair) -> None:
        current = self._user
        if current is None:
            self._logger.debug("Token pair arrived without a session; ignored.")
            return
        updated = current.with_tokens(tokens)
        self._set_user(updated)
        await self._store.persist(updated)

    def _on_session_expired(self) -> Awaitable[None]:
        self._logger.info(
            "Session expired; logging out.", extra={"event": "SESSION_EXPIRED"},
        )
        return self.logout()
