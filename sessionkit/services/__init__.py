"""
Session Services Package.

The ``create_services()`` factory wires storage, the session layer, the
backend client and the Google relay together, returning a typed dict
the application layer can consume without knowing the dependency graph.
"""

from __future__ import annotations

from typing import Optional, TypedDict

import httpx

from sessionkit.api_client import BackendClient
from sessionkit.config import AppConfig
from sessionkit.credential_store import CredentialStore
from sessionkit.events import SessionEventBus
from sessionkit.logger import StructuredLogger, get_logger
from sessionkit.oauth.browser import BrowserWindow
from sessionkit.oauth.mailbox import Mailbox
from sessionkit.oauth.web_relay import GoogleWebRelay
from sessionkit.services.auth_service import AuthService
from sessionkit.session import SessionManager
from sessionkit.storage.base import KeyValueStorage
from sessionkit.storage.encryption import SessionCipher
from sessionkit.storage.memory import MemoryStorage
from sessionkit.storage.sqlite_storage import SQLiteStorage
from sessionkit.token_refresh import TokenRefreshCoordinator


class ServiceContainer(TypedDict, total=False):
    """Typed container for the session services.

    ``web_relay`` is ``None`` when no browser window was supplied.
    """

    # --- Core (always present) ---
    events: SessionEventBus
    api_client: BackendClient
    credential_store: CredentialStore
    token_refresher: TokenRefreshCoordinator
    session: SessionManager
    auth_service: AuthService

    # --- Google web relay ---
    state_storage: KeyValueStorage
    web_relay: Optional[GoogleWebRelay]


def create_storage(config: AppConfig, logger: StructuredLogger) -> SQLiteStorage:
    """Open the durable session storage described by *config*."""
    cipher: Optional[SessionCipher] = None
    if config.SESSION_ENCRYPTION_ENABLED:
        cipher = SessionCipher(salt_path=config.salt_path, logger=logger)
    else:
        logger.warning("Session encryption disabled; tokens are stored in clear text.")
    return SQLiteStorage(path=config.SESSION_DB_PATH, logger=logger, cipher=cipher)


def create_services(
    config: AppConfig,
    storage: KeyValueStorage,
    window: Optional[BrowserWindow] = None,
    mailbox: Optional[Mailbox] = None,
    state_storage: Optional[KeyValueStorage] = None,
    events: Optional[SessionEventBus] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
    logger: Optional[StructuredLogger] = None,
) -> ServiceContainer:
    """
    Wire all session services together.

    This is the single composition root for the session layer.  The
    application entry-point calls this once at startup.

    Args:
        config: Application configuration.
        storage: Durable storage for the session record.
        window: Execution context for the Google web relay.  Without one
            the relay is disabled.
        mailbox: Cross-context mailbox for the relay.  Required with
            *window*.
        state_storage: Session-scoped storage for the CSRF nonce.
            Defaults to a fresh in-memory storage.
        events: Session event bus.  Defaults to a new bus.
        http_transport: Optional httpx transport shared by every HTTP
            call (tests pass ``httpx.MockTransport``).
        logger: Shared structured logger.  Defaults to
            ``get_logger("sessionkit.services")``.

    Returns:
        ServiceContainer mapping service names to fully-wired instances.
    """
    logger = logger or get_logger("sessionkit.services")

    # ------------------------------------------------------------------
    # 1. Leaf components
    # ------------------------------------------------------------------
    bus = events or SessionEventBus(logger=logger)
    api_client = BackendClient(
        base_url=config.API_BASE_URL,
        events=bus,
        logger=logger,
        timeout_s=config.API_TIMEOUT_S,
        transport=http_transport,
    )
    credential_store = CredentialStore(
        storage=storage,
        logger=logger,
        load_timeout_s=config.SESSION_LOAD_TIMEOUT_S,
    )
    token_refresher = TokenRefreshCoordinator(
        refresh_fn=api_client.refresh_tokens,
        logger=logger,
    )

    # ------------------------------------------------------------------
    # 2. Session facade
    # ------------------------------------------------------------------
    session = SessionManager(
        store=credential_store,
        refresher=token_refresher,
        events=bus,
        logger=logger,
        profile_fetcher=api_client.get_profile if config.PROFILE_SYNC_ENABLED else None,
        profile_sync_timeout_s=config.PROFILE_SYNC_TIMEOUT_S,
    )

    # ------------------------------------------------------------------
    # 3. Google web relay (only with a browser context)
    # ------------------------------------------------------------------
    nonce_storage = state_storage or MemoryStorage(logger=logger)
    web_relay: Optional[GoogleWebRelay] = None
    if window is not None:
        if mailbox is None:
            raise ValueError("A mailbox is required when a browser window is given.")
        web_relay = GoogleWebRelay(
            config=config,
            window=window,
            state_storage=nonce_storage,
            mailbox=mailbox,
            logger=logger,
            http_transport=http_transport,
        )

    # ------------------------------------------------------------------
    # 4. Orchestration
    # ------------------------------------------------------------------
    auth_service = AuthService(
        client=api_client,
        session=session,
        logger=logger,
        web_relay=web_relay,
        native_module=config.NATIVE_GOOGLE_SIGNIN_MODULE,
    )

    return ServiceContainer(
        events=bus,
        api_client=api_client,
        credential_store=credential_store,
        token_refresher=token_refresher,
        session=session,
        auth_service=auth_service,
        state_storage=nonce_storage,
        web_relay=web_relay,
    )
