"""
Application Configuration.

Pydantic Settings model for the SessionKit client.
All configuration is loaded from environment variables and .env files.
Inject an AppConfig instance via dependency injection where needed.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings


class AppConfig(BaseSettings):
    """Central configuration loaded from environment variables and defaults."""

    # --- Backend API ---
    API_BASE_URL: str = "http://localhost:3000"
    API_TIMEOUT_S: float = 10.0

    # --- Google OAuth (web implicit flow) ---
    GOOGLE_WEB_CLIENT_ID: str = ""
    GOOGLE_WEB_REDIRECT_PATH: str = "/oauth2callback"
    GOOGLE_WEB_ORIGIN: str = ""  # Empty: use the initiating window's origin
    GOOGLE_AUTHORIZATION_ENDPOINT: str = "https://accounts.google.com/o/oauth2/v2/auth"
    GOOGLE_USERINFO_ENDPOINT: str = "https://www.googleapis.com/oauth2/v3/userinfo"
    GOOGLE_OAUTH_SCOPES: str = "openid profile email"

    # Importable module exposing ``create_sign_in()``; empty disables the
    # native capability entirely.
    NATIVE_GOOGLE_SIGNIN_MODULE: str = ""

    # --- Session persistence ---
    SESSION_DB_PATH: str = "sessionkit.db"
    SESSION_ENCRYPTION_ENABLED: bool = True
    SESSION_SALT_PATH: str = ""  # Empty: ~/.sessionkit_salt
    SESSION_LOAD_TIMEOUT_S: float = 2.0

    # --- Profile sync ---
    PROFILE_SYNC_ENABLED: bool = True
    PROFILE_SYNC_TIMEOUT_S: float = 5.0

    # --- Cross-window relay ---
    MAILBOX_DIR: str = ""  # Empty: ~/.sessionkit/mailbox
    PENDING_RESULT_MAX_AGE_S: float = 600.0

    # --- Local OAuth callback server ---
    CALLBACK_HOST: str = "localhost"
    CALLBACK_PORT: int = 8765

    # --- Logging ---
    LOG_FILE: str = "sessionkit.log"  # Empty: console only
    LOG_MAX_BYTES: int = 5_242_880  # 5 MB
    LOG_BACKUP_COUNT: int = 3

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @model_validator(mode="after")
    def _warn_missing_env(self) -> "AppConfig":
        """Emit a startup warning when critical configuration is empty.

        Pydantic silently falls back to defaults when ``.env`` is missing,
        so the warnings make placeholder values visible on first run.
        """
        _log = logging.getLogger("sessionkit.config")

        if not Path(".env").exists():
            _log.warning(
                "No .env file found; all configuration loaded from "
                "environment variables or defaults."
            )

        if not self.GOOGLE_WEB_CLIENT_ID:
            _log.warning(
                "GOOGLE_WEB_CLIENT_ID is empty; Google web sign-in is disabled."
            )

        return self

    # --- Derived paths ---
    @property
    def salt_path(self) -> Path:
        """Location of the per-installation encryption salt."""
        if self.SESSION_SALT_PATH:
            return Path(self.SESSION_SALT_PATH)
        return Path.home() / ".sessionkit_salt"

    @property
    def mailbox_dir(self) -> Path:
        """Directory shared by the initiating and completing contexts."""
        if self.MAILBOX_DIR:
            return Path(self.MAILBOX_DIR)
        return Path.home() / ".sessionkit" / "mailbox"

    @property
    def callback_origin(self) -> str:
        """Origin served by the local OAuth callback server."""
        return f"http://{self.CALLBACK_HOST}:{self.CALLBACK_PORT}"


# ---------------------------------------------------------------------------
# Module-level singleton factory
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Return a cached ``AppConfig`` singleton.

    On first call, creates an ``AppConfig`` instance (reading from ``.env``).
    Subsequent calls return the same instance.  Uses a check-lock-check
    pattern so the fast path never takes the lock.

    Prefer direct constructor injection of ``AppConfig`` in new code.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance
