"""
Exception hierarchy for SessionKit.

Handshake-level errors (``OAuthError`` subclasses) are raised to the
caller that initiated a login.  ``AuthService`` converts them into
``AuthResult`` values so the UI never inspects raw exceptions.
"""

from __future__ import annotations

from typing import Optional

from sessionkit.models.auth_models import AuthErrorCode


class SessionKitError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(SessionKitError):
    """Required configuration (e.g. the OAuth client id) is missing."""


class StorageError(SessionKitError):
    """A persistence provider failed to read, write or remove a key."""


class AuthenticationError(SessionKitError, RuntimeError):
    """Raised when a guarded operation runs without a usable session."""


class TokenRefreshError(SessionKitError):
    """Exchanging the refresh token failed; the session cannot continue."""


class ApiError(SessionKitError):
    """Non-success response (or transport failure) from the backend.

    ``status`` is ``0`` when no HTTP response was received.
    """

    def __init__(self, message: str, status: int, data: object = None) -> None:
        super().__init__(message)
        self.status: int = status
        self.data: object = data

    @property
    def is_unauthorized(self) -> bool:
        return self.status == 401


# ---------------------------------------------------------------------------
# OAuth handshake
# ---------------------------------------------------------------------------

class OAuthError(SessionKitError):
    """Base class for OAuth redirect failures."""

    code: AuthErrorCode = AuthErrorCode.PROVIDER_ERROR


class OAuthCancelledError(OAuthError):
    """The user declined consent (``error=access_denied``)."""

    code = AuthErrorCode.CANCELLED


class OAuthStateMismatchError(OAuthError):
    """The returned ``state`` does not match the stored nonce."""

    code = AuthErrorCode.STATE_MISMATCH


class OAuthMissingTokenError(OAuthError):
    """The redirect carried no ``id_token``."""

    code = AuthErrorCode.MISSING_ID_TOKEN


class OAuthProviderError(OAuthError):
    """The provider returned an error other than ``access_denied``."""

    code = AuthErrorCode.PROVIDER_ERROR

    def __init__(self, error: str, description: Optional[str] = None) -> None:
        super().__init__(description or error)
        self.error: str = error
        self.description: Optional[str] = description
