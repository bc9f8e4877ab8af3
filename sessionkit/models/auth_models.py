"""
Authentication Pipeline Models.

Pydantic models and enumerations for the contracts between the session
layer, the backend API, the Google OAuth relay and the UI layer.  Every
auth operation exposed to the UI returns a structured ``AuthResult``
rather than raw exceptions.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionkit.models.enums import AuthProvider
from sessionkit.utils.string_helpers import string_or_none, to_camel_case

_CAMEL_CONFIG = ConfigDict(
    alias_generator=to_camel_case,
    populate_by_name=True,
    from_attributes=True,
)


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

class TokenPair(BaseModel):
    """Access/refresh token pair exchanged during refresh.

    Always applied to the ``User`` record as a unit.
    """

    access_token: str
    refresh_token: str

    model_config = ConfigDict(
        alias_generator=to_camel_case,
        populate_by_name=True,
        frozen=True,
    )


# ---------------------------------------------------------------------------
# Google OAuth
# ---------------------------------------------------------------------------

class GoogleProfile(BaseModel):
    """Normalised Google account profile."""

    id: str
    email: str
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    photo: Optional[str] = None

    model_config = _CAMEL_CONFIG

    @classmethod
    def from_claims(cls, claims: dict[str, object]) -> "GoogleProfile":
        """Build a profile from userinfo / ID-token claims.

        Missing ``sub`` and ``email`` claims become empty strings rather
        than validation errors, matching what the provider may omit.
        """
        return cls(
            id=str(claims.get("sub") or claims.get("id") or ""),
            email=str(claims.get("email") or ""),
            name=string_or_none(claims.get("name")),
            given_name=string_or_none(claims.get("given_name")),
            family_name=string_or_none(claims.get("family_name")),
            photo=string_or_none(claims.get("picture")),
        )


class GoogleWebSignInResult(BaseModel):
    """Tokens and profile produced by a completed Google handshake."""

    id_token: str
    access_token: Optional[str] = None
    user: GoogleProfile

    model_config = _CAMEL_CONFIG


class PendingWebResult(BaseModel):
    """Mailbox envelope written by the popup context.

    Attributes
    ----------
    result:
        The completed sign-in result.
    timestamp:
        Epoch milliseconds at which the popup wrote the envelope.
    """

    result: GoogleWebSignInResult
    timestamp: int

    model_config = _CAMEL_CONFIG


class OAuthRedirectParams(BaseModel):
    """Parameters parsed from an OAuth redirect fragment."""

    id_token: Optional[str] = None
    access_token: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None

    @property
    def has_oauth_params(self) -> bool:
        """``True`` when the fragment looks like an OAuth response."""
        return bool(self.id_token or self.access_token or self.error)


# ---------------------------------------------------------------------------
# Backend contracts
# ---------------------------------------------------------------------------

class ApiUser(BaseModel):
    """User record as returned by the backend (snake_case fields)."""

    id: Optional[str] = None
    email: Optional[str] = None
    full_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None
    phone: Optional[str] = None
    profile_image: Optional[str] = None
    avatar: Optional[str] = None
    country: Optional[str] = None
    login_count: Optional[int] = None
    status: Optional[str] = None

    model_config = ConfigDict(extra="allow", from_attributes=True)

    @field_validator(
        "id", "email", "full_name", "first_name", "last_name",
        "phone_number", "phone", "profile_image", "avatar", "country",
        mode="before",
    )
    @classmethod
    def _coerce_string(cls, value: object) -> Optional[str]:
        return string_or_none(value)


class AuthResponse(BaseModel):
    """Successful login / register / Google exchange response.

    The backend has used both ``token`` and ``accessToken`` for the
    access token; ``resolved_access_token`` picks whichever is present.
    """

    user: ApiUser
    user_type: Optional[str] = None
    token: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    message: Optional[str] = None

    model_config = ConfigDict(
        alias_generator=to_camel_case,
        populate_by_name=True,
        extra="allow",
    )

    @property
    def resolved_access_token(self) -> Optional[str]:
        return string_or_none(self.access_token) or string_or_none(self.token)


class GoogleLoginPayload(BaseModel):
    """Body of ``POST /auth/google``."""

    id_token: str = Field(min_length=1)
    access_token: Optional[str] = None
    email: Optional[str] = None
    full_name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    photo: Optional[str] = None

    model_config = _CAMEL_CONFIG


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

class AuthErrorCode(StrEnum):
    """Exhaustive enumeration of authentication error categories.

    Used by ``AuthService`` to classify backend and OAuth failures and by
    the UI layer to decide which feedback to display.
    """

    INVALID_CREDENTIALS = "invalid_credentials"
    EMAIL_ALREADY_EXISTS = "email_already_exists"
    NETWORK_ERROR = "network_error"
    RATE_LIMITED = "rate_limited"
    VALIDATION_ERROR = "validation_error"
    SESSION_EXPIRED = "session_expired"
    CANCELLED = "cancelled"
    CONFIGURATION_ERROR = "configuration_error"
    STATE_MISMATCH = "state_mismatch"
    MISSING_ID_TOKEN = "missing_id_token"
    PROVIDER_ERROR = "provider_error"
    NOT_SUPPORTED = "not_supported"
    UNKNOWN_ERROR = "unknown_error"


API_STATUS_ERROR_MAP: dict[int, tuple[AuthErrorCode, str]] = {
    0: (
        AuthErrorCode.NETWORK_ERROR,
        "Cannot reach the server. Check your internet connection.",
    ),
    400: (
        AuthErrorCode.VALIDATION_ERROR,
        "Some of the information provided is invalid.",
    ),
    401: (
        AuthErrorCode.INVALID_CREDENTIALS,
        "Incorrect email or password.",
    ),
    404: (
        AuthErrorCode.INVALID_CREDENTIALS,
        "Incorrect email or password.",
    ),
    409: (
        AuthErrorCode.EMAIL_ALREADY_EXISTS,
        "An account with this email already exists. Try signing in.",
    ),
    422: (
        AuthErrorCode.VALIDATION_ERROR,
        "Some of the information provided is invalid.",
    ),
    429: (
        AuthErrorCode.RATE_LIMITED,
        "Too many attempts. Please wait a moment and try again.",
    ),
}


# ---------------------------------------------------------------------------
# Validation result
# ---------------------------------------------------------------------------

class ValidationResult(BaseModel):
    """Result of a single client-side field validation check."""

    is_valid: bool
    error_message: Optional[str] = None


# ---------------------------------------------------------------------------
# Unified auth response
# ---------------------------------------------------------------------------

class AuthResult(BaseModel):
    """Unified response for login, registration, Google sign-in and
    refresh operations.

    Attributes
    ----------
    success:
        ``True`` when the operation completed without error.
    error_code:
        Structured error category (``None`` on success).
    error_message:
        Human-readable error description (``None`` on success).
    user_id, email, full_name, provider:
        Identity of the signed-in user when the operation logged one in.
    pending:
        ``True`` when a browser handshake was started and the result will
        arrive later through ``AuthService.complete_google_sign_in``.
    """

    success: bool
    error_code: Optional[AuthErrorCode] = None
    error_message: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    full_name: Optional[str] = None
    provider: Optional[AuthProvider] = None
    pending: bool = False

    @property
    def should_alert(self) -> bool:
        """Whether the UI should surface this result as an error.

        A user-cancelled handshake is a silent abort.
        """
        return not self.success and self.error_code != AuthErrorCode.CANCELLED
