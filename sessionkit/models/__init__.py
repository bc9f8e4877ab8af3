"""
Data Models Package.

Re-exports the Pydantic models for short imports:
    from sessionkit.models import User, TokenPair, AuthResult
"""

from __future__ import annotations

from sessionkit.models.auth_models import (
    ApiUser,
    AuthErrorCode,
    AuthResponse,
    AuthResult,
    GoogleLoginPayload,
    GoogleProfile,
    GoogleWebSignInResult,
    OAuthRedirectParams,
    PendingWebResult,
    TokenPair,
    ValidationResult,
)
from sessionkit.models.enums import AuthProvider, Gender, SessionEvent
from sessionkit.models.user import User

__all__ = [
    "ApiUser",
    "AuthErrorCode",
    "AuthProvider",
    "AuthResponse",
    "AuthResult",
    "Gender",
    "GoogleLoginPayload",
    "GoogleProfile",
    "GoogleWebSignInResult",
    "OAuthRedirectParams",
    "PendingWebResult",
    "SessionEvent",
    "TokenPair",
    "User",
    "ValidationResult",
]
