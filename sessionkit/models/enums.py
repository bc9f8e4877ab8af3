"""
Shared Enumerations for SessionKit Models.

StrEnum values compare equal to their string equivalents, so records
persisted as plain strings (``"google"``) validate straight back into
the enum.
"""

from __future__ import annotations

from enum import StrEnum


class AuthProvider(StrEnum):
    """Identity provider that created the session."""

    EMAIL = "email"
    GOOGLE = "google"
    FACEBOOK = "facebook"
    APPLE = "apple"


class Gender(StrEnum):
    """Optional profile gender."""

    MALE = "male"
    FEMALE = "female"


class SessionEvent(StrEnum):
    """Events carried by the session event bus."""

    SESSION_EXPIRED = "session_expired"
