"""
Backend / Provider Record Mapping.

Converts snake_case backend records and Google profiles into the
``User`` model, and merges an authoritative profile read into a stored
session without regressing fields the backend omitted.
"""

from __future__ import annotations

import re
from typing import Optional

from sessionkit.models.auth_models import ApiUser, AuthResponse, GoogleProfile
from sessionkit.models.enums import AuthProvider
from sessionkit.models.user import User
from sessionkit.utils.string_helpers import string_or_none

_RE_WHITESPACE = re.compile(r"\s+")

DEFAULT_GOOGLE_NAME: str = "Google User"


def split_full_name(full_name: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Split *full_name* into ``(first, rest)``.

    ::

        "Ana María Pérez" -> ("Ana", "María Pérez")
        "Ana"             -> ("Ana", None)
        "   "             -> (None, None)
    """
    if not full_name:
        return None, None
    parts = [part for part in _RE_WHITESPACE.split(full_name.strip()) if part]
    if not parts:
        return None, None
    first, *rest = parts
    return first, (" ".join(rest) or None)


def build_full_name(profile: GoogleProfile) -> str:
    """Display name for *profile*.

    Falls back from the provider name to given + family name, then to
    the e-mail local part, then to a fixed placeholder.
    """
    direct = string_or_none(profile.name)
    if direct:
        return direct
    combined = " ".join(
        part for part in (string_or_none(profile.given_name), string_or_none(profile.family_name))
        if part
    )
    if combined:
        return combined
    local_part = profile.email.split("@")[0] if profile.email else ""
    return local_part or DEFAULT_GOOGLE_NAME


def _resolve_name(
    api_user: ApiUser,
    profile: Optional[GoogleProfile],
) -> tuple[str, str]:
    split_first, split_last = split_full_name(api_user.full_name)
    google_first = string_or_none(profile.given_name) if profile else None
    google_last = string_or_none(profile.family_name) if profile else None
    google_name = string_or_none(profile.name) if profile else None

    first = api_user.first_name or split_first or google_first or google_name or ""
    last = api_user.last_name or split_last or google_last or ""
    return first, last


def map_auth_response_to_user(
    response: AuthResponse,
    provider: AuthProvider,
    profile: Optional[GoogleProfile] = None,
) -> User:
    """Build the session ``User`` from a login/register/Google response.

    Backend fields win; the Google *profile* (when given) fills the gaps.
    """
    api_user = response.user
    first, last = _resolve_name(api_user, profile)
    return User(
        id=api_user.id or (profile.id if profile else "") or "",
        email=api_user.email or (profile.email if profile else "") or "",
        first_name=first,
        last_name=last,
        phone=api_user.phone_number or api_user.phone,
        avatar=(
            api_user.profile_image
            or api_user.avatar
            or (string_or_none(profile.photo) if profile else None)
        ),
        country=api_user.country,
        provider=provider,
        auth_token=response.resolved_access_token,
        refresh_token=string_or_none(response.refresh_token),
        login_count=api_user.login_count,
    )


def merge_profile_sync(stored: User, api_user: ApiUser) -> User:
    """Merge an authoritative profile read into *stored*.

    A field the backend omits keeps its stored value; tokens and
    provider are never touched.
    """
    fallback_full = f"{stored.first_name} {stored.last_name}"
    first, last = split_full_name(api_user.full_name or fallback_full)
    return stored.model_copy(update={
        "first_name": first or stored.first_name,
        "last_name": last or stored.last_name,
        "email": api_user.email if api_user.email is not None else stored.email,
        "phone": api_user.phone_number if api_user.phone_number is not None else stored.phone,
        "avatar": api_user.profile_image if api_user.profile_image is not None else stored.avatar,
        "country": api_user.country if api_user.country is not None else stored.country,
    })
