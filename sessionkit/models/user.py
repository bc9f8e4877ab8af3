"""
User Model.

The identity and token bundle owned by ``SessionManager``.  Python
attributes are snake_case; the persisted record uses the camelCase
aliases (``firstName``, ``authToken``) so stored sessions stay readable
by every client that shares the storage.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Optional

from pydantic import BaseModel, ConfigDict

from sessionkit.models.auth_models import TokenPair
from sessionkit.models.enums import AuthProvider, Gender
from sessionkit.utils.string_helpers import to_camel_case, to_snake_case


class User(BaseModel):
    """Represents the signed-in user.

    ``auth_token`` is the access token used for API calls and
    ``refresh_token`` the credential exchanged for a new pair.  A user
    without ``auth_token`` is a degenerate state: it may be displayed but
    must not be used for authenticated requests (see ``has_api_session``).
    """

    id: str
    email: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    avatar: Optional[str] = None
    country: Optional[str] = None
    gender: Optional[Gender] = None
    date_of_birth: Optional[str] = None  # ISO date (YYYY-MM-DD)
    provider: Optional[AuthProvider] = None
    auth_token: Optional[str] = None
    refresh_token: Optional[str] = None
    login_count: Optional[int] = None

    model_config = ConfigDict(
        alias_generator=to_camel_case,
        populate_by_name=True,
        from_attributes=True,
    )

    @property
    def has_api_session(self) -> bool:
        """``True`` when the user carries an access token."""
        return bool(self.auth_token)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    # ------------------------------------------------------------------
    # Record (de)serialisation
    # ------------------------------------------------------------------

    def to_record(self) -> str:
        """Serialise to the camelCase JSON record stored under the session key."""
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_record(cls, raw: str) -> "User":
        """Parse a stored record.

        Raises
        ------
        pydantic.ValidationError
            If *raw* is not valid JSON or misses required fields.
        """
        return cls.model_validate_json(raw)

    # ------------------------------------------------------------------
    # Immutable updates
    # ------------------------------------------------------------------

    def merged(self, partial: Mapping[str, object]) -> "User":
        """Return a copy with *partial* shallow-merged on top.

        Keys may be given either as attribute names (``first_name``) or
        record aliases (``firstName``).  Unknown keys are ignored.  The
        result is re-validated, so a bad value raises
        ``pydantic.ValidationError`` and leaves ``self`` untouched.
        """
        data = self.model_dump()
        for key, value in partial.items():
            name = to_snake_case(key)
            if name in type(self).model_fields:
                data[name] = value
        return type(self).model_validate(data)

    def with_tokens(self, tokens: TokenPair) -> "User":
        """Return a copy carrying *tokens*; both fields change together."""
        return self.model_copy(update={
            "auth_token": tokens.access_token,
            "refresh_token": tokens.refresh_token,
        })
