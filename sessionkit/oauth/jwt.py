"""
JWT Payload Decoding.

Reads the claims of a JWT **without** verifying its signature.  Used for
display data only (the Google profile when the userinfo call fails, the
``exp`` claim of the backend access token); the backend verifies every
token it receives.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import jwt

from sessionkit.logger import StructuredLogger

_UNVERIFIED: dict[str, bool] = {"verify_signature": False}


def decode_jwt_payload(
    token: Optional[str],
    logger: Optional[StructuredLogger] = None,
) -> dict[str, Any]:
    """Return the claims of *token*, or ``{}`` when it cannot be decoded.

    Payload segments are accepted with or without ``=`` padding.
    """
    if not token:
        return {}
    try:
        # jwt.decode() returns Any in PyJWT's type stubs
        claims: dict[str, Any] = jwt.decode(token, options=_UNVERIFIED)
    except jwt.PyJWTError as exc:
        if logger is not None:
            logger.warning("Could not decode JWT payload: %s", exc)
        return {}
    return claims


def token_expiry(token: Optional[str]) -> Optional[datetime]:
    """``exp`` claim of *token* as an aware UTC datetime, if present."""
    exp = decode_jwt_payload(token).get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(exp, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
