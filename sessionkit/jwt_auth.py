"""
Authentication Guard Decorator.

Provides a factory that produces a decorator for gating service-layer
coroutines behind a session that can make API calls.

Usage::

    from sessionkit.jwt_auth import require_auth

    auth_guard = require_auth(session)

    @auth_guard
    async def update_profile(...) -> AuthResult:
        ...
"""

from __future__ import annotations

from collections.abc import Awaitable
from functools import wraps
from typing import Callable, ParamSpec, TypeVar

from sessionkit.errors import AuthenticationError
from sessionkit.session import SessionManager

P = ParamSpec("P")
R = TypeVar("R")


def require_auth(
    session: SessionManager,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """Return a decorator that enforces an API-capable session.

    The wrapped coroutine runs only when a user is logged in **and**
    carries an access token; a user without one is display-only.

    Args:
        session: The injectable ``SessionManager`` that holds the
            current user state.

    Returns:
        A decorator for ``async def`` service methods.

    Raises:
        AuthenticationError: From the wrapped call when the check fails.
    """

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            user = session.user
            if user is None:
                raise AuthenticationError(
                    "Authentication required. Please log in before "
                    "performing this action."
                )
            if not user.has_api_session:
                raise AuthenticationError(
                    "The current session has no access token. Please log in again."
                )
            return await func(*args, **kwargs)

        return wrapper

    return decorator
