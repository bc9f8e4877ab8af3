"""
Native Google Sign-In Capability.

Platform builds may ship a native Google Sign-In module; others do not.
The module is located with ``importlib.util.find_spec`` so "capability
absent" is an ordinary ``None`` result, not an import failure.

A provider module must expose ``create_sign_in()`` returning an object
that satisfies ``NativeGoogleSignIn``.
"""

from __future__ import annotations

import importlib
import importlib.util
from typing import Optional, Protocol, runtime_checkable

from sessionkit.logger import StructuredLogger
from sessionkit.models.auth_models import GoogleWebSignInResult

FACTORY_NAME: str = "create_sign_in"


@runtime_checkable
class NativeGoogleSignIn(Protocol):
    """Platform Google Sign-In."""

    async def sign_in(self) -> Optional[GoogleWebSignInResult]:
        """Run the native flow; ``None`` when the user cancels."""
        ...

    async def sign_out(self) -> None: ...  # noqa: E704


def _module_exists(module_name: str) -> bool:
    parts = module_name.split(".")
    for depth in range(1, len(parts) + 1):
        if importlib.util.find_spec(".".join(parts[:depth])) is None:
            return False
    return True


def detect_native_google_sign_in(
    module_name: str,
    logger: StructuredLogger,
) -> Optional[NativeGoogleSignIn]:
    """Return the native sign-in provided by *module_name*, or ``None``.

    ``None`` when *module_name* is empty, not installed, fails to
    import, lacks a ``create_sign_in`` factory, or the factory raises or
    returns an object that does not implement ``NativeGoogleSignIn``.
    """
    if not module_name:
        return None
    if not _module_exists(module_name):
        logger.info("Native Google Sign-In module %s is not installed.", module_name)
        return None

    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        logger.warning(
            "Native Google Sign-In module %s could not be imported: %s",
            module_name, exc,
        )
        return None

    factory = getattr(module, FACTORY_NAME, None)
    if not callable(factory):
        logger.warning(
            "Module %s has no %s() factory; native Google Sign-In disabled.",
            module_name, FACTORY_NAME,
        )
        return None

    try:
        instance = factory()
    except Exception as exc:
        logger.error(
            "%s.%s() failed: %s; native Google Sign-In disabled.",
            module_name, FACTORY_NAME, exc,
        )
        return None

    if not isinstance(instance, NativeGoogleSignIn):
        logger.warning(
            "%s.%s() returned an unsupported object; native Google Sign-In disabled.",
            module_name, FACTORY_NAME,
        )
        return None

    logger.info("Native Google Sign-In available via %s.", module_name)
    return instance
