"""Shared utility functions for SessionKit.

Re-exports the naming helpers so consumers can import them directly from
``sessionkit.utils``.
"""

from sessionkit.utils.string_helpers import (
    normalize_keys,
    string_or_none,
    to_camel_case,
    to_snake_case,
)

__all__ = [
    "normalize_keys",
    "string_or_none",
    "to_camel_case",
    "to_snake_case",
]
