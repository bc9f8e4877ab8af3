"""
String Helpers: Naming Convention Converter.

The internal model and the persisted session record use camelCase keys
while the backend speaks snake_case.  Every key transformation between
the two flows through here.
"""

from __future__ import annotations

import re
from typing import Optional, Union, overload

__all__ = [
    "normalize_keys",
    "string_or_none",
    "to_camel_case",
    "to_snake_case",
]

JsonValue = Union[
    str,
    int,
    float,
    bool,
    None,
    dict[str, "JsonValue"],
    list["JsonValue"],
]

# ``XMLParser`` -> ``XML_Parser``
_RE_UPPER_RUN = re.compile(r"([A-Z]+)([A-Z][a-z])")

# ``firstName`` -> ``first_Name``
_RE_CAMEL_BOUNDARY = re.compile(r"([a-z\d])([A-Z])")

_RE_MULTI_UNDERSCORE = re.compile(r"_+")


def to_snake_case(name: str) -> str:
    """Convert a camelCase or PascalCase string to snake_case.

    ::

        firstName     -> first_name
        dateOfBirth   -> date_of_birth
        refreshToken  -> refresh_token
        phone_number  -> phone_number
    """
    s1 = _RE_UPPER_RUN.sub(r"\1_\2", name)
    s2 = _RE_CAMEL_BOUNDARY.sub(r"\1_\2", s1)
    return _RE_MULTI_UNDERSCORE.sub("_", s2).lower()


def to_camel_case(name: str) -> str:
    """Convert a snake_case string to lower camelCase.

    Used as the pydantic ``alias_generator`` for every record persisted
    or exchanged in camelCase (``auth_token`` -> ``authToken``).
    """
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


@overload
def normalize_keys(data: dict[str, JsonValue]) -> dict[str, JsonValue]: ...


@overload
def normalize_keys(data: list[JsonValue]) -> list[JsonValue]: ...


@overload
def normalize_keys(data: JsonValue) -> JsonValue: ...


def normalize_keys(
    data: Union[dict[str, JsonValue], list[JsonValue], JsonValue],
) -> Union[dict[str, JsonValue], list[JsonValue], JsonValue]:
    """Recursively convert all dictionary keys to snake_case."""
    if isinstance(data, dict):
        return {to_snake_case(k): normalize_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [normalize_keys(item) for item in data]
    return data


def string_or_none(value: object) -> Optional[str]:
    """Return a trimmed, non-empty string or ``None``.

    Numbers are stringified so numeric backend ids survive the mapping.
    Booleans are not numbers here.
    """
    if isinstance(value, str):
        trimmed = value.strip()
        return trimmed or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None
