"""
Field-name translation between the record store and the services.

The store speaks snake_case (``flat_memberships``), the services speak
camelCase (``flatMemberships``). Translation is applied to keys only,
recursively through nested dicts and lists; values are never touched.

For field names made of ASCII letters and digits the two transforms are
inverse: ``to_internal(to_external(x)) == x``.
"""

import re
from typing import Any

_UPPER = re.compile(r"[A-Z]")
_UNDERSCORE_LOWER = re.compile(r"_([a-z])")


def camel_to_snake(name: str) -> str:
    """``flatNumber`` -> ``flat_number``; ``societyID`` -> ``society_i_d``."""
    return _UPPER.sub(lambda m: "_" + m.group(0).lower(), name)


def snake_to_camel(name: str) -> str:
    """``flat_number`` -> ``flatNumber``."""
    return _UNDERSCORE_LOWER.sub(lambda m: m.group(1).upper(), name)


def to_external(value: Any) -> Any:
    """Translate an internal (camelCase) structure to the store's snake_case."""
    if isinstance(value, dict):
        return {
            (camel_to_snake(k) if isinstance(k, str) else k): to_external(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [to_external(item) for item in value]
    return value


def to_internal(value: Any) -> Any:
    """Translate a stored (snake_case) structure to internal camelCase."""
    if isinstance(value, dict):
        return {
            (snake_to_camel(k) if isinstance(k, str) else k): to_internal(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [to_internal(item) for item in value]
    return value
