"""
Helpers for turning records into JSON payloads.
"""

from __future__ import annotations

import re
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

_SNAKE_RE = re.compile(r"_([a-z0-9])")


def snake_to_camel(key: str) -> str:
    return _SNAKE_RE.sub(lambda match: match.group(1).upper(), key)


def to_jsonable(value: Any) -> Any:
    """Decimals become strings, datetimes ISO-8601, enums their value."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value


def to_camel_payload(value: Any) -> Any:
    """JSON-safe copy of ``value`` with snake_case keys rewritten to camelCase."""
    if isinstance(value, dict):
        return {
            snake_to_camel(str(key)): to_camel_payload(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [to_camel_payload(item) for item in value]
    return to_jsonable(value)
