"""JSON serialization for structured values kept in the cache.

Timestamps are written as ISO-8601 strings. On read, every string that
looks like an ISO-8601 timestamp is turned back into a ``datetime``,
recursively through nested dicts and lists.
"""

from __future__ import annotations

import json
import re
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

ISO_DATETIME_PATTERN = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d{1,6})?(Z|[+-]\d{2}:\d{2})?$"
)


def _json_default(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def serialize(value: Any) -> str:
    """Serialize a structured value to a JSON string."""
    return json.dumps(value, default=_json_default, ensure_ascii=False)


def _parse_datetime(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def revive_dates(value: Any) -> Any:
    """Convert ISO-8601 strings back to datetimes, recursively."""
    if isinstance(value, dict):
        return {key: revive_dates(item) for key, item in value.items()}
    if isinstance(value, list):
        return [revive_dates(item) for item in value]
    if isinstance(value, str) and ISO_DATETIME_PATTERN.match(value):
        try:
            return _parse_datetime(value)
        except ValueError:
            return value
    return value


def deserialize(data: str | bytes | None) -> Any:
    """Parse a JSON string produced by :func:`serialize`. ``None`` stays ``None``."""
    if not data:
        return None
    return revive_dates(json.loads(data))
