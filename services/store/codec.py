"""JSON encoding for document payloads that may contain datetimes.

Datetimes are tagged as ``{"__datetime__": iso}`` so they survive both the
SQL ``JSON`` column and the relay's text messages.
"""

import json
from datetime import datetime
from typing import Any

_DATETIME_TAG = "__datetime__"


def to_json_value(value: Any) -> Any:
    """Convert a document payload into plain JSON types."""
    if isinstance(value, datetime):
        return {_DATETIME_TAG: value.isoformat()}
    if isinstance(value, dict):
        return {str(key): to_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_value(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    raise TypeError(f"Object of type {type(value).__name__} is not storable")


def from_json_value(value: Any) -> Any:
    if isinstance(value, dict):
        if len(value) == 1 and _DATETIME_TAG in value:
            return datetime.fromisoformat(value[_DATETIME_TAG])
        return {key: from_json_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [from_json_value(item) for item in value]
    return value


def encode_document(data: Any) -> str:
    return json.dumps(to_json_value(data), sort_keys=True)


def decode_document(text: str) -> Any:
    return from_json_value(json.loads(text))
