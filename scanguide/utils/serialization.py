"""Deterministic JSON rendering of summary records.

Output is stable for identical inputs: keys sorted recursively, two-space
indentation, NaN/Infinity written as null and a trailing newline.
"""
import json
import math
from enum import Enum
from typing import Any


def to_plain(value: Any) -> Any:
    """Convert records, enums, tuples and numpy scalars to JSON-compatible values."""
    if hasattr(value, "to_dict"):
        return to_plain(value.to_dict())
    if isinstance(value, Enum):
        return value.name
    if isinstance(value, dict):
        return {str(k): to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    if isinstance(value, bool) or value is None or isinstance(value, str):
        return value
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        return None if math.isnan(value) or math.isinf(value) else value
    if hasattr(value, "item"):  # numpy scalar
        return to_plain(value.item())
    return str(value)


def dumps_deterministic(value: Any) -> str:
    return json.dumps(to_plain(value), sort_keys=True, indent=2, ensure_ascii=False, allow_nan=False) + "\n"
