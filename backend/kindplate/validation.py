from __future__ import annotations

import re
from datetime import time
from typing import Any

from .errors import ValidationError
from .time_utils import parse_clock_time

INTEGER_RE = re.compile(r"-?[0-9]+")


def require_json() -> dict:
    from flask import request
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def get_int(data: dict, key: str, *, required: bool = True, positive: bool = True, default: Any = None):
    """
    Strict integer field: rejects bools, floats and numeric strings with junk.
    """
    value = data.get(key, default)
    if value is None:
        if required:
            raise ValidationError(f"{key} is required")
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    if isinstance(value, str):
        stripped = value.strip()
        if not INTEGER_RE.fullmatch(stripped):
            raise ValidationError(f"{key} must be an integer")
        value = int(stripped)
    if not isinstance(value, int):
        raise ValidationError(f"{key} must be an integer")
    if positive and value <= 0:
        raise ValidationError(f"{key} must be positive")
    return value


def get_clock_time(data: dict, key: str) -> time | None:
    raw = data.get(key)
    if raw is None or raw == "":
        return None
    if not isinstance(raw, str):
        raise ValidationError(f"{key} must be a HH:MM string")
    try:
        parsed = parse_clock_time(raw)
    except ValueError as exc:
        raise ValidationError(f"{key} must be a HH:MM string") from exc
    # Pickup windows are local clock times
    if parsed.tzinfo is not None:
        raise ValidationError(f"{key} must not carry a UTC offset")
    return parsed


def get_str(data: dict, key: str, *, max_length: int = 1000) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{key} must be at most {max_length} characters")
    return value


def get_number(data: dict, key: str) -> float | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{key} must be a number")
    return value
