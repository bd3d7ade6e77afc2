"""Normalization helpers.

Centralizes lenient parsing of wire rows so the reducer only ever sees
typed values.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Any

# Threshold to distinguish seconds from milliseconds.
MS_EPOCH_THRESHOLD = 1e11


def safe_float(value: Any) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def safe_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def safe_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "t", "1", "yes"}:
            return True
        if normalized in {"false", "f", "0", "no"}:
            return False
    return None


def normalize_timestamp_seconds(value: Any) -> float | None:
    """Normalize wire timestamps to epoch seconds.

    - Empty/missing -> None
    - ISO-8601 strings (``2026-01-01T10:00:00+00:00``, trailing ``Z``) -> seconds
    - naive datetimes are taken as UTC
    - <= 0 -> None
    - Milliseconds (> 1e11) -> seconds
    """

    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return dt.timestamp()
    if isinstance(value, str):
        text = value.strip()
        number = safe_float(text)
        if number is None:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            return normalize_timestamp_seconds(parsed)
        value = number
    ts = safe_float(value)
    if ts is None or ts <= 0:
        return None
    if ts > MS_EPOCH_THRESHOLD:
        ts /= 1000.0
    return ts


def is_meaningful(value: Any) -> bool:
    """Return True if the value should be included in a change payload."""

    if value is None:
        return False
    if value == "":
        return False
    return not (isinstance(value, dict) and not value)


def prune_patch(data: dict[str, Any]) -> dict[str, Any]:
    """Drop non-meaningful values from a flat payload.

    Missing keys mean "no update"; the reducer's merge semantics rely on it.
    """

    return {key: value for key, value in data.items() if is_meaningful(value)}
