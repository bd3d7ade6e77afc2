"""Redaction for DEBUG logs.

Every REST request carries the API key twice (``apikey`` header and bearer
token) and the broker config may hold a password; none of that should end
up in a log file.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from typing import Any

_SECRET_KEYS: frozenset[str] = frozenset(
    {
        "apikey",
        "api_key",
        "authorization",
        "password",
        "mqtt_password",
        "token",
        "access_token",
        "refresh_token",
        "cookie",
    }
)

# ``apikey=...`` in query strings, ``Bearer ...`` in free text.
_INLINE_SECRET = re.compile(r"(?i)(apikey=|api_key=|bearer\s+)[^\s&]+")

_MAX_DEPTH = 20


def _redact_text(text: str, max_string: int) -> str:
    text = _INLINE_SECRET.sub(lambda m: f"{m.group(1)}<redacted>", text)
    if len(text) > max_string:
        return f"{text[:max_string]}…<truncated>"
    return text


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Copy *value* with secrets masked and long strings shortened."""
    if _depth > _MAX_DEPTH:
        return "<max-depth>"
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return _redact_text(value, max_string)
    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"
    if isinstance(value, Mapping):
        return {
            str(key): "<redacted>"
            if str(key).lower() in _SECRET_KEYS
            else redact_for_log(item, max_string=max_string, _depth=_depth + 1)
            for key, item in value.items()
        }
    if isinstance(value, Sequence):
        return [redact_for_log(item, max_string=max_string, _depth=_depth + 1) for item in value]
    return repr(value)
