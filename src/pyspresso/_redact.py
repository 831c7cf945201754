"""Helpers for safe debug logging of queued records.

Queued records carry the project token, the identifiers of the device and
user, and whatever the application put in its properties.  Records are
passed through :func:`redact_for_log` before they reach a log line.
Secrets and contact details are replaced by ``<redacted>``.  Identifiers
keep a short prefix so log lines can still be correlated.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

REDACTED = "<redacted>"

_SECRET_KEYS: frozenset[str] = frozenset(
    {
        "token",
        "$token",
        "password",
        "authorization",
        "cookie",
        "$email",
        "email",
        "$phone",
        "phone",
    }
)

_IDENTIFIER_KEYS: frozenset[str] = frozenset(
    {
        "$distinct_id",
        "distinct_id",
        "userid",
        "deviceid",
        "sessionid",
        "push_id",
        "$android_devices",
    }
)

_IDENTIFIER_PREFIX = 4
_MAX_DEPTH = 20


def mask_identifier(value: Any) -> Any:
    """Keep the first few characters of an id, hide the rest."""
    if isinstance(value, str):
        if len(value) <= _IDENTIFIER_PREFIX * 2:
            return "***"
        return f"{value[:_IDENTIFIER_PREFIX]}***"
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [mask_identifier(v) for v in value]
    if value is None:
        return None
    return "***"


def redact_for_log(value: Any, *, max_string: int = 256) -> Any:
    """Return a copy of *value* that is safe to put in a debug log."""
    return _redact(value, max_string, 0)


def _redact(value: Any, max_string: int, depth: int) -> Any:
    if depth > _MAX_DEPTH:
        return "<max-depth>"
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return value if len(value) <= max_string else f"{value[:max_string]}...<truncated>"
    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"
    if isinstance(value, Mapping):
        return {str(k): _redact_entry(str(k), v, max_string, depth) for k, v in value.items()}
    if isinstance(value, Sequence):
        return [_redact(v, max_string, depth + 1) for v in value]
    return repr(value)


def _redact_entry(key: str, value: Any, max_string: int, depth: int) -> Any:
    lowered = key.lower()
    if lowered in _SECRET_KEYS:
        return REDACTED
    if lowered in _IDENTIFIER_KEYS:
        return mask_identifier(value)
    return _redact(value, max_string, depth + 1)
