"""Helpers for safe debug logging.

syncprobe handles many tenant access tokens and dumps raw store payloads at
DEBUG level.  This module masks tokens and redacts sensitive fields before
they reach a log line.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

_SENSITIVE_VALUE_KEYS: frozenset[str] = frozenset(
    {
        "auth",
        "access_token",
        "accesstoken",
        "token",
        "authorization",
        "cookie",
        "mastertoken",
        "usertokens",
    }
)

_MASK_EDGE = 5


def mask_token(token: str) -> str:
    """Return ``first5...last5`` for *token*, or ``<redacted>`` when too short."""
    if len(token) <= 2 * _MASK_EDGE:
        return "<redacted>"
    return f"{token[:_MASK_EDGE]}...{token[-_MASK_EDGE:]}"


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Return a redacted copy of *value* suitable for debug logs."""
    if _depth > 20:
        return "<max-depth>"

    if value is None:
        return None

    if isinstance(value, str):
        if len(value) > max_string:
            return f"{value[:max_string]}…<truncated>"
        return value

    if isinstance(value, (int, float, bool)):
        return value

    if isinstance(value, bytes):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, Mapping):
        redacted: dict[str, Any] = {}
        for k, v in value.items():
            key = str(k)
            if key.lower() in _SENSITIVE_VALUE_KEYS:
                redacted[key] = "<redacted>"
            else:
                redacted[key] = redact_for_log(v, max_string=max_string, _depth=_depth + 1)
        return redacted

    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [redact_for_log(v, max_string=max_string, _depth=_depth + 1) for v in value]

    return repr(value)


def redact_url(url: str) -> str:
    """Strip the ``auth`` query value from a store URL."""
    base, sep, query = url.partition("?")
    if not sep:
        return url
    parts = []
    for item in query.split("&"):
        key, eq, _value = item.partition("=")
        parts.append(f"{key}=<redacted>" if key == "auth" and eq else item)
    return f"{base}?{'&'.join(parts)}"
