"""Value-masking helpers for log output."""

from __future__ import annotations

import re
from typing import Any

_SENSITIVE_KEYS = frozenset(
    {
        "password",
        "token",
        "auth",
        "secret",
        "key",
        "credential",
        "authorization",
        "authtoken",
        "tunnel_auth_token",
        "apikey",
        "api_key",
        "access_token",
        "refresh_token",
        "private_key",
    }
)
_TOKEN_ASSIGNMENT_RE = re.compile(r"(?i)\b((?:auth)?token)(\s*[=:]\s*)([^\s,;'\"}]+)")
_BEARER_RE = re.compile(r"(?i)\b(bearer\s+)([A-Za-z0-9._~+/=-]+)")


def mask_for_log(value: str) -> str:
    """Return a partially-masked version of *value* safe for log output.

    Values of 10+ chars keep the first 3 and last 2 characters; shorter values
    keep progressively fewer.
    """
    normalized = re.sub(r"\s+", " ", value).strip()
    length = len(normalized)
    if length <= 0:
        return ""
    if length == 1:
        return "*"
    if length <= 4:
        return f"{normalized[:1]}{'*' * (length - 2)}{normalized[-1:]}"

    head = 3 if length >= 10 else 2
    tail = 2
    if head + tail >= length:
        head, tail = 1, 1
    return f"{normalized[:head]}{'*' * (length - head - tail)}{normalized[-tail:]}"


def redact_text(text: str) -> str:
    text = _TOKEN_ASSIGNMENT_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}[REDACTED]", text)
    return _BEARER_RE.sub(lambda m: f"{m.group(1)}[REDACTED]", text)


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return lowered in _SENSITIVE_KEYS or "password" in lowered or "token" in lowered


def redact_mapping(value: Any, depth: int = 0) -> Any:
    """Copy *value* replacing sensitive keys with ``[REDACTED]`` (empty values kept)."""
    if depth > 10:
        return "[max depth]"
    if isinstance(value, dict):
        out: dict[Any, Any] = {}
        for key, item in value.items():
            if isinstance(key, str) and _is_sensitive_key(key):
                out[key] = "[REDACTED]" if item else item
            else:
                out[key] = redact_mapping(item, depth + 1)
        return out
    if isinstance(value, (list, tuple)):
        return [redact_mapping(item, depth + 1) for item in value]
    if isinstance(value, str):
        return redact_text(value)
    return value
