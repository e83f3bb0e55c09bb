"""CORS allow-list decision for the proxy."""

from __future__ import annotations

from typing import NamedTuple

WEBVIEW_ORIGIN_PREFIX = "vscode-webview://"
ALLOWED_REMOTE_ORIGINS = frozenset(
    {
        "https://api2.cursor.sh",
        "https://api3.cursor.sh",
        "https://repo42.cursor.sh",
        "https://api4.cursor.sh",
        "https://us-asia.gcpp.cursor.sh",
        "https://us-eu.gcpp.cursor.sh",
        "https://us-only.gcpp.cursor.sh",
    }
)
DENIED_ORIGIN_VALUE = "null"

STATIC_CORS_HEADERS: dict[str, str] = {
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Max-Age": "86400",
    "Access-Control-Allow-Credentials": "true",
}


class CorsDecision(NamedTuple):
    allowed: bool
    allow_origin: str


def evaluate_origin(
    origin: str | None,
    allowed_origins: frozenset[str] = ALLOWED_REMOTE_ORIGINS,
    webview_prefix: str = WEBVIEW_ORIGIN_PREFIX,
) -> CorsDecision:
    if not origin:
        return CorsDecision(False, DENIED_ORIGIN_VALUE)
    if origin.startswith(webview_prefix) or origin in allowed_origins:
        return CorsDecision(True, origin)
    return CorsDecision(False, DENIED_ORIGIN_VALUE)


def cors_headers(decision: CorsDecision) -> dict[str, str]:
    return {"Access-Control-Allow-Origin": decision.allow_origin, **STATIC_CORS_HEADERS}
