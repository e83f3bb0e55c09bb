"""
Target URL construction, header filtering and streamed forwarding to the provider.
"""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack
from typing import AsyncGenerator, Mapping

import httpx
from fastapi.responses import Response, StreamingResponse

from providerbridge.adapters.proxy.responses import proxy_error_response

API_PREFIX = "/v1"
API_ENDPOINTS = ("/chat/completions", "/models", "/completions", "/embeddings")
BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
FORWARDED_REQUEST_HEADERS = ("content-type", "authorization", "user-agent")

_HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}


def create_upstream_client(
    timeout_seconds: float,
    max_connections: int = 100,
    max_keepalive_connections: int = 20,
) -> httpx.AsyncClient:
    timeout = float(timeout_seconds)
    return httpx.AsyncClient(
        follow_redirects=False,
        http2=False,
        timeout=httpx.Timeout(connect=timeout, read=timeout, write=timeout, pool=timeout),
        limits=httpx.Limits(
            max_connections=max(10, int(max_connections)),
            max_keepalive_connections=max(5, int(max_keepalive_connections)),
        ),
    )


def is_api_endpoint(path: str) -> bool:
    return any(path == endpoint or path.startswith(f"{endpoint}?") for endpoint in API_ENDPOINTS)


def build_target_url(provider_base: str, request_path: str) -> str:
    """Join the provider base with the request path (query included), inserting ``/v1`` for bare API paths."""
    path = request_path if request_path.startswith("/") else f"/{request_path}"
    if not path.startswith(API_PREFIX) and is_api_endpoint(path):
        path = f"{API_PREFIX}{path}"
    return f"{provider_base.rstrip('/')}{path}"


def build_forward_headers(headers: Mapping[str, str]) -> dict[str, str]:
    forwarded: dict[str, str] = {}
    for name in FORWARDED_REQUEST_HEADERS:
        value = headers.get(name)
        if value:
            forwarded["-".join(part.capitalize() for part in name.split("-"))] = value
    return forwarded


def build_client_response_headers(headers: httpx.Headers) -> dict[str, str]:
    # the relayed body is already decoded, so length and encoding no longer apply
    excluded = {"content-length", "content-encoding", *_HOP_BY_HOP_HEADERS}
    out: dict[str, str] = {}
    for key, value in headers.items():
        if key.lower() in excluded:
            continue
        out[key] = value
    return out


async def forward_streaming(
    *,
    client: httpx.AsyncClient,
    method: str,
    target_url: str,
    headers: Mapping[str, str],
    body: bytes | None,
    logger: logging.Logger,
) -> Response:
    """Forward one request and relay the upstream body without buffering; 502 when unreachable."""
    exit_stack = AsyncExitStack()
    try:
        upstream_response = await exit_stack.enter_async_context(
            client.stream(method, target_url, headers=dict(headers), content=body)
        )
    except httpx.HTTPError as exc:
        await exit_stack.aclose()
        detail = (str(exc) or "").strip() or "connection_failed_or_timeout"
        logger.warning("upstream unreachable target=%s error=%s", target_url, detail)
        return proxy_error_response(502, "Bad Gateway - Unable to reach provider")

    logger.debug("upstream connected target=%s status=%s", target_url, upstream_response.status_code)

    async def _iter_body() -> AsyncGenerator[bytes, None]:
        try:
            async for chunk in upstream_response.aiter_bytes():
                if chunk:
                    yield chunk
        except httpx.HTTPError as exc:
            detail = (str(exc) or "").strip() or "connection_failed_or_timeout"
            logger.warning("upstream stream interrupted target=%s error=%s", target_url, detail)
        finally:
            await exit_stack.aclose()

    return StreamingResponse(
        _iter_body(),
        status_code=upstream_response.status_code,
        headers=build_client_response_headers(upstream_response.headers),
    )
