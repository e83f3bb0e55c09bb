"""Proxy routes: validated chat completions and a generic pass-through."""

from __future__ import annotations

import json
import logging
from typing import Any, Sequence

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import Response

from providerbridge.adapters.provider.client import ModelProvider
from providerbridge.adapters.proxy.responses import proxy_error_response
from providerbridge.adapters.proxy.upstream import (
    BODY_METHODS,
    build_forward_headers,
    build_target_url,
    forward_streaming,
)
from providerbridge.config.manager import ConfigurationProvider
from providerbridge.core.errors import ModelError
from providerbridge.core.models import ModelInfo

router = APIRouter()

CHAT_COMPLETION_PATHS = ("/chat/completions", "/v1/chat/completions")
# Remote callers send this exact test prompt before a real model id is configured.
CONNECTIVITY_TEST_SENTINEL = "Test prompt using gpt-3.5-turbo"
_ALL_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "TRACE")


def _config_provider(request: Request) -> ConfigurationProvider:
    return request.app.state.config_provider


def _model_provider(request: Request) -> ModelProvider:
    return request.app.state.model_provider


def _upstream_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.upstream_client


def _logger(request: Request) -> logging.Logger:
    return request.app.state.logger


def is_connectivity_test(payload: dict[str, Any]) -> bool:
    messages = payload.get("messages")
    if not isinstance(messages, list) or len(messages) < 2:
        return False
    second = messages[1]
    return isinstance(second, dict) and second.get("content") == CONNECTIVITY_TEST_SENTINEL


def select_chat_model(models: Sequence[ModelInfo]) -> ModelInfo | None:
    return next((model for model in models if "embed" not in model.id.lower()), None)


def _validate_chat_payload(body: bytes) -> tuple[dict[str, Any] | None, str]:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None, "Invalid JSON in request body"
    if not isinstance(payload, dict):
        return None, "Invalid JSON in request body"
    model = payload.get("model")
    if not isinstance(model, str) or not model.strip():
        return None, "Model field is required"
    messages = payload.get("messages")
    if not isinstance(messages, list) or not messages:
        return None, "Messages field is required and must be a non-empty array"
    return payload, ""


@router.post(CHAT_COMPLETION_PATHS[0])
@router.post(CHAT_COMPLETION_PATHS[1])
async def chat_completions(request: Request) -> Response:
    logger = _logger(request)
    body = await request.body()
    payload, error = _validate_chat_payload(body)
    if payload is None:
        logger.debug("chat completion rejected reason=%s", error)
        return proxy_error_response(400, error)

    try:
        if is_connectivity_test(payload):
            models = await _model_provider(request).get_models()
            selected = select_chat_model(models)
            if selected is None:
                logger.warning("connectivity test received but no chat model is available")
                return proxy_error_response(503, "No suitable models available from provider")
            logger.info("connectivity test model=%s -> %s", payload.get("model"), selected.id)
            body = json.dumps({**payload, "model": selected.id}, ensure_ascii=False).encode("utf-8")

        base = _config_provider(request).get_configuration().provider_base_url
        return await forward_streaming(
            client=_upstream_client(request),
            method="POST",
            target_url=f"{base}/v1/chat/completions",
            headers=build_forward_headers(request.headers),
            body=body,
            logger=logger,
        )
    except Exception as exc:
        logger.exception("chat completions handler failed")
        message = exc.message if isinstance(exc, ModelError) else "Internal server error"
        return proxy_error_response(500, message)


def _raw_request_path(request: Request) -> str:
    # keep percent-encoded segments exactly as the client sent them
    raw = request.scope.get("raw_path")
    path = raw.split(b"?", 1)[0].decode("latin-1") if raw else request.url.path
    query = request.scope.get("query_string", b"").decode("latin-1")
    return f"{path}?{query}" if query else path


@router.api_route("/{proxy_path:path}", methods=list(_ALL_METHODS))
async def forward_request(request: Request, proxy_path: str = "") -> Response:
    del proxy_path
    logger = _logger(request)
    raw_path = _raw_request_path(request)

    try:
        base = _config_provider(request).get_configuration().provider_base_url
        target_url = build_target_url(base, raw_path)
        body = await request.body() if request.method.upper() in BODY_METHODS else None
        return await forward_streaming(
            client=_upstream_client(request),
            method=request.method,
            target_url=target_url,
            headers=build_forward_headers(request.headers),
            body=body,
            logger=logger,
        )
    except Exception:
        logger.exception("forward handler failed method=%s path=%s", request.method, raw_path)
        return proxy_error_response(500, "Internal Server Error")
