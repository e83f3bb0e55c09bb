"""Upstream client for the local inference provider."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator
from urllib.parse import urlparse

import httpx

from providerbridge.adapters.provider.stream_parser import parse_event_stream
from providerbridge.config.manager import ConfigurationProvider
from providerbridge.config.settings import settings
from providerbridge.core.errors import ErrorCode, ModelError
from providerbridge.core.models import ChatCompletionChunk, ChatCompletionRequest, ModelInfo

DEFAULT_TEMPERATURE = 0.7


def _validate_url(url: str) -> None:
    try:
        parsed = urlparse(url)
    except ValueError as exc:
        raise ModelError(f"Invalid URL: {url}", exc, code=ErrorCode.INVALID_URL) from exc
    if parsed.scheme not in {"http", "https"}:
        raise ModelError(f"Unsupported URL scheme: {parsed.scheme or '<none>'}", code=ErrorCode.INVALID_URL)
    if not parsed.netloc:
        raise ModelError(f"Invalid URL: {url}", code=ErrorCode.INVALID_URL)


def validate_chat_completion_request(request: ChatCompletionRequest) -> None:
    if not request.model.strip():
        raise ModelError("Model is required for chat completion", code=ErrorCode.MODEL_VALIDATION_ERROR)
    if not request.messages:
        raise ModelError("Messages array is required and cannot be empty", code=ErrorCode.MODEL_VALIDATION_ERROR)
    for message in request.messages:
        if not message.role or not message.content.strip():
            raise ModelError("Each message must have a role and content", code=ErrorCode.MODEL_VALIDATION_ERROR)
    if request.temperature is not None and not 0 <= request.temperature <= 2:
        raise ModelError("Temperature must be between 0 and 2", code=ErrorCode.MODEL_VALIDATION_ERROR)


def build_chat_completion_body(request: ChatCompletionRequest) -> dict[str, Any]:
    body: dict[str, Any] = {
        "model": request.model,
        "messages": [message.model_dump() for message in request.messages],
        "temperature": DEFAULT_TEMPERATURE if request.temperature is None else request.temperature,
        "stream": True if request.stream is None else request.stream,
    }
    for key in ("max_tokens", "top_p", "frequency_penalty", "presence_penalty"):
        value = getattr(request, key)
        if value is not None:
            body[key] = value
    return body


class ModelProvider:
    """Lists provider models and streams chat completions.

    An ``httpx.AsyncClient`` may be injected (tests, shared pools); otherwise a
    client is opened per call and closed when that call's work is done.
    """

    def __init__(
        self,
        config_provider: ConfigurationProvider,
        logger: logging.Logger,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._config_provider = config_provider
        self._logger = logger.getChild("provider")
        self._client = client
        timeout = float(timeout_seconds if timeout_seconds is not None else settings.upstream_timeout_seconds)
        self._timeout = httpx.Timeout(connect=timeout, read=timeout, write=timeout, pool=timeout)

    def _endpoint(self, path: str) -> str:
        base = self._config_provider.get_configuration().provider_base_url
        url = f"{base}{path}"
        _validate_url(url)
        return url

    def _open_client(self) -> tuple[httpx.AsyncClient, bool]:
        if self._client is not None:
            return self._client, False
        return httpx.AsyncClient(timeout=self._timeout, follow_redirects=False), True

    async def get_models(self) -> list[ModelInfo]:
        try:
            url = self._endpoint("/v1/models")
            client, owned = self._open_client()
            try:
                response = await client.get(url, headers={"Content-Type": "application/json"}, timeout=self._timeout)
            finally:
                if owned:
                    await client.aclose()
            if response.status_code >= 400:
                raise ModelError(f"Failed to fetch models: {response.status_code} {response.reason_phrase}")
            data = response.json()
            raw_models = data.get("data") if isinstance(data, dict) else None
            models = [ModelInfo.model_validate(item) for item in raw_models or []]
        except Exception as exc:
            self._logger.warning("failed to fetch models from provider, returning empty list: %s", exc)
            return []
        self._logger.debug("retrieved %d models from provider", len(models))
        return models

    async def is_model_loaded(self, model_id: str) -> bool:
        if not model_id.strip():
            return False
        try:
            models = await self.get_models()
            loaded = any(model.id == model_id for model in models)
        except Exception:
            self._logger.exception("failed to check whether model %s is loaded", model_id)
            return False
        self._logger.debug("model %s loaded=%s", model_id, loaded)
        return loaded

    async def create_chat_completion(self, request: ChatCompletionRequest) -> AsyncIterator[ChatCompletionChunk]:
        validate_chat_completion_request(request)
        url = self._endpoint("/v1/chat/completions")
        body = json.dumps(build_chat_completion_body(request), ensure_ascii=False).encode("utf-8")

        client, owned = self._open_client()
        try:
            outgoing = client.build_request(
                "POST",
                url,
                content=body,
                headers={"Content-Type": "application/json"},
                timeout=self._timeout,
            )
            response = await client.send(outgoing, stream=True)
        except httpx.HTTPError as exc:
            if owned:
                await client.aclose()
            detail = (str(exc) or "").strip() or "connection_failed_or_timeout"
            raise ModelError(f"Chat completion request failed: {detail}", exc) from exc

        if response.status_code >= 400:
            await response.aclose()
            if owned:
                await client.aclose()
            raise ModelError(f"Chat completion request failed: {response.status_code} {response.reason_phrase}")

        self._logger.debug(
            "starting chat completion stream model=%s messages=%d",
            request.model,
            len(request.messages),
        )
        return self._iterate(response, client if owned else None)

    async def _iterate(
        self,
        response: httpx.Response,
        owned_client: httpx.AsyncClient | None,
    ) -> AsyncIterator[ChatCompletionChunk]:
        try:
            async for chunk in parse_event_stream(response.aiter_bytes(), self._logger):
                yield chunk
        except httpx.HTTPError as exc:
            self._logger.error("streaming response error: %s", exc)
            raise ModelError("Stream reading error", exc, code=ErrorCode.MODEL_STREAM_ERROR) from exc
        finally:
            await response.aclose()
            if owned_client is not None:
                await owned_client.aclose()
