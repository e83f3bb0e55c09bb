import json
import logging

import httpx
import pytest

from providerbridge.adapters.provider.client import ModelProvider, build_chat_completion_body
from providerbridge.core.errors import ErrorCode, ModelError
from providerbridge.core.models import BridgeConfiguration, ChatCompletionRequest, ChatMessage

_LOGGER = logging.getLogger("providerbridge-test.provider")


class StaticConfig:
    def __init__(self, provider_url: str = "http://provider.test/") -> None:
        self._config = BridgeConfiguration(provider_url=provider_url)

    def get_configuration(self) -> BridgeConfiguration:
        return self._config

    def reload(self) -> None:
        return None

    def on_configuration_changed(self, listener):
        return lambda: None


def _provider(handler, provider_url: str = "http://provider.test/") -> tuple[ModelProvider, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ModelProvider(StaticConfig(provider_url), _LOGGER, client=client), client


def _request(**overrides) -> ChatCompletionRequest:
    values = {"model": "llama-3", "messages": [ChatMessage(role="user", content="hello")]}
    values.update(overrides)
    return ChatCompletionRequest(**values)


@pytest.mark.asyncio
async def test_get_models_parses_data_list():
    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == "http://provider.test/v1/models"
        return httpx.Response(
            200,
            json={
                "object": "list",
                "data": [
                    {"id": "llama-3", "object": "model", "created": 1700000000, "owned_by": "local"},
                    {"id": "nomic-embed-text", "object": "model"},
                ],
            },
        )

    provider, client = _provider(handler)
    async with client:
        models = await provider.get_models()
    assert [m.id for m in models] == ["llama-3", "nomic-embed-text"]
    assert models[0].created_at == 1700000000
    assert models[0].owned_by == "local"


@pytest.mark.asyncio
async def test_get_models_returns_empty_list_on_any_failure():
    responses = iter(
        [
            httpx.Response(500, text="boom"),
            httpx.Response(200, text="not json"),
        ]
    )

    def handler(request: httpx.Request) -> httpx.Response:
        try:
            return next(responses)
        except StopIteration:
            raise httpx.ConnectError("refused", request=request)

    provider, client = _provider(handler)
    async with client:
        assert await provider.get_models() == []
        assert await provider.get_models() == []
        assert await provider.get_models() == []


@pytest.mark.asyncio
async def test_get_models_with_invalid_provider_url_returns_empty():
    provider, client = _provider(lambda request: httpx.Response(200, json={"data": []}), "ftp://provider.test")
    async with client:
        assert await provider.get_models() == []


@pytest.mark.asyncio
async def test_is_model_loaded():
    provider, client = _provider(lambda request: httpx.Response(200, json={"data": [{"id": "llama-3"}]}))
    async with client:
        assert await provider.is_model_loaded("llama-3") is True
        assert await provider.is_model_loaded("other") is False
        assert await provider.is_model_loaded("   ") is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"model": "  "},
        {"messages": []},
        {"messages": [ChatMessage(role="user", content="   ")]},
        {"temperature": 2.5},
        {"temperature": -0.1},
    ],
)
async def test_create_chat_completion_validation(overrides):
    provider, client = _provider(lambda request: httpx.Response(200))
    async with client:
        with pytest.raises(ModelError) as exc_info:
            await provider.create_chat_completion(_request(**overrides))
    assert exc_info.value.code is ErrorCode.MODEL_VALIDATION_ERROR


@pytest.mark.asyncio
async def test_create_chat_completion_streams_chunks_with_defaults():
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            content=(
                b'data: {"choices":[{"delta":{"content":"Hel"},"finish_reason":null}]}\n\n'
                b'data: {"choices":[{"delta":{"content":"lo"},"finish_reason":"stop"}]}\n\n'
                b"data: [DONE]\n\n"
            ),
            headers={"content-type": "text/event-stream"},
        )

    provider, client = _provider(handler)
    async with client:
        stream = await provider.create_chat_completion(_request(max_tokens=32))
        text = "".join([chunk.choices[0].delta.content or "" async for chunk in stream])

    assert text == "Hello"
    assert captured["url"] == "http://provider.test/v1/chat/completions"
    body = captured["body"]
    assert isinstance(body, dict)
    assert body["stream"] is True
    assert body["temperature"] == 0.7
    assert body["max_tokens"] == 32
    assert "top_p" not in body


@pytest.mark.asyncio
async def test_create_chat_completion_error_status_raises_request_error():
    provider, client = _provider(lambda request: httpx.Response(503, text="loading"))
    async with client:
        with pytest.raises(ModelError) as exc_info:
            await provider.create_chat_completion(_request())
    assert exc_info.value.code is ErrorCode.MODEL_REQUEST_ERROR
    assert "503" in exc_info.value.message


@pytest.mark.asyncio
async def test_create_chat_completion_connect_failure_raises_request_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    provider, client = _provider(handler)
    async with client:
        with pytest.raises(ModelError) as exc_info:
            await provider.create_chat_completion(_request())
    assert exc_info.value.code is ErrorCode.MODEL_REQUEST_ERROR
    assert isinstance(exc_info.value.cause, httpx.ConnectError)


@pytest.mark.asyncio
async def test_invalid_provider_url_raises_invalid_url():
    provider, client = _provider(lambda request: httpx.Response(200), "localhost:1234")
    async with client:
        with pytest.raises(ModelError) as exc_info:
            await provider.create_chat_completion(_request())
    assert exc_info.value.code is ErrorCode.INVALID_URL


def test_build_body_respects_explicit_values():
    body = build_chat_completion_body(_request(temperature=0.0, stream=False, top_p=0.9))
    assert body["temperature"] == 0.0
    assert body["stream"] is False
    assert body["top_p"] == 0.9
    assert body["messages"] == [{"role": "user", "content": "hello"}]
