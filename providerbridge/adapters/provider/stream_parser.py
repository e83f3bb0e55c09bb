"""
Incremental parser for the provider's ``data: {json}`` event stream.

The parser is pulled by the consumer: it only awaits the next network block
when no complete line is buffered, and it cannot be replayed once exhausted.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator

from pydantic import ValidationError

from providerbridge.core.errors import ErrorCode, ModelError
from providerbridge.core.models import ChatCompletionChunk

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


def extract_data_payload(line: str) -> str | None:
    """Return the JSON text carried by one event line, or None when the line carries none."""
    stripped = line.strip()
    if not stripped or not stripped.startswith(DATA_PREFIX):
        return None
    payload = stripped[len(DATA_PREFIX):].strip()
    if not payload or payload == DONE_SENTINEL:
        return None
    return payload


def _error_message(error: Any) -> str:
    if error is None:
        return "upstream_stream_error"
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message.strip():
            return message
        return json.dumps(error, ensure_ascii=False)[:600]
    return str(error)[:600] or "upstream_stream_error"


def parse_line(line: str, logger: logging.Logger) -> ChatCompletionChunk | None:
    payload = extract_data_payload(line)
    if payload is None:
        return None
    try:
        event = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("skipping malformed stream chunk payload=%s", payload[:200])
        return None
    if not isinstance(event, dict):
        logger.debug("skipping non-object stream chunk payload=%s", payload[:200])
        return None
    if "error" in event:
        raise ModelError(_error_message(event["error"]), code=ErrorCode.MODEL_STREAM_ERROR)
    try:
        return ChatCompletionChunk.model_validate(event)
    except ValidationError:
        logger.debug("skipping stream chunk with unexpected shape payload=%s", payload[:200])
        return None


async def parse_event_stream(
    blocks: AsyncIterable[bytes],
    logger: logging.Logger,
) -> AsyncIterator[ChatCompletionChunk]:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for block in blocks:
        if not block:
            continue
        buffer += decoder.decode(block)
        lines = buffer.split("\n")
        buffer = lines.pop()
        for line in lines:
            chunk = parse_line(line, logger)
            if chunk is None:
                continue
            yield chunk
            if chunk.is_final:
                logger.debug("stream finished finish_reason=%s", chunk.choices[0].finish_reason)
                return

    buffer += decoder.decode(b"", final=True)
    if buffer:
        chunk = parse_line(buffer, logger)
        if chunk is not None:
            yield chunk
    logger.debug("stream ended by upstream")
