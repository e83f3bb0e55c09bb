"""Tunnel provisioning contract and the ngrok-backed implementation."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Protocol

import ngrok

from providerbridge.core.errors import ErrorCode, TunnelError
from providerbridge.core.models import TunnelHandle
from providerbridge.util.masking import redact_mapping


class TunnelProvisioner(Protocol):
    async def forward(self, options: dict[str, Any]) -> TunnelHandle: ...


class NgrokTunnel:
    """Adapts an ngrok listener to the ``TunnelHandle`` contract."""

    def __init__(self, listener: Any) -> None:
        self._listener = listener

    def url(self) -> str | None:
        return self._listener.url()

    async def close(self) -> None:
        result = self._listener.close()
        if inspect.isawaitable(result):
            await result


class NgrokProvisioner:
    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger.getChild("tunnel")
        self._abandoned: set[asyncio.Task] = set()

    async def forward(self, options: dict[str, Any]) -> TunnelHandle:
        self._logger.debug("creating ngrok tunnel options=%s", redact_mapping(options))
        # the SDK call blocks while the session handshakes, so it runs off the event loop
        pending = asyncio.ensure_future(asyncio.to_thread(ngrok.forward, **options))
        try:
            listener = await asyncio.shield(pending)
        except asyncio.CancelledError:
            # the worker thread cannot be interrupted; whatever it creates must not outlive the caller
            pending.add_done_callback(self._close_abandoned)
            raise
        tunnel = NgrokTunnel(listener)
        if not tunnel.url():
            await tunnel.close()
            raise TunnelError("Tunnel created but no URL received", code=ErrorCode.TUNNEL_NO_URL)
        return tunnel

    def _close_abandoned(self, pending: asyncio.Future) -> None:
        if pending.cancelled() or pending.exception() is not None:
            return
        self._logger.warning("closing ngrok tunnel created after its start was cancelled")
        task = pending.get_loop().create_task(NgrokTunnel(pending.result()).close())
        self._abandoned.add(task)
        task.add_done_callback(self._on_abandoned_closed)

    def _on_abandoned_closed(self, task: asyncio.Task) -> None:
        self._abandoned.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._logger.error("error closing abandoned ngrok tunnel: %s", task.exception())
