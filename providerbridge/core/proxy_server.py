"""Loopback listener that serves the proxy app in-process."""

from __future__ import annotations

import asyncio
import contextlib
import errno
import logging
import socket
from collections.abc import Iterator

import httpx
import uvicorn

from providerbridge.adapters.provider.client import ModelProvider
from providerbridge.adapters.proxy.app import create_proxy_app
from providerbridge.adapters.proxy.upstream import create_upstream_client
from providerbridge.config.manager import ConfigurationProvider
from providerbridge.config.settings import settings
from providerbridge.core.errors import BridgeError, ErrorCode

_STARTUP_POLL_SECONDS = 0.01
_STARTUP_TIMEOUT_SECONDS = 10.0
_GRACEFUL_SHUTDOWN_SECONDS = 3


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the host."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    def install_signal_handlers(self) -> None:
        return None


def _bind_socket(host: str, port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(128)
    except OSError:
        sock.close()
        raise
    return sock


def is_port_in_use(host: str, port: int) -> bool:
    """Throwaway bind; only address-in-use counts as occupied."""
    try:
        sock = _bind_socket(host, port)
    except OSError as exc:
        return exc.errno == errno.EADDRINUSE
    sock.close()
    return False


class ProxyServer:
    def __init__(
        self,
        config_provider: ConfigurationProvider,
        model_provider: ModelProvider,
        logger: logging.Logger,
        *,
        host: str | None = None,
        port: int | None = None,
        upstream_timeout_seconds: float | None = None,
    ) -> None:
        self._config_provider = config_provider
        self._model_provider = model_provider
        self._logger = logger.getChild("proxy")
        self._host = host or settings.proxy_host
        self._port = int(port if port is not None else settings.proxy_port)
        self._upstream_timeout = float(
            upstream_timeout_seconds if upstream_timeout_seconds is not None else settings.upstream_timeout_seconds
        )
        self._server: _EmbeddedServer | None = None
        self._task: asyncio.Task | None = None
        self._socket: socket.socket | None = None
        self._upstream_client: httpx.AsyncClient | None = None

    @property
    def port(self) -> int:
        return self._port

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> int:
        if self.is_running():
            raise BridgeError("Proxy server is already running", ErrorCode.SERVER_ALREADY_RUNNING)
        if self._task is not None:
            # listener task died on its own; release what it left behind
            await self._release()

        if is_port_in_use(self._host, self._port):
            raise BridgeError(
                f"Port {self._port} is already in use. Stop any other application using this port and retry.",
                ErrorCode.PORT_IN_USE,
            )

        try:
            self._socket = _bind_socket(self._host, self._port)
        except OSError as exc:
            if exc.errno == errno.EADDRINUSE:
                raise BridgeError(f"Port {self._port} is already in use", ErrorCode.PORT_IN_USE, exc) from exc
            raise BridgeError("Failed to start proxy server", ErrorCode.SERVER_START_ERROR, exc) from exc

        self._upstream_client = create_upstream_client(
            self._upstream_timeout,
            max_connections=settings.upstream_max_connections,
            max_keepalive_connections=settings.upstream_max_keepalive_connections,
        )
        app = create_proxy_app(
            config_provider=self._config_provider,
            model_provider=self._model_provider,
            upstream_client=self._upstream_client,
            logger=self._logger,
            title=settings.app_name,
        )
        config = uvicorn.Config(
            app,
            host=self._host,
            port=self._port,
            log_config=None,
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=_GRACEFUL_SHUTDOWN_SECONDS,
        )
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(
            self._server.serve(sockets=[self._socket]),
            name="providerbridge-proxy-server",
        )

        try:
            await asyncio.wait_for(self._wait_started(), timeout=_STARTUP_TIMEOUT_SECONDS)
        except BaseException as exc:
            await self._release()
            if isinstance(exc, asyncio.CancelledError):
                raise
            raise BridgeError("Failed to start proxy server", ErrorCode.SERVER_START_ERROR, exc) from exc

        self._logger.info("proxy server listening on http://%s:%s", self._host, self._port)
        return self._port

    async def _wait_started(self) -> None:
        assert self._server is not None and self._task is not None
        while not self._server.started:
            if self._task.done():
                exc = self._task.exception()
                raise exc or RuntimeError("proxy server exited during startup")
            await asyncio.sleep(_STARTUP_POLL_SECONDS)

    async def stop(self) -> None:
        if not self.is_running():
            if self._task is not None or self._socket is not None:
                await self._release()
            return
        assert self._server is not None and self._task is not None
        self._server.should_exit = True
        try:
            await self._task
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.error("error stopping proxy server: %s", exc)
            raise BridgeError("Failed to stop proxy server", ErrorCode.SERVER_STOP_ERROR, exc) from exc
        finally:
            await self._release()
        self._logger.info("proxy server stopped")

    async def _release(self) -> None:
        task = self._task
        self._task = None
        self._server = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        elif task is not None and not task.cancelled():
            # retrieve so a crashed listener does not log "exception never retrieved"
            task.exception()
        if self._socket is not None:
            self._socket.close()
            self._socket = None
        if self._upstream_client is not None:
            client = self._upstream_client
            self._upstream_client = None
            await client.aclose()
