"""
Lifecycle of the bridge: the local proxy listener plus one public tunnel.

``TunnelManager`` exclusively owns the ``ProxyServer`` instance and the tunnel
handle. Status moves through Stopped -> Starting -> Running | Error and is only
changed by the methods below.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_incrementing

from providerbridge.config.manager import ConfigurationProvider
from providerbridge.config.settings import settings
from providerbridge.core.errors import BridgeError, ErrorCode, TunnelError
from providerbridge.core.models import (
    BridgeConfiguration,
    TunnelHandle,
    TunnelStartResult,
    TunnelStatus,
    tunnel_options,
)
from providerbridge.core.proxy_server import ProxyServer
from providerbridge.core.tunnel import TunnelProvisioner


class TunnelState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


def _describe(exc: BaseException) -> str:
    return str(exc).strip() or type(exc).__name__


def _is_port_conflict(exc: BaseException) -> bool:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, BridgeError) and current.code in {
            ErrorCode.PORT_IN_USE,
            ErrorCode.TUNNEL_PORT_CONFLICT,
        }:
            return True
        current = current.__cause__ or current.__context__
    return False


class TunnelManager:
    def __init__(
        self,
        config_provider: ConfigurationProvider,
        proxy_server: ProxyServer,
        provisioner: TunnelProvisioner,
        logger: logging.Logger,
        *,
        start_timeout_seconds: float | None = None,
        stop_timeout_seconds: float | None = None,
        start_attempts: int | None = None,
        retry_wait_seconds: float | None = None,
        restart_settle_seconds: float | None = None,
    ) -> None:
        self._config_provider = config_provider
        self._proxy = proxy_server
        self._provisioner = provisioner
        self._logger = logger.getChild("tunnel_manager")
        self._start_timeout = float(start_timeout_seconds or settings.tunnel_start_timeout_seconds)
        self._stop_timeout = float(stop_timeout_seconds or settings.tunnel_stop_timeout_seconds)
        self._start_attempts = max(1, int(start_attempts or settings.tunnel_start_attempts))
        self._retry_wait = float(
            retry_wait_seconds if retry_wait_seconds is not None else settings.tunnel_retry_wait_seconds
        )
        self._restart_settle = float(
            restart_settle_seconds if restart_settle_seconds is not None else settings.restart_settle_seconds
        )

        self._tunnel: TunnelHandle | None = None
        self._status = TunnelStatus()
        self._start_task: asyncio.Task | None = None
        self._aborted_task: asyncio.Task | None = None

    @property
    def state(self) -> TunnelState:
        if self._status.is_starting:
            return TunnelState.STARTING
        if self._status.is_running:
            return TunnelState.RUNNING
        if self._status.error:
            return TunnelState.ERROR
        return TunnelState.STOPPED

    def get_status(self) -> TunnelStatus:
        return self._status.model_copy()

    async def start(self) -> None:
        if self._status.is_running or self._status.is_starting:
            self._logger.warning("start ignored: tunnel is already %s", self.state.value)
            return

        self._status = TunnelStatus(is_starting=True, error=self._status.error)
        task = asyncio.create_task(self._start_sequence(), name="providerbridge-tunnel-start")
        self._start_task = task
        try:
            result = await task
        except asyncio.CancelledError:
            if self._start_task is task:
                self._start_task = None
            if self._aborted_task is task:
                self._aborted_task = None
                raise TunnelError("Tunnel start was aborted by stop", code=ErrorCode.TUNNEL_START_ERROR)
            await self._stop_proxy_quietly("cancelled start")
            self._status = TunnelStatus()
            raise
        except Exception as exc:
            if self._start_task is task:
                self._start_task = None
            await self._stop_proxy_quietly("failed start")
            self._status = TunnelStatus(error=_describe(exc))
            raise self._start_error(exc) from exc

        self._start_task = None
        self._tunnel = result.tunnel
        self._status = TunnelStatus(is_running=True, url=result.url)
        self._logger.info(
            "tunnel started url=%s proxy_port=%s",
            result.url,
            result.proxy_port,
        )

    def _start_error(self, exc: BaseException) -> TunnelError:
        if _is_port_conflict(exc):
            self._logger.error("port conflict detected: %s", _describe(exc))
            return TunnelError(
                f"Port {self._proxy.port} is already in use. Stop any other application using this port and retry.",
                exc,
                code=ErrorCode.TUNNEL_PORT_CONFLICT,
            )
        self._logger.error("failed to start tunnel: %s", _describe(exc))
        return TunnelError(f"Failed to start tunnel: {_describe(exc)}", exc, code=ErrorCode.TUNNEL_START_ERROR)

    async def _start_sequence(self) -> TunnelStartResult:
        await self._stop_proxy_quietly("stale proxy")
        config = self._config_provider.get_configuration()
        self._logger.info(
            "starting proxy server and tunnel provider=%s region=%s has_domain=%s has_auth_token=%s",
            config.provider_url,
            config.tunnel_region,
            bool(config.tunnel_domain.strip()),
            bool(config.tunnel_auth_token.strip()),
        )
        try:
            return await asyncio.wait_for(self._start_with_retry(config), timeout=self._start_timeout)
        except asyncio.TimeoutError as exc:
            raise TunnelError(
                f"Tunnel start timed out after {self._start_timeout:g}s",
                exc,
                code=ErrorCode.TUNNEL_START_ERROR,
            ) from exc

    async def _start_with_retry(self, config: BridgeConfiguration) -> TunnelStartResult:
        def _log_retry(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            error = outcome.exception() if outcome is not None else None
            self._logger.warning(
                "tunnel start attempt %d/%d failed: %s",
                retry_state.attempt_number,
                self._start_attempts,
                _describe(error) if error is not None else "unknown",
            )

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._start_attempts),
            wait=wait_incrementing(start=self._retry_wait, increment=self._retry_wait),
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                return await self._attempt_start(config)
        raise TunnelError("Tunnel start made no attempts", code=ErrorCode.TUNNEL_START_ERROR)

    async def _attempt_start(self, config: BridgeConfiguration) -> TunnelStartResult:
        port = await self._proxy.start()
        handle: TunnelHandle | None = None
        try:
            options = tunnel_options(config, port)
            handle = await self._provisioner.forward(options)
            url = handle.url()
            if not url:
                raise TunnelError("Tunnel created but no URL received", code=ErrorCode.TUNNEL_NO_URL)
            self._logger.debug("tunnel created url=%s forwarding_to=%s", url, options["addr"])
            return TunnelStartResult(tunnel=handle, url=url, proxy_port=port)
        except BaseException:
            # a failed or cancelled attempt must not leave a bound port or an open tunnel behind
            if handle is not None:
                await self._close_tunnel_quietly(handle, "failed attempt")
            await self._stop_proxy_quietly("failed attempt")
            raise

    async def stop(self) -> None:
        aborted = await self._abort_start()
        if self._tunnel is None and not self._proxy.is_running():
            if aborted:
                self._status = TunnelStatus()
            return

        tunnel_exc, proxy_exc = await self._shutdown_legs()
        if proxy_exc is not None:
            self._logger.error("error stopping proxy server: %s", _describe(proxy_exc))
        if tunnel_exc is not None:
            self._logger.error("error closing tunnel: %s", _describe(tunnel_exc))
            raise TunnelError("Failed to close tunnel cleanly", tunnel_exc, code=ErrorCode.TUNNEL_STOP_ERROR)
        self._logger.info("bridge stopped")

    async def _shutdown_legs(self) -> tuple[BaseException | None, BaseException | None]:
        """Close the tunnel and stop the proxy concurrently; always ends Stopped."""
        tunnel = self._tunnel
        legs = []
        if tunnel is not None:
            legs.append(asyncio.wait_for(tunnel.close(), timeout=self._stop_timeout))
        if self._proxy.is_running():
            legs.append(self._proxy.stop())
        try:
            results = await asyncio.gather(*legs, return_exceptions=True)
        finally:
            self._tunnel = None
            self._status = TunnelStatus()

        tunnel_exc: BaseException | None = None
        proxy_exc: BaseException | None = None
        index = 0
        if tunnel is not None:
            tunnel_exc = results[0] if isinstance(results[0], BaseException) else None
            index = 1
        if len(results) > index and isinstance(results[index], BaseException):
            proxy_exc = results[index]
        for exc in (tunnel_exc, proxy_exc):
            if isinstance(exc, asyncio.CancelledError):
                raise exc
        return tunnel_exc, proxy_exc

    async def restart(self) -> None:
        try:
            await self._abort_start()
            previous_tunnel = self._tunnel
            tunnel_exc, proxy_exc = await self._shutdown_legs()
            if tunnel_exc is not None and proxy_exc is not None:
                self._logger.error(
                    "graceful stop failed on both legs tunnel=%s proxy=%s; forcing cleanup",
                    _describe(tunnel_exc),
                    _describe(proxy_exc),
                )
                await self._force_release(previous_tunnel)
            elif proxy_exc is not None:
                self._logger.warning("proxy stop failed during restart, continuing: %s", _describe(proxy_exc))
            if tunnel_exc is not None:
                # an unconfirmed tunnel close may still hold the public endpoint
                raise TunnelError("Failed to close tunnel during restart", tunnel_exc, code=ErrorCode.TUNNEL_STOP_ERROR)

            await asyncio.sleep(self._restart_settle)
            await self.start()
        except Exception as exc:
            self._logger.error("failed to restart tunnel: %s", _describe(exc))
            raise TunnelError("Failed to restart tunnel", exc, code=ErrorCode.TUNNEL_RESTART_ERROR) from exc

    async def force_cleanup(self) -> None:
        await self._abort_start()
        await self._force_release()
        self._logger.info("forced cleanup finished")

    async def _force_release(self, tunnel: TunnelHandle | None = None) -> None:
        tunnel = tunnel or self._tunnel
        self._tunnel = None
        await self._stop_proxy_quietly("force cleanup")
        if tunnel is not None:
            await self._close_tunnel_quietly(tunnel, "force cleanup")
        self._status = TunnelStatus()

    async def dispose(self) -> None:
        """Process teardown: graceful stop, then forced cleanup; never raises."""
        try:
            await self.stop()
        except Exception as exc:
            self._logger.error("error during tunnel disposal: %s", _describe(exc))
            try:
                await self.force_cleanup()
            except Exception as cleanup_exc:
                self._logger.error("error during forced cleanup: %s", _describe(cleanup_exc))

    async def _abort_start(self) -> bool:
        task = self._start_task
        if task is None or task.done():
            return False
        self._logger.info("aborting in-flight tunnel start")
        self._aborted_task = task
        task.cancel()
        try:
            await task
        except BaseException as exc:
            if not isinstance(exc, asyncio.CancelledError) or not task.cancelled():
                self._logger.debug("in-flight start ended with %s", _describe(exc))
            current = asyncio.current_task()
            if isinstance(exc, asyncio.CancelledError) and current is not None and current.cancelling():
                raise
        if self._start_task is task:
            self._start_task = None
        return True

    async def _stop_proxy_quietly(self, reason: str) -> None:
        if not self._proxy.is_running():
            return
        try:
            await self._proxy.stop()
        except Exception as exc:
            self._logger.error("error stopping proxy server (%s): %s", reason, _describe(exc))

    async def _close_tunnel_quietly(self, tunnel: TunnelHandle, reason: str) -> None:
        try:
            await asyncio.wait_for(tunnel.close(), timeout=self._stop_timeout)
        except Exception as exc:
            self._logger.error("error closing tunnel (%s): %s", reason, _describe(exc))
