"""
Process-level wiring of the bridge.

``BridgeService`` owns the configuration manager, the model provider and the
tunnel manager, and is what the CLI (or any other host) drives.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from providerbridge.adapters.provider.client import ModelProvider
from providerbridge.config.manager import ConfigurationManager
from providerbridge.core.models import BridgeConfiguration, TunnelStatus
from providerbridge.core.proxy_server import ProxyServer
from providerbridge.core.tunnel import NgrokProvisioner, TunnelProvisioner
from providerbridge.core.tunnel_manager import TunnelManager


@dataclass(frozen=True)
class StatusSummary:
    is_running: bool
    is_starting: bool
    url: str | None
    error: str | None
    model_count: int
    show_status_bar: bool

    @property
    def label(self) -> str:
        if self.is_starting:
            return "starting"
        if self.is_running:
            return f"running {self.url}"
        if self.error:
            return f"error: {self.error}"
        return "stopped"


class BridgeService:
    def __init__(
        self,
        config_manager: ConfigurationManager,
        logger: logging.Logger,
        *,
        model_provider: ModelProvider | None = None,
        provisioner: TunnelProvisioner | None = None,
        proxy_server: ProxyServer | None = None,
        tunnel_manager: TunnelManager | None = None,
    ) -> None:
        self._logger = logger.getChild("service")
        self._config = config_manager
        self._model_provider = model_provider or ModelProvider(config_manager, logger)
        if tunnel_manager is None:
            proxy = proxy_server or ProxyServer(config_manager, self._model_provider, logger)
            tunnel_manager = TunnelManager(
                config_manager,
                proxy,
                provisioner or NgrokProvisioner(logger),
                logger,
            )
        self._tunnels = tunnel_manager
        self._unsubscribe = config_manager.on_configuration_changed(self._on_configuration_changed)

    @property
    def configuration(self) -> ConfigurationManager:
        return self._config

    @property
    def model_provider(self) -> ModelProvider:
        return self._model_provider

    @property
    def tunnel_manager(self) -> TunnelManager:
        return self._tunnels

    def get_status(self) -> TunnelStatus:
        return self._tunnels.get_status()

    async def start_bridge(self) -> TunnelStatus:
        await self._tunnels.start()
        status = self._tunnels.get_status()
        self._logger.info("bridge running url=%s", status.url)
        return status

    async def stop_bridge(self) -> None:
        await self._tunnels.stop()

    async def restart_bridge(self) -> TunnelStatus:
        await self._tunnels.restart()
        return self._tunnels.get_status()

    async def handle_auto_start(self) -> bool:
        """Start the bridge when ``auto_start`` is set; failures are logged, not raised."""
        try:
            config = self._config.get_configuration()
        except Exception as exc:
            self._logger.error("auto-start skipped, configuration unavailable: %s", exc)
            return False
        if not config.auto_start:
            return False
        try:
            await self.start_bridge()
        except Exception as exc:
            self._logger.error("auto-start failed: %s", exc)
            return False
        return True

    async def test_connection(self) -> bool:
        models = await self._model_provider.get_models()
        connected = bool(models)
        if connected:
            self._logger.info("provider reachable, %d model(s) available", len(models))
        else:
            self._logger.warning("provider unreachable or has no models loaded")
        return connected

    async def status_summary(self) -> StatusSummary:
        status = self._tunnels.get_status()
        try:
            show_status_bar = self._config.get_configuration().show_status_bar
        except Exception:
            show_status_bar = True
        model_count = len(await self._model_provider.get_models()) if status.is_running else 0
        return StatusSummary(
            is_running=status.is_running,
            is_starting=status.is_starting,
            url=status.url,
            error=status.error,
            model_count=model_count,
            show_status_bar=show_status_bar,
        )

    async def shutdown(self) -> None:
        """Teardown path; never raises."""
        self._unsubscribe()
        await self._tunnels.dispose()
        self._config.dispose()
        self._logger.info("bridge service shut down")

    def _on_configuration_changed(self, config: BridgeConfiguration) -> None:
        if self._tunnels.get_status().is_running:
            self._logger.info(
                "configuration changed while running; restart the bridge to apply provider=%s region=%s",
                config.provider_url,
                config.tunnel_region,
            )
