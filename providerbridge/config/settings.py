"""Runtime settings."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BridgeSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BRIDGE_", env_file=".env", extra="ignore")

    app_name: str = "ProviderBridge"
    log_level: str = "info"
    # empty string disables the rotating log file
    log_file: str = "logs/providerbridge.log"
    proxy_host: str = "127.0.0.1"
    proxy_port: int = 8082

    upstream_timeout_seconds: float = 30.0
    upstream_max_connections: int = 100
    upstream_max_keepalive_connections: int = 20

    tunnel_start_timeout_seconds: float = 30.0
    tunnel_stop_timeout_seconds: float = 10.0
    tunnel_start_attempts: int = Field(default=2, ge=1)
    tunnel_retry_wait_seconds: float = 1.0
    restart_settle_seconds: float = 1.0

    config_path: str = "config/bridge.yaml"
    secrets_path: str = "config/secrets.json"


settings = BridgeSettings()
