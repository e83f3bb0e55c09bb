"""
Bridge configuration: YAML file for plain settings, secret store for the tunnel token.

``ConfigurationManager`` is the reference ``ConfigurationProvider``; the proxy,
model provider and tunnel manager only ever call ``get_configuration()``.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import urlparse

import yaml
from pydantic import ValidationError

from providerbridge.config.secrets import SecretStore
from providerbridge.core.errors import ConfigurationError
from providerbridge.core.models import DEFAULT_CONFIGURATION, TUNNEL_REGIONS, BridgeConfiguration

SECRET_KEY = "tunnelAuthToken"
TOKEN_FIELD = "tunnel_auth_token"
_CAMEL_ALIASES = {
    "providerUrl": "provider_url",
    "autoStart": "auto_start",
    "showStatusBar": "show_status_bar",
    "tunnelAuthToken": "tunnel_auth_token",
    "tunnelDomain": "tunnel_domain",
    "tunnelRegion": "tunnel_region",
    # settings files written by older releases
    "ngrokAuthToken": "tunnel_auth_token",
    "ngrokDomain": "tunnel_domain",
    "ngrokRegion": "tunnel_region",
}
CONFIGURATION_KEYS: tuple[str, ...] = tuple(BridgeConfiguration.model_fields)

ConfigurationListener = Callable[[BridgeConfiguration], None]


class ConfigurationProvider(Protocol):
    def get_configuration(self) -> BridgeConfiguration: ...

    def reload(self) -> None: ...

    def on_configuration_changed(self, listener: ConfigurationListener) -> Callable[[], None]: ...


def is_valid_url(value: str) -> bool:
    try:
        parsed = urlparse(value.strip())
    except ValueError:
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def normalize_key(key: str) -> str:
    resolved = _CAMEL_ALIASES.get(key, key)
    if resolved not in CONFIGURATION_KEYS:
        raise ConfigurationError(f"unknown configuration key '{key}'")
    return resolved


class ConfigurationManager:
    def __init__(
        self,
        config_path: str | Path,
        logger: logging.Logger,
        secret_store: SecretStore | None = None,
    ) -> None:
        self._path = Path(config_path)
        self._secret_store = secret_store
        self._logger = logger.getChild("config")
        self._listeners: list[ConfigurationListener] = []
        self._lock = threading.Lock()
        try:
            self._configuration = self._load()
            self._logger.debug("configuration loaded path=%s", self._path)
        except ConfigurationError as exc:
            self._logger.error("failed to load configuration, using defaults: %s", exc)
            self._configuration = DEFAULT_CONFIGURATION

    @property
    def path(self) -> Path:
        return self._path

    def get_configuration(self) -> BridgeConfiguration:
        config = self._configuration
        if self._secret_store is None and config.tunnel_auth_token:
            raise ConfigurationError("secret storage is required for the tunnel auth token but is unavailable")
        return config

    def reload(self) -> None:
        with self._lock:
            old = self._configuration
            self._configuration = self._load()
            changed = old != self._configuration
        if changed:
            self._logger.debug("configuration reloaded %s", self._configuration.model_dump())
            self._notify(self._configuration)

    def on_configuration_changed(self, listener: ConfigurationListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def update_configuration(self, key: str, value: Any) -> None:
        field = normalize_key(key)
        try:
            if field == TOKEN_FIELD:
                if self._secret_store is None:
                    raise ConfigurationError("secret storage is unavailable; cannot store the tunnel auth token")
                self._secret_store.set(SECRET_KEY, str(value or ""))
            else:
                raw = self._read_file()
                merged = {**self._plain_fields(raw), field: value}
                BridgeConfiguration.model_validate(merged)
                raw = {k: v for k, v in raw.items() if _CAMEL_ALIASES.get(k, k) != field}
                raw[field] = value
                self._write_file(raw)
        except ValidationError as exc:
            error = ConfigurationError(f"invalid value for configuration key '{key}'", exc)
            self._logger.error("configuration update failed key=%s: %s", key, error)
            raise error from exc
        except ConfigurationError as exc:
            self._logger.error("configuration update failed key=%s: %s", key, exc)
            raise
        self.reload()
        shown = "[REDACTED]" if field == TOKEN_FIELD else value
        self._logger.info("configuration updated %s = %s", field, shown)

    def validate_configuration(self) -> list[str]:
        errors: list[str] = []
        config = self._configuration
        if not is_valid_url(config.provider_url):
            errors.append("Invalid Provider URL format")
        if config.tunnel_region not in TUNNEL_REGIONS:
            errors.append("Invalid tunnel region")
        return errors

    def dispose(self) -> None:
        self._listeners.clear()
        self._logger.debug("configuration manager disposed")

    def _notify(self, config: BridgeConfiguration) -> None:
        for listener in list(self._listeners):
            try:
                listener(config)
            except Exception:
                self._logger.exception("configuration change listener failed")

    def _read_file(self) -> dict[str, Any]:
        if not self._path.is_file():
            return {}
        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"configuration file unreadable: {self._path}", exc) from exc
        if not isinstance(raw, dict):
            raise ConfigurationError(f"configuration file must be a mapping: {self._path}")
        return raw

    def _write_file(self, raw: dict[str, Any]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(yaml.safe_dump(raw, sort_keys=True), encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"configuration file not writable: {self._path}", exc) from exc

    @staticmethod
    def _plain_fields(raw: dict[str, Any]) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for key, value in raw.items():
            field = _CAMEL_ALIASES.get(str(key), str(key))
            if field in CONFIGURATION_KEYS and field != TOKEN_FIELD:
                values[field] = value
        return values

    def _load(self) -> BridgeConfiguration:
        raw = self._read_file()
        values = self._plain_fields(raw)
        legacy_token = next(
            (str(v) for k, v in raw.items() if _CAMEL_ALIASES.get(str(k), str(k)) == TOKEN_FIELD and v),
            "",
        )
        values[TOKEN_FIELD] = self._resolve_token(raw, legacy_token)
        try:
            return BridgeConfiguration.model_validate(values)
        except ValidationError as exc:
            raise ConfigurationError(f"invalid configuration in {self._path}", exc) from exc

    def _resolve_token(self, raw: dict[str, Any], legacy_token: str) -> str:
        if self._secret_store is None:
            if legacy_token:
                self._logger.error("secret storage unavailable; tunnel auth token found in plain configuration")
            return legacy_token
        try:
            token = self._secret_store.get(SECRET_KEY) or ""
        except ConfigurationError:
            raise
        except Exception as exc:
            raise ConfigurationError("failed to read the tunnel auth token from secret storage", exc) from exc
        if token:
            self._logger.debug("tunnel auth token loaded from secret storage")
        if legacy_token:
            # plain-text tokens are moved into the secret store and stripped from the file
            if not token:
                self._secret_store.set(SECRET_KEY, legacy_token)
                token = legacy_token
            stripped = {k: v for k, v in raw.items() if _CAMEL_ALIASES.get(str(k), str(k)) != TOKEN_FIELD}
            self._write_file(stripped)
            self._logger.info("migrated tunnel auth token from %s into secret storage", self._path)
        return token
