"""
Secret storage for the tunnel auth token.

The bridge only needs get/set/delete; ``FileSecretStore`` keeps secrets in a
JSON file readable by the owning user only.
"""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Protocol

from providerbridge.core.errors import ConfigurationError

_SECRETS_KEY = "secrets"


class SecretStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class FileSecretStore:
    def __init__(self, path: str | Path) -> None:
        p = Path(path)
        self._path = p if p.is_absolute() else Path.cwd() / p
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, str]:
        if not self._path.is_file():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"secret store unreadable: {self._path}", exc) from exc
        secrets = data.get(_SECRETS_KEY) if isinstance(data, dict) else None
        if not isinstance(secrets, dict):
            return {}
        return {str(k): str(v) for k, v in secrets.items()}

    def _save(self, secrets: dict[str, str]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(json.dumps({_SECRETS_KEY: secrets}, indent=2))
            # O_CREAT only sets the mode on a new file
            os.chmod(self._path, 0o600)
        except OSError as exc:
            raise ConfigurationError(f"secret store not writable: {self._path}", exc) from exc

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            secrets = self._load()
            if value:
                secrets[key] = value
            else:
                secrets.pop(key, None)
            self._save(secrets)

    def delete(self, key: str) -> None:
        with self._lock:
            secrets = self._load()
            if key in secrets:
                del secrets[key]
                self._save(secrets)
