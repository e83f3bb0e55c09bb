import json
import logging
import os
import stat

import pytest
import yaml

from providerbridge.config.manager import SECRET_KEY, ConfigurationManager, normalize_key
from providerbridge.config.secrets import FileSecretStore
from providerbridge.core.errors import ConfigurationError, ErrorCode
from providerbridge.core.models import DEFAULT_CONFIGURATION

_LOGGER = logging.getLogger("providerbridge-test.config")


def _write_yaml(path, data) -> None:
    path.write_text(yaml.safe_dump(data), encoding="utf-8")


def test_missing_file_yields_defaults(tmp_path):
    manager = ConfigurationManager(tmp_path / "bridge.yaml", _LOGGER, FileSecretStore(tmp_path / "secrets.json"))
    config = manager.get_configuration()
    assert config == DEFAULT_CONFIGURATION
    assert config.provider_url == "http://localhost:1234"
    assert config.tunnel_region == "us"


def test_camel_case_and_legacy_keys_are_read(tmp_path):
    path = tmp_path / "bridge.yaml"
    _write_yaml(
        path,
        {"providerUrl": "http://127.0.0.1:11434/", "autoStart": True, "ngrokDomain": "me.ngrok.app", "tunnelRegion": "eu"},
    )
    manager = ConfigurationManager(path, _LOGGER, FileSecretStore(tmp_path / "secrets.json"))
    config = manager.get_configuration()
    assert config.provider_url == "http://127.0.0.1:11434/"
    assert config.provider_base_url == "http://127.0.0.1:11434"
    assert config.auto_start is True
    assert config.tunnel_domain == "me.ngrok.app"
    assert config.tunnel_region == "eu"


def test_plain_text_token_is_migrated_into_secret_store(tmp_path):
    path = tmp_path / "bridge.yaml"
    secrets_path = tmp_path / "secrets.json"
    _write_yaml(path, {"providerUrl": "http://localhost:1234", "ngrokAuthToken": "2abcSECRETtoken"})

    manager = ConfigurationManager(path, _LOGGER, FileSecretStore(secrets_path))

    assert manager.get_configuration().tunnel_auth_token == "2abcSECRETtoken"
    assert "ngrokAuthToken" not in yaml.safe_load(path.read_text(encoding="utf-8"))
    stored = json.loads(secrets_path.read_text(encoding="utf-8"))
    assert stored["secrets"][SECRET_KEY] == "2abcSECRETtoken"


def test_token_without_secret_store_is_a_configuration_error(tmp_path):
    path = tmp_path / "bridge.yaml"
    _write_yaml(path, {"tunnelAuthToken": "plain"})
    manager = ConfigurationManager(path, _LOGGER, secret_store=None)
    with pytest.raises(ConfigurationError) as exc_info:
        manager.get_configuration()
    assert exc_info.value.code is ErrorCode.CONFIGURATION_ERROR


def test_update_routes_token_to_store_and_other_keys_to_yaml(tmp_path):
    path = tmp_path / "bridge.yaml"
    store = FileSecretStore(tmp_path / "secrets.json")
    manager = ConfigurationManager(path, _LOGGER, store)

    manager.update_configuration("tunnelAuthToken", "tok-123")
    manager.update_configuration("tunnelRegion", "jp")

    assert store.get(SECRET_KEY) == "tok-123"
    on_disk = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert on_disk == {"tunnel_region": "jp"}
    config = manager.get_configuration()
    assert config.tunnel_auth_token == "tok-123"
    assert config.tunnel_region == "jp"


def test_update_rejects_unknown_key_and_invalid_value(tmp_path):
    path = tmp_path / "bridge.yaml"
    manager = ConfigurationManager(path, _LOGGER, FileSecretStore(tmp_path / "secrets.json"))
    with pytest.raises(ConfigurationError):
        manager.update_configuration("nope", "x")
    with pytest.raises(ConfigurationError):
        manager.update_configuration("tunnelRegion", "mars")
    assert not path.exists()
    assert manager.get_configuration().tunnel_region == "us"


def test_listeners_fire_only_on_change_and_can_unsubscribe(tmp_path):
    path = tmp_path / "bridge.yaml"
    manager = ConfigurationManager(path, _LOGGER, FileSecretStore(tmp_path / "secrets.json"))
    seen = []
    unsubscribe = manager.on_configuration_changed(seen.append)

    manager.reload()
    assert seen == []

    _write_yaml(path, {"provider_url": "http://localhost:8080"})
    manager.reload()
    assert [c.provider_url for c in seen] == ["http://localhost:8080"]

    unsubscribe()
    _write_yaml(path, {"provider_url": "http://localhost:9090"})
    manager.reload()
    assert len(seen) == 1


def test_failing_listener_does_not_block_others(tmp_path):
    path = tmp_path / "bridge.yaml"
    manager = ConfigurationManager(path, _LOGGER, FileSecretStore(tmp_path / "secrets.json"))
    seen = []

    def broken(config):
        raise RuntimeError("listener bug")

    manager.on_configuration_changed(broken)
    manager.on_configuration_changed(seen.append)
    manager.update_configuration("showStatusBar", False)
    assert len(seen) == 1
    assert seen[0].show_status_bar is False


def test_validate_configuration_reports_bad_url(tmp_path):
    path = tmp_path / "bridge.yaml"
    _write_yaml(path, {"providerUrl": "localhost:1234"})
    manager = ConfigurationManager(path, _LOGGER, FileSecretStore(tmp_path / "secrets.json"))
    assert manager.validate_configuration() == ["Invalid Provider URL format"]

    manager.update_configuration("providerUrl", "https://gpu-box.lan:1234")
    assert manager.validate_configuration() == []


def test_unreadable_yaml_falls_back_to_defaults_but_reload_raises(tmp_path):
    path = tmp_path / "bridge.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    manager = ConfigurationManager(path, _LOGGER, FileSecretStore(tmp_path / "secrets.json"))
    assert manager.get_configuration() == DEFAULT_CONFIGURATION
    with pytest.raises(ConfigurationError):
        manager.reload()


def test_normalize_key():
    assert normalize_key("providerUrl") == "provider_url"
    assert normalize_key("ngrokRegion") == "tunnel_region"
    assert normalize_key("auto_start") == "auto_start"
    with pytest.raises(ConfigurationError):
        normalize_key("providerURL")


def test_file_secret_store_roundtrip_and_permissions(tmp_path):
    store = FileSecretStore(tmp_path / "nested" / "secrets.json")
    assert store.get("k") is None
    store.set("k", "v")
    assert store.get("k") == "v"
    if os.name == "posix":
        mode = stat.S_IMODE(os.stat(store.path).st_mode)
        assert mode == 0o600
    store.set("k", "")
    assert store.get("k") is None
    store.set("k", "again")
    store.delete("k")
    assert store.get("k") is None


@pytest.mark.skipif(os.name != "posix", reason="file modes are posix-only")
def test_new_secret_file_is_created_owner_only(tmp_path, monkeypatch):
    chmod_calls: list[object] = []
    monkeypatch.setattr(os, "chmod", lambda path, mode: chmod_calls.append(path))
    previous_umask = os.umask(0o022)
    try:
        store = FileSecretStore(tmp_path / "secrets.json")
        store.set("tunnel_auth_token", "2abcdefghijkSECRET")
    finally:
        os.umask(previous_umask)

    assert chmod_calls
    assert stat.S_IMODE(os.stat(store.path).st_mode) == 0o600


def test_file_secret_store_corrupt_file_raises(tmp_path):
    path = tmp_path / "secrets.json"
    path.write_text("{oops", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        FileSecretStore(path).get("k")
