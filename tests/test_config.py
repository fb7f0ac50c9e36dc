"""Tests for configuration loading."""

import pytest
import yaml
from pydantic import ValidationError

from push_bridge.config import BridgeConfig, load_config


def test_load_config_from_yaml(tmp_path):
    config_data = {
        "server": {"port": 4000},
        "dedup": {"retention_seconds": 120},
        "relays": {"reconnect_delay_seconds": 2.5},
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(config_data))

    cfg = load_config(path)
    assert cfg.server.port == 4000
    assert cfg.dedup.retention_seconds == 120
    assert cfg.relays.reconnect_delay_seconds == 2.5
    assert cfg.relays.subscription_id == "mdk-push"


def test_load_config_defaults():
    cfg = BridgeConfig()
    assert cfg.server.port == 3000
    assert cfg.dedup.retention_seconds == 300
    assert cfg.relays.reconnect_multiplier == 1.0
    assert cfg.push.vapid_private_key_env == "VAPID_PRIVATE_KEY"


def test_empty_file_uses_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(path).server.port == 3000


def test_load_config_file_not_found():
    with pytest.raises(FileNotFoundError):
        load_config("/nonexistent/path.yaml")


def test_vapid_keys_come_from_environment(monkeypatch):
    monkeypatch.setenv("MY_VAPID_PRIVATE", "secret")
    cfg = BridgeConfig.model_validate({"push": {"vapid_private_key_env": "MY_VAPID_PRIVATE"}})
    assert cfg.push.vapid_private_key == "secret"

    monkeypatch.delenv("MY_VAPID_PRIVATE")
    assert cfg.push.vapid_private_key is None


@pytest.mark.parametrize(
    "raw",
    [
        {"dedup": {"retention_seconds": 0}},
        {"relays": {"reconnect_delay_seconds": -1}},
        {"relays": {"reconnect_multiplier": 0.5}},
        {"logging": {"format": "xml"}},
    ],
)
def test_invalid_values_rejected(raw):
    with pytest.raises(ValidationError):
        BridgeConfig.model_validate(raw)
