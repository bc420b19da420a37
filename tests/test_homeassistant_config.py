from __future__ import annotations

import pytest

from homedash.integrations.homeassistant import config as ha_config


def test_load_homeassistant_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HA_BASE_URL", "http://homeassistant.local:8123/")
    monkeypatch.setenv("HA_TOKEN", "abc123")
    monkeypatch.setenv("HA_REQUEST_TIMEOUT_SEC", "0.1")
    monkeypatch.setenv("HA_RETRY_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("HA_MQTT_TOPIC", "zigbee2mqtt/#")

    loaded = ha_config.load_homeassistant_config()

    assert loaded is not None
    assert loaded.base_url == "http://homeassistant.local:8123"
    assert loaded.token == "abc123"
    assert loaded.request_timeout_sec == 1.0
    assert loaded.retry.max_attempts == 5
    assert loaded.mqtt_topic == "zigbee2mqtt/#"


def test_load_homeassistant_config_missing_required_returns_none(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("HA_BASE_URL", raising=False)
    monkeypatch.delenv("HA_TOKEN", raising=False)

    assert ha_config.load_homeassistant_config() is None


def test_load_homeassistant_config_rejects_bad_scheme(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HA_BASE_URL", "homeassistant.local:8123")
    monkeypatch.setenv("HA_TOKEN", "abc123")

    with pytest.raises(ha_config.HomeAssistantConfigError):
        ha_config.load_homeassistant_config()


def test_empty_mqtt_topic_disables_mqtt_subscription(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HA_BASE_URL", "https://ha.example")
    monkeypatch.setenv("HA_TOKEN", "abc123")
    monkeypatch.setenv("HA_MQTT_TOPIC", " ")

    loaded = ha_config.load_homeassistant_config()

    assert loaded is not None
    assert loaded.mqtt_topic is None
