from __future__ import annotations

import os
from dataclasses import dataclass, field

from homedash.config.settings import env_float, env_int, env_text


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    base_delay_sec: float = 0.4
    max_delay_sec: float = 3.0


@dataclass(frozen=True)
class WsReconnectConfig:
    open_timeout_sec: float = 10.0
    recv_timeout_sec: float = 30.0
    min_backoff_sec: float = 1.0
    max_backoff_sec: float = 30.0
    jitter_ratio: float = 0.2


@dataclass(frozen=True)
class HomeAssistantConfig:
    base_url: str
    token: str
    request_timeout_sec: float = 10.0
    retry: RetryConfig = field(default_factory=RetryConfig)
    ws: WsReconnectConfig = field(default_factory=WsReconnectConfig)
    mqtt_topic: str | None = "#"


class HomeAssistantConfigError(ValueError):
    pass


def load_homeassistant_config() -> HomeAssistantConfig | None:
    """Read ``HA_*`` variables; ``None`` means the integration is off."""
    base_url = (env_text("HA_BASE_URL") or "").rstrip("/")
    token = env_text("HA_TOKEN")
    if not base_url or not token:
        return None
    if not base_url.startswith(("http://", "https://")):
        raise HomeAssistantConfigError("HA_BASE_URL must start with http:// or https://")

    # Unset follows every topic; an explicit blank turns MQTT ingress off.
    raw_topic = os.getenv("HA_MQTT_TOPIC")
    mqtt_topic = "#" if raw_topic is None else (raw_topic.strip() or None)

    return HomeAssistantConfig(
        base_url=base_url,
        token=token,
        request_timeout_sec=env_float("HA_REQUEST_TIMEOUT_SEC", 10.0, minimum=1.0),
        retry=RetryConfig(
            max_attempts=env_int("HA_RETRY_MAX_ATTEMPTS", 3, minimum=1),
            base_delay_sec=env_float("HA_RETRY_BASE_DELAY_SEC", 0.4, minimum=0.05),
            max_delay_sec=env_float("HA_RETRY_MAX_DELAY_SEC", 3.0, minimum=0.1),
        ),
        ws=WsReconnectConfig(
            open_timeout_sec=env_float("HA_WS_OPEN_TIMEOUT_SEC", 10.0, minimum=1.0),
            recv_timeout_sec=env_float("HA_WS_RECV_TIMEOUT_SEC", 30.0, minimum=1.0),
            min_backoff_sec=env_float("HA_WS_RECONNECT_MIN_SEC", 1.0, minimum=0.1),
            max_backoff_sec=env_float("HA_WS_RECONNECT_MAX_SEC", 30.0, minimum=0.2),
            jitter_ratio=env_float("HA_WS_BACKOFF_JITTER_RATIO", 0.2, minimum=0.0),
        ),
        mqtt_topic=mqtt_topic,
    )
