from homedash.integrations.homeassistant.adapter import HomeAssistantBackend
from homedash.integrations.homeassistant.config import (
    HomeAssistantConfig,
    HomeAssistantConfigError,
    RetryConfig,
    WsReconnectConfig,
    load_homeassistant_config,
)
from homedash.integrations.homeassistant.rest_client import HomeAssistantRestClient
from homedash.integrations.homeassistant.ws_client import HomeAssistantWsClient

__all__ = [
    "HomeAssistantBackend",
    "HomeAssistantConfig",
    "HomeAssistantConfigError",
    "HomeAssistantRestClient",
    "HomeAssistantWsClient",
    "RetryConfig",
    "WsReconnectConfig",
    "load_homeassistant_config",
]
