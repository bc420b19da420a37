from __future__ import annotations

from typing import Any, Callable

from homedash.integrations.backend.contracts import (
    BackendEvent,
    Entity,
    SubscriptionHandle,
    entity_from_state,
    filter_entities,
)
from homedash.integrations.homeassistant.config import HomeAssistantConfig
from homedash.integrations.homeassistant.rest_client import HomeAssistantRestClient
from homedash.integrations.homeassistant.ws_client import HomeAssistantWsClient
from homedash.observability.log_manager import get_component_logger

logger = get_component_logger("integrations.homeassistant.adapter")

ZWAVE_EVENT_TYPES = ("zwave_js_value_notification", "zwave_js_notification")


class HomeAssistantBackend:
    """BackendClient over the Home Assistant REST and WebSocket APIs."""

    def __init__(
        self,
        config: HomeAssistantConfig,
        *,
        rest: HomeAssistantRestClient | None = None,
        ws: HomeAssistantWsClient | None = None,
    ) -> None:
        self._config = config
        self._rest = rest or HomeAssistantRestClient(config)
        self._ws = ws or HomeAssistantWsClient(config)

    @property
    def request_timeout_sec(self) -> float:
        return self._config.request_timeout_sec

    def call_service(self, domain: str, service: str, data: dict[str, Any]) -> Any:
        return self._rest.call_service(domain, service, data, timeout=self._config.request_timeout_sec)

    def get_state(self, entity_id: str) -> Entity | None:
        item = self._rest.get_state(entity_id)
        if item is None:
            return None
        return entity_from_state(item)

    def search_entities(
        self,
        query: str | None = None,
        domains: list[str] | None = None,
        device_classes: list[str] | None = None,
        states: list[str] | None = None,
        limit: int = 20,
    ) -> list[Entity]:
        entities = [entity_from_state(item) for item in self._rest.get_states() if isinstance(item, dict)]
        return filter_entities(
            [item for item in entities if item.entity_id],
            query=query,
            domains=domains,
            device_classes=device_classes,
            states=states,
            limit=limit,
        )

    def subscribe(self, callback: Callable[[BackendEvent], None]) -> SubscriptionHandle:
        def _on_state_changed(raw_event: dict[str, Any]) -> None:
            event = normalize_state_changed(raw_event)
            if event is not None:
                callback(event)

        def _on_zwave(raw_event: dict[str, Any]) -> None:
            callback(normalize_zwave(raw_event))

        def _on_mqtt(raw_event: dict[str, Any]) -> None:
            callback(normalize_mqtt(raw_event))

        sub_ids = [self._ws.subscribe_events("state_changed", _on_state_changed)]
        for event_type in ZWAVE_EVENT_TYPES:
            sub_ids.append(self._ws.subscribe_events(event_type, _on_zwave))
        if self._config.mqtt_topic:
            sub_ids.append(self._ws.subscribe_mqtt(self._config.mqtt_topic, _on_mqtt))
        logger.info("HomeAssistant subscriptions registered count=%s", len(sub_ids))

        def _unsubscribe() -> None:
            for sub_id in sub_ids:
                self._ws.unsubscribe(sub_id)

        return SubscriptionHandle(subscription_ids=tuple(sub_ids), unsubscribe=_unsubscribe)

    def stop(self) -> None:
        self._ws.stop()


def normalize_state_changed(raw_event: dict[str, Any]) -> BackendEvent | None:
    data = raw_event.get("data") if isinstance(raw_event.get("data"), dict) else {}
    old_state = data.get("old_state") if isinstance(data.get("old_state"), dict) else {}
    new_state = data.get("new_state") if isinstance(data.get("new_state"), dict) else {}
    entity_id = str(new_state.get("entity_id") or data.get("entity_id") or "").strip()
    if not entity_id:
        return None
    return BackendEvent(
        kind="state_changed",
        entity_id=entity_id,
        old_state=_state_text(old_state.get("state")),
        new_state=_state_text(new_state.get("state")),
        attributes=(new_state.get("attributes") if isinstance(new_state.get("attributes"), dict) else {}),
        event_type="state_changed",
    )


def normalize_zwave(raw_event: dict[str, Any]) -> BackendEvent:
    data = raw_event.get("data") if isinstance(raw_event.get("data"), dict) else {}
    entity_id = str(data.get("entity_id") or data.get("device_id") or "").strip() or None
    value = data.get("value")
    return BackendEvent(
        kind="zwave",
        entity_id=entity_id,
        new_state=_state_text(value),
        attributes=dict(data),
        event_type=str(raw_event.get("event_type") or "zwave_js_value_notification"),
    )


def normalize_mqtt(raw_event: dict[str, Any]) -> BackendEvent:
    payload = raw_event.get("payload")
    return BackendEvent(
        kind="mqtt",
        topic=str(raw_event.get("topic") or "").strip() or None,
        payload=_state_text(payload),
        event_type="mqtt",
    )


def _state_text(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)
