from __future__ import annotations

from typing import Any, Callable

from homedash.integrations.homeassistant.adapter import (
    HomeAssistantBackend,
    normalize_mqtt,
    normalize_state_changed,
    normalize_zwave,
)
from homedash.integrations.homeassistant.config import HomeAssistantConfig


class _FakeRest:
    def __init__(self, states: list[dict[str, Any]]) -> None:
        self._states = states
        self.calls: list[tuple[str, str, dict[str, Any], float | None]] = []

    def get_states(self) -> list[dict[str, Any]]:
        return self._states

    def get_state(self, entity_id: str) -> dict[str, Any] | None:
        return next((item for item in self._states if item["entity_id"] == entity_id), None)

    def call_service(self, domain: str, service: str, data: dict[str, Any], *, timeout: float | None = None) -> list:
        self.calls.append((domain, service, data, timeout))
        return []


class _FakeWs:
    def __init__(self) -> None:
        self.events: dict[str, Callable[[dict[str, Any]], None]] = {}
        self.mqtt: dict[str, Callable[[dict[str, Any]], None]] = {}
        self.unsubscribed: list[str] = []

    def subscribe_events(self, event_type: str, callback: Callable[[dict[str, Any]], None]) -> str:
        self.events[event_type] = callback
        return f"sub-{event_type}"

    def subscribe_mqtt(self, topic: str, callback: Callable[[dict[str, Any]], None]) -> str:
        self.mqtt[topic] = callback
        return f"mqtt-{topic}"

    def unsubscribe(self, local_id: str) -> None:
        self.unsubscribed.append(local_id)

    def stop(self) -> None:
        return None


STATES = [
    {
        "entity_id": "light.kitchen",
        "state": "on",
        "attributes": {"friendly_name": "Kitchen Light"},
        "last_changed": "2024-05-01T06:00:00+00:00",
    },
    {"entity_id": "binary_sensor.kitchen_door", "state": "off", "attributes": {"device_class": "door"}},
    {"entity_id": "light.bedroom", "state": "off", "attributes": {"friendly_name": "Bedroom"}},
    {"entity_id": "sensor.kitchen_temp", "state": "21", "attributes": {"unit_of_measurement": "°C"}},
]


def _backend(ws: _FakeWs | None = None) -> tuple[HomeAssistantBackend, _FakeRest]:
    config = HomeAssistantConfig(base_url="http://ha.local:8123", token="t", request_timeout_sec=4.0)
    rest = _FakeRest(STATES)
    return HomeAssistantBackend(config, rest=rest, ws=ws or _FakeWs()), rest


def test_call_service_uses_configured_timeout() -> None:
    backend, rest = _backend()

    backend.call_service("light", "turn_on", {"entity_id": "light.kitchen"})

    assert rest.calls == [("light", "turn_on", {"entity_id": "light.kitchen"}, 4.0)]


def test_get_state_maps_to_entity() -> None:
    backend, _ = _backend()

    entity = backend.get_state("light.kitchen")

    assert entity is not None
    assert entity.friendly_name == "Kitchen Light"
    assert entity.domain == "light"
    assert entity.to_dict()["last_changed"] == "2024-05-01T06:00:00+00:00"
    assert backend.get_state("light.none") is None


def test_search_ranks_prefix_matches_first() -> None:
    backend, _ = _backend()

    found = backend.search_entities(query="kitchen")

    assert [item.entity_id for item in found] == [
        "binary_sensor.kitchen_door",
        "light.kitchen",
        "sensor.kitchen_temp",
    ]
    assert [item.entity_id for item in backend.search_entities(query="light")] == ["light.bedroom", "light.kitchen"]


def test_search_filters_and_limit() -> None:
    backend, _ = _backend()

    assert [item.entity_id for item in backend.search_entities(domains=["light"], states=["off"])] == ["light.bedroom"]
    assert [item.entity_id for item in backend.search_entities(device_classes=["door"])] == [
        "binary_sensor.kitchen_door"
    ]
    assert len(backend.search_entities(limit=1)) == 1


def test_subscribe_registers_state_zwave_and_mqtt_streams() -> None:
    ws = _FakeWs()
    backend, _ = _backend(ws)
    received = []

    handle = backend.subscribe(received.append)
    ws.events["state_changed"](
        {
            "data": {
                "entity_id": "light.kitchen",
                "old_state": {"state": "off"},
                "new_state": {"entity_id": "light.kitchen", "state": "on", "attributes": {"brightness": 200}},
            }
        }
    )
    ws.mqtt["#"]({"topic": "home/door", "payload": "open"})
    handle.unsubscribe()

    assert set(ws.events) == {"state_changed", "zwave_js_value_notification", "zwave_js_notification"}
    assert [item.kind for item in received] == ["state_changed", "mqtt"]
    assert received[0].new_state == "on"
    assert received[0].attributes == {"brightness": 200}
    assert sorted(ws.unsubscribed) == sorted(handle.subscription_ids)


def test_normalizers() -> None:
    assert normalize_state_changed({"data": {}}) is None

    zwave = normalize_zwave(
        {"event_type": "zwave_js_value_notification", "data": {"entity_id": "sensor.button", "value": 1}}
    )
    assert (zwave.kind, zwave.entity_id, zwave.new_state) == ("zwave", "sensor.button", "1")

    mqtt = normalize_mqtt({"topic": " home/door ", "payload": "open"})
    assert (mqtt.topic, mqtt.payload) == ("home/door", "open")
