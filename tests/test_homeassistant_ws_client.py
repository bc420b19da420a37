from __future__ import annotations

import json
import queue
import threading
import time

from homedash.integrations.homeassistant.config import HomeAssistantConfig, WsReconnectConfig
from homedash.integrations.homeassistant.ws_client import (
    HomeAssistantWsClient,
    _Subscription,
    backoff_delay,
    build_ws_url,
    parse_message,
)


def _config() -> HomeAssistantConfig:
    return HomeAssistantConfig(
        base_url="http://ha.local:8123",
        token="token",
        ws=WsReconnectConfig(open_timeout_sec=1.0, min_backoff_sec=0.1, max_backoff_sec=0.2),
    )


class _FakeSocket:
    """Scripted Home Assistant socket: auth handshake, then one reply per request."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self._inbox: queue.Queue[str | None] = queue.Queue()
        self._inbox.put(json.dumps({"type": "auth_required"}))
        self.closed = False

    def settimeout(self, _timeout: float) -> None:
        return None

    def recv(self) -> str:
        item = self._inbox.get(timeout=2)
        if item is None:
            raise ConnectionError("closed")
        return item

    def send(self, raw: str) -> None:
        message = json.loads(raw)
        self.sent.append(message)
        if message["type"] == "auth":
            self._inbox.put(json.dumps({"type": "auth_ok"}))
        elif "id" in message:
            self._inbox.put(json.dumps({"id": message["id"], "type": "result", "success": True}))

    def push_event(self, subscription_id: int, event: dict) -> None:
        self._inbox.put(json.dumps({"id": subscription_id, "type": "event", "event": event}))

    def close(self) -> None:
        self.closed = True
        self._inbox.put(None)


def test_build_ws_url() -> None:
    assert build_ws_url("http://ha.local:8123") == "ws://ha.local:8123/api/websocket"
    assert build_ws_url("https://ha.example/") == "wss://ha.example/api/websocket"


def test_parse_message_ignores_non_objects() -> None:
    assert parse_message('{"type": "event"}') == {"type": "event"}
    assert parse_message("[1, 2]") is None
    assert parse_message("not json") is None
    assert parse_message(None) is None


def test_backoff_delay_is_bounded() -> None:
    for attempt in range(10):
        delay = backoff_delay(attempt=attempt, minimum=1.0, maximum=8.0, jitter_ratio=0.0)
        assert 1.0 <= delay <= 8.0
    assert backoff_delay(attempt=3, minimum=1.0, maximum=30.0, jitter_ratio=0.0) == 8.0


def test_handle_message_resolves_pending_request() -> None:
    client = HomeAssistantWsClient(_config(), connect_fn=lambda *_args, **_kwargs: None)
    pending: queue.Queue[dict | None] = queue.Queue(maxsize=1)
    client._pending[7] = pending

    payload = {"id": 7, "type": "result", "success": True}
    client._handle_message(payload)

    assert pending.get(timeout=0.1) == payload
    assert 7 not in client._pending


def test_handle_message_dispatches_subscription_event() -> None:
    client = HomeAssistantWsClient(_config(), connect_fn=lambda *_args, **_kwargs: None)
    received: list[dict] = []
    client._subscriptions["sub-1"] = _Subscription(
        local_id="sub-1",
        command={"type": "subscribe_events", "event_type": "state_changed"},
        callback=received.append,
        ha_subscription_id=42,
    )
    client._by_ha_id[42] = "sub-1"

    client._handle_message({"id": 42, "type": "event", "event": {"event_type": "state_changed"}})
    client._handle_message({"id": 43, "type": "event", "event": {"event_type": "state_changed"}})

    assert received == [{"event_type": "state_changed"}]


def test_subscribe_authenticates_and_routes_events() -> None:
    sockets: list[_FakeSocket] = []

    def _connect(_url: str, timeout: float) -> _FakeSocket:
        socket = _FakeSocket()
        sockets.append(socket)
        return socket

    client = HomeAssistantWsClient(_config(), connect_fn=_connect)
    received: queue.Queue[dict] = queue.Queue()
    try:
        client.subscribe_mqtt("home/#", received.put)
        socket = sockets[0]
        deadline = time.monotonic() + 2
        while len(socket.sent) < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert socket.sent[0] == {"type": "auth", "access_token": "token"}
        subscribe = socket.sent[1]
        assert subscribe["type"] == "mqtt/subscribe"
        assert subscribe["topic"] == "home/#"

        socket.push_event(subscribe["id"], {"topic": "home/door", "payload": "open"})
        assert received.get(timeout=2) == {"topic": "home/door", "payload": "open"}
    finally:
        client.stop()

    assert client.connected is False


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while not predicate() and time.monotonic() < deadline:
        time.sleep(0.01)
    return predicate()


def test_reconnect_replays_subscription_once_and_stop_joins_resubscriber() -> None:
    sockets: list[_FakeSocket] = []

    def _connect(_url: str, timeout: float) -> _FakeSocket:
        socket = _FakeSocket()
        sockets.append(socket)
        return socket

    client = HomeAssistantWsClient(_config(), connect_fn=_connect)
    try:
        client.subscribe_events("state_changed", lambda _event: None)
        assert _wait_for(lambda: len(sockets[0].sent) >= 2)

        sockets[0].close()
        assert _wait_for(lambda: len(sockets) >= 2 and len(sockets[1].sent) >= 2)
        time.sleep(0.1)
        replayed = [message for message in sockets[1].sent if message["type"] == "subscribe_events"]
        assert len(replayed) == 1
    finally:
        client.stop()

    assert client._resubscriber is None
    assert not any(thread.name == "homedash-ha-ws-resubscribe" for thread in threading.enumerate())
