from __future__ import annotations

import itertools
import json
import queue
import random
import threading
from dataclasses import dataclass
from typing import Any, Callable

import websocket

from homedash.integrations.homeassistant.config import HomeAssistantConfig
from homedash.observability.log_manager import get_component_logger

logger = get_component_logger("integrations.homeassistant.ws_client")


class HomeAssistantWsError(RuntimeError):
    pass


@dataclass
class _Subscription:
    local_id: str
    command: dict[str, Any]
    callback: Callable[[dict[str, Any]], None]
    ha_subscription_id: int | None = None
    registering: bool = False


class HomeAssistantWsClient:
    """Authenticated Home Assistant WebSocket session.

    Subscriptions survive reconnects: each one keeps the command that created
    it and is replayed once the socket is authenticated again.
    """

    def __init__(self, config: HomeAssistantConfig, *, connect_fn: Callable[..., Any] | None = None) -> None:
        self._config = config
        self._ws_url = build_ws_url(config.base_url)
        self._connect_fn = connect_fn or websocket.create_connection

        self._shutdown = threading.Event()
        self._ready = threading.Event()
        self._state_lock = threading.Lock()

        self._thread: threading.Thread | None = None
        self._resubscriber: threading.Thread | None = None
        self._resubscribe_lock = threading.Lock()
        self._resubscribe_wanted = False
        self._ws: Any = None
        self._request_ids = itertools.count(1)
        self._local_ids = itertools.count(1)

        self._pending: dict[int, queue.Queue[dict[str, Any] | None]] = {}
        self._subscriptions: dict[str, _Subscription] = {}
        self._by_ha_id: dict[int, str] = {}

    @property
    def connected(self) -> bool:
        return self._ready.is_set()

    def connect(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._shutdown.clear()
        self._ready.clear()
        self._thread = threading.Thread(target=self._run, name="homedash-ha-ws", daemon=True)
        self._thread.start()
        if not self._ready.wait(timeout=self._config.ws.open_timeout_sec):
            raise HomeAssistantWsError("WS connect/auth timeout")

    def stop(self) -> None:
        self._shutdown.set()
        self._ready.clear()
        self._close_ws()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        with self._resubscribe_lock:
            resubscriber = self._resubscriber
        if resubscriber is not None:
            resubscriber.join(timeout=5)
        self._release_pending()

    def subscribe_events(self, event_type: str, callback: Callable[[dict[str, Any]], None]) -> str:
        return self.subscribe({"type": "subscribe_events", "event_type": str(event_type)}, callback)

    def subscribe_mqtt(self, topic: str, callback: Callable[[dict[str, Any]], None]) -> str:
        return self.subscribe({"type": "mqtt/subscribe", "topic": str(topic)}, callback)

    def subscribe(self, command: dict[str, Any], callback: Callable[[dict[str, Any]], None]) -> str:
        local_id = f"sub-{next(self._local_ids)}"
        with self._state_lock:
            self._subscriptions[local_id] = _Subscription(local_id=local_id, command=dict(command), callback=callback)
        try:
            self.connect()
            self._register(local_id)
        except HomeAssistantWsError as exc:
            # Replayed by _resubscribe_all once the socket authenticates.
            logger.warning("HomeAssistant WS subscription deferred local_id=%s error=%s", local_id, exc)
        return local_id

    def unsubscribe(self, local_id: str) -> None:
        with self._state_lock:
            sub = self._subscriptions.pop(local_id, None)
            ha_id = sub.ha_subscription_id if sub else None
            if ha_id is not None:
                self._by_ha_id.pop(ha_id, None)
        if ha_id is None or not sub or sub.command.get("type") != "subscribe_events":
            return
        try:
            self._send_request({"type": "unsubscribe_events", "subscription": ha_id})
        except HomeAssistantWsError as exc:
            logger.warning("HomeAssistant WS unsubscribe failed local_id=%s error=%s", local_id, exc)

    def _run(self) -> None:
        attempt = 0
        while not self._shutdown.is_set():
            if not self._connect_and_auth():
                delay = backoff_delay(
                    attempt=attempt,
                    minimum=self._config.ws.min_backoff_sec,
                    maximum=self._config.ws.max_backoff_sec,
                    jitter_ratio=self._config.ws.jitter_ratio,
                )
                attempt += 1
                self._shutdown.wait(timeout=delay)
                continue

            attempt = 0
            self._ready.set()
            self._start_resubscriber()
            while not self._shutdown.is_set():
                try:
                    message = self._ws.recv()
                except Exception as exc:
                    if not self._shutdown.is_set():
                        logger.warning("HomeAssistant WS receive failed: %s", exc)
                    self._ready.clear()
                    self._mark_disconnected()
                    break
                payload = parse_message(message)
                if payload:
                    self._handle_message(payload)

    def _connect_and_auth(self) -> bool:
        self._ready.clear()
        try:
            ws = self._connect_fn(self._ws_url, timeout=self._config.ws.open_timeout_sec)
            ws.settimeout(self._config.ws.recv_timeout_sec)
        except Exception as exc:
            logger.warning("HomeAssistant WS connection failed: %s", exc)
            return False

        with self._state_lock:
            self._ws = ws
        try:
            first = parse_message(ws.recv())
            if not first or first.get("type") != "auth_required":
                logger.warning("HomeAssistant WS expected auth_required type=%s", (first or {}).get("type"))
                self._mark_disconnected()
                return False
            ws.send(json.dumps({"type": "auth", "access_token": self._config.token}))
            second = parse_message(ws.recv())
        except Exception as exc:
            logger.warning("HomeAssistant WS handshake failed: %s", exc)
            self._mark_disconnected()
            return False
        if not second or second.get("type") != "auth_ok":
            logger.warning("HomeAssistant WS auth failed type=%s", (second or {}).get("type"))
            self._mark_disconnected()
            return False
        logger.info("HomeAssistant WS authenticated url=%s", self._ws_url)
        return True

    def _start_resubscriber(self) -> None:
        with self._resubscribe_lock:
            self._resubscribe_wanted = True
            if self._resubscriber is not None:
                return
            self._resubscriber = threading.Thread(
                target=self._resubscribe_loop, name="homedash-ha-ws-resubscribe", daemon=True
            )
            self._resubscriber.start()

    def _resubscribe_loop(self) -> None:
        while True:
            with self._resubscribe_lock:
                if not self._resubscribe_wanted or self._shutdown.is_set():
                    self._resubscriber = None
                    return
                self._resubscribe_wanted = False
            self._resubscribe_all()

    def _resubscribe_all(self) -> None:
        while self._ready.is_set() and not self._shutdown.is_set():
            with self._state_lock:
                local_ids = [
                    sub.local_id
                    for sub in self._subscriptions.values()
                    if sub.ha_subscription_id is None and not sub.registering
                ]
            if not local_ids:
                return
            registered = 0
            for local_id in local_ids:
                try:
                    self._register(local_id)
                except HomeAssistantWsError as exc:
                    logger.warning("HomeAssistant WS resubscribe failed local_id=%s error=%s", local_id, exc)
                    continue
                registered += 1
            if not registered:
                return

    def _register(self, local_id: str) -> None:
        with self._state_lock:
            sub = self._subscriptions.get(local_id)
            if not sub or sub.ha_subscription_id is not None or sub.registering:
                return
            sub.registering = True
        try:
            response, req_id = self._send_request_with_id(
                sub.command, before_send=lambda rid: self._bind(local_id, rid)
            )
        finally:
            with self._state_lock:
                sub.registering = False
        if not response.get("success"):
            with self._state_lock:
                self._by_ha_id.pop(req_id, None)
                current = self._subscriptions.get(local_id)
                if current:
                    current.ha_subscription_id = None
            raise HomeAssistantWsError(f"{sub.command.get('type')} failed local_id={local_id}")

    def _bind(self, local_id: str, req_id: int) -> None:
        # Events reuse the id of the request that created the subscription.
        current = self._subscriptions.get(local_id)
        if current:
            current.ha_subscription_id = req_id
            self._by_ha_id[req_id] = local_id

    def _send_request(self, payload: dict[str, Any]) -> dict[str, Any]:
        response, _ = self._send_request_with_id(payload)
        return response

    def _send_request_with_id(
        self,
        payload: dict[str, Any],
        *,
        before_send: Callable[[int], None] | None = None,
    ) -> tuple[dict[str, Any], int]:
        if not self._ready.wait(timeout=self._config.ws.open_timeout_sec):
            raise HomeAssistantWsError("WS is not ready")

        response_queue: queue.Queue[dict[str, Any] | None] = queue.Queue(maxsize=1)
        with self._state_lock:
            req_id = next(self._request_ids)
            packet = {**payload, "id": req_id}
            self._pending[req_id] = response_queue
            if before_send is not None:
                before_send(req_id)
            ws = self._ws
        if ws is None:
            with self._state_lock:
                self._pending.pop(req_id, None)
            raise HomeAssistantWsError("WS is disconnected")

        try:
            ws.send(json.dumps(packet))
        except Exception as exc:
            self._mark_disconnected()
            raise HomeAssistantWsError(f"WS send failed: {exc}") from exc

        try:
            response = response_queue.get(timeout=self._config.ws.open_timeout_sec)
        except queue.Empty as exc:
            with self._state_lock:
                self._pending.pop(req_id, None)
            raise HomeAssistantWsError(f"WS request timeout id={req_id}") from exc
        if response is None:
            raise HomeAssistantWsError("WS disconnected while waiting for response")
        return response, req_id

    def _handle_message(self, payload: dict[str, Any]) -> None:
        message_id = payload.get("id")
        if payload.get("type") == "result" and isinstance(message_id, int):
            with self._state_lock:
                pending = self._pending.pop(message_id, None)
            if pending:
                pending.put(payload)
            return

        if payload.get("type") != "event" or not isinstance(message_id, int):
            return
        event = payload.get("event")
        if not isinstance(event, dict):
            return
        with self._state_lock:
            local_id = self._by_ha_id.get(message_id)
            sub = self._subscriptions.get(local_id) if local_id else None
        if not sub:
            return
        try:
            sub.callback(event)
        except Exception as exc:
            logger.warning("HomeAssistant WS callback failed local_id=%s error=%s", local_id, exc)

    def _mark_disconnected(self) -> None:
        self._close_ws()
        self._release_pending()

    def _release_pending(self) -> None:
        with self._state_lock:
            for pending in self._pending.values():
                pending.put(None)
            self._pending.clear()
            self._by_ha_id.clear()
            for sub in self._subscriptions.values():
                sub.ha_subscription_id = None

    def _close_ws(self) -> None:
        with self._state_lock:
            ws = self._ws
            self._ws = None
        if ws is None:
            return
        try:
            ws.close()
        except Exception as exc:
            logger.debug("HomeAssistant WS close failed: %s", exc)


def build_ws_url(base_url: str) -> str:
    if base_url.startswith("https://"):
        return "wss://" + base_url[len("https://") :].rstrip("/") + "/api/websocket"
    if base_url.startswith("http://"):
        return "ws://" + base_url[len("http://") :].rstrip("/") + "/api/websocket"
    return base_url.rstrip("/") + "/api/websocket"


def parse_message(raw: Any) -> dict[str, Any] | None:
    if not raw or not isinstance(raw, (str, bytes)):
        return None
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def backoff_delay(*, attempt: int, minimum: float, maximum: float, jitter_ratio: float) -> float:
    base = min(maximum, minimum * (2 ** max(0, attempt)))
    jitter = base * max(0.0, jitter_ratio)
    return max(0.05, base + random.uniform(-jitter, jitter))
