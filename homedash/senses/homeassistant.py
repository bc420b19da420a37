from __future__ import annotations

from typing import Callable

from homedash.integrations.backend.contracts import BackendEvent, SubscriptionHandle
from homedash.integrations.homeassistant.adapter import HomeAssistantBackend
from homedash.integrations.homeassistant.ws_client import HomeAssistantWsError
from homedash.observability.log_manager import get_component_logger

logger = get_component_logger("senses.homeassistant")


class HomeAssistantSense:
    """Forwards normalized Home Assistant events to the evaluator ingress."""

    def __init__(self, backend: HomeAssistantBackend, sink: Callable[[BackendEvent], None]) -> None:
        self._backend = backend
        self._sink = sink
        self._subscription: SubscriptionHandle | None = None

    @property
    def running(self) -> bool:
        return self._subscription is not None

    def start(self) -> None:
        if self._subscription is not None:
            return
        try:
            self._subscription = self._backend.subscribe(self._on_event)
        except HomeAssistantWsError as exc:
            logger.warning("HomeAssistantSense not started: %s", exc)
            return
        logger.info(
            "HomeAssistantSense started subscriptions=%s",
            len(self._subscription.subscription_ids),
        )

    def stop(self) -> None:
        if self._subscription is None:
            return
        self._subscription.unsubscribe()
        self._subscription = None
        self._backend.stop()
        logger.info("HomeAssistantSense stopped")

    def _on_event(self, event: BackendEvent) -> None:
        logger.debug("HomeAssistant event kind=%s entity_id=%s topic=%s", event.kind, event.entity_id, event.topic)
        self._sink(event)
