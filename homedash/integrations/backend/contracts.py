from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Protocol

SEARCH_LIMIT_DEFAULT = 20
SEARCH_LIMIT_MAX = 100


class BackendErrorKind(Enum):
    UNAUTHORIZED = "Unauthorized"
    NOT_FOUND = "NotFound"
    BAD_REQUEST = "BadRequest"
    TIMEOUT = "Timeout"
    UNKNOWN = "Unknown"


class BackendError(RuntimeError):
    def __init__(self, kind: BackendErrorKind, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


@dataclass(frozen=True)
class Entity:
    entity_id: str
    friendly_name: str
    state: str | None
    domain: str
    device_class: str | None = None
    icon: str | None = None
    unit_of_measurement: str | None = None
    last_changed: str | None = None
    last_updated: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "friendly_name": self.friendly_name,
            "state": self.state,
            "domain": self.domain,
            "device_class": self.device_class,
            "icon": self.icon,
            "unit_of_measurement": self.unit_of_measurement,
            "last_changed": self.last_changed,
            "last_updated": self.last_updated,
        }


@dataclass(frozen=True)
class BackendEvent:
    kind: str  # state_changed | zwave | mqtt
    entity_id: str | None = None
    old_state: str | None = None
    new_state: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    topic: str | None = None
    payload: str | None = None
    event_type: str | None = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class SubscriptionHandle:
    subscription_ids: tuple[str, ...]
    unsubscribe: Callable[[], None]


class BackendClient(Protocol):
    def call_service(self, domain: str, service: str, data: dict[str, Any]) -> Any:
        ...

    def get_state(self, entity_id: str) -> Entity | None:
        ...

    def search_entities(
        self,
        query: str | None = None,
        domains: list[str] | None = None,
        device_classes: list[str] | None = None,
        states: list[str] | None = None,
        limit: int = SEARCH_LIMIT_DEFAULT,
    ) -> list[Entity]:
        ...


def clamp_search_limit(raw: Any) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        value = SEARCH_LIMIT_DEFAULT
    return min(max(value, 1), SEARCH_LIMIT_MAX)


def entity_from_state(item: dict[str, Any]) -> Entity:
    entity_id = str(item.get("entity_id") or "").strip()
    attrs = item.get("attributes") if isinstance(item.get("attributes"), dict) else {}
    state = item.get("state")
    return Entity(
        entity_id=entity_id,
        friendly_name=str(attrs.get("friendly_name") or entity_id),
        state=str(state) if state is not None else None,
        domain=extract_domain(entity_id) or "",
        device_class=attrs.get("device_class"),
        icon=attrs.get("icon"),
        unit_of_measurement=attrs.get("unit_of_measurement"),
        last_changed=item.get("last_changed"),
        last_updated=item.get("last_updated"),
        attributes=dict(attrs),
    )


def filter_entities(
    entities: list[Entity],
    *,
    query: str | None = None,
    domains: list[str] | None = None,
    device_classes: list[str] | None = None,
    states: list[str] | None = None,
    limit: int = SEARCH_LIMIT_DEFAULT,
) -> list[Entity]:
    limit = clamp_search_limit(limit)
    rows = list(entities)
    if domains:
        rows = [item for item in rows if item.domain in domains]
    if device_classes:
        rows = [item for item in rows if item.device_class in device_classes]
    if states:
        rows = [item for item in rows if item.state in states]
    needle = str(query or "").strip().lower()
    if needle:
        rows = [
            item
            for item in rows
            if needle in item.entity_id.lower() or needle in item.friendly_name.lower()
        ]
        rows.sort(key=lambda item: (0 if item.entity_id.lower().startswith(needle) else 1, item.entity_id))
    else:
        rows.sort(key=lambda item: item.entity_id)
    return rows[:limit]


def extract_domain(entity_id: str | None) -> str | None:
    if not entity_id or "." not in entity_id:
        return None
    return entity_id.split(".", 1)[0]
