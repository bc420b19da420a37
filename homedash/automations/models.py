"""
Data models for the automation engine.

Triggers, conditions and actions are closed tagged unions of frozen
dataclasses. Each variant carries only the fields that belong to its type.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TriggerType(Enum):
    ENTITY_STATE = "entity_state"
    TIME = "time"
    SUNRISE_SUNSET = "sunrise_sunset"
    MQTT = "mqtt"
    ZWAVE = "zwave"


class ConditionType(Enum):
    ENTITY_STATE = "entity_state"
    NUMERIC = "numeric"
    TIME = "time"
    MQTT = "mqtt"


class ActionType(Enum):
    SERVICE_CALL = "service_call"
    MQTT = "mqtt"
    SCENE = "scene"
    LOCAL_DEVICE = "local_device"


class Operator(Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER = "greater"
    LESS = "less"
    GREATER_EQUAL = "greater_equal"
    LESS_EQUAL = "less_equal"


class Source(Enum):
    LOCAL = "local"
    HA = "ha"


class SunEvent(Enum):
    SUNRISE = "sunrise"
    SUNSET = "sunset"


TRIGGER_TYPES = tuple(item.value for item in TriggerType)
CONDITION_TYPES = tuple(item.value for item in ConditionType)
ACTION_TYPES = tuple(item.value for item in ActionType)
OPERATORS = tuple(item.value for item in Operator)
SOURCES = tuple(item.value for item in Source)
SUN_EVENTS = tuple(item.value for item in SunEvent)

# Storage columns per kind, in wire (camelCase) form.
TRIGGER_COLUMNS = {
    "entity_id": "entityId",
    "attribute": "attribute",
    "state": "state",
    "time": "time",
    "offset": "offset",
    "topic": "topic",
    "payload": "payload",
}
CONDITION_COLUMNS = {
    "entity_id": "entityId",
    "attribute": "attribute",
    "topic": "topic",
    "operator": "operator",
    "value": "value",
}
ACTION_COLUMNS = {
    "service": "service",
    "entity_id": "entityId",
    "data": "data",
    "topic": "topic",
    "payload": "payload",
    "scene_id": "sceneId",
}


# =============================================================================
# Triggers
# =============================================================================


@dataclass(frozen=True)
class EntityStateTrigger:
    entity_id: str
    attribute: str | None = None
    state: str | None = None

    @property
    def type(self) -> TriggerType:
        return TriggerType.ENTITY_STATE

    def columns(self) -> dict[str, Any]:
        return {"entity_id": self.entity_id, "attribute": self.attribute, "state": self.state}


@dataclass(frozen=True)
class TimeTrigger:
    at: str  # HH:MM

    @property
    def type(self) -> TriggerType:
        return TriggerType.TIME

    def columns(self) -> dict[str, Any]:
        return {"time": self.at}


@dataclass(frozen=True)
class SunTrigger:
    offset: int = 0  # minutes
    event: SunEvent | None = None  # None follows both sunrise and sunset

    @property
    def type(self) -> TriggerType:
        return TriggerType.SUNRISE_SUNSET

    def columns(self) -> dict[str, Any]:
        return {"offset": self.offset, "state": self.event.value if self.event else None}


@dataclass(frozen=True)
class MqttTrigger:
    topic: str
    payload: str | None = None

    @property
    def type(self) -> TriggerType:
        return TriggerType.MQTT

    def columns(self) -> dict[str, Any]:
        return {"topic": self.topic, "payload": self.payload}


@dataclass(frozen=True)
class ZwaveTrigger:
    entity_id: str
    attribute: str | None = None
    state: str | None = None

    @property
    def type(self) -> TriggerType:
        return TriggerType.ZWAVE

    def columns(self) -> dict[str, Any]:
        return {"entity_id": self.entity_id, "attribute": self.attribute, "state": self.state}


TriggerSpec = EntityStateTrigger | TimeTrigger | SunTrigger | MqttTrigger | ZwaveTrigger


# =============================================================================
# Conditions
# =============================================================================


@dataclass(frozen=True)
class EntityStateCondition:
    entity_id: str
    operator: Operator
    value: str
    attribute: str | None = None

    @property
    def type(self) -> ConditionType:
        return ConditionType.ENTITY_STATE

    def columns(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "attribute": self.attribute,
            "operator": self.operator.value,
            "value": self.value,
        }


@dataclass(frozen=True)
class NumericCondition:
    entity_id: str
    operator: Operator
    value: float
    attribute: str | None = None

    @property
    def type(self) -> ConditionType:
        return ConditionType.NUMERIC

    def columns(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "attribute": self.attribute,
            "operator": self.operator.value,
            "value": _number_text(self.value),
        }


@dataclass(frozen=True)
class TimeCondition:
    operator: Operator
    value: str  # HH:MM

    @property
    def type(self) -> ConditionType:
        return ConditionType.TIME

    def columns(self) -> dict[str, Any]:
        return {"operator": self.operator.value, "value": self.value}


@dataclass(frozen=True)
class MqttCondition:
    topic: str
    operator: Operator
    value: str

    @property
    def type(self) -> ConditionType:
        return ConditionType.MQTT

    def columns(self) -> dict[str, Any]:
        return {"topic": self.topic, "operator": self.operator.value, "value": self.value}


ConditionSpec = EntityStateCondition | NumericCondition | TimeCondition | MqttCondition


# =============================================================================
# Actions
# =============================================================================


@dataclass(frozen=True)
class ServiceCallAction:
    service: str
    entity_id: str
    data: Any = None

    @property
    def type(self) -> ActionType:
        return ActionType.SERVICE_CALL

    def columns(self) -> dict[str, Any]:
        return {"service": self.service, "entity_id": self.entity_id, "data": self.data}


@dataclass(frozen=True)
class MqttAction:
    topic: str
    payload: str | None = None

    @property
    def type(self) -> ActionType:
        return ActionType.MQTT

    def columns(self) -> dict[str, Any]:
        return {"topic": self.topic, "payload": self.payload}


@dataclass(frozen=True)
class SceneAction:
    scene_id: str

    @property
    def type(self) -> ActionType:
        return ActionType.SCENE

    def columns(self) -> dict[str, Any]:
        return {"scene_id": self.scene_id}


@dataclass(frozen=True)
class LocalDeviceAction:
    entity_id: str
    data: Any = None

    @property
    def type(self) -> ActionType:
        return ActionType.LOCAL_DEVICE

    def columns(self) -> dict[str, Any]:
        return {"entity_id": self.entity_id, "data": self.data}


ActionSpec = ServiceCallAction | MqttAction | SceneAction | LocalDeviceAction


# =============================================================================
# Stored records
# =============================================================================


def _record_dict(
    *,
    record_id: int,
    automation_id: int,
    spec: Any,
    columns: dict[str, str],
    created_at: str,
    updated_at: str,
) -> dict[str, Any]:
    values = spec.columns()
    body: dict[str, Any] = {"id": record_id, "automationId": automation_id, "type": spec.type.value}
    for column, wire_name in columns.items():
        body[wire_name] = values.get(column)
    body["createdAt"] = created_at
    body["updatedAt"] = updated_at
    return body


@dataclass(frozen=True)
class Trigger:
    id: int
    automation_id: int
    spec: TriggerSpec
    created_at: str
    updated_at: str

    @property
    def type(self) -> TriggerType:
        return self.spec.type

    def to_dict(self) -> dict[str, Any]:
        return _record_dict(
            record_id=self.id,
            automation_id=self.automation_id,
            spec=self.spec,
            columns=TRIGGER_COLUMNS,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


@dataclass(frozen=True)
class Condition:
    id: int
    automation_id: int
    spec: ConditionSpec
    created_at: str
    updated_at: str

    @property
    def type(self) -> ConditionType:
        return self.spec.type

    def to_dict(self) -> dict[str, Any]:
        return _record_dict(
            record_id=self.id,
            automation_id=self.automation_id,
            spec=self.spec,
            columns=CONDITION_COLUMNS,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


@dataclass(frozen=True)
class Action:
    id: int
    automation_id: int
    spec: ActionSpec
    created_at: str
    updated_at: str

    @property
    def type(self) -> ActionType:
        return self.spec.type

    def to_dict(self) -> dict[str, Any]:
        return _record_dict(
            record_id=self.id,
            automation_id=self.automation_id,
            spec=self.spec,
            columns=ACTION_COLUMNS,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


@dataclass(frozen=True)
class AutomationFields:
    """Validated top-level automation attributes, before persistence."""

    name: str
    description: str | None = None
    enabled: bool = True
    source: Source = Source.LOCAL
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class Automation:
    id: int
    name: str
    description: str | None
    enabled: bool
    source: Source
    tags: tuple[str, ...]
    last_run: str | None
    created_at: str
    updated_at: str
    triggers: tuple[Trigger, ...] = field(default_factory=tuple)
    conditions: tuple[Condition, ...] = field(default_factory=tuple)
    actions: tuple[Action, ...] = field(default_factory=tuple)

    def to_dict(self, *, include_children: bool = True) -> dict[str, Any]:
        body: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "source": self.source.value,
            "tags": list(self.tags),
            "lastRun": self.last_run,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if include_children:
            body["triggers"] = [item.to_dict() for item in self.triggers]
            body["conditions"] = [item.to_dict() for item in self.conditions]
            body["actions"] = [item.to_dict() for item in self.actions]
        return body


def _number_text(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))
