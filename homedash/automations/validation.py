from __future__ import annotations

import json
import math
import re
from typing import Any, Mapping

from homedash.automations.errors import InvalidType, ValidationError
from homedash.automations.models import (
    ACTION_COLUMNS,
    ACTION_TYPES,
    CONDITION_COLUMNS,
    CONDITION_TYPES,
    OPERATORS,
    SOURCES,
    SUN_EVENTS,
    TRIGGER_COLUMNS,
    TRIGGER_TYPES,
    ActionSpec,
    AutomationFields,
    ConditionSpec,
    EntityStateCondition,
    EntityStateTrigger,
    LocalDeviceAction,
    MqttAction,
    MqttCondition,
    MqttTrigger,
    NumericCondition,
    Operator,
    SceneAction,
    ServiceCallAction,
    Source,
    SunEvent,
    SunTrigger,
    TimeCondition,
    TimeTrigger,
    TriggerSpec,
    ZwaveTrigger,
)

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
OFFSET_MIN = -1440
OFFSET_MAX = 1440
NAME_MAX_LENGTH = 255
DESCRIPTION_MAX_LENGTH = 1000


# =============================================================================
# Triggers
# =============================================================================


def validate_trigger(payload: Mapping[str, Any], existing: TriggerSpec | None = None) -> TriggerSpec:
    """Normalize a trigger payload into its typed variant.

    With ``existing`` the payload is a partial update: fields present in it
    are format-checked on their own, then the merged record is validated.
    """
    delta = _as_mapping(payload)
    if existing is None:
        return _build_trigger(delta, strict=False)
    _check_trigger_delta(delta)
    merged = _merge(existing, delta, TRIGGER_COLUMNS)
    return _build_trigger(merged, strict=True)


def _check_trigger_delta(delta: Mapping[str, Any]) -> None:
    if "type" in delta and delta["type"] is not None:
        _require_type(delta, TRIGGER_TYPES, code="INVALID_TRIGGER_TYPE", label="trigger")
    time_value = _text(delta.get("time"))
    if time_value is not None:
        _require_time(time_value)
    if "offset" in delta and delta["offset"] is not None:
        _parse_offset(delta["offset"], strict=True)
    for key, code in (("entityId", "MISSING_ENTITY_ID"), ("topic", "MISSING_TOPIC")):
        if key in delta and delta[key] is not None and not isinstance(delta[key], (str, int, float)):
            raise ValidationError(f"{key} must be a string", code=code)


def _build_trigger(values: Mapping[str, Any], *, strict: bool) -> TriggerSpec:
    trigger_type = _require_type(values, TRIGGER_TYPES, code="INVALID_TRIGGER_TYPE", label="trigger")
    if trigger_type in {"entity_state", "zwave"}:
        entity_id = _require_text(values, "entityId", code="MISSING_ENTITY_ID", context=f"{trigger_type} triggers")
        variant = EntityStateTrigger if trigger_type == "entity_state" else ZwaveTrigger
        return variant(
            entity_id=entity_id,
            attribute=_text(values.get("attribute")),
            state=_text(values.get("state")),
        )
    if trigger_type == "time":
        at = _require_text(values, "time", code="MISSING_TIME", context="time triggers")
        return TimeTrigger(at=_require_time(at))
    if trigger_type == "sunrise_sunset":
        event = _text(values.get("state"))
        if event is not None and event not in SUN_EVENTS:
            raise InvalidType(
                f"state must be one of: {', '.join(SUN_EVENTS)}",
                code="INVALID_SUN_EVENT",
                allowed=SUN_EVENTS,
            )
        return SunTrigger(
            offset=_parse_offset(values.get("offset"), strict=strict),
            event=SunEvent(event) if event else None,
        )
    topic = _require_text(values, "topic", code="MISSING_TOPIC", context="mqtt triggers")
    return MqttTrigger(topic=topic, payload=_payload_text(values.get("payload")))


def _parse_offset(raw: Any, *, strict: bool) -> int:
    value: int | None = None
    if isinstance(raw, bool):
        value = None
    elif isinstance(raw, int):
        value = raw
    elif isinstance(raw, float) and raw.is_integer():
        value = int(raw)
    elif isinstance(raw, str) and raw.strip():
        try:
            value = int(raw.strip())
        except ValueError:
            value = None
    elif raw is None or (isinstance(raw, str) and not raw.strip()):
        return 0
    if value is None:
        if strict:
            raise ValidationError("offset must be an integer", code="INVALID_OFFSET")
        return 0
    if value < OFFSET_MIN or value > OFFSET_MAX:
        raise ValidationError(
            f"offset must be between {OFFSET_MIN} and {OFFSET_MAX} minutes",
            code="INVALID_OFFSET",
        )
    return value


# =============================================================================
# Conditions
# =============================================================================


def validate_condition(payload: Mapping[str, Any], existing: ConditionSpec | None = None) -> ConditionSpec:
    delta = _as_mapping(payload)
    if existing is None:
        return _build_condition(delta)
    if "type" in delta and delta["type"] is not None:
        _require_type(delta, CONDITION_TYPES, code="INVALID_CONDITION_TYPE", label="condition")
    if "operator" in delta and delta["operator"] is not None:
        _require_operator(delta)
    return _build_condition(_merge(existing, delta, CONDITION_COLUMNS))


def _build_condition(values: Mapping[str, Any]) -> ConditionSpec:
    condition_type = _require_type(values, CONDITION_TYPES, code="INVALID_CONDITION_TYPE", label="condition")
    operator = _require_operator(values)
    value = _text(values.get("value"))
    if value is None:
        raise ValidationError("value is required", code="MISSING_VALUE")

    if condition_type == "entity_state":
        entity_id = _require_text(values, "entityId", code="MISSING_ENTITY_ID", context="entity_state conditions")
        return EntityStateCondition(
            entity_id=entity_id,
            operator=operator,
            value=value,
            attribute=_text(values.get("attribute")),
        )
    if condition_type == "numeric":
        entity_id = _require_text(values, "entityId", code="MISSING_ENTITY_ID", context="numeric conditions")
        try:
            number = float(value)
        except ValueError as exc:
            raise ValidationError("value must be numeric", code="INVALID_NUMERIC_VALUE") from exc
        if not math.isfinite(number):
            raise ValidationError("value must be numeric", code="INVALID_NUMERIC_VALUE")
        return NumericCondition(
            entity_id=entity_id,
            operator=operator,
            value=number,
            attribute=_text(values.get("attribute")),
        )
    if condition_type == "time":
        return TimeCondition(operator=operator, value=_require_time(value))
    topic = _require_text(values, "topic", code="MISSING_TOPIC", context="mqtt conditions")
    return MqttCondition(topic=topic, operator=operator, value=value)


def _require_operator(values: Mapping[str, Any]) -> Operator:
    operator = _text(values.get("operator"))
    if operator is None:
        raise ValidationError("operator is required", code="MISSING_OPERATOR")
    if operator not in OPERATORS:
        raise InvalidType(
            f"Invalid operator. Must be one of: {', '.join(OPERATORS)}",
            code="INVALID_OPERATOR",
            allowed=OPERATORS,
        )
    return Operator(operator)


# =============================================================================
# Actions
# =============================================================================


def validate_action(payload: Mapping[str, Any], existing: ActionSpec | None = None) -> ActionSpec:
    delta = _as_mapping(payload)
    if "data" in delta:
        _parse_data(delta["data"])
    if existing is None:
        return _build_action(delta)
    if "type" in delta and delta["type"] is not None:
        _require_type(delta, ACTION_TYPES, code="INVALID_ACTION_TYPE", label="action")
    return _build_action(_merge(existing, delta, ACTION_COLUMNS))


def _build_action(values: Mapping[str, Any]) -> ActionSpec:
    action_type = _require_type(values, ACTION_TYPES, code="INVALID_ACTION_TYPE", label="action")
    if action_type == "service_call":
        service = _require_text(values, "service", code="MISSING_SERVICE", context="service_call actions")
        entity_id = _require_text(values, "entityId", code="MISSING_ENTITY_ID", context="service_call actions")
        return ServiceCallAction(service=service, entity_id=entity_id, data=_parse_data(values.get("data")))
    if action_type == "mqtt":
        topic = _require_text(values, "topic", code="MISSING_TOPIC", context="mqtt actions")
        return MqttAction(topic=topic, payload=_payload_text(values.get("payload")))
    if action_type == "scene":
        scene_id = _require_text(values, "sceneId", code="MISSING_SCENE_ID", context="scene actions")
        return SceneAction(scene_id=scene_id)
    entity_id = _require_text(values, "entityId", code="MISSING_ENTITY_ID", context="local_device actions")
    return LocalDeviceAction(entity_id=entity_id, data=_parse_data(values.get("data")))


def _parse_data(raw: Any) -> dict[str, Any] | None:
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        if not raw.strip():
            return None
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationError("data must be valid JSON", code="INVALID_JSON_DATA") from exc
        if isinstance(parsed, dict):
            return parsed
    raise ValidationError("data must be a JSON object", code="INVALID_JSON_DATA")


# =============================================================================
# Automations
# =============================================================================


def validate_automation(payload: Mapping[str, Any], *, default_enabled: bool = True) -> AutomationFields:
    values = _as_mapping(payload)
    enabled = values.get("enabled")
    if enabled is None:
        enabled = default_enabled
    elif not isinstance(enabled, bool):
        raise ValidationError("enabled must be a boolean", code="INVALID_ENABLED")
    source = _validate_source(values.get("source"))
    return AutomationFields(
        name=_validate_name(values.get("name")),
        description=_validate_description(values.get("description")),
        enabled=enabled,
        source=source or Source.LOCAL,
        tags=_validate_tags(values.get("tags")),
    )


def validate_automation_update(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Return the column changes for a partial automation update.

    ``enabled`` is not accepted here; it changes only through the lifecycle
    controller.
    """
    values = _as_mapping(payload)
    changes: dict[str, Any] = {}
    if "name" in values:
        changes["name"] = _validate_name(values["name"])
    if "description" in values:
        changes["description"] = _validate_description(values["description"])
    if "source" in values:
        changes["source"] = _validate_source(values["source"]) or Source.LOCAL
    if "tags" in values:
        changes["tags"] = _validate_tags(values["tags"])
    return changes


def _validate_name(raw: Any) -> str:
    if raw is not None and not isinstance(raw, str):
        raise ValidationError("name must be a string", code="MISSING_NAME")
    name = _text(raw)
    if name is None:
        raise ValidationError("name is required", code="MISSING_NAME")
    if len(name) > NAME_MAX_LENGTH:
        raise ValidationError(f"name must be at most {NAME_MAX_LENGTH} characters", code="NAME_TOO_LONG")
    return name


def _validate_description(raw: Any) -> str | None:
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ValidationError("description must be a string", code="INVALID_DESCRIPTION")
    description = raw.strip() or None
    if description is not None and len(description) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError(
            f"description must be at most {DESCRIPTION_MAX_LENGTH} characters",
            code="INVALID_DESCRIPTION",
        )
    return description


def _validate_source(raw: Any) -> Source | None:
    source = _text(raw)
    if source is None:
        return None
    if source not in SOURCES:
        raise InvalidType(
            f"Invalid source. Must be one of: {', '.join(SOURCES)}",
            code="INVALID_SOURCE",
            allowed=SOURCES,
        )
    return Source(source)


def _validate_tags(raw: Any) -> tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, (list, tuple)):
        raise ValidationError("tags must be an array of strings", code="INVALID_TAGS")
    tags: list[str] = []
    for item in raw:
        if not isinstance(item, str):
            raise ValidationError("tags must be an array of strings", code="INVALID_TAGS")
        tag = item.strip()
        if tag:
            tags.append(tag)
    return tuple(tags)


# =============================================================================
# Helpers
# =============================================================================


def _as_mapping(payload: Any) -> Mapping[str, Any]:
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise ValidationError("payload must be a JSON object", code="INVALID_REQUEST")
    return payload


def _merge(existing: Any, delta: Mapping[str, Any], columns: dict[str, str]) -> dict[str, Any]:
    new_type = _text(delta.get("type"))
    if new_type is not None and new_type != existing.type.value:
        # A type change replaces the field set instead of inheriting it.
        return dict(delta)
    base: dict[str, Any] = {"type": existing.type.value}
    for column, value in existing.columns().items():
        base[columns[column]] = value
    merged = {**base, **delta}
    if merged.get("type") is None:
        merged["type"] = existing.type.value
    return merged


def _require_type(values: Mapping[str, Any], allowed: tuple[str, ...], *, code: str, label: str) -> str:
    value = _text(values.get("type"))
    if value is None:
        raise ValidationError("type is required", code="MISSING_TYPE")
    if value not in allowed:
        raise InvalidType(
            f"Invalid {label} type. Must be one of: {', '.join(allowed)}",
            code=code,
            allowed=allowed,
        )
    return value


def _require_text(values: Mapping[str, Any], key: str, *, code: str, context: str) -> str:
    value = _text(values.get(key))
    if value is None:
        raise ValidationError(f"{key} is required for {context}", code=code)
    return value


def _require_time(value: str) -> str:
    if not TIME_PATTERN.match(value):
        raise ValidationError("time must be in HH:MM format (24-hour)", code="INVALID_TIME_FORMAT")
    return value


def _text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def _payload_text(value: Any) -> str | None:
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return _text(value)
