"""
Condition evaluation for automations.

All conditions of an automation are ANDed with short-circuit. A condition
whose input cannot be read (unknown entity, backend failure, no MQTT payload
seen yet) does not hold.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Callable, Iterable
from zoneinfo import ZoneInfo

from homedash.automations.models import (
    Condition,
    ConditionSpec,
    EntityStateCondition,
    MqttCondition,
    NumericCondition,
    Operator,
    TimeCondition,
)
from homedash.integrations.backend.contracts import BackendClient, BackendError
from homedash.observability.log_manager import get_component_logger

logger = get_component_logger("automations.conditions")


class MqttPayloadCache:
    """Last payload seen per MQTT topic."""

    def __init__(self) -> None:
        self._payloads: dict[str, str | None] = {}
        self._lock = threading.Lock()

    def record(self, topic: str, payload: str | None) -> None:
        with self._lock:
            self._payloads[topic] = payload

    def get(self, topic: str) -> str | None:
        with self._lock:
            return self._payloads.get(topic)

    def __contains__(self, topic: object) -> bool:
        with self._lock:
            return topic in self._payloads


class ConditionEvaluator:
    def __init__(
        self,
        backend: BackendClient | None,
        *,
        mqtt_cache: MqttPayloadCache | None = None,
        timezone_name: str = "UTC",
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self._backend = backend
        self._mqtt_cache = mqtt_cache or MqttPayloadCache()
        self._tz = ZoneInfo(timezone_name)
        self._now_fn = now_fn or (lambda: datetime.now(self._tz))

    @property
    def mqtt_cache(self) -> MqttPayloadCache:
        return self._mqtt_cache

    def evaluate(self, condition: Condition | ConditionSpec, *, now: datetime | None = None) -> bool:
        spec = condition.spec if isinstance(condition, Condition) else condition
        if isinstance(spec, (EntityStateCondition, NumericCondition)):
            actual = self._read_entity_value(spec.entity_id, spec.attribute)
            if actual is None:
                return False
            if isinstance(spec, NumericCondition):
                return compare(actual, spec.operator, spec.value, numeric=True)
            return compare(actual, spec.operator, spec.value)
        if isinstance(spec, TimeCondition):
            current = now or self._now_fn()
            current_text = current.astimezone(self._tz).strftime("%H:%M")
            return compare(current_text, spec.operator, spec.value)
        if isinstance(spec, MqttCondition):
            if spec.topic not in self._mqtt_cache:
                return False
            payload = self._mqtt_cache.get(spec.topic)
            if payload is None:
                return False
            return compare(payload, spec.operator, spec.value)
        logger.warning("Unknown condition type=%s", type(spec).__name__)
        return False

    def evaluate_all(self, conditions: Iterable[Condition | ConditionSpec], *, now: datetime | None = None) -> bool:
        for condition in conditions:
            if not self.evaluate(condition, now=now):
                condition_id = condition.id if isinstance(condition, Condition) else None
                logger.debug("Condition not met condition_id=%s", condition_id)
                return False
        return True

    def _read_entity_value(self, entity_id: str, attribute: str | None) -> str | None:
        if self._backend is None:
            return None
        try:
            entity = self._backend.get_state(entity_id)
        except BackendError as exc:
            logger.warning("Condition state read failed entity_id=%s kind=%s", entity_id, exc.kind.value)
            return None
        if entity is None:
            logger.warning("Condition entity not found entity_id=%s", entity_id)
            return None
        if attribute:
            value = entity.attributes.get(attribute)
            return None if value is None else str(value)
        return entity.state


def compare(actual: Any, operator: Operator, expected: Any, *, numeric: bool = False) -> bool:
    if operator in {Operator.EQUALS, Operator.NOT_EQUALS} and not numeric:
        equal = str(actual) == str(expected)
        return equal if operator is Operator.EQUALS else not equal
    if numeric or operator not in {Operator.EQUALS, Operator.NOT_EQUALS}:
        left = _as_number(actual)
        right = _as_number(expected)
        if left is None or right is None:
            if _is_clock_text(actual) and _is_clock_text(expected):
                return _ordered(str(actual), operator, str(expected))
            return False
        return _ordered(left, operator, right)
    return False


def _ordered(left: Any, operator: Operator, right: Any) -> bool:
    if operator is Operator.EQUALS:
        return left == right
    if operator is Operator.NOT_EQUALS:
        return left != right
    if operator is Operator.GREATER:
        return left > right
    if operator is Operator.LESS:
        return left < right
    if operator is Operator.GREATER_EQUAL:
        return left >= right
    return left <= right


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _is_clock_text(value: Any) -> bool:
    text = str(value)
    return len(text) == 5 and text[2] == ":" and text[:2].isdigit() and text[3:].isdigit()
