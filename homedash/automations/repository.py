from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from homedash.automations.errors import ChildNotOwned, DuplicateName, NotFound, ParentNotFound
from homedash.automations.models import (
    Action,
    Automation,
    Condition,
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
    Trigger,
    ZwaveTrigger,
)
from homedash.automations.store import SqliteAutomationStore
from homedash.automations.validation import (
    NAME_MAX_LENGTH,
    validate_action,
    validate_automation,
    validate_automation_update,
    validate_condition,
    validate_trigger,
)
from homedash.observability.log_manager import get_component_logger

logger = get_component_logger("automations.repository")

LIST_LIMIT_DEFAULT = 10
LIST_LIMIT_MAX = 100
SORT_FIELDS = ("createdAt", "updatedAt", "name")

ChangeListener = Callable[[int], None]


@dataclass(frozen=True)
class _ChildKind:
    kind: str
    label: str
    validate: Callable[..., Any]
    from_row: Callable[[dict[str, Any]], Any]

    @property
    def not_found_code(self) -> str:
        return f"{self.kind.upper()}_NOT_FOUND"

    @property
    def not_owned_code(self) -> str:
        return f"{self.kind.upper()}_NOT_OWNED"


class AutomationRepository:
    """CRUD facade over the automation store.

    Nested operations resolve the parent automation before looking at the
    payload, and child-targeted ones check that the child belongs to it.
    """

    def __init__(self, store: SqliteAutomationStore, *, default_enabled: bool = True) -> None:
        self._store = store
        self._default_enabled = default_enabled
        self._listeners: list[ChangeListener] = []
        self._listeners_lock = threading.Lock()

    def subscribe(self, listener: ChangeListener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def _notify(self, automation_id: int) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(automation_id)
            except Exception as exc:
                logger.exception(
                    "Change listener failed automation_id=%s",
                    automation_id,
                    exc_info=exc,
                )

    # -------------------------------------------------------------------------
    # Automations
    # -------------------------------------------------------------------------

    def create(self, payload: Mapping[str, Any]) -> Automation:
        fields = validate_automation(payload, default_enabled=self._default_enabled)
        if self._store.name_exists(fields.name):
            raise DuplicateName("An automation with this name already exists")
        automation_id = self._store.insert_automation(
            {
                "name": fields.name,
                "description": fields.description,
                "enabled": fields.enabled,
                "source": fields.source.value,
                "tags": list(fields.tags),
            }
        )
        logger.info("Automation created automation_id=%s enabled=%s", automation_id, fields.enabled)
        self._notify(automation_id)
        return self.get(automation_id)

    def find(self, automation_id: int) -> Automation | None:
        row = self._store.get_automation(automation_id)
        if row is None:
            return None
        return self._assemble(row)

    def get(self, automation_id: int) -> Automation:
        automation = self.find(automation_id)
        if automation is None:
            raise NotFound("Automation not found", code="AUTOMATION_NOT_FOUND")
        return automation

    def list(
        self,
        *,
        search: str | None = None,
        enabled: bool | None = None,
        source: str | None = None,
        sort: str = "createdAt",
        order: str = "desc",
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Automation]:
        rows = self._store.list_automations(
            search=(search or "").strip() or None,
            enabled=enabled,
            source=source,
            sort=sort if sort in SORT_FIELDS else "createdAt",
            order="asc" if order == "asc" else "desc",
            limit=clamp_list_limit(limit),
            offset=max(0, int(offset or 0)),
        )
        return [self._assemble(row, include_children=False) for row in rows]

    def list_enabled(self) -> list[Automation]:
        automations: list[Automation] = []
        for automation_id in self._store.list_automation_ids(enabled=True):
            automation = self.find(automation_id)
            if automation is not None:
                automations.append(automation)
        return automations

    def update(self, automation_id: int, payload: Mapping[str, Any]) -> Automation:
        self.get(automation_id)
        changes = validate_automation_update(payload)
        if "name" in changes and self._store.name_exists(changes["name"], exclude_id=automation_id):
            raise DuplicateName("An automation with this name already exists")
        if "source" in changes:
            changes["source"] = changes["source"].value
        if changes and not self._store.update_automation(automation_id, changes):
            raise NotFound("Automation not found", code="AUTOMATION_NOT_FOUND")
        self._notify(automation_id)
        return self.get(automation_id)

    def delete(self, automation_id: int) -> Automation:
        automation = self.get(automation_id)
        if not self._store.delete_automation(automation_id):
            raise NotFound("Automation not found", code="AUTOMATION_NOT_FOUND")
        logger.info("Automation deleted automation_id=%s", automation_id)
        self._notify(automation_id)
        return automation

    def duplicate(self, automation_id: int) -> Automation:
        source = self.get(automation_id)
        new_name = self._copy_name(source.name)
        new_id = self._store.duplicate_automation(automation_id, new_name)
        if new_id is None:
            raise NotFound("Automation not found", code="AUTOMATION_NOT_FOUND")
        logger.info("Automation duplicated automation_id=%s copy_id=%s", automation_id, new_id)
        self._notify(new_id)
        return self.get(new_id)

    def mark_run(self, automation_id: int, ran_at: str | None = None) -> None:
        self._store.mark_run(automation_id, ran_at)

    def _copy_name(self, name: str) -> str:
        suffix_room = len(" (Copy 99999)")
        base = name if len(name) + suffix_room <= NAME_MAX_LENGTH else name[: NAME_MAX_LENGTH - suffix_room]
        taken = self._store.names_like(f"{base} (Copy")
        candidate = f"{base} (Copy)"
        number = 1
        while candidate in taken:
            number += 1
            candidate = f"{base} (Copy {number})"
        return candidate

    def _assemble(self, row: dict[str, Any], *, include_children: bool = True) -> Automation:
        automation_id = int(row["id"])
        triggers: tuple[Trigger, ...] = ()
        conditions: tuple[Condition, ...] = ()
        actions: tuple[Action, ...] = ()
        if include_children:
            triggers = tuple(_trigger_record(item) for item in self._store.list_children("trigger", automation_id))
            conditions = tuple(
                _condition_record(item) for item in self._store.list_children("condition", automation_id)
            )
            actions = tuple(_action_record(item) for item in self._store.list_children("action", automation_id))
        return Automation(
            id=automation_id,
            name=row["name"],
            description=row["description"],
            enabled=bool(row["enabled"]),
            source=Source(row["source"]) if row["source"] in {"local", "ha"} else Source.LOCAL,
            tags=tuple(row["tags"]),
            last_run=row["last_run"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            triggers=triggers,
            conditions=conditions,
            actions=actions,
        )

    # -------------------------------------------------------------------------
    # Triggers / conditions / actions
    # -------------------------------------------------------------------------

    def list_triggers(self, automation_id: int) -> list[Trigger]:
        return self._list_children(_TRIGGERS, automation_id)

    def get_trigger(self, automation_id: int, trigger_id: int) -> Trigger:
        return self._get_child(_TRIGGERS, automation_id, trigger_id)

    def create_trigger(self, automation_id: int, payload: Mapping[str, Any]) -> Trigger:
        return self._create_child(_TRIGGERS, automation_id, payload)

    def update_trigger(self, automation_id: int, trigger_id: int, payload: Mapping[str, Any]) -> Trigger:
        return self._update_child(_TRIGGERS, automation_id, trigger_id, payload)

    def delete_trigger(self, automation_id: int, trigger_id: int) -> Trigger:
        return self._delete_child(_TRIGGERS, automation_id, trigger_id)

    def list_conditions(self, automation_id: int) -> list[Condition]:
        return self._list_children(_CONDITIONS, automation_id)

    def get_condition(self, automation_id: int, condition_id: int) -> Condition:
        return self._get_child(_CONDITIONS, automation_id, condition_id)

    def create_condition(self, automation_id: int, payload: Mapping[str, Any]) -> Condition:
        return self._create_child(_CONDITIONS, automation_id, payload)

    def update_condition(self, automation_id: int, condition_id: int, payload: Mapping[str, Any]) -> Condition:
        return self._update_child(_CONDITIONS, automation_id, condition_id, payload)

    def delete_condition(self, automation_id: int, condition_id: int) -> Condition:
        return self._delete_child(_CONDITIONS, automation_id, condition_id)

    def list_actions(self, automation_id: int) -> list[Action]:
        return self._list_children(_ACTIONS, automation_id)

    def get_action(self, automation_id: int, action_id: int) -> Action:
        return self._get_child(_ACTIONS, automation_id, action_id)

    def create_action(self, automation_id: int, payload: Mapping[str, Any]) -> Action:
        return self._create_child(_ACTIONS, automation_id, payload)

    def update_action(self, automation_id: int, action_id: int, payload: Mapping[str, Any]) -> Action:
        return self._update_child(_ACTIONS, automation_id, action_id, payload)

    def delete_action(self, automation_id: int, action_id: int) -> Action:
        return self._delete_child(_ACTIONS, automation_id, action_id)

    def require_parent(self, automation_id: int) -> None:
        if self._store.get_automation(automation_id) is None:
            raise ParentNotFound(automation_id)

    def _list_children(self, kind: _ChildKind, automation_id: int) -> list[Any]:
        self.require_parent(automation_id)
        return [kind.from_row(row) for row in self._store.list_children(kind.kind, automation_id)]

    def _owned_row(self, kind: _ChildKind, automation_id: int, child_id: int) -> dict[str, Any]:
        self.require_parent(automation_id)
        row = self._store.get_child(kind.kind, child_id)
        if row is None:
            raise NotFound(f"{kind.label} not found", code=kind.not_found_code)
        if int(row["automation_id"]) != automation_id:
            raise ChildNotOwned(
                f"{kind.label} does not belong to this automation",
                code=kind.not_owned_code,
            )
        return row

    def _get_child(self, kind: _ChildKind, automation_id: int, child_id: int) -> Any:
        return kind.from_row(self._owned_row(kind, automation_id, child_id))

    def _create_child(self, kind: _ChildKind, automation_id: int, payload: Mapping[str, Any]) -> Any:
        self.require_parent(automation_id)
        spec = kind.validate(payload)
        child_id = self._store.insert_child(kind.kind, automation_id, spec.type.value, spec.columns())
        if child_id is None:
            raise ParentNotFound(automation_id)
        logger.info("%s created automation_id=%s child_id=%s", kind.label, automation_id, child_id)
        self._notify(automation_id)
        return self._get_child(kind, automation_id, child_id)

    def _update_child(self, kind: _ChildKind, automation_id: int, child_id: int, payload: Mapping[str, Any]) -> Any:
        existing = kind.from_row(self._owned_row(kind, automation_id, child_id))
        spec = kind.validate(payload, existing.spec)
        if not self._store.update_child(kind.kind, child_id, automation_id, spec.type.value, spec.columns()):
            raise NotFound(f"{kind.label} not found", code=kind.not_found_code)
        self._notify(automation_id)
        return self._get_child(kind, automation_id, child_id)

    def _delete_child(self, kind: _ChildKind, automation_id: int, child_id: int) -> Any:
        existing = kind.from_row(self._owned_row(kind, automation_id, child_id))
        if not self._store.delete_child(kind.kind, child_id, automation_id):
            raise NotFound(f"{kind.label} not found", code=kind.not_found_code)
        self._notify(automation_id)
        return existing


def clamp_list_limit(raw: Any) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return LIST_LIMIT_DEFAULT
    return min(max(value, 1), LIST_LIMIT_MAX)


def _trigger_record(row: dict[str, Any]) -> Trigger:
    trigger_type = row["type"]
    if trigger_type == "entity_state":
        spec: Any = EntityStateTrigger(entity_id=row["entity_id"] or "", attribute=row["attribute"], state=row["state"])
    elif trigger_type == "zwave":
        spec = ZwaveTrigger(entity_id=row["entity_id"] or "", attribute=row["attribute"], state=row["state"])
    elif trigger_type == "time":
        spec = TimeTrigger(at=row["time"] or "")
    elif trigger_type == "sunrise_sunset":
        event = row["state"] if row["state"] in {"sunrise", "sunset"} else None
        spec = SunTrigger(offset=int(row["offset"] or 0), event=SunEvent(event) if event else None)
    else:
        spec = MqttTrigger(topic=row["topic"] or "", payload=row["payload"])
    return Trigger(
        id=row["id"],
        automation_id=row["automation_id"],
        spec=spec,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _condition_record(row: dict[str, Any]) -> Condition:
    condition_type = row["type"]
    operator = Operator(row["operator"])
    if condition_type == "entity_state":
        spec: Any = EntityStateCondition(
            entity_id=row["entity_id"] or "",
            operator=operator,
            value=row["value"],
            attribute=row["attribute"],
        )
    elif condition_type == "numeric":
        spec = NumericCondition(
            entity_id=row["entity_id"] or "",
            operator=operator,
            value=float(row["value"]),
            attribute=row["attribute"],
        )
    elif condition_type == "time":
        spec = TimeCondition(operator=operator, value=row["value"])
    else:
        spec = MqttCondition(topic=row["topic"] or "", operator=operator, value=row["value"])
    return Condition(
        id=row["id"],
        automation_id=row["automation_id"],
        spec=spec,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _action_record(row: dict[str, Any]) -> Action:
    action_type = row["type"]
    if action_type == "service_call":
        spec: Any = ServiceCallAction(service=row["service"] or "", entity_id=row["entity_id"] or "", data=row["data"])
    elif action_type == "mqtt":
        spec = MqttAction(topic=row["topic"] or "", payload=row["payload"])
    elif action_type == "scene":
        spec = SceneAction(scene_id=row["scene_id"] or "")
    else:
        spec = LocalDeviceAction(entity_id=row["entity_id"] or "", data=row["data"])
    return Action(
        id=row["id"],
        automation_id=row["automation_id"],
        spec=spec,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


_TRIGGERS = _ChildKind(kind="trigger", label="Trigger", validate=validate_trigger, from_row=_trigger_record)
_CONDITIONS = _ChildKind(kind="condition", label="Condition", validate=validate_condition, from_row=_condition_record)
_ACTIONS = _ChildKind(kind="action", label="Action", validate=validate_action, from_row=_action_record)
