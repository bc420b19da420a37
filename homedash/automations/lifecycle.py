from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from homedash.automations.errors import NotFound
from homedash.automations.models import Automation
from homedash.automations.repository import AutomationRepository
from homedash.automations.store import SqliteAutomationStore
from homedash.observability.log_manager import get_component_logger

logger = get_component_logger("automations.lifecycle")


class AutomationSync(Protocol):
    def sync(self, automation: Automation) -> None:
        ...


@dataclass(frozen=True)
class ToggleResult:
    previous_enabled: bool
    new_enabled: bool
    automation: Automation

    def to_dict(self) -> dict[str, Any]:
        state = "enabled" if self.new_enabled else "disabled"
        return {
            "message": f"Automation {state} successfully",
            "previousEnabled": self.previous_enabled,
            "newEnabled": self.new_enabled,
            "automation": self.automation.to_dict(),
        }


class LifecycleController:
    def __init__(
        self,
        repository: AutomationRepository,
        store: SqliteAutomationStore,
        evaluator: AutomationSync | None = None,
    ) -> None:
        self._repository = repository
        self._store = store
        self._evaluator = evaluator

    def attach_evaluator(self, evaluator: AutomationSync) -> None:
        self._evaluator = evaluator

    def toggle(self, automation_id: int) -> ToggleResult:
        new_enabled = self._store.toggle_automation(automation_id)
        if new_enabled is None:
            raise NotFound("Automation not found", code="AUTOMATION_NOT_FOUND")
        automation = self._repository.get(automation_id)
        if self._evaluator is not None:
            self._evaluator.sync(automation)
        logger.info(
            "Automation toggled automation_id=%s enabled=%s",
            automation_id,
            new_enabled,
            extra={"event": "automation.toggled", "status": "enabled" if new_enabled else "disabled"},
        )
        return ToggleResult(previous_enabled=not new_enabled, new_enabled=new_enabled, automation=automation)

    def set_enabled(self, automation_id: int, enabled: bool) -> ToggleResult:
        current = self._repository.get(automation_id)
        if current.enabled == bool(enabled):
            return ToggleResult(previous_enabled=current.enabled, new_enabled=current.enabled, automation=current)
        return self.toggle(automation_id)
