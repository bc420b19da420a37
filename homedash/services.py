from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from homedash.automations.conditions import ConditionEvaluator
from homedash.automations.dispatcher import ActionDispatcher, LocalDeviceRegistry
from homedash.automations.evaluator import AutomationEvaluator
from homedash.automations.lifecycle import LifecycleController
from homedash.automations.repository import AutomationRepository
from homedash.automations.store import SqliteAutomationStore
from homedash.config import settings
from homedash.integrations.backend.contracts import BackendClient
from homedash.integrations.homeassistant.adapter import HomeAssistantBackend
from homedash.integrations.homeassistant.config import load_homeassistant_config
from homedash.observability.log_manager import get_component_logger

logger = get_component_logger("services")


@dataclass
class Services:
    store: SqliteAutomationStore
    repository: AutomationRepository
    lifecycle: LifecycleController
    dispatcher: ActionDispatcher
    conditions: ConditionEvaluator
    evaluator: AutomationEvaluator
    backend: BackendClient | None = None

    def close(self) -> None:
        self.evaluator.stop()
        self.store.close()


def build_services(
    *,
    db_path: str | Path | None = None,
    backend: BackendClient | None = None,
    load_backend: bool = True,
    local_devices: LocalDeviceRegistry | None = None,
    timezone_name: str | None = None,
    default_enabled: bool | None = None,
    workers: int | None = None,
    policy: str | None = None,
) -> Services:
    if backend is None and load_backend:
        backend = _load_backend()
    tz_name = timezone_name or settings.get_timezone()

    store = SqliteAutomationStore(db_path if db_path is not None else settings.get_db_path())
    repository = AutomationRepository(
        store,
        default_enabled=settings.get_default_enabled() if default_enabled is None else default_enabled,
    )
    dispatcher = ActionDispatcher(backend, local_devices)
    conditions = ConditionEvaluator(backend, timezone_name=tz_name)
    evaluator = AutomationEvaluator(
        repository,
        dispatcher,
        conditions,
        backend=backend,
        timezone_name=tz_name,
        workers=workers or settings.get_evaluator_workers(),
        policy=policy or settings.get_backpressure_policy(),
    )
    lifecycle = LifecycleController(repository, store, evaluator)
    repository.subscribe(evaluator.refresh)
    return Services(
        store=store,
        repository=repository,
        lifecycle=lifecycle,
        dispatcher=dispatcher,
        conditions=conditions,
        evaluator=evaluator,
        backend=backend,
    )


def _load_backend() -> HomeAssistantBackend | None:
    config = load_homeassistant_config()
    if config is None:
        logger.info("HomeAssistant integration disabled (missing HA_BASE_URL/HA_TOKEN)")
        return None
    logger.info("HomeAssistant integration enabled base_url=%s", config.base_url)
    return HomeAssistantBackend(config)
