"""
Trigger evaluation engine.

Backend events and clock ticks enter through one ingress queue. A single
consumer thread matches them against the armed automations and hands
firings to a worker pool; each automation owns a small state machine that
keeps its own firings serialized.
"""

from __future__ import annotations

import queue
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Deque
from zoneinfo import ZoneInfo

from dateutil import parser as date_parser

from homedash.automations.conditions import ConditionEvaluator
from homedash.automations.dispatcher import ActionDispatcher, DispatchResult
from homedash.automations.models import (
    Automation,
    EntityStateTrigger,
    MqttTrigger,
    SunEvent,
    SunTrigger,
    TimeTrigger,
    Trigger,
    ZwaveTrigger,
)
from homedash.automations.repository import AutomationRepository
from homedash.config.settings import BACKPRESSURE_POLICIES
from homedash.integrations.backend.contracts import BackendClient, BackendError, BackendEvent, Entity
from homedash.observability.log_manager import get_component_logger

logger = get_component_logger("automations.evaluator")

SUN_ENTITY_ID = "sun.sun"
_STOP = object()


@dataclass(frozen=True)
class ClockTick:
    now: datetime

    @property
    def minute(self) -> datetime:
        return self.now.astimezone(timezone.utc).replace(second=0, microsecond=0)


class MachineState(Enum):
    DISABLED = "disabled"
    ARMED = "armed"
    FIRING = "firing"


@dataclass(frozen=True)
class FiringRecord:
    automation_id: int
    automation_name: str
    trigger_id: int | None
    trigger_type: str | None
    fired_at: str
    conditions_met: bool
    results: tuple[DispatchResult, ...] = ()
    duration_ms: int = 0
    error: str | None = None

    @property
    def failures(self) -> tuple[DispatchResult, ...]:
        return tuple(item for item in self.results if not item.success)

    @property
    def success(self) -> bool:
        return self.error is None and not self.failures

    def to_dict(self) -> dict[str, Any]:
        return {
            "automationId": self.automation_id,
            "automationName": self.automation_name,
            "triggerId": self.trigger_id,
            "triggerType": self.trigger_type,
            "firedAt": self.fired_at,
            "conditionsMet": self.conditions_met,
            "success": self.success,
            "results": [item.to_dict() for item in self.results],
            "failedActions": len(self.failures),
            "durationMs": self.duration_ms,
            "error": self.error,
        }


class AutomationMachine:
    """Disabled / Armed / Firing state for one automation."""

    def __init__(self, automation: Automation, *, policy: str = "coalesce") -> None:
        self._lock = threading.Lock()
        self._automation = automation
        self._policy = policy
        self._pending: Deque[tuple[Trigger, datetime]] = deque()
        self._state = MachineState.ARMED if automation.enabled else MachineState.DISABLED

    @property
    def automation(self) -> Automation:
        with self._lock:
            return self._automation

    @property
    def state(self) -> MachineState:
        with self._lock:
            return self._state

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def update(self, automation: Automation) -> None:
        with self._lock:
            self._automation = automation
            if not automation.enabled:
                self._pending.clear()
            if self._state is MachineState.FIRING:
                return
            self._state = MachineState.ARMED if automation.enabled else MachineState.DISABLED

    def request_fire(self, trigger: Trigger, now: datetime) -> bool:
        """Return True when the caller should start a firing now."""
        with self._lock:
            if self._state is MachineState.DISABLED:
                return False
            if self._state is MachineState.ARMED:
                self._state = MachineState.FIRING
                return True
            if self._policy == "queue":
                self._pending.append((trigger, now))
            elif self._policy == "coalesce" and not self._pending:
                self._pending.append((trigger, now))
            return False

    def complete(self) -> tuple[Trigger, datetime] | None:
        """Finish a firing; return the next queued one to run, if any."""
        with self._lock:
            if self._pending and self._automation.enabled:
                return self._pending.popleft()
            self._pending.clear()
            self._state = MachineState.ARMED if self._automation.enabled else MachineState.DISABLED
            return None

    def release(self) -> None:
        """Abandon a firing that could not be started."""
        with self._lock:
            self._pending.clear()
            self._state = MachineState.ARMED if self._automation.enabled else MachineState.DISABLED


class SunTracker:
    """Solar event times read from the backend's ``sun.sun`` entity.

    ``next_rising`` / ``next_setting`` move forward once an event passes, so
    observed occurrences are kept long enough to honour positive offsets.
    """

    RETENTION = timedelta(minutes=1441)

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._occurrences: set[tuple[SunEvent, datetime]] = set()

    def observe(self, attributes: dict[str, Any], *, now: datetime | None = None) -> None:
        found: list[tuple[SunEvent, datetime]] = []
        for key, event in (("next_rising", SunEvent.SUNRISE), ("next_setting", SunEvent.SUNSET)):
            raw = attributes.get(key)
            if not raw:
                continue
            try:
                when = date_parser.isoparse(str(raw))
            except (TypeError, ValueError):
                logger.warning("Unparsable sun attribute key=%s", key)
                continue
            if when.tzinfo is None:
                when = when.replace(tzinfo=timezone.utc)
            found.append((event, when.astimezone(timezone.utc).replace(second=0, microsecond=0)))
        cutoff = (now or datetime.now(timezone.utc)) - self.RETENTION
        with self._lock:
            self._occurrences.update(found)
            self._occurrences = {item for item in self._occurrences if item[1] >= cutoff}

    def observe_entity(self, entity: Entity | None, *, now: datetime | None = None) -> None:
        if entity is not None:
            self.observe(entity.attributes, now=now)

    def matches(self, trigger: SunTrigger, minute: datetime) -> bool:
        with self._lock:
            occurrences = list(self._occurrences)
        for event, when in occurrences:
            if trigger.event is not None and trigger.event is not event:
                continue
            if when + timedelta(minutes=trigger.offset) == minute:
                return True
        return False

    def occurrences(self) -> list[dict[str, str]]:
        with self._lock:
            items = sorted(self._occurrences, key=lambda item: item[1])
        return [{"event": event.value, "at": when.isoformat()} for event, when in items]


class AutomationEvaluator:
    HISTORY_SIZE = 100

    def __init__(
        self,
        repository: AutomationRepository,
        dispatcher: ActionDispatcher,
        conditions: ConditionEvaluator,
        *,
        backend: BackendClient | None = None,
        sun: SunTracker | None = None,
        timezone_name: str = "UTC",
        workers: int = 4,
        policy: str = "coalesce",
    ) -> None:
        if policy not in BACKPRESSURE_POLICIES:
            raise ValueError(f"Unknown backpressure policy: {policy}")
        self._repository = repository
        self._dispatcher = dispatcher
        self._conditions = conditions
        self._backend = backend
        self._sun = sun or SunTracker()
        self._tz = ZoneInfo(timezone_name)
        self._workers = max(1, int(workers))
        self._policy = policy

        self._machines: dict[int, AutomationMachine] = {}
        self._machines_lock = threading.Lock()
        self._history: Deque[FiringRecord] = deque(maxlen=self.HISTORY_SIZE)
        self._history_lock = threading.Lock()
        self._last_tick_minute: datetime | None = None
        self._tick_lock = threading.Lock()
        self._sun_refresh: Future[None] | None = None

        self._ingress: queue.Queue[Any] = queue.Queue()
        self._executor: ThreadPoolExecutor | None = None
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    # =========================================================================
    # Working set
    # =========================================================================

    def load_all(self) -> int:
        automations = self._repository.list_enabled()
        for automation in automations:
            self.sync(automation)
        logger.info("Evaluator loaded automations count=%s", len(automations))
        return len(automations)

    def sync(self, automation: Automation) -> None:
        with self._machines_lock:
            machine = self._machines.get(automation.id)
            if machine is None:
                self._machines[automation.id] = AutomationMachine(automation, policy=self._policy)
                return
        machine.update(automation)

    def forget(self, automation_id: int) -> None:
        with self._machines_lock:
            machine = self._machines.pop(automation_id, None)
        if machine is not None:
            machine.update(_disabled_copy(machine.automation))

    def refresh(self, automation_id: int) -> None:
        automation = self._repository.find(automation_id)
        if automation is None:
            self.forget(automation_id)
            return
        self.sync(automation)

    def machine_state(self, automation_id: int) -> MachineState | None:
        with self._machines_lock:
            machine = self._machines.get(automation_id)
        return machine.state if machine else None

    # =========================================================================
    # Ingress
    # =========================================================================

    def submit(self, event: BackendEvent | ClockTick) -> None:
        self._ingress.put(event)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="homedash-firing")
        self._thread = threading.Thread(target=self._run, name="homedash-evaluator", daemon=True)
        self._thread.start()
        self._schedule_sun_refresh(datetime.now(timezone.utc))
        logger.info("Evaluator started workers=%s policy=%s", self._workers, self._policy)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._ingress.put(_STOP)
            self._thread.join(timeout=5)
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        logger.info("Evaluator stopped")

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _run(self) -> None:
        while not self._stop_event.is_set():
            item = self._ingress.get()
            if item is _STOP:
                break
            try:
                self.handle(item)
            except Exception as exc:
                logger.exception("Evaluator failed to handle event", exc_info=exc)

    def handle(self, event: BackendEvent | ClockTick) -> int:
        """Match on the calling thread and hand firings to the worker pool.

        Returns the number of firings submitted. A firing that cannot be
        submitted (pool stopped) releases its machine back to Armed.
        """
        submitted = 0
        for machine, trigger, now in self._match(event):
            if not machine.request_fire(trigger, now):
                continue
            executor = self._executor
            try:
                if executor is None:
                    raise RuntimeError("worker pool is not running")
                executor.submit(self._drain, machine, trigger, now)
            except RuntimeError as exc:
                logger.warning(
                    "Firing skipped automation_id=%s error=%s",
                    machine.automation.id,
                    exc,
                )
                machine.release()
                continue
            submitted += 1
        return submitted

    def process(self, event: BackendEvent | ClockTick) -> list[FiringRecord]:
        """Match and fire synchronously on the calling thread."""
        records: list[FiringRecord] = []
        for machine, trigger, now in self._match(event):
            if machine.request_fire(trigger, now):
                records.extend(self._drain(machine, trigger, now))
        return records

    # =========================================================================
    # Matching
    # =========================================================================

    def _match(self, event: BackendEvent | ClockTick) -> list[tuple[AutomationMachine, Trigger, datetime]]:
        if isinstance(event, ClockTick):
            return self._match_tick(event)
        if event.kind == "mqtt" and event.topic:
            self._conditions.mqtt_cache.record(event.topic, event.payload)
        if event.kind == "state_changed" and event.entity_id == SUN_ENTITY_ID:
            self._sun.observe(event.attributes, now=event.received_at)
        now = event.received_at
        matches: list[tuple[AutomationMachine, Trigger, datetime]] = []
        for machine in self._armed_machines():
            for trigger in machine.automation.triggers:
                if event_matches(trigger, event):
                    matches.append((machine, trigger, now))
                    break
        return matches

    def _match_tick(self, tick: ClockTick) -> list[tuple[AutomationMachine, Trigger, datetime]]:
        minute = tick.minute
        with self._tick_lock:
            if self._last_tick_minute is not None and minute <= self._last_tick_minute:
                return []
            self._last_tick_minute = minute
        machines = self._armed_machines()
        if any(isinstance(t.spec, SunTrigger) for m in machines for t in m.automation.triggers):
            self._schedule_sun_refresh(tick.now)
        local_text = tick.now.astimezone(self._tz).strftime("%H:%M")
        matches: list[tuple[AutomationMachine, Trigger, datetime]] = []
        for machine in machines:
            for trigger in machine.automation.triggers:
                spec = trigger.spec
                if isinstance(spec, TimeTrigger) and spec.at == local_text:
                    matches.append((machine, trigger, tick.now))
                    break
                if isinstance(spec, SunTrigger) and self._sun.matches(spec, minute):
                    matches.append((machine, trigger, tick.now))
                    break
        return matches

    def _armed_machines(self) -> list[AutomationMachine]:
        with self._machines_lock:
            machines = list(self._machines.values())
        return [machine for machine in machines if machine.state is not MachineState.DISABLED]

    def _schedule_sun_refresh(self, now: datetime) -> None:
        # With a running pool the read happens off the ingress thread and
        # serves later ticks; ``sun.sun`` state changes keep the tracker current.
        if self._backend is None:
            return
        executor = self._executor
        if executor is None:
            self.refresh_sun(now)
            return
        if self._sun_refresh is not None and not self._sun_refresh.done():
            return
        try:
            self._sun_refresh = executor.submit(self.refresh_sun, now)
        except RuntimeError as exc:
            logger.warning("Sun refresh not scheduled error=%s", exc)

    def refresh_sun(self, now: datetime) -> None:
        if self._backend is None:
            return
        try:
            self._sun.observe_entity(self._backend.get_state(SUN_ENTITY_ID), now=now)
        except BackendError as exc:
            logger.warning("Sun state read failed kind=%s", exc.kind.value)
        except Exception as exc:
            logger.warning("Sun state read failed error=%s", exc)

    # =========================================================================
    # Firing
    # =========================================================================

    def _drain(self, machine: AutomationMachine, trigger: Trigger, now: datetime) -> list[FiringRecord]:
        records: list[FiringRecord] = []
        current: tuple[Trigger, datetime] | None = (trigger, now)
        while current is not None:
            try:
                records.append(self._fire(machine.automation, *current))
            except Exception as exc:
                logger.exception(
                    "Firing failed automation_id=%s",
                    machine.automation.id,
                    exc_info=exc,
                )
                records.append(self._record_failure(machine.automation, current[0], exc))
            finally:
                current = machine.complete()
        return records

    def _fire(self, automation: Automation, trigger: Trigger, now: datetime) -> FiringRecord:
        started = time.monotonic()
        fired_at = now.astimezone(timezone.utc).isoformat()
        conditions_met = self._conditions.evaluate_all(automation.conditions, now=now)
        results: list[DispatchResult] = []
        if conditions_met:
            for action in automation.actions:
                results.append(self._dispatcher.dispatch(action, automation_id=automation.id))
            self._repository.mark_run(automation.id, fired_at)
        record = FiringRecord(
            automation_id=automation.id,
            automation_name=automation.name,
            trigger_id=trigger.id,
            trigger_type=trigger.type.value,
            fired_at=fired_at,
            conditions_met=conditions_met,
            results=tuple(results),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        self._remember(record)
        logger.info(
            "Automation fired automation_id=%s trigger_id=%s conditions_met=%s failures=%s",
            automation.id,
            trigger.id,
            conditions_met,
            len(record.failures),
            extra={
                "event": "automation.fired",
                "status": "ok" if record.success else "partial_failure",
                "latency_ms": record.duration_ms,
            },
        )
        return record

    def _record_failure(self, automation: Automation, trigger: Trigger, exc: Exception) -> FiringRecord:
        record = FiringRecord(
            automation_id=automation.id,
            automation_name=automation.name,
            trigger_id=trigger.id,
            trigger_type=trigger.type.value,
            fired_at=datetime.now(timezone.utc).isoformat(),
            conditions_met=False,
            error=str(exc),
        )
        self._remember(record)
        return record

    def _remember(self, record: FiringRecord) -> None:
        with self._history_lock:
            self._history.append(record)

    # =========================================================================
    # Introspection
    # =========================================================================

    def get_history(self, automation_id: int | None = None, *, limit: int | None = None) -> list[FiringRecord]:
        with self._history_lock:
            items = list(self._history)
        if automation_id is not None:
            items = [item for item in items if item.automation_id == automation_id]
        items.reverse()
        if limit is not None:
            items = items[: max(0, int(limit))]
        return items

    def status(self) -> dict[str, Any]:
        with self._machines_lock:
            machines = list(self._machines.values())
        return {
            "running": self.running,
            "policy": self._policy,
            "workers": self._workers,
            "queueSize": self._ingress.qsize(),
            "historySize": len(self.get_history()),
            "sunEvents": self._sun.occurrences(),
            "automations": [
                {
                    "id": machine.automation.id,
                    "name": machine.automation.name,
                    "state": machine.state.value,
                    "pending": machine.pending,
                    "triggers": len(machine.automation.triggers),
                }
                for machine in sorted(machines, key=lambda item: item.automation.id)
            ],
        }


def event_matches(trigger: Trigger, event: BackendEvent) -> bool:
    spec = trigger.spec
    if isinstance(spec, EntityStateTrigger):
        if event.kind != "state_changed" or event.entity_id != spec.entity_id:
            return False
        if spec.attribute:
            value = event.attributes.get(spec.attribute)
            if spec.state is None:
                return True
            return value is not None and str(value) == spec.state
        if spec.state is None:
            return True
        return event.new_state == spec.state and event.old_state != event.new_state
    if isinstance(spec, ZwaveTrigger):
        if event.kind not in {"zwave", "state_changed"} or event.entity_id != spec.entity_id:
            return False
        if spec.state is None:
            return True
        if spec.attribute:
            value = event.attributes.get(spec.attribute)
            return value is not None and str(value) == spec.state
        return event.new_state == spec.state
    if isinstance(spec, MqttTrigger):
        if event.kind != "mqtt" or event.topic != spec.topic:
            return False
        return spec.payload is None or event.payload == spec.payload
    return False


def _disabled_copy(automation: Automation) -> Automation:
    return replace(automation, enabled=False)
