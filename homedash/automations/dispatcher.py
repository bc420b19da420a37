from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from homedash.automations import errors
from homedash.automations.models import (
    Action,
    ActionSpec,
    LocalDeviceAction,
    MqttAction,
    SceneAction,
    ServiceCallAction,
)
from homedash.integrations.backend.contracts import BackendClient, BackendErrorKind, extract_domain
from homedash.integrations.backend.contracts import BackendError as TransportError
from homedash.observability.log_manager import get_component_logger

logger = get_component_logger("automations.dispatcher")

ALARM_DOMAIN = "alarm_control_panel"
ALARM_SERVICES = (
    "alarm_arm_home",
    "alarm_arm_away",
    "alarm_arm_night",
    "alarm_arm_vacation",
    "alarm_arm_custom_bypass",
    "alarm_disarm",
    "alarm_trigger",
)

LocalDeviceHandler = Callable[[str, dict[str, Any]], Any]


@dataclass(frozen=True)
class PlannedCall:
    target: str  # backend | local_device
    domain: str | None
    service: str | None
    entity_id: str | None
    data: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        if self.target == "local_device":
            return f"Would send command to local device {self.entity_id}"
        return f"Would call service {self.domain}.{self.service}" + (
            f" on {self.entity_id}" if self.entity_id else ""
        )


@dataclass(frozen=True)
class DispatchResult:
    action_id: int | None
    action_type: str
    success: bool
    message: str
    data: Any = None
    error: errors.AutomationError | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "actionId": self.action_id,
            "type": self.action_type,
            "success": self.success,
            "message": self.message,
        }
        if self.data is not None:
            body["data"] = self.data
        if self.error is not None:
            body["error"] = self.error.message
            body["code"] = self.error.code
        return body


class LocalDeviceRegistry:
    """Handlers for devices driven directly by this process."""

    def __init__(self) -> None:
        self._handlers: dict[str, LocalDeviceHandler] = {}
        self._lock = threading.Lock()

    def register(self, entity_id: str, handler: LocalDeviceHandler) -> None:
        with self._lock:
            self._handlers[entity_id] = handler

    def unregister(self, entity_id: str) -> None:
        with self._lock:
            self._handlers.pop(entity_id, None)

    def resolve(self, entity_id: str) -> LocalDeviceHandler | None:
        with self._lock:
            return self._handlers.get(entity_id) or self._handlers.get("*")


class ActionDispatcher:
    def __init__(self, backend: BackendClient | None, local_devices: LocalDeviceRegistry | None = None) -> None:
        self._backend = backend
        self._local_devices = local_devices or LocalDeviceRegistry()

    @property
    def local_devices(self) -> LocalDeviceRegistry:
        return self._local_devices

    def plan(self, action: Action | ActionSpec) -> PlannedCall:
        """Resolve an action into the call it would make, without executing it."""
        spec = action.spec if isinstance(action, Action) else action
        if isinstance(spec, ServiceCallAction):
            domain, service = resolve_service(spec.service, spec.entity_id)
            if domain == ALARM_DOMAIN:
                check_alarm_target(service, spec.entity_id)
            data = dict(spec.data) if isinstance(spec.data, dict) else {}
            data["entity_id"] = spec.entity_id
            return PlannedCall(target="backend", domain=domain, service=service, entity_id=spec.entity_id, data=data)
        if isinstance(spec, MqttAction):
            payload: dict[str, Any] = {"topic": spec.topic}
            if spec.payload is not None:
                payload["payload"] = spec.payload
            return PlannedCall(target="backend", domain="mqtt", service="publish", entity_id=None, data=payload)
        if isinstance(spec, SceneAction):
            return PlannedCall(
                target="backend",
                domain="scene",
                service="turn_on",
                entity_id=spec.scene_id,
                data={"entity_id": spec.scene_id},
            )
        if isinstance(spec, LocalDeviceAction):
            data = dict(spec.data) if isinstance(spec.data, dict) else {}
            return PlannedCall(target="local_device", domain=None, service=None, entity_id=spec.entity_id, data=data)
        raise errors.InvalidCommand(f"Unsupported action type: {type(spec).__name__}")

    def dispatch(self, action: Action | ActionSpec, *, automation_id: int | None = None) -> DispatchResult:
        spec = action.spec if isinstance(action, Action) else action
        action_id = action.id if isinstance(action, Action) else None
        action_type = spec.type.value
        try:
            planned = self.plan(spec)
            if planned.target == "local_device":
                data = self._run_local(planned)
            else:
                data = self._call_backend(planned.domain or "", planned.service or "", planned.data)
        except errors.AutomationError as exc:
            logger.warning(
                "Action dispatch failed automation_id=%s action_id=%s type=%s",
                automation_id,
                action_id,
                action_type,
                extra={"event": "action.dispatch_failed", "error_code": exc.code, "status": "failed"},
            )
            return DispatchResult(
                action_id=action_id,
                action_type=action_type,
                success=False,
                message=exc.message,
                error=exc,
            )
        logger.info(
            "Action dispatched automation_id=%s action_id=%s type=%s",
            automation_id,
            action_id,
            action_type,
            extra={"event": "action.dispatched", "status": "ok"},
        )
        return DispatchResult(
            action_id=action_id,
            action_type=action_type,
            success=True,
            message=_success_message(planned),
            data=data,
        )

    def dispatch_alarm(self, entity_id: str, service: str, code: str | None = None) -> DispatchResult:
        """Run an alarm-panel service; ``code`` is forwarded but never logged."""
        try:
            check_alarm_target(service, entity_id)
            payload: dict[str, Any] = {"entity_id": entity_id}
            if code:
                payload["code"] = code
            data = self._call_backend(ALARM_DOMAIN, service, payload)
        except errors.AutomationError as exc:
            logger.warning(
                "Alarm command failed entity_id=%s service=%s",
                entity_id,
                service,
                extra={"event": "alarm.command_failed", "error_code": exc.code, "status": "failed"},
            )
            return DispatchResult(
                action_id=None,
                action_type="alarm",
                success=False,
                message=exc.message,
                error=exc,
            )
        logger.info(
            "Alarm command executed entity_id=%s service=%s",
            entity_id,
            service,
            extra={"event": "alarm.command_executed", "status": "ok"},
        )
        return DispatchResult(
            action_id=None,
            action_type="alarm",
            success=True,
            message=f"Successfully executed {service} on {entity_id}",
            data=data or None,
        )

    def _call_backend(self, domain: str, service: str, data: dict[str, Any]) -> Any:
        if self._backend is None:
            raise errors.BackendUnreachable("Home Assistant is not configured")
        started = time.monotonic()
        try:
            return self._backend.call_service(domain, service, data)
        except TransportError as exc:
            raise remap_backend_error(exc) from exc
        except Exception as exc:
            raise errors.BackendError(f"Home Assistant error: {exc}") from exc
        finally:
            logger.debug(
                "Backend call finished domain=%s service=%s",
                domain,
                service,
                extra={"latency_ms": int((time.monotonic() - started) * 1000)},
            )

    def _run_local(self, planned: PlannedCall) -> Any:
        entity_id = planned.entity_id or ""
        handler = self._local_devices.resolve(entity_id)
        if handler is None:
            raise errors.LocalDeviceUnavailable(f"No local device controller for {entity_id}")
        try:
            return handler(entity_id, planned.data)
        except errors.AutomationError:
            raise
        except Exception as exc:
            raise errors.LocalDeviceUnavailable(f"Local device {entity_id} failed: {exc}") from exc


def resolve_service(service: str, entity_id: str | None) -> tuple[str, str]:
    service = str(service or "").strip()
    if "." in service:
        domain, _, name = service.partition(".")
        if domain and name:
            return domain, name
        raise errors.InvalidCommand(f"Invalid service name: {service}")
    if service.startswith("alarm_"):
        return ALARM_DOMAIN, service
    domain = extract_domain(entity_id)
    if not domain or not service:
        raise errors.InvalidCommand(f"Cannot resolve a domain for service {service}")
    return domain, service


def check_alarm_target(service: str, entity_id: str | None) -> None:
    if service not in ALARM_SERVICES:
        raise errors.InvalidAlarmService(
            f"Invalid alarm service. Must be one of: {', '.join(ALARM_SERVICES)}",
            details={"allowed": list(ALARM_SERVICES)},
        )
    if not str(entity_id or "").startswith(f"{ALARM_DOMAIN}."):
        raise errors.DomainMismatch(
            f'entity_id must be an alarm_control_panel entity (should start with "{ALARM_DOMAIN}.")'
        )


def remap_backend_error(exc: TransportError) -> errors.DispatchError:
    if exc.kind is BackendErrorKind.UNAUTHORIZED:
        return errors.AuthFailed("Authentication failed. Please check your Home Assistant access token.")
    if exc.kind is BackendErrorKind.NOT_FOUND:
        return errors.EntityNotFound("Entity not found. Please check that the entity exists in Home Assistant.")
    if exc.kind is BackendErrorKind.BAD_REQUEST:
        return errors.InvalidCommand(
            "Invalid request. This may be due to an incorrect PIN code or unsupported service for this entity."
        )
    if exc.kind is BackendErrorKind.TIMEOUT:
        return errors.BackendUnreachable("Connection timeout. Please check your Home Assistant connection.")
    return errors.BackendError(f"Home Assistant error: {exc}")


def _success_message(planned: PlannedCall) -> str:
    if planned.target == "local_device":
        return f"Sent command to local device {planned.entity_id}"
    suffix = f" on {planned.entity_id}" if planned.entity_id else ""
    return f"Successfully executed {planned.domain}.{planned.service}{suffix}"
