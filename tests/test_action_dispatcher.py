from __future__ import annotations

import pytest

from homedash.automations import errors
from homedash.automations.dispatcher import (
    ActionDispatcher,
    LocalDeviceRegistry,
    remap_backend_error,
    resolve_service,
)
from homedash.automations.models import LocalDeviceAction, SceneAction, ServiceCallAction
from homedash.integrations.backend.contracts import BackendError, BackendErrorKind


def test_resolve_service_prefers_explicit_domain() -> None:
    assert resolve_service("light.turn_on", "switch.fan") == ("light", "turn_on")
    assert resolve_service("turn_off", "switch.fan") == ("switch", "turn_off")
    assert resolve_service("alarm_arm_home", None) == ("alarm_control_panel", "alarm_arm_home")


def test_resolve_service_without_domain_is_invalid() -> None:
    with pytest.raises(errors.InvalidCommand):
        resolve_service("turn_on", "nodomain")


@pytest.mark.parametrize(
    ("kind", "error_type", "status_code"),
    [
        (BackendErrorKind.UNAUTHORIZED, errors.AuthFailed, 401),
        (BackendErrorKind.NOT_FOUND, errors.EntityNotFound, 404),
        (BackendErrorKind.BAD_REQUEST, errors.InvalidCommand, 400),
        (BackendErrorKind.TIMEOUT, errors.BackendUnreachable, 408),
        (BackendErrorKind.UNKNOWN, errors.BackendError, 500),
    ],
)
def test_backend_errors_are_reclassified(kind, error_type, status_code) -> None:
    mapped = remap_backend_error(BackendError(kind, "boom"))

    assert isinstance(mapped, error_type)
    assert mapped.status_code == status_code


def test_dispatch_reports_auth_failure(backend) -> None:
    backend.fail("light", "turn_on", BackendErrorKind.UNAUTHORIZED)
    dispatcher = ActionDispatcher(backend)

    result = dispatcher.dispatch(ServiceCallAction(service="light.turn_on", entity_id="light.a"))

    assert result.success is False
    assert result.error.code == "AUTH_FAILED"
    assert result.to_dict()["code"] == "AUTH_FAILED"


def test_service_call_merges_data_with_target(backend) -> None:
    dispatcher = ActionDispatcher(backend)

    result = dispatcher.dispatch(
        ServiceCallAction(service="light.turn_on", entity_id="light.a", data={"brightness": 10})
    )

    assert result.success is True
    assert backend.calls == [("light", "turn_on", {"brightness": 10, "entity_id": "light.a"})]


def test_alarm_service_call_checks_target_domain(backend) -> None:
    dispatcher = ActionDispatcher(backend)

    result = dispatcher.dispatch(ServiceCallAction(service="alarm_arm_away", entity_id="light.kitchen"))

    assert result.error.code == "DOMAIN_MISMATCH"
    assert backend.calls == []


def test_alarm_command_forwards_code(backend) -> None:
    dispatcher = ActionDispatcher(backend)

    result = dispatcher.dispatch_alarm("alarm_control_panel.home", "alarm_disarm", "1234")

    assert result.success is True
    assert result.message == "Successfully executed alarm_disarm on alarm_control_panel.home"
    assert backend.calls == [
        ("alarm_control_panel", "alarm_disarm", {"entity_id": "alarm_control_panel.home", "code": "1234"})
    ]


def test_alarm_command_rejects_unknown_service(backend) -> None:
    result = ActionDispatcher(backend).dispatch_alarm("alarm_control_panel.home", "alarm_explode")

    assert result.error.code == "INVALID_ALARM_SERVICE"
    assert "alarm_disarm" in result.error.to_dict()["allowed"]


def test_missing_backend_is_unreachable() -> None:
    result = ActionDispatcher(None).dispatch(SceneAction(scene_id="scene.movie"))

    assert result.error.code == "BACKEND_UNREACHABLE"


def test_local_device_uses_registered_handler() -> None:
    registry = LocalDeviceRegistry()
    received: list[tuple[str, dict]] = []
    registry.register("relay.garage", lambda entity_id, data: received.append((entity_id, data)) or "ok")
    dispatcher = ActionDispatcher(None, registry)

    result = dispatcher.dispatch(LocalDeviceAction(entity_id="relay.garage", data={"pulse": 1}))
    missing = dispatcher.dispatch(LocalDeviceAction(entity_id="relay.gate"))

    assert result.success is True
    assert result.data == "ok"
    assert received == [("relay.garage", {"pulse": 1})]
    assert missing.error.code == "LOCAL_DEVICE_UNAVAILABLE"


def test_plan_describes_without_calling_backend(backend) -> None:
    planned = ActionDispatcher(backend).plan(SceneAction(scene_id="7"))

    assert (planned.domain, planned.service, planned.data) == ("scene", "turn_on", {"entity_id": "7"})
    assert planned.describe() == "Would call service scene.turn_on on 7"
    assert backend.calls == []


@pytest.mark.parametrize(
    ("kind", "code", "status_code"),
    [
        (BackendErrorKind.UNAUTHORIZED, "AUTH_FAILED", 401),
        (BackendErrorKind.NOT_FOUND, "ENTITY_NOT_FOUND", 404),
    ],
)
def test_alarm_disarm_reports_backend_rejection(backend, kind, code, status_code) -> None:
    backend.fail("alarm_control_panel", "alarm_disarm", kind)
    dispatcher = ActionDispatcher(backend)

    action_result = dispatcher.dispatch(
        ServiceCallAction(service="alarm_disarm", entity_id="alarm_control_panel.home")
    )
    command_result = dispatcher.dispatch_alarm("alarm_control_panel.home", "alarm_disarm", "1234")

    for result in (action_result, command_result):
        assert result.success is False
        assert result.error.code == code
        assert result.error.status_code == status_code
    assert backend.calls == []
