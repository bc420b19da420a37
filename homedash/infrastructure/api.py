from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from homedash.automations.dispatcher import remap_backend_error
from homedash.automations.errors import AutomationError, ValidationError
from homedash.integrations.backend.contracts import BackendError, clamp_search_limit
from homedash.observability.log_manager import get_component_logger
from homedash.services import Services

logger = get_component_logger("infrastructure.api")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def changes(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True)


class AutomationBody(CamelModel):
    name: Any = None
    description: Any = None
    enabled: Any = None
    source: Any = None
    tags: Any = None


class TriggerBody(CamelModel):
    type: Any = None
    entity_id: Any = None
    attribute: Any = None
    state: Any = None
    time: Any = None
    offset: Any = None
    topic: Any = None
    payload: Any = None


class ConditionBody(CamelModel):
    type: Any = None
    entity_id: Any = None
    attribute: Any = None
    topic: Any = None
    operator: Any = None
    value: Any = None


class ActionBody(CamelModel):
    type: Any = None
    service: Any = None
    entity_id: Any = None
    data: Any = None
    topic: Any = None
    payload: Any = None
    scene_id: Any = None


class AlarmBody(BaseModel):
    entity_id: Any = None
    service: Any = None
    code: Any = None


def create_app(services: Services) -> FastAPI:
    app = FastAPI(title="homedash API", version="0.1.0")
    app.state.services = services

    @app.exception_handler(AutomationError)
    async def _automation_error(request: Request, exc: AutomationError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Request failed path=%s", request.url.path, extra={"error_code": exc.code})
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request body", "code": "INVALID_REQUEST"},
        )

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled API error path=%s", request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "code": "INTERNAL_ERROR"},
        )

    # -------------------------------------------------------------------------
    # Automations
    # -------------------------------------------------------------------------

    @app.get("/automations")
    def list_automations(
        search: str | None = None,
        enabled: str | None = None,
        source: str | None = None,
        sort: str = "createdAt",
        order: str = "desc",
        limit: str | None = None,
        offset: str | None = None,
    ) -> list[dict[str, Any]]:
        automations = services.repository.list(
            search=search,
            enabled=_as_bool_filter(enabled),
            source=source or None,
            sort=sort,
            order=order,
            limit=limit,
            offset=_as_offset(offset),
        )
        return [item.to_dict(include_children=False) for item in automations]

    @app.post("/automations", status_code=201)
    def create_automation(body: AutomationBody) -> dict[str, Any]:
        return services.repository.create(body.changes()).to_dict()

    @app.get("/automations/{automation_id}")
    def get_automation(automation_id: str) -> dict[str, Any]:
        return services.repository.get(_parse_id(automation_id, "INVALID_AUTOMATION_ID")).to_dict()

    @app.put("/automations/{automation_id}")
    def update_automation(automation_id: str, body: AutomationBody) -> dict[str, Any]:
        parsed_id = _parse_id(automation_id, "INVALID_AUTOMATION_ID")
        changes = body.changes()
        enabled = changes.pop("enabled", None)
        if enabled is not None and not isinstance(enabled, bool):
            raise ValidationError("enabled must be a boolean", code="INVALID_ENABLED")
        automation = services.repository.update(parsed_id, changes)
        if enabled is not None:
            automation = services.lifecycle.set_enabled(parsed_id, enabled).automation
        return automation.to_dict()

    @app.delete("/automations/{automation_id}")
    def delete_automation(automation_id: str) -> dict[str, Any]:
        deleted = services.repository.delete(_parse_id(automation_id, "INVALID_AUTOMATION_ID"))
        return {"message": "Automation and all related data deleted successfully", "automation": deleted.to_dict()}

    @app.put("/automations/{automation_id}/toggle")
    def toggle_automation(automation_id: str) -> dict[str, Any]:
        return services.lifecycle.toggle(_parse_id(automation_id, "INVALID_AUTOMATION_ID")).to_dict()

    @app.post("/automations/{automation_id}/duplicate", status_code=201)
    def duplicate_automation(automation_id: str) -> dict[str, Any]:
        return services.repository.duplicate(_parse_id(automation_id, "INVALID_AUTOMATION_ID")).to_dict()

    @app.post("/automations/{automation_id}/test")
    def test_automation(automation_id: str) -> dict[str, Any]:
        return _dry_run(services, _parse_id(automation_id, "INVALID_AUTOMATION_ID"))

    @app.get("/automations/{automation_id}/history")
    def automation_history(automation_id: str, limit: str | None = None) -> list[dict[str, Any]]:
        parsed_id = _parse_id(automation_id, "INVALID_AUTOMATION_ID")
        services.repository.get(parsed_id)
        records = services.evaluator.get_history(parsed_id, limit=_as_optional_int(limit))
        return [record.to_dict() for record in records]

    # -------------------------------------------------------------------------
    # Triggers / conditions / actions
    # -------------------------------------------------------------------------

    @app.get("/automations/{automation_id}/triggers")
    def list_triggers(automation_id: str) -> list[dict[str, Any]]:
        items = services.repository.list_triggers(_parse_id(automation_id, "INVALID_AUTOMATION_ID"))
        return [item.to_dict() for item in items]

    @app.post("/automations/{automation_id}/triggers", status_code=201)
    def create_trigger(automation_id: str, body: Any = Body(None)) -> dict[str, Any]:
        parsed_id = _parse_id(automation_id, "INVALID_AUTOMATION_ID")
        services.repository.require_parent(parsed_id)
        return services.repository.create_trigger(parsed_id, _body_changes(TriggerBody, body)).to_dict()

    @app.get("/automations/{automation_id}/triggers/{trigger_id}")
    def get_trigger(automation_id: str, trigger_id: str) -> dict[str, Any]:
        return services.repository.get_trigger(
            _parse_id(automation_id, "INVALID_AUTOMATION_ID"),
            _parse_id(trigger_id, "INVALID_TRIGGER_ID"),
        ).to_dict()

    @app.put("/automations/{automation_id}/triggers/{trigger_id}")
    def update_trigger(automation_id: str, trigger_id: str, body: Any = Body(None)) -> dict[str, Any]:
        parsed_id = _parse_id(automation_id, "INVALID_AUTOMATION_ID")
        child_id = _parse_id(trigger_id, "INVALID_TRIGGER_ID")
        services.repository.get_trigger(parsed_id, child_id)
        return services.repository.update_trigger(parsed_id, child_id, _body_changes(TriggerBody, body)).to_dict()

    @app.delete("/automations/{automation_id}/triggers/{trigger_id}")
    def delete_trigger(automation_id: str, trigger_id: str) -> dict[str, Any]:
        deleted = services.repository.delete_trigger(
            _parse_id(automation_id, "INVALID_AUTOMATION_ID"),
            _parse_id(trigger_id, "INVALID_TRIGGER_ID"),
        )
        return {"message": "Trigger deleted successfully", "trigger": deleted.to_dict()}

    @app.get("/automations/{automation_id}/conditions")
    def list_conditions(automation_id: str) -> list[dict[str, Any]]:
        items = services.repository.list_conditions(_parse_id(automation_id, "INVALID_AUTOMATION_ID"))
        return [item.to_dict() for item in items]

    @app.post("/automations/{automation_id}/conditions", status_code=201)
    def create_condition(automation_id: str, body: Any = Body(None)) -> dict[str, Any]:
        parsed_id = _parse_id(automation_id, "INVALID_AUTOMATION_ID")
        services.repository.require_parent(parsed_id)
        return services.repository.create_condition(parsed_id, _body_changes(ConditionBody, body)).to_dict()

    @app.get("/automations/{automation_id}/conditions/{condition_id}")
    def get_condition(automation_id: str, condition_id: str) -> dict[str, Any]:
        return services.repository.get_condition(
            _parse_id(automation_id, "INVALID_AUTOMATION_ID"),
            _parse_id(condition_id, "INVALID_CONDITION_ID"),
        ).to_dict()

    @app.put("/automations/{automation_id}/conditions/{condition_id}")
    def update_condition(automation_id: str, condition_id: str, body: Any = Body(None)) -> dict[str, Any]:
        parsed_id = _parse_id(automation_id, "INVALID_AUTOMATION_ID")
        child_id = _parse_id(condition_id, "INVALID_CONDITION_ID")
        services.repository.get_condition(parsed_id, child_id)
        return services.repository.update_condition(parsed_id, child_id, _body_changes(ConditionBody, body)).to_dict()

    @app.delete("/automations/{automation_id}/conditions/{condition_id}")
    def delete_condition(automation_id: str, condition_id: str) -> dict[str, Any]:
        deleted = services.repository.delete_condition(
            _parse_id(automation_id, "INVALID_AUTOMATION_ID"),
            _parse_id(condition_id, "INVALID_CONDITION_ID"),
        )
        return {"message": "Condition deleted successfully", "condition": deleted.to_dict()}

    @app.get("/automations/{automation_id}/actions")
    def list_actions(automation_id: str) -> list[dict[str, Any]]:
        items = services.repository.list_actions(_parse_id(automation_id, "INVALID_AUTOMATION_ID"))
        return [item.to_dict() for item in items]

    @app.post("/automations/{automation_id}/actions", status_code=201)
    def create_action(automation_id: str, body: Any = Body(None)) -> dict[str, Any]:
        parsed_id = _parse_id(automation_id, "INVALID_AUTOMATION_ID")
        services.repository.require_parent(parsed_id)
        return services.repository.create_action(parsed_id, _body_changes(ActionBody, body)).to_dict()

    @app.get("/automations/{automation_id}/actions/{action_id}")
    def get_action(automation_id: str, action_id: str) -> dict[str, Any]:
        return services.repository.get_action(
            _parse_id(automation_id, "INVALID_AUTOMATION_ID"),
            _parse_id(action_id, "INVALID_ACTION_ID"),
        ).to_dict()

    @app.put("/automations/{automation_id}/actions/{action_id}")
    def update_action(automation_id: str, action_id: str, body: Any = Body(None)) -> dict[str, Any]:
        parsed_id = _parse_id(automation_id, "INVALID_AUTOMATION_ID")
        child_id = _parse_id(action_id, "INVALID_ACTION_ID")
        services.repository.get_action(parsed_id, child_id)
        return services.repository.update_action(parsed_id, child_id, _body_changes(ActionBody, body)).to_dict()

    @app.delete("/automations/{automation_id}/actions/{action_id}")
    def delete_action(automation_id: str, action_id: str) -> dict[str, Any]:
        deleted = services.repository.delete_action(
            _parse_id(automation_id, "INVALID_AUTOMATION_ID"),
            _parse_id(action_id, "INVALID_ACTION_ID"),
        )
        return {"message": "Action deleted successfully", "action": deleted.to_dict()}

    # -------------------------------------------------------------------------
    # Backend
    # -------------------------------------------------------------------------

    @app.post("/backend/alarm")
    def alarm_command(body: AlarmBody) -> JSONResponse:
        for key in ("entity_id", "service"):
            value = getattr(body, key)
            if not isinstance(value, str) or not value.strip():
                return _alarm_failure(400, f"Missing or invalid {key} parameter", "INVALID_REQUEST")
        if body.code is not None and not isinstance(body.code, str):
            return _alarm_failure(400, "code parameter must be a string if provided", "INVALID_REQUEST")
        result = services.dispatcher.dispatch_alarm(body.entity_id.strip(), body.service.strip(), body.code)
        if result.error is not None:
            return _alarm_failure(result.error.status_code, result.error.message, result.error.code)
        content: dict[str, Any] = {"success": True, "message": result.message}
        if result.data is not None:
            content["data"] = result.data
        return JSONResponse(status_code=200, content=content)

    @app.get("/backend/entities/search")
    def search_entities(
        q: str | None = None,
        domain: str | None = None,
        device_class: str | None = None,
        state: str | None = None,
        limit: str | None = None,
    ) -> Any:
        if services.backend is None:
            return JSONResponse(
                status_code=503,
                content={"error": "Home Assistant is not configured", "code": "BACKEND_NOT_CONFIGURED"},
            )
        try:
            entities = services.backend.search_entities(
                query=q or None,
                domains=_as_csv(domain),
                device_classes=_as_csv(device_class),
                states=_as_csv(state),
                limit=clamp_search_limit(limit),
            )
        except BackendError as exc:
            raise remap_backend_error(exc) from exc
        return [entity.to_dict() for entity in entities]

    @app.get("/evaluator/status")
    def evaluator_status() -> dict[str, Any]:
        status = services.evaluator.status()
        status["backendConfigured"] = services.backend is not None
        return status

    return app


def _dry_run(services: Services, automation_id: int) -> dict[str, Any]:
    automation = services.repository.get(automation_id)
    executed_at = datetime.now(timezone.utc).isoformat()
    results: list[dict[str, Any]] = []
    failed = 0
    for action in automation.actions:
        entry = {"actionId": action.id, "type": action.type.value}
        try:
            planned = services.dispatcher.plan(action)
        except AutomationError as exc:
            failed += 1
            entry.update({"status": "failed", "message": exc.message, "code": exc.code})
        else:
            entry.update(
                {
                    "status": "simulated",
                    "message": planned.describe(),
                    "domain": planned.domain,
                    "service": planned.service,
                    "data": planned.data,
                }
            )
        results.append(entry)
    services.repository.mark_run(automation_id, executed_at)
    return {
        "automationId": automation.id,
        "automationName": automation.name,
        "testExecutedAt": executed_at,
        "status": "success" if failed == 0 else "partial_success",
        "actionsExecuted": results,
        "summary": {
            "totalActions": len(automation.actions),
            "successfulActions": len(automation.actions) - failed,
            "failedActions": failed,
        },
    }


def _alarm_failure(status_code: int, message: str, code: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message, "code": code})


def _parse_id(raw: str, code: str) -> int:
    label = code.removeprefix("INVALID_").removesuffix("_ID").lower()
    try:
        value = int(str(raw).strip())
    except ValueError as exc:
        raise ValidationError(f"Valid {label} ID is required", code=code) from exc
    if value < 1:
        raise ValidationError(f"Valid {label} ID is required", code=code)
    return value


def _body_changes(model: type[CamelModel], raw: Any) -> dict[str, Any]:
    """Shape a raw JSON body read after the target has been resolved."""
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError("Invalid request body", code="INVALID_REQUEST")
    return model.model_validate(raw).changes()


def _as_bool_filter(raw: str | None) -> bool | None:
    if raw is None or not raw.strip():
        return None
    value = raw.strip().lower()
    if value in {"true", "1", "yes"}:
        return True
    if value in {"false", "0", "no"}:
        return False
    return None


def _as_optional_int(raw: str | None) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _as_offset(raw: str | None) -> int:
    value = _as_optional_int(raw)
    return max(0, value) if value is not None else 0


def _as_csv(raw: str | None) -> list[str] | None:
    if not raw:
        return None
    items = [item.strip() for item in raw.split(",") if item.strip()]
    return items or None
