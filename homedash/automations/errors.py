from __future__ import annotations

from typing import Any


class AutomationError(Exception):
    """Base error with a stable code and the HTTP status it maps to."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message, "code": self.code}
        body.update(self.details)
        return body


class ValidationError(AutomationError):
    status_code = 400
    default_code = "VALIDATION_ERROR"


class InvalidType(ValidationError):
    def __init__(self, message: str, *, code: str, allowed: tuple[str, ...] | list[str]) -> None:
        super().__init__(message, code=code, details={"allowed": list(allowed)})
        self.allowed = tuple(allowed)


class NotFound(AutomationError):
    status_code = 404
    default_code = "NOT_FOUND"


class ParentNotFound(NotFound):
    default_code = "AUTOMATION_NOT_FOUND"

    def __init__(self, automation_id: int) -> None:
        super().__init__("Automation not found", code="AUTOMATION_NOT_FOUND")
        self.automation_id = automation_id


class ChildNotOwned(NotFound):
    default_code = "NOT_OWNED"


class DuplicateName(AutomationError):
    status_code = 409
    default_code = "DUPLICATE_NAME"


class DispatchError(AutomationError):
    pass


class DomainMismatch(DispatchError):
    status_code = 400
    default_code = "DOMAIN_MISMATCH"


class InvalidAlarmService(DispatchError):
    status_code = 400
    default_code = "INVALID_ALARM_SERVICE"


class AuthFailed(DispatchError):
    status_code = 401
    default_code = "AUTH_FAILED"


class EntityNotFound(DispatchError):
    status_code = 404
    default_code = "ENTITY_NOT_FOUND"


class InvalidCommand(DispatchError):
    status_code = 400
    default_code = "INVALID_COMMAND"


class BackendUnreachable(DispatchError):
    status_code = 408
    default_code = "BACKEND_UNREACHABLE"


class LocalDeviceUnavailable(DispatchError):
    status_code = 503
    default_code = "LOCAL_DEVICE_UNAVAILABLE"


class BackendError(DispatchError):
    status_code = 500
    default_code = "BACKEND_ERROR"


class InternalError(AutomationError):
    status_code = 500
    default_code = "INTERNAL_ERROR"
