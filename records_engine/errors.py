from __future__ import annotations

import uuid
from typing import Any


class EngineError(Exception):
    def __init__(
        self,
        *,
        status_code: int,
        code: str,
        message: str,
        error_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.error_id = error_id or str(uuid.uuid4())
        self.details = details or {}

    def to_payload(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "error_id": self.error_id, **self.details}


class ValidationError(EngineError):
    """Raised before any network call when a query cannot be built."""

    code = "validation_error"

    def __init__(self, message: str, *, field: str | None = None, location: str | None = None) -> None:
        details: dict[str, Any] = {}
        if field is not None:
            details["field"] = field
        if location is not None:
            details["location"] = location
        super().__init__(status_code=422, code=type(self).code, message=message, details=details)
        self.field = field
        self.location = location

    def at(self, location: str) -> "ValidationError":
        self.location = location
        self.details["location"] = location
        return self


class UnknownField(ValidationError):
    code = "unknown_field"


class InvalidOperator(ValidationError):
    code = "invalid_operator"


class InvalidValue(ValidationError):
    code = "invalid_value"


class LimitExceeded(ValidationError):
    code = "limit_exceeded"


class UnknownResource(EngineError):
    def __init__(self, resource_type: str) -> None:
        super().__init__(
            status_code=404,
            code="unknown_resource",
            message=f"Unknown resource type '{resource_type}'",
            details={"resource_type": resource_type},
        )
        self.resource_type = resource_type


class DuplicateName(EngineError):
    def __init__(self, name: str, resource_type: str) -> None:
        super().__init__(
            status_code=409,
            code="duplicate_name",
            message=f"A view named '{name}' already exists for {resource_type}",
            details={"name": name, "resource_type": resource_type},
        )


class ViewNotFound(EngineError):
    def __init__(self) -> None:
        super().__init__(status_code=404, code="not_found", message="View not found")


class QueryExecutionError(EngineError):
    def __init__(self, message: str, *, cause: BaseException | None = None, status_code: int = 502) -> None:
        super().__init__(status_code=status_code, code="query_execution_failed", message=message)
        self.cause = cause


class AuthenticationError(EngineError):
    def __init__(self, message: str = "Invalid or expired token") -> None:
        super().__init__(status_code=401, code="invalid_token", message=message)


class RateLimitExceeded(EngineError):
    def __init__(self) -> None:
        super().__init__(status_code=429, code="rate_limit_exceeded", message="Rate limit exceeded")


class StaleResponseDiscarded(Exception):
    """Internal signal: a response arrived for a superseded slot request."""

    def __init__(self, slot: str, sequence: int, latest: int) -> None:
        super().__init__(f"slot {slot!r} response {sequence} superseded by {latest}")
        self.slot = slot
        self.sequence = sequence
        self.latest = latest
