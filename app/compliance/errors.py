"""
Error taxonomy for the evidence engine.

Every error carries an HTTP status and a stable machine code so the API layer
can render it without knowing about individual modules.
"""

from __future__ import annotations

from typing import Any


class ComplianceError(RuntimeError):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.field:
            out["field"] = self.field
        return out


class ValidationError(ComplianceError):
    status_code = 400
    code = "validation_error"


class ForbiddenError(ComplianceError):
    status_code = 403
    code = "forbidden"


class NotFoundError(ComplianceError):
    status_code = 404
    code = "not_found"


class ConflictError(ComplianceError):
    status_code = 409
    code = "conflict"


class InvalidTransitionError(ComplianceError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot move document from {current!r} to {requested!r}.", field="status")
        self.current = current
        self.requested = requested


class RateLimitError(ComplianceError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str, *, retry_after: float) -> None:
        super().__init__(message)
        self.retry_after = max(0.0, float(retry_after))

    @property
    def retry_after_seconds(self) -> int:
        # Retry-After headers are whole seconds; never advertise 0 while still limited.
        return max(1, int(self.retry_after + 0.999))

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out["retry_after"] = self.retry_after_seconds
        return out


class InternalError(ComplianceError):
    status_code = 500
    code = "internal_error"


# External Sync Client only


class ConfigurationError(ComplianceError):
    status_code = 500
    code = "configuration_error"


class ProtocolError(ComplianceError):
    status_code = 502
    code = "protocol_error"


class SyncTimeoutError(ComplianceError):
    status_code = 504
    code = "timeout"


class ExternalServiceError(InternalError):
    status_code = 502
    code = "external_service_error"
