"""
Error taxonomy shared by the case workflow, the document façade and the HTTP layer.

- ValidationError: malformed or missing input; always user-correctable.
- AuthorizationError: the actor lacks the capability, or the access policy denies.
- InvalidStateTransitionError: trigger not legal from the current status, or the
  caller lost a concurrent race on the status. Re-fetch before retrying.
- NotFoundError: the id does not resolve (or the record is soft-deleted).

Persistence errors (sqlalchemy.exc.*) are deliberately not part of this hierarchy;
they propagate unchanged.
"""
from __future__ import annotations

from typing import Any


class PcmsError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "type": type(self).__name__,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(PcmsError):
    status_code = 400
    code = "VALIDATION_ERROR"

    @classmethod
    def required_field(cls, field: str) -> "ValidationError":
        return cls(f"{field} is required.", details={"field": field})


class AuthenticationError(PcmsError):
    status_code = 401
    code = "AUTH_REQUIRED"


class AuthorizationError(PcmsError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(PcmsError):
    status_code = 404
    code = "NOT_FOUND"

    @classmethod
    def for_entity(cls, entity: str, entity_id: object) -> "NotFoundError":
        return cls(f"{entity} not found.", details={"entity": entity, "id": str(entity_id)})


class InvalidStateTransitionError(PcmsError):
    status_code = 409
    code = "INVALID_STATE_TRANSITION"

    def __init__(self, message: str, *, current_status: str | None = None, trigger: str | None = None) -> None:
        super().__init__(message, details={"current_status": current_status, "trigger": trigger})
        self.current_status = current_status
        self.trigger = trigger
