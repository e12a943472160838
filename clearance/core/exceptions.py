"""
Service-wide exception hierarchy.

Every service raises one of these types; blueprints register handlers
against them once and get consistent HTTP status codes everywhere.

    NotFoundError      → 404  referenced request / step / gate step missing
    ValidationError    → 422  required field absent or malformed
    InvalidStateError  → 409  operation not allowed from the current status
    ConflictError      → 409  a second active request for the same staff/contact
    ForbiddenError     → 403  caller role does not match the step's reviewer role
    PersistenceError   → 500  the store rejected the write; nothing was committed

Usage:
    from clearance.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ClearanceRequest", resource_id=42)
    raise ValidationError("rejection reason is required", details={"reason": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "ClearanceStep").
        resource_id: The key that was looked up. Included in logs and message.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails validation in the service layer.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidStateError(ValidationError):
    """Raised when a transition is attempted from a status that does not allow it.

    The request/step is left untouched. Carries the current status so
    callers can show what the entity is actually in.
    """

    def __init__(self, message: str, current_status: str | None = None, action: str | None = None) -> None:
        details = {}
        if current_status is not None:
            details["current_status"] = current_status
        if action is not None:
            details["action"] = action
        self.current_status = current_status
        self.action = action
        super().__init__(message, details=details)


class ConflictError(Exception):
    """Raised when an operation would create a second active record for a unique key.

    Args:
        resource: Model name.
        field: The field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"An active {resource} with {field}={value!r} already exists"
        super().__init__(msg)


class ForbiddenError(Exception):
    """Raised when the caller's role is not allowed to act on a step."""

    def __init__(self, role: str | None, required_role: str) -> None:
        self.role = role
        self.required_role = required_role
        super().__init__(f"Role {role!r} cannot act on a step reserved for {required_role!r}")


class PersistenceError(Exception):
    """Raised when the store fails mid-operation.

    The in-flight transaction has already been rolled back when this is
    raised; previously committed state is untouched.
    """

    def __init__(self, operation: str, cause: Exception | None = None) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"Persistence failure during {operation}")
