"""
JSON error bodies for the clearance API.

Every error leaves a blueprint as ``{"error": ..., "code": ..., "details": ...}``
where ``code`` is one of the ``E`` constants below. Service exceptions are
translated by ``register_error_handlers``; views only call ``api_error``
directly for failures they detect themselves (missing body field, unknown
notification).
"""

from __future__ import annotations

from flask import jsonify

from clearance.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)


class E:
    """Error codes carried in the ``code`` field."""

    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"   # 400, body field missing
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"     # 422
    NOT_FOUND = "ERR_NOT_FOUND"                       # 404
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"     # 409, second active request
    CONFLICT_STATE = "ERR_CONFLICT_STATE"             # 409, transition refused
    FORBIDDEN = "ERR_FORBIDDEN"                       # 403, role mismatch
    DATABASE = "ERR_DATABASE"                         # 500, rolled back


_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.FORBIDDEN: 403,
    E.DATABASE: 500,
}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Build ``(response, status)`` for *code*; status defaults from the code table."""
    body = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _DEFAULT_STATUS.get(code, 400)


# Checked in order; InvalidStateError subclasses ValidationError so it comes first.
_EXCEPTION_CODES = (
    (NotFoundError, E.NOT_FOUND, lambda e: None),
    (InvalidStateError, E.CONFLICT_STATE, lambda e: e.details),
    (ValidationError, E.VALIDATION_INVALID, lambda e: e.details),
    (ConflictError, E.CONFLICT_DUPLICATE, lambda e: {"field": e.field}),
    (ForbiddenError, E.FORBIDDEN, lambda e: {"required_role": e.required_role}),
    (PersistenceError, E.DATABASE, lambda e: {"operation": e.operation}),
)


def error_response(error: Exception):
    """Translate a service exception; ``None`` when it is not one of ours."""
    for exc_type, code, details in _EXCEPTION_CODES:
        if isinstance(error, exc_type):
            # store failures surface without the driver message
            message = "Database error" if code == E.DATABASE else str(error)
            return api_error(code, message, details=details(error))
    return None


def register_error_handlers(bp) -> None:
    """Install ``error_response`` on *bp* for every service exception type."""
    for exc_type, _, _ in _EXCEPTION_CODES:
        bp.register_error_handler(exc_type, error_response)
