"""JSON error bodies for the CaseDesk API.

Every error response has the shape::

    {"error": "<message>", "code": "ERR_...", "request_id": "...", "details": {...}}

``details`` is present only when the caller has something structured to
add, e.g. the existing ``rma_number`` on a repeated conversion.

    from casedesk.utils.errors import api_error, E
    return api_error(E.FORBIDDEN, str(exc), details={"action": exc.action})
"""

from __future__ import annotations

from flask import g, has_request_context, jsonify


class E:
    """Error codes. The HTTP status each one maps to is in ``STATUS_BY_CODE``."""

    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"
    NOT_FOUND = "ERR_NOT_FOUND"

    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    ALREADY_CONVERTED = "ERR_ALREADY_CONVERTED"

    METHOD_NOT_ALLOWED = "ERR_METHOD_NOT_ALLOWED"
    PAYLOAD_TOO_LARGE = "ERR_PAYLOAD_TOO_LARGE"
    RATE_LIMITED = "ERR_RATE_LIMITED"

    # Store unreachable or failing; retryable
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


STATUS_BY_CODE: dict[str, int] = {
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.VALIDATION_INVALID: 422,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.ALREADY_CONVERTED: 409,
    E.METHOD_NOT_ALLOWED: 405,
    E.PAYLOAD_TOO_LARGE: 413,
    E.RATE_LIMITED: 429,
    E.DATABASE: 503,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """``(response, status)`` for *code*; *status* overrides the table, 400 if unknown."""
    body: dict = {"error": message, "code": code}
    if has_request_context() and getattr(g, "request_id", None):
        body["request_id"] = g.request_id
    if details:
        body["details"] = details
    return jsonify(body), status or STATUS_BY_CODE.get(code, 400)
