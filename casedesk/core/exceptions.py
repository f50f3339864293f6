"""
Engine-wide exception hierarchy.

Services raise these types; the blueprint registers one handler per type
and maps them to consistent HTTP status codes.

Usage:
    from casedesk.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="DTR", resource_id="DTR-2024-0001")
    raise ValidationError("complaint_description is required",
                          details={"complaint_description": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested DTR, RMA or lookup record does not exist.

    Maps to HTTP 404.

    Args:
        resource: Human-readable entity name (e.g. "DTR", "Projector").
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
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised on a duplicate unique value or a transition out of a state that forbids it.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field in conflict ("case_id", "status", ...).
        value: The conflicting value.
        reason: Optional replacement for the default duplicate message.
    """

    def __init__(
        self,
        resource: str,
        field: str,
        value: str | None = None,
        reason: str | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = reason or f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class AlreadyConvertedError(ConflictError):
    """Raised when a DTR already references an RMA.

    Carries the existing ``rma_number`` so callers can follow the link
    instead of creating a second RMA.
    """

    def __init__(self, case_id: str, rma_number: str) -> None:
        self.case_id = case_id
        self.rma_number = rma_number
        super().__init__(
            "DTR", "rma_case_number", rma_number,
            reason=f"DTR {case_id} has already been converted to RMA {rma_number}",
        )


class PermissionDenied(Exception):
    """Raised when the actor's role or assignee scope does not allow an action.

    Maps to HTTP 403. Raised before any mutation is attempted.
    """

    def __init__(self, user_id: str | None, action: str, reason: str | None = None) -> None:
        self.user_id = user_id
        self.action = action
        self.reason = reason
        msg = f"User {user_id} does not have permission for '{action}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class PersistenceError(Exception):
    """Raised when the case store rejects or fails a read or write.

    Maps to HTTP 503.

    Args:
        message: What failed, without driver internals.
        operation: Repository operation name ("insert", "update_by_id", ...).
    """

    def __init__(self, message: str, operation: str | None = None) -> None:
        self.operation = operation
        super().__init__(message)


class ImportRowError(Exception):
    """A single bulk-import row could not be materialized.

    Collected into the import result; never escapes ``bulk_import``.
    """

    def __init__(self, row_index: int, message: str) -> None:
        self.row_index = row_index
        self.message = message
        super().__init__(f"Row {row_index}: {message}")


class ImportTimeout(Exception):
    """Bulk import exceeded its wall-clock budget.

    Caught inside the pipeline, which returns the partial result.
    """
