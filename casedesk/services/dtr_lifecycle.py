"""
DTR Lifecycle Service — state machine, assignment and audit trail.

States:
    Open → In Progress → {Ready for RMA | Closed | Shifted to RMA}
    In Progress → Unable to Resolve
    Closed, Shifted to RMA and Unable to Resolve are terminal.

Every operation follows the same shape: load fresh state, check the
authorization matrix, validate the transition, build one patch (including
its workflow-history entry) and write it once. Nothing is cached between
calls.

Usage:
    from casedesk.services.dtr_lifecycle import assign_technician

    dtr = assign_technician(actor, "DTR-2024-0001",
                            {"user_id": "u-7", "name": "T1"})
"""

import logging
import math

from flask import current_app, has_app_context

from casedesk.core.exceptions import (
    AlreadyConvertedError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from casedesk.models.audit import record_audit
from casedesk.models.dtr import (
    CALL_STATUSES,
    CASE_SEVERITIES,
    DEFAULT_CALL_STATUS,
    DEFAULT_PRIORITY,
    DEFAULT_SEVERITY,
    HISTORY_ASSIGNED,
    HISTORY_ATTACHMENTS,
    HISTORY_CLOSED,
    HISTORY_CREATED,
    HISTORY_ESCALATED,
    HISTORY_FINALIZED,
    HISTORY_STATUS_CHANGED,
    HISTORY_TROUBLESHOOTING,
    PRIORITIES,
    STATUS_CLOSED,
    STATUS_IN_PROGRESS,
    STATUS_OPEN,
    STATUS_READY_FOR_RMA,
    STATUS_SHIFTED_TO_RMA,
    STATUS_UNABLE_TO_RESOLVE,
    TERMINAL_STATUSES,
)
from casedesk.services.assignment import normalize_assignment
from casedesk.services.case_repository import get_repository
from casedesk.services.date_normalizer import format_iso, normalize_date, parse_date_value, utcnow
from casedesk.services.identifiers import generate_case_id
from casedesk.services.notification import NotificationService, notify_safely
from casedesk.services.permission import (
    ROLE_ENGINEER,
    ROLE_RMA_HANDLER,
    ROLE_TECHNICAL_HEAD,
    ROLE_TECHNICIAN,
    check_permission,
)
from casedesk.services.unit_resolver import resolve_unit

logger = logging.getLogger(__name__)

# ── Transition rules ─────────────────────────────────────────────────────────

DTR_TRANSITIONS = {
    "assign_technician": {"from": [STATUS_OPEN, STATUS_IN_PROGRESS], "to": STATUS_IN_PROGRESS},
    "assign_technical_head": {"from": [STATUS_OPEN, STATUS_IN_PROGRESS], "to": STATUS_IN_PROGRESS},
    "finalize_by_technical_head": {"from": [STATUS_IN_PROGRESS], "to": STATUS_READY_FOR_RMA},
    "start_progress": {"from": [STATUS_OPEN], "to": STATUS_IN_PROGRESS},
    "close": {"from": [STATUS_OPEN, STATUS_IN_PROGRESS, STATUS_READY_FOR_RMA], "to": STATUS_CLOSED},
    "mark_unresolvable": {"from": [STATUS_IN_PROGRESS], "to": STATUS_UNABLE_TO_RESOLVE},
    "convert_to_rma": {
        "from": [STATUS_OPEN, STATUS_IN_PROGRESS, STATUS_READY_FOR_RMA],
        "to": STATUS_SHIFTED_TO_RMA,
    },
}

# Target status reachable through the generic update → transition action
_UPDATE_STATUS_ACTIONS = {
    STATUS_IN_PROGRESS: "start_progress",
    STATUS_CLOSED: "close",
    STATUS_UNABLE_TO_RESOLVE: "mark_unresolvable",
    STATUS_SHIFTED_TO_RMA: "convert_to_rma",
}

# Fields frozen at creation (unit/site snapshot and reporter)
FROZEN_FIELDS = frozenset({
    "case_id", "serial_number", "site_name", "site_code", "region", "unit_model",
    "auditorium", "opened_by", "created_by", "created_at",
})

# Fields only specific operations may write
_MANAGED_FIELDS = frozenset({
    "id", "troubleshooting_steps", "workflow_history", "attachments", "conversion_to_rma",
    "rma_case_number", "finalized_by", "finalized_date", "assigned_by", "updated_at",
})

UPDATABLE_FIELDS = frozenset({
    "complaint_description", "problem_name", "action_taken", "remarks", "closed_remarks",
    "closed_reason", "notes", "resolution", "priority", "case_severity", "call_status",
    "status", "assigned_to", "closed_by", "error_date", "complaint_date",
})

ALLOWED_ATTACHMENT_TYPES = frozenset({
    "image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp",
    "application/zip", "application/x-zip-compressed",
})
MAX_FILES_PER_UPLOAD = 10
_DEFAULT_ATTACHMENT_MAX_BYTES = 50 * 1024 * 1024

_TECHNICIAN_ROLES = (ROLE_TECHNICIAN, ROLE_ENGINEER)


class DTRTransitionError(ConflictError):
    """Raised when a DTR transition is invalid for the case's current status."""

    def __init__(self, case_id: str, action: str, current: str, reason: str | None = None):
        msg = f"Cannot '{action}' DTR {case_id} (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__("DTR", "status", current, reason=msg)
        self.case_id = case_id
        self.action = action
        self.current_status = current


# ═════════════════════════════════════════════════════════════════════════════
# Shared helpers
# ═════════════════════════════════════════════════════════════════════════════


def config_value(key: str, default):
    if has_app_context():
        return current_app.config.get(key, default)
    return default


def log_context(dtr: dict | None, actor, action: str) -> dict:
    return {
        "case_id": dtr.get("case_id") if dtr else None,
        "actor": actor.user_id,
        "role": actor.role,
        "action": action,
    }


def history_entry(action: str, actor, details: str, *, previous_value=None, new_value=None) -> dict:
    """Build one workflow-history entry."""
    entry = {
        "action": action,
        "performed_by": {"name": actor.name, "role": actor.role},
        "timestamp": format_iso(utcnow()),
        "details": details,
    }
    if previous_value is not None:
        entry["previous_value"] = previous_value
    if new_value is not None:
        entry["new_value"] = new_value
    return entry


def with_history(dtr: dict, *entries: dict) -> list[dict]:
    """Return the DTR's history with *entries* appended (never mutates *dtr*)."""
    return list(dtr.get("workflow_history") or []) + list(entries)


def load_dtr(repo, dtr_ref) -> dict:
    """Fetch a DTR by numeric id or ``case_id``; raise NotFoundError."""
    if isinstance(dtr_ref, int) or (isinstance(dtr_ref, str) and dtr_ref.isdigit()):
        dtr = repo.find_one("dtr", {"id": int(dtr_ref)})
    else:
        dtr = repo.find_one("dtr", {"case_id": str(dtr_ref)})
    if dtr is None:
        raise NotFoundError("DTR", dtr_ref)
    return dtr


def validate_dtr_transition(dtr: dict, action: str) -> dict:
    """Validate whether *action* is valid for the DTR's current status."""
    rule = DTR_TRANSITIONS.get(action)
    if not rule:
        return {"valid": False, "from": dtr["status"], "to": None,
                "reason": f"Unknown action: {action}"}

    if dtr["status"] not in rule["from"]:
        return {"valid": False, "from": dtr["status"], "to": rule["to"],
                "reason": f"Cannot '{action}' from status '{dtr['status']}'"}

    return {"valid": True, "from": dtr["status"], "to": rule["to"], "reason": None}


def require_transition(dtr: dict, action: str, actor) -> str:
    """Return the target status or raise DTRTransitionError."""
    validation = validate_dtr_transition(dtr, action)
    if not validation["valid"]:
        logger.warning("Rejected transition: case=%s actor=%s action=%s status=%s",
                       dtr["case_id"], actor.user_id, action, dtr["status"],
                       extra=log_context(dtr, actor, action))
        raise DTRTransitionError(dtr["case_id"], action, dtr["status"], validation["reason"])
    return validation["to"]


def _require_active(dtr: dict, actor, action: str) -> None:
    if dtr.get("rma_case_number"):
        raise AlreadyConvertedError(dtr["case_id"], dtr["rma_case_number"])
    if dtr["status"] in TERMINAL_STATUSES:
        logger.warning("Rejected %s on terminal case %s (status=%s) by %s",
                       action, dtr["case_id"], dtr["status"], actor.user_id,
                       extra=log_context(dtr, actor, action))
        raise DTRTransitionError(dtr["case_id"], action, dtr["status"], "case is closed for changes")


def _write(repo, dtr: dict, patch: dict) -> dict:
    updated = repo.update_by_id("dtr", dtr["id"], patch)
    if updated is None:
        raise NotFoundError("DTR", dtr["case_id"])
    return updated


def _validate_choice(field: str, value, choices) -> None:
    if value not in choices:
        raise ValidationError(
            f"Invalid {field} '{value}'. Must be one of: {', '.join(choices)}",
            details={field: f"must be one of {list(choices)}"},
        )


def _validate_enums(fields: dict) -> None:
    if "priority" in fields:
        _validate_choice("priority", fields["priority"], PRIORITIES)
    if "case_severity" in fields:
        _validate_choice("case_severity", fields["case_severity"], CASE_SEVERITIES)
    if "call_status" in fields:
        _validate_choice("call_status", fields["call_status"], CALL_STATUSES)


def _require_fields(payload: dict, *names: str) -> None:
    missing = [n for n in names if not str(payload.get(n) or "").strip()]
    if missing:
        raise ValidationError(
            f"Missing required field(s): {', '.join(missing)}",
            details={n: "required" for n in missing},
        )


def _person(value: dict | None, actor, *, date_key: str | None = None) -> dict:
    """Fill a name/designation/contact/user_id block, defaulting to the actor."""
    value = dict(value or {})
    person = {
        "name": value.get("name") or actor.name,
        "designation": value.get("designation") or actor.designation,
        "contact": value.get("contact") or actor.email,
        "user_id": value.get("user_id") or (actor.user_id if not value.get("name") else None),
    }
    if date_key:
        person[date_key] = format_iso(normalize_date(value.get(date_key))) if value.get(date_key) \
            else format_iso(utcnow())
    return person


def _assignee(assignment, role: str, *, allowed_roles=None) -> dict:
    assigned = normalize_assignment(assignment, default_role=role)
    if not assigned or not assigned.get("user_id") or not assigned.get("name"):
        raise ValidationError(
            "Assignment requires both user_id and name",
            details={"user_id": "required", "name": "required"},
        )
    if allowed_roles and assigned["role"] not in allowed_roles:
        raise ValidationError(
            f"Cannot assign a user with role '{assigned['role']}' here",
            details={"role": f"must be one of {list(allowed_roles)}"},
        )
    if not allowed_roles:
        assigned["role"] = role
    return assigned


# ═════════════════════════════════════════════════════════════════════════════
# Create / read
# ═════════════════════════════════════════════════════════════════════════════


def create_dtr(actor, payload: dict, *, repo=None) -> dict:
    """
    Create a DTR in status Open.

    Required: ``serial_number``, ``complaint_description``, ``opened_by.name``.
    The unit's site/model fields are resolved now and frozen on the record.

    Raises:
        PermissionDenied, ValidationError, NotFoundError (unit or site),
        ConflictError (supplied case_id already exists)
    """
    repo = repo or get_repository()
    check_permission(actor, "dtr_create")

    _require_fields(payload, "serial_number", "complaint_description")
    opened_by = payload.get("opened_by") or {}
    if not isinstance(opened_by, dict) or not str(opened_by.get("name") or "").strip():
        raise ValidationError("opened_by.name is required", details={"opened_by.name": "required"})

    fields = {
        "priority": payload.get("priority") or DEFAULT_PRIORITY,
        "case_severity": payload.get("case_severity") or DEFAULT_SEVERITY,
        "call_status": payload.get("call_status") or DEFAULT_CALL_STATUS,
    }
    _validate_enums(fields)

    serial = payload["serial_number"].strip()
    resolved = resolve_unit(serial)
    if resolved is None:
        raise NotFoundError("Projector", serial)
    if resolved["site"] is None:
        raise NotFoundError("Site", f"for projector {serial}")
    unit, site, audi = resolved["unit"], resolved["site"], resolved["auditorium"]

    case_id = (payload.get("case_id") or "").strip()
    if case_id:
        if repo.find_one("dtr", {"case_id": case_id}) is not None:
            raise ConflictError("DTR", "case_id", case_id)
    else:
        case_id = generate_case_id(repo)

    complaint = payload["complaint_description"].strip()
    record = {
        "case_id": case_id,
        "serial_number": serial,
        "site_name": site["name"],
        "site_code": site.get("code") or "UNKNOWN",
        "region": site.get("region") or "Unknown",
        "unit_model": unit.get("model") or "Unknown",
        "auditorium": (audi.get("name") or f"Audi {audi['audi_number']}") if audi else None,
        "complaint_description": complaint,
        "problem_name": payload.get("problem_name") or complaint,
        "action_taken": payload.get("action_taken") or "",
        "remarks": payload.get("remarks") or "",
        "notes": payload.get("notes") or "",
        **fields,
        "status": STATUS_OPEN,
        "opened_by": {
            "name": opened_by["name"].strip(),
            "designation": opened_by.get("designation") or "",
            "contact": opened_by.get("contact") or "",
            "user_id": opened_by.get("user_id") or actor.user_id,
        },
        "assigned_to": normalize_assignment(payload.get("assigned_to")),
        "created_by": actor.user_id,
        "complaint_date": normalize_date(payload.get("complaint_date")),
        "error_date": normalize_date(payload["error_date"]) if payload.get("error_date") else None,
        "troubleshooting_steps": [],
        "attachments": [],
        "conversion_to_rma": {"can_convert": False},
        "workflow_history": [history_entry(HISTORY_CREATED, actor, f"DTR {case_id} opened for {serial}")],
    }

    dtr = repo.insert("dtr", record)
    logger.info("DTR %s created for %s at %s by %s", case_id, serial, site["name"], actor.user_id,
                extra=log_context(dtr, actor, "create"))
    return dtr


def get_dtr(actor, dtr_ref, *, repo=None) -> dict:
    repo = repo or get_repository()
    dtr = load_dtr(repo, dtr_ref)
    check_permission(actor, "dtr_view", dtr)
    return dtr


def list_dtrs(actor, filters: dict | None = None, *, page: int = 1, limit: int = 10, repo=None) -> dict:
    """
    Paginated DTR listing, newest first.

    Filters: status, priority, call_status, case_severity (exact);
    site_name, serial_number (case-insensitive contains);
    start_date / end_date (inclusive range on complaint_date).
    """
    repo = repo or get_repository()
    check_permission(actor, "dtr_view")
    filters = filters or {}

    query: dict = {}
    for key in ("status", "priority", "call_status", "case_severity"):
        if filters.get(key):
            query[key] = filters[key]
    for key in ("site_name", "serial_number"):
        if filters.get(key):
            query[f"{key}__contains"] = filters[key]
    for key, op in (("start_date", "gte"), ("end_date", "lte")):
        if filters.get(key):
            bound = parse_date_value(filters[key])
            if bound is None:
                raise ValidationError(f"Invalid {key}: {filters[key]!r}", details={key: "unparseable date"})
            if key == "end_date":
                bound = bound.replace(hour=23, minute=59, second=59, microsecond=999000)
            query[f"complaint_date__{op}"] = bound

    page = max(int(page or 1), 1)
    limit = min(max(int(limit or 10), 1), 100)
    total = repo.count("dtr", query)
    items = repo.find("dtr", query, sort=[("created_at", "desc"), ("id", "desc")],
                      skip=(page - 1) * limit, limit=limit)
    return {
        "dtrs": items,
        "total": total,
        "page": page,
        "limit": limit,
        "pages": math.ceil(total / limit) if total else 0,
    }


def list_attachments(actor, dtr_ref, *, repo=None) -> list[dict]:
    return get_dtr(actor, dtr_ref, repo=repo).get("attachments") or []


# ═════════════════════════════════════════════════════════════════════════════
# Generic update (field edits, close, status changes)
# ═════════════════════════════════════════════════════════════════════════════


def update_dtr(actor, dtr_ref, patch: dict, *, repo=None) -> dict:
    """
    Apply field edits and an optional status change.

    - Frozen snapshot fields and engine-managed fields are rejected.
    - ``status`` goes through the transition table; ``Shifted to RMA`` is
      handed to the conversion engine.
    - Closing fills ``closed_by`` (from the patch or the actor) and stamps
      ``closed_by.closed_date`` when absent.
    - A legacy string ``assigned_to`` is normalized to the object form;
      changing it needs the same permission as ``assign_technician``.
    """
    repo = repo or get_repository()
    dtr = load_dtr(repo, dtr_ref)
    check_permission(actor, "dtr_update", dtr)
    _require_active(dtr, actor, "update")

    read_only = sorted((set(patch) & (FROZEN_FIELDS | _MANAGED_FIELDS)))
    if read_only:
        raise ValidationError(f"Read-only field(s): {', '.join(read_only)}",
                              details={f: "read-only" for f in read_only})
    unknown = sorted(set(patch) - UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown field(s): {', '.join(unknown)}",
                              details={f: "unknown" for f in unknown})

    changes = {k: v for k, v in patch.items() if k not in ("status", "assigned_to", "closed_by")}
    _validate_enums(changes)
    for key in ("error_date", "complaint_date"):
        if key in changes:
            changes[key] = normalize_date(changes[key]) if changes[key] else None
    if "complaint_description" in changes and not str(changes["complaint_description"] or "").strip():
        raise ValidationError("complaint_description cannot be empty",
                              details={"complaint_description": "required"})

    new_status = patch.get("status") or dtr["status"]
    if new_status == STATUS_SHIFTED_TO_RMA:
        return _update_then_convert(actor, dtr, changes, patch, repo)

    if "closed_by" in patch and new_status != STATUS_CLOSED:
        raise ValidationError("closed_by can only be set when closing the case",
                              details={"closed_by": "status must be Closed"})

    entries = []
    if "assigned_to" in patch:
        check_permission(actor, "dtr_assign_technician", dtr)
        assigned = normalize_assignment(patch["assigned_to"])
        changes["assigned_to"] = assigned
        changes["assigned_by"] = actor.user_id
        entries.append(history_entry(
            HISTORY_ASSIGNED, actor,
            f"Assigned to {assigned['name']}" if assigned else "Assignment cleared",
            previous_value=(dtr.get("assigned_to") or {}).get("name"),
            new_value=assigned["name"] if assigned else None,
        ))

    if new_status != dtr["status"]:
        action = _UPDATE_STATUS_ACTIONS.get(new_status)
        if action is None:
            raise DTRTransitionError(dtr["case_id"], f"set status '{new_status}'", dtr["status"],
                                     "status cannot be set through a field update")
        changes["status"] = require_transition(dtr, action, actor)
        if new_status == STATUS_CLOSED:
            changes["closed_by"] = _person(patch.get("closed_by"), actor, date_key="closed_date")
            entries.append(history_entry(
                HISTORY_CLOSED, actor,
                f"Case closed: {changes.get('closed_reason') or changes.get('closed_remarks') or 'no reason given'}",
                previous_value=dtr["status"], new_value=STATUS_CLOSED,
            ))
        else:
            entries.append(history_entry(
                HISTORY_STATUS_CHANGED, actor, f"Status changed from {dtr['status']} to {new_status}",
                previous_value=dtr["status"], new_value=new_status,
            ))

    if not changes:
        return dtr
    if entries:
        changes["workflow_history"] = with_history(dtr, *entries)

    updated = _write(repo, dtr, changes)
    logger.info("DTR %s updated by %s: %s", dtr["case_id"], actor.user_id, ", ".join(sorted(patch)),
                extra=log_context(dtr, actor, "update"))
    return updated


def _update_then_convert(actor, dtr: dict, changes: dict, patch: dict, repo) -> dict:
    # Imported here: the conversion engine builds on this module's helpers.
    from casedesk.services.rma_conversion import convert_to_rma

    if "closed_by" in patch:
        raise ValidationError("closed_by can only be set when closing the case",
                              details={"closed_by": "status must be Closed"})
    if "assigned_to" in patch:
        raise ValidationError("Cannot reassign and convert in one update",
                              details={"assigned_to": "not allowed with status Shifted to RMA"})
    reason = changes.pop("closed_reason", None)
    result = convert_to_rma(actor, dtr["id"], reason=reason, field_changes=changes, repo=repo)
    return result["dtr"]


# ═════════════════════════════════════════════════════════════════════════════
# Assignment transitions
# ═════════════════════════════════════════════════════════════════════════════


def assign_technician(actor, dtr_ref, assignment, *, repo=None) -> dict:
    """
    Assign a technician or engineer. Open/In Progress → In Progress.

    Raises:
        NotFoundError, PermissionDenied, ValidationError, DTRTransitionError
    """
    repo = repo or get_repository()
    dtr = load_dtr(repo, dtr_ref)
    check_permission(actor, "dtr_assign_technician", dtr)
    _require_active(dtr, actor, "assign_technician")
    target = require_transition(dtr, "assign_technician", actor)
    assigned = _assignee(assignment, ROLE_TECHNICIAN, allowed_roles=_TECHNICIAN_ROLES)

    entry = history_entry(
        HISTORY_ASSIGNED, actor,
        f"Assigned to {assigned['role']} {assigned['name']}; status {dtr['status']} -> {target}",
        previous_value=dtr["status"], new_value=target,
    )
    updated = _write(repo, dtr, {
        "assigned_to": assigned,
        "assigned_by": actor.user_id,
        "status": target,
        "workflow_history": with_history(dtr, entry),
    })
    logger.info("DTR %s assigned to %s by %s", dtr["case_id"], assigned["user_id"], actor.user_id,
                extra=log_context(dtr, actor, "assign_technician"))
    notify_safely(NotificationService.notify_assignment, updated, assigned, actor)
    return updated


def assign_technical_head(actor, dtr_ref, assignment, *, repo=None) -> dict:
    """Hand the case to a technical head. Open/In Progress → In Progress."""
    repo = repo or get_repository()
    dtr = load_dtr(repo, dtr_ref)
    check_permission(actor, "dtr_assign_technical_head", dtr)
    _require_active(dtr, actor, "assign_technical_head")
    target = require_transition(dtr, "assign_technical_head", actor)
    assigned = _assignee(assignment, ROLE_TECHNICAL_HEAD)

    entry = history_entry(
        HISTORY_ASSIGNED, actor,
        f"Assigned to technical head {assigned['name']}",
        previous_value=(dtr.get("assigned_to") or {}).get("name"), new_value=assigned["name"],
    )
    updated = _write(repo, dtr, {
        "assigned_to": assigned,
        "assigned_by": actor.user_id,
        "status": target,
        "workflow_history": with_history(dtr, entry),
    })
    logger.info("DTR %s handed to technical head %s by %s", dtr["case_id"], assigned["user_id"],
                actor.user_id, extra=log_context(dtr, actor, "assign_technical_head"))
    notify_safely(NotificationService.notify_assignment, updated, assigned, actor)
    return updated


def finalize_by_technical_head(actor, dtr_ref, resolution: str, handoff, *, notes: str | None = None,
                               repo=None) -> dict:
    """
    Record the technical head's resolution and hand the case to an RMA handler.
    In Progress → Ready for RMA.
    """
    repo = repo or get_repository()
    dtr = load_dtr(repo, dtr_ref)
    check_permission(actor, "dtr_finalize", dtr)
    _require_active(dtr, actor, "finalize_by_technical_head")
    target = require_transition(dtr, "finalize_by_technical_head", actor)
    if not str(resolution or "").strip():
        raise ValidationError("resolution is required", details={"resolution": "required"})
    handler = _assignee(handoff, ROLE_RMA_HANDLER)

    now = utcnow()
    entry = history_entry(
        HISTORY_FINALIZED, actor,
        f"Finalized by technical head; handed to RMA handler {handler['name']}",
        previous_value=dtr["status"], new_value=target,
    )
    patch = {
        "status": target,
        "resolution": resolution.strip(),
        "finalized_by": {"name": actor.name, "user_id": actor.user_id},
        "finalized_date": now,
        "assigned_to": handler,
        "assigned_by": actor.user_id,
        "workflow_history": with_history(dtr, entry),
    }
    if notes is not None:
        patch["notes"] = notes
    updated = _write(repo, dtr, patch)
    logger.info("DTR %s finalized by %s", dtr["case_id"], actor.user_id,
                extra=log_context(dtr, actor, "finalize_by_technical_head"))
    notify_safely(NotificationService.notify_finalized, updated, handler, actor)
    return updated


# ═════════════════════════════════════════════════════════════════════════════
# Troubleshooting / conversion intent / attachments
# ═════════════════════════════════════════════════════════════════════════════


def add_troubleshooting_step(actor, dtr_ref, step: dict, *, repo=None) -> dict:
    """Append a numbered troubleshooting step. No status change."""
    repo = repo or get_repository()
    dtr = load_dtr(repo, dtr_ref)
    check_permission(actor, "dtr_add_troubleshooting", dtr)
    _require_active(dtr, actor, "add_troubleshooting_step")
    _require_fields(step, "description", "outcome")

    steps = list(dtr.get("troubleshooting_steps") or [])
    number = len(steps) + 1
    steps.append({
        "step": number,
        "description": step["description"].strip(),
        "outcome": step["outcome"].strip(),
        "performed_by": actor.name,
        "performed_by_id": actor.user_id,
        "performed_at": format_iso(utcnow()),
        "attachments": list(step.get("attachments") or []),
    })
    entry = history_entry(HISTORY_TROUBLESHOOTING, actor, f"Step {number}: {step['description'].strip()}")
    updated = _write(repo, dtr, {
        "troubleshooting_steps": steps,
        "workflow_history": with_history(dtr, entry),
    })
    logger.info("DTR %s troubleshooting step %d added by %s", dtr["case_id"], number, actor.user_id,
                extra=log_context(dtr, actor, "add_troubleshooting_step"))
    return updated


def mark_for_conversion(actor, dtr_ref, reason: str, *, repo=None) -> dict:
    """Record intent to convert (``conversion_to_rma.can_convert``). No status change."""
    repo = repo or get_repository()
    dtr = load_dtr(repo, dtr_ref)
    check_permission(actor, "dtr_mark_for_conversion", dtr)
    _require_active(dtr, actor, "mark_for_conversion")
    if not str(reason or "").strip():
        raise ValidationError("A conversion reason is required", details={"reason": "required"})

    conversion = dict(dtr.get("conversion_to_rma") or {})
    conversion.update({
        "can_convert": True,
        "conversion_reason": reason.strip(),
        "marked_by": actor.name,
        "marked_date": format_iso(utcnow()),
    })
    entry = history_entry(HISTORY_ESCALATED, actor, f"Marked for RMA conversion: {reason.strip()}")
    updated = _write(repo, dtr, {
        "conversion_to_rma": conversion,
        "workflow_history": with_history(dtr, entry),
    })
    logger.info("DTR %s marked for conversion by %s", dtr["case_id"], actor.user_id,
                extra=log_context(dtr, actor, "mark_for_conversion"))
    return updated


def add_attachments(actor, dtr_ref, files: list[dict], *, repo=None) -> dict:
    """
    Record uploaded-file metadata on the case. File bytes are stored elsewhere.

    Each file: ``{filename, original_name, mimetype, size}``.
    """
    repo = repo or get_repository()
    dtr = load_dtr(repo, dtr_ref)
    check_permission(actor, "dtr_upload_files", dtr)
    _require_active(dtr, actor, "add_attachments")

    if not isinstance(files, list) or not files:
        raise ValidationError("No files provided", details={"files": "required"})
    if len(files) > MAX_FILES_PER_UPLOAD:
        raise ValidationError(f"At most {MAX_FILES_PER_UPLOAD} files per upload",
                              details={"files": "too many"})
    max_bytes = config_value("ATTACHMENT_MAX_BYTES", _DEFAULT_ATTACHMENT_MAX_BYTES)

    now = format_iso(utcnow())
    added = []
    for index, f in enumerate(files, start=1):
        _require_fields(f, "filename", "mimetype")
        if f["mimetype"] not in ALLOWED_ATTACHMENT_TYPES:
            raise ValidationError(f"File {index}: type {f['mimetype']} is not allowed",
                                  details={"mimetype": "images (jpeg, png, gif, webp) and zip only"})
        size = int(f.get("size") or 0)
        if size > max_bytes:
            raise ValidationError(f"File {index}: {size} bytes exceeds the {max_bytes} byte limit",
                                  details={"size": "too large"})
        added.append({
            "filename": f["filename"],
            "original_name": f.get("original_name") or f["filename"],
            "mimetype": f["mimetype"],
            "size": size,
            "uploaded_by": actor.name,
            "uploaded_at": now,
        })

    entry = history_entry(HISTORY_ATTACHMENTS, actor,
                          f"{len(added)} file(s) uploaded: {', '.join(a['original_name'] for a in added)}")
    updated = _write(repo, dtr, {
        "attachments": list(dtr.get("attachments") or []) + added,
        "workflow_history": with_history(dtr, entry),
    })
    logger.info("DTR %s: %d attachment(s) added by %s", dtr["case_id"], len(added), actor.user_id,
                extra=log_context(dtr, actor, "add_attachments"))
    return updated


# ═════════════════════════════════════════════════════════════════════════════
# Administrative
# ═════════════════════════════════════════════════════════════════════════════


def bulk_delete(actor, ids: list, *, repo=None) -> dict:
    """
    Delete DTRs by numeric id or case_id. Idempotent: ids that no longer
    exist are counted as requested but not deleted.

    Returns:
        {"deleted_count": int, "requested_count": int}
    """
    repo = repo or get_repository()
    check_permission(actor, "dtr_bulk_delete")
    max_ids = config_value("BULK_DELETE_MAX_IDS", 1000)
    if not isinstance(ids, list) or not ids:
        raise ValidationError("ids must be a non-empty list", details={"ids": "required"})
    if len(ids) > max_ids:
        raise ValidationError(f"At most {max_ids} ids per bulk delete", details={"ids": "too many"})

    numeric, case_ids = set(), set()
    for ref in ids:
        if isinstance(ref, bool):
            raise ValidationError(f"Invalid id: {ref!r}", details={"ids": "invalid entry"})
        if isinstance(ref, int) or (isinstance(ref, str) and ref.isdigit()):
            numeric.add(int(ref))
        elif isinstance(ref, str) and ref.strip():
            case_ids.add(ref.strip())
        else:
            raise ValidationError(f"Invalid id: {ref!r}", details={"ids": "invalid entry"})
    if case_ids:
        numeric.update(d["id"] for d in repo.find("dtr", {"case_id__in": sorted(case_ids)}))

    result = repo.delete_many("dtr", sorted(numeric))
    summary = {"deleted_count": result["deleted_count"], "requested_count": len(ids)}
    logger.info("Bulk delete by %s: %d of %d DTR(s) removed", actor.user_id,
                summary["deleted_count"], summary["requested_count"],
                extra={"actor": actor.user_id, "role": actor.role, "action": "bulk_delete"})
    record_audit(entity_type="dtr_batch", entity_id="bulk_delete", action="dtr.bulk_delete",
                 actor=actor, diff={**summary, "ids": sorted(numeric)})
    return summary
