"""
RMA Conversion Engine — materializes exactly one RMA from a DTR.

Protocol:
    1. Load the DTR. If it already carries ``rma_case_number`` → AlreadyConvertedError.
    2. Authorization (admin, rma_manager, or the assigned technician/engineer)
       and transition check.
    3. Build the RMA record: field mapping, priority translation, warranty
       status, notes synthesized from the complaint and troubleshooting log.
    4. Insert the RMA. A failure here leaves the DTR untouched.
    5. Commit point: conditional update of the DTR on
       ``rma_case_number IS NULL``. If another conversion won the race the
       RMA from step 4 is deleted again and AlreadyConvertedError carries
       the winner's number. Store failures are retried; if every attempt
       fails the RMA is left dangling (logged) and PersistenceError raised.
    6. Best-effort notification and audit row.

Usage:
    from casedesk.services.rma_conversion import convert_to_rma

    result = convert_to_rma(actor, "DTR-2024-0001", reason="Lamp driver failed")
    result["rma"]["rma_number"]   # "RMA-2024-001"
"""

import logging
import time

from casedesk.core.exceptions import AlreadyConvertedError, ConflictError, NotFoundError, PersistenceError
from casedesk.models.audit import record_audit
from casedesk.models.dtr import HISTORY_CONVERTED, SHIFTED_TO_RMA_REASON
from casedesk.models.rma import (
    RMA_INITIAL_APPROVAL_STATUS,
    RMA_INITIAL_CASE_STATUS,
    WARRANTY_IN,
    WARRANTY_OUT,
)
from casedesk.services.assignment import normalize_assignment
from casedesk.services.case_repository import get_repository
from casedesk.services.date_normalizer import format_iso, parse_date_value, utcnow
from casedesk.services.dtr_lifecycle import (
    config_value,
    history_entry,
    load_dtr,
    log_context,
    require_transition,
    with_history,
)
from casedesk.services.identifiers import generate_rma_number
from casedesk.services.notification import NotificationService, notify_safely
from casedesk.services.permission import ROLE_ENGINEER, ROLE_RMA_MANAGER, ROLE_TECHNICIAN, check_permission
from casedesk.services.unit_resolver import resolve_unit

logger = logging.getLogger(__name__)

DEFAULT_CONVERSION_REASON = "Issue unresolved after troubleshooting"

# DTR priority → RMA priority; unlisted values pass through
PRIORITY_TO_RMA = {"Critical": "High"}

RETRY_BACKOFF_SECONDS = 0.05
_NUMBER_ATTEMPTS = 2


# ═════════════════════════════════════════════════════════════════════════════
# Mapping
# ═════════════════════════════════════════════════════════════════════════════


def map_priority(priority: str | None) -> str:
    return PRIORITY_TO_RMA.get(priority, priority or "Medium")


def warranty_status(unit: dict | None, now=None) -> str:
    """In Warranty while the unit's warranty_end lies in the future."""
    if not unit or not unit.get("warranty_end"):
        return WARRANTY_OUT
    warranty_end = parse_date_value(unit["warranty_end"])
    if warranty_end is None:
        return WARRANTY_OUT
    return WARRANTY_IN if warranty_end > (now or utcnow()) else WARRANTY_OUT


def build_rma_notes(dtr: dict, additional_notes: str | None = None) -> str:
    """Concatenate complaint, action taken, remarks and every troubleshooting step, in order."""
    notes = (
        f"Auto-generated from DTR: {dtr['case_id']}\n\n"
        f"Original Complaint: {dtr['complaint_description']}\n\n"
        f"Action Taken: {dtr.get('action_taken') or 'N/A'}\n\n"
        f"Remarks: {dtr.get('remarks') or 'N/A'}"
    )
    steps = dtr.get("troubleshooting_steps") or []
    if steps:
        notes += "\n\nTroubleshooting History:\n"
        for step in steps:
            performed_on = (step.get("performed_at") or "")[:10] or "unknown date"
            notes += (
                f"\nStep {step['step']}: {step['description']}\n"
                f"Outcome: {step['outcome']}\n"
                f"Performed by: {step.get('performed_by') or 'unknown'} on {performed_on}\n"
            )
    if additional_notes and additional_notes.strip():
        notes += f"\n\nAdditional Notes: {additional_notes.strip()}"
    return notes


def _technician(dtr: dict, actor) -> dict:
    assigned = dtr.get("assigned_to") or {}
    if assigned.get("role") in (ROLE_TECHNICIAN, ROLE_ENGINEER) and assigned.get("name"):
        return {"name": assigned["name"], "user_id": assigned.get("user_id")}
    return {"name": actor.name, "user_id": actor.user_id}


def build_rma_record(dtr: dict, actor, rma_number: str, *, unit: dict | None, reason: str,
                     rma_manager: dict | None, additional_notes: str | None = None, now=None) -> dict:
    """Field mapping DTR (+ resolved unit) → RMA insert payload."""
    now = now or utcnow()
    case_id = dtr["case_id"]
    unit = unit or {}
    customer_error_date = parse_date_value(dtr.get("error_date") or dtr.get("complaint_date"))
    return {
        "rma_number": rma_number,
        "originated_from_dtr": {
            "dtr_id": dtr["id"],
            "dtr_case_id": case_id,
            "conversion_date": format_iso(now),
            "conversion_reason": reason,
            "technician": _technician(dtr, actor),
        },
        "call_log_number": case_id if case_id.startswith("DTR-") else f"DTR-{case_id}",
        "rma_order_number": f"ORDER-{case_id}",
        "site_name": dtr["site_name"],
        "product_name": dtr.get("unit_model") or unit.get("model"),
        "product_part_number": unit.get("part_number") or "",
        "serial_number": dtr["serial_number"],
        "brand": unit.get("brand") or "",
        "projector_model": dtr.get("unit_model") or unit.get("model"),
        "defective_part_number": "TBD",
        "defective_part_name": dtr.get("problem_name") or dtr["complaint_description"],
        "defective_serial_number": "TBD",
        "symptoms": dtr["complaint_description"],
        "case_status": RMA_INITIAL_CASE_STATUS,
        "approval_status": RMA_INITIAL_APPROVAL_STATUS,
        "priority": map_priority(dtr.get("priority")),
        "warranty_status": warranty_status(unit, now),
        "estimated_cost": 0,
        "notes": build_rma_notes(dtr, additional_notes),
        "rma_manager": rma_manager,
        "created_by": actor.user_id,
        "ascomp_raised_date": now,
        "customer_error_date": customer_error_date,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Conversion
# ═════════════════════════════════════════════════════════════════════════════


def convert_to_rma(
    actor,
    dtr_ref,
    *,
    reason: str | None = None,
    rma_manager=None,
    additional_notes: str | None = None,
    field_changes: dict | None = None,
    repo=None,
) -> dict:
    """
    Convert a DTR into a new RMA.

    Args:
        actor: The caller.
        dtr_ref: DTR numeric id or case_id.
        reason: Conversion reason; defaults to the reason recorded by
            ``mark_for_conversion``, then to a generic one.
        rma_manager: Optional ``{user_id, name, email}`` to own the RMA.
        additional_notes: Appended to the synthesized RMA notes.
        field_changes: Already-validated DTR field edits saved in the same
            write as the conversion; nothing is stored if conversion fails.

    Returns:
        {"dtr": <updated DTR>, "rma": <new RMA>}

    Raises:
        NotFoundError, AlreadyConvertedError, PermissionDenied,
        DTRTransitionError, PersistenceError
    """
    repo = repo or get_repository()
    dtr = load_dtr(repo, dtr_ref)

    if dtr.get("rma_case_number"):
        logger.info("DTR %s already converted to %s; rejecting repeat by %s",
                    dtr["case_id"], dtr["rma_case_number"], actor.user_id,
                    extra=log_context(dtr, actor, "convert_to_rma"))
        raise AlreadyConvertedError(dtr["case_id"], dtr["rma_case_number"])

    check_permission(actor, "dtr_convert_to_rma", dtr)
    target = require_transition(dtr, "convert_to_rma", actor)
    if field_changes:
        dtr = {**dtr, **field_changes}

    manager = normalize_assignment(rma_manager, default_role=ROLE_RMA_MANAGER) if rma_manager else None
    conversion = dict(dtr.get("conversion_to_rma") or {})
    reason = (reason or conversion.get("conversion_reason") or DEFAULT_CONVERSION_REASON).strip()
    resolved = resolve_unit(dtr["serial_number"])
    now = utcnow()

    rma = _insert_rma(repo, dtr, actor, now=now, unit=resolved["unit"] if resolved else None,
                      reason=reason, manager=manager, additional_notes=additional_notes)

    conversion.update({
        "can_convert": True,
        "conversion_reason": reason,
        "converted_by": actor.name,
        "converted_date": format_iso(now),
    })
    if manager:
        conversion["rma_manager_assigned"] = manager
    entry = history_entry(
        HISTORY_CONVERTED, actor,
        f"Converted to RMA {rma['rma_number']}: {reason}",
        previous_value=dtr["status"], new_value=rma["rma_number"],
    )
    patch = {
        **(field_changes or {}),
        "status": target,
        "rma_case_number": rma["rma_number"],
        "closed_reason": SHIFTED_TO_RMA_REASON,
        "conversion_to_rma": conversion,
        "workflow_history": with_history(dtr, entry),
    }
    updated = _commit_conversion(repo, dtr, patch, rma, actor)

    logger.info("DTR %s converted to RMA %s by %s", dtr["case_id"], rma["rma_number"], actor.user_id,
                extra=log_context(dtr, actor, "convert_to_rma"))
    notify_safely(NotificationService.notify_conversion, updated, rma, manager)
    record_audit(entity_type="dtr", entity_id=dtr["case_id"], action="dtr.convert_to_rma", actor=actor,
                 diff={"rma_number": rma["rma_number"], "previous_status": dtr["status"]})
    return {"dtr": updated, "rma": rma}


def _insert_rma(repo, dtr: dict, actor, *, now, unit, reason, manager, additional_notes) -> dict:
    # A concurrent conversion of another DTR can take the same sequence number.
    for attempt in range(1, _NUMBER_ATTEMPTS + 1):
        rma_number = generate_rma_number(repo, now)
        record = build_rma_record(dtr, actor, rma_number, unit=unit, reason=reason,
                                  rma_manager=manager, additional_notes=additional_notes, now=now)
        try:
            return repo.insert("rma", record)
        except ConflictError:
            if attempt == _NUMBER_ATTEMPTS:
                raise
            logger.warning("RMA number %s taken; regenerating for DTR %s", rma_number, dtr["case_id"])
        except PersistenceError:
            logger.error("RMA insert failed for DTR %s; DTR left unchanged", dtr["case_id"],
                         extra=log_context(dtr, actor, "convert_to_rma"))
            raise


def _commit_conversion(repo, dtr: dict, patch: dict, rma: dict, actor) -> dict:
    retries = config_value("CONVERSION_UPDATE_RETRIES", 3)
    last_error = None
    for attempt in range(1, retries + 2):
        try:
            updated = repo.update_by_id("dtr", dtr["id"], patch, conditional_on={"rma_case_number": None})
        except PersistenceError as exc:
            last_error = exc
            logger.warning("Linking DTR %s to RMA %s failed (attempt %d/%d)",
                           dtr["case_id"], rma["rma_number"], attempt, retries + 1,
                           extra=log_context(dtr, actor, "convert_to_rma"))
            time.sleep(RETRY_BACKOFF_SECONDS * attempt)
            continue

        if updated is not None:
            return updated

        # Conditional write matched nothing: someone else converted it, or it is gone.
        current = repo.find_one("dtr", {"id": dtr["id"]})
        _discard_rma(repo, rma, dtr)
        if current is not None and current.get("rma_case_number"):
            logger.warning("Conversion race on DTR %s lost to RMA %s", dtr["case_id"],
                           current["rma_case_number"], extra=log_context(dtr, actor, "convert_to_rma"))
            raise AlreadyConvertedError(dtr["case_id"], current["rma_case_number"])
        raise NotFoundError("DTR", dtr["case_id"])

    logger.error("DTR %s could not be linked to RMA %s after %d attempts; RMA left without back-link",
                 dtr["case_id"], rma["rma_number"], retries + 1,
                 extra=log_context(dtr, actor, "convert_to_rma"))
    raise PersistenceError(
        f"RMA {rma['rma_number']} was created but DTR {dtr['case_id']} could not be updated",
        operation="update_by_id",
    ) from last_error


def _discard_rma(repo, rma: dict, dtr: dict) -> None:
    try:
        repo.delete_many("rma", [rma["id"]])
    except PersistenceError:
        logger.error("Could not remove orphan RMA %s created for DTR %s", rma["rma_number"], dtr["case_id"])


def get_rma(actor, rma_number: str, *, repo=None) -> dict:
    """Read an RMA by number; any actor who may view DTRs may view RMAs."""
    repo = repo or get_repository()
    check_permission(actor, "dtr_view")
    rma = repo.find_one("rma", {"rma_number": rma_number})
    if rma is None:
        raise NotFoundError("RMA", rma_number)
    return rma
