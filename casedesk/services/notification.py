"""
CaseDesk — DTR case-management engine
Notification Service.

In-app notifications for assignment, finalization and conversion events.
Delivery is best effort: callers go through ``notify_safely`` so a failed
notification is logged and never undoes the case transition it follows.
Recipients without a user id (legacy string assignees) are skipped.
"""

import logging

from casedesk.models import db
from casedesk.models.notification import (
    CATEGORY_ASSIGNMENT,
    CATEGORY_CONVERSION,
    CATEGORY_FINALIZATION,
    Notification,
)

logger = logging.getLogger(__name__)


def _addressable(person: dict | None) -> bool:
    return bool(person and person.get("user_id"))


class NotificationService:
    """Writes one Notification row per event."""

    @staticmethod
    def send(recipient: dict, *, title: str, message: str, category: str,
             entity_type: str, entity_ref: str, severity: str = "info") -> Notification:
        notif = Notification(
            recipient_id=str(recipient["user_id"]),
            recipient_name=recipient.get("name") or "",
            title=title,
            message=message,
            category=category,
            severity=severity,
            entity_type=entity_type,
            entity_ref=entity_ref,
        )
        db.session.add(notif)
        db.session.commit()
        logger.debug("Notified %s: %s", notif.recipient_id, title,
                     extra={"action": category, "case_id": entity_ref if entity_type == "dtr" else None})
        return notif

    @staticmethod
    def notify_assignment(dtr: dict, assignee: dict, assigned_by):
        if not _addressable(assignee):
            return None
        return NotificationService.send(
            assignee,
            title=f"DTR {dtr['case_id']} assigned to you",
            message=f"{assigned_by.name} assigned {dtr['case_id']} ({dtr['serial_number']}, "
                    f"{dtr['site_name']}): {dtr['complaint_description']}",
            category=CATEGORY_ASSIGNMENT,
            entity_type="dtr",
            entity_ref=dtr["case_id"],
        )

    @staticmethod
    def notify_finalized(dtr: dict, handler: dict, technical_head):
        if not _addressable(handler):
            return None
        return NotificationService.send(
            handler,
            title=f"DTR {dtr['case_id']} is ready for RMA",
            message=f"{technical_head.name} finalized the case: {dtr.get('resolution') or ''}",
            category=CATEGORY_FINALIZATION,
            severity="success",
            entity_type="dtr",
            entity_ref=dtr["case_id"],
        )

    @staticmethod
    def notify_conversion(dtr: dict, rma: dict, rma_manager: dict | None):
        if not _addressable(rma_manager):
            return None
        return NotificationService.send(
            rma_manager,
            title=f"New RMA {rma['rma_number']} from DTR {dtr['case_id']}",
            message=f"RMA {rma['rma_number']} was raised for {rma['serial_number']} at {rma['site_name']}.",
            category=CATEGORY_CONVERSION,
            entity_type="rma",
            entity_ref=rma["rma_number"],
        )


def notify_safely(fn, *args, **kwargs):
    """Run a notification call; log and swallow any failure."""
    try:
        return fn(*args, **kwargs)
    except Exception:
        db.session.rollback()
        logger.exception("Notification %s failed; case flow unaffected", getattr(fn, "__name__", fn))
        return None
