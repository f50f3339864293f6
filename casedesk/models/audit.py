"""
CaseDesk — DTR case-management engine
Cross-entity audit trail.

Per-case history lives in ``DTR.workflow_history``. ``AuditLog`` records
the operations that touch more than one row: a conversion (DTR + RMA),
a bulk import and a bulk delete. Rows are append-only.
"""

import json
import logging
from datetime import datetime, timezone

from casedesk.models import db

logger = logging.getLogger(__name__)

AUDITED_ACTIONS = frozenset({
    "dtr.convert_to_rma",
    "dtr.bulk_import",
    "dtr.bulk_delete",
})


class AuditLog(db.Model):
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_action_ts", "action", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(30), nullable=False, comment="dtr | dtr_batch")
    entity_id = db.Column(db.String(60), nullable=False, comment="case_id or batch label")
    action = db.Column(db.String(60), nullable=False)

    actor = db.Column(db.String(150), nullable=False, default="system")
    actor_user_id = db.Column(db.String(120), nullable=True, index=True)
    actor_role = db.Column(db.String(40), nullable=True)

    diff_json = db.Column(db.Text, nullable=False, default="{}")
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False,
                          default=lambda: datetime.now(timezone.utc))

    @property
    def diff(self) -> dict:
        return json.loads(self.diff_json or "{}")

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} {self.entity_type}/{self.entity_id}>"


def write_audit(*, entity_type: str, entity_id: str, action: str, actor=None,
                diff: dict | None = None) -> AuditLog:
    """
    Append one audit row and commit.

    *actor* is an ``Actor``; ``None`` records a system event.

    Raises:
        ValueError: *action* is not one of ``AUDITED_ACTIONS``.
    """
    if action not in AUDITED_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")
    log = AuditLog(
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=getattr(actor, "name", None) or "system",
        actor_user_id=getattr(actor, "user_id", None),
        actor_role=getattr(actor, "role", None),
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.commit()
    return log


def record_audit(**kwargs) -> AuditLog | None:
    """``write_audit`` for callers whose main write is already committed.

    A failure is logged and rolled back; it never propagates.
    """
    try:
        return write_audit(**kwargs)
    except Exception:
        db.session.rollback()
        logger.exception("Audit log failed for %s; main flow unaffected", kwargs.get("action"))
        return None
