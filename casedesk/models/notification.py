"""
In-app notifications raised by case events.

One row per recipient per event. ``entity_ref`` points at the case or RMA
the recipient should open: a ``case_id`` for assignment and finalization,
an ``rma_number`` for conversion.
"""

from casedesk.models import db
from casedesk.models.types import DocumentModel

CATEGORY_ASSIGNMENT = "assignment"
CATEGORY_FINALIZATION = "finalization"
CATEGORY_CONVERSION = "conversion"
CATEGORY_SYSTEM = "system"
NOTIFICATION_CATEGORIES = (CATEGORY_ASSIGNMENT, CATEGORY_FINALIZATION, CATEGORY_CONVERSION, CATEGORY_SYSTEM)


class Notification(DocumentModel):
    __tablename__ = "notifications"
    __table_args__ = (db.Index("idx_notification_inbox", "recipient_id", "is_read"),)

    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(db.String(120), nullable=False)
    recipient_name = db.Column(db.String(150), default="")

    category = db.Column(db.String(30), nullable=False, default=CATEGORY_SYSTEM)
    severity = db.Column(db.String(20), nullable=False, default="info", comment="info | success | warning")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")

    entity_type = db.Column(db.String(30), default="", comment="dtr | rma")
    entity_ref = db.Column(db.String(60), nullable=True)

    is_read = db.Column(db.Boolean, nullable=False, default=False)

    def __repr__(self):
        return f"<Notification {self.id} {self.category} → {self.recipient_id}>"
