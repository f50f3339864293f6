"""
CaseDesk — DTR case-management engine
DTR (Defect/Trouble Report) domain model.

Models:
    - DTR: a field-reported equipment defect and its resolution workflow.

Nested structures (reporter, assignee, troubleshooting log, workflow
history, conversion intent, attachments) are JSON columns. Site and unit
fields are a snapshot taken at creation and are not live-joined.
"""

from casedesk.models import db
from casedesk.models.types import DocumentModel, LenientDateTime

# ── Constants ────────────────────────────────────────────────────────────────

STATUS_OPEN = "Open"
STATUS_IN_PROGRESS = "In Progress"
STATUS_READY_FOR_RMA = "Ready for RMA"
STATUS_CLOSED = "Closed"
STATUS_SHIFTED_TO_RMA = "Shifted to RMA"
STATUS_UNABLE_TO_RESOLVE = "Unable to Resolve"

DTR_STATUSES = (
    STATUS_OPEN,
    STATUS_IN_PROGRESS,
    STATUS_READY_FOR_RMA,
    STATUS_CLOSED,
    STATUS_SHIFTED_TO_RMA,
    STATUS_UNABLE_TO_RESOLVE,
)
TERMINAL_STATUSES = frozenset({STATUS_CLOSED, STATUS_SHIFTED_TO_RMA, STATUS_UNABLE_TO_RESOLVE})

PRIORITIES = ("Low", "Medium", "High", "Critical")
CASE_SEVERITIES = ("Information", "Minor", "Major", "Critical")
CALL_STATUSES = ("Open", "Closed", "Observation", "Waiting_Cust_Responses", "Escalated")

DEFAULT_PRIORITY = "Medium"
DEFAULT_SEVERITY = "Minor"
DEFAULT_CALL_STATUS = "Open"

SHIFTED_TO_RMA_REASON = "Shifted to RMA"

# Workflow history action tags
HISTORY_CREATED = "created"
HISTORY_IMPORTED = "imported"
HISTORY_ASSIGNED = "assigned"
HISTORY_TROUBLESHOOTING = "troubleshooting_added"
HISTORY_ESCALATED = "escalated"
HISTORY_CONVERTED = "converted_to_rma"
HISTORY_FINALIZED = "finalized"
HISTORY_STATUS_CHANGED = "status_changed"
HISTORY_CLOSED = "closed"
HISTORY_ATTACHMENTS = "attachments_added"


class DTR(DocumentModel):
    """
    Defect/Trouble Report.

    Invariants kept by the lifecycle service:
      - ``rma_case_number`` is set iff ``status == "Shifted to RMA"``.
      - ``workflow_history`` and ``troubleshooting_steps`` are append-only.
      - ``closed_by`` is set only while ``status == "Closed"``.
    """

    __tablename__ = "dtrs"
    __table_args__ = (
        db.Index("idx_dtr_status", "status"),
        db.Index("idx_dtr_site", "site_name"),
        db.Index("idx_dtr_complaint_date", "complaint_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    case_id = db.Column(db.String(60), nullable=False, unique=True, index=True)

    # Unit + site snapshot (frozen at creation)
    serial_number = db.Column(db.String(120), nullable=False, index=True)
    site_name = db.Column(db.String(200), nullable=False)
    site_code = db.Column(db.String(60), nullable=False, default="UNKNOWN")
    region = db.Column(db.String(100), nullable=False, default="Unknown")
    unit_model = db.Column(db.String(200), nullable=False, default="Unknown")
    auditorium = db.Column(db.String(120), nullable=True)

    # Free text
    complaint_description = db.Column(db.Text, nullable=False)
    problem_name = db.Column(db.String(300), nullable=True)
    action_taken = db.Column(db.Text, default="")
    remarks = db.Column(db.Text, default="")
    closed_remarks = db.Column(db.Text, default="")
    closed_reason = db.Column(db.String(200), nullable=True)
    notes = db.Column(db.Text, default="")
    resolution = db.Column(db.Text, default="")

    # Classification
    priority = db.Column(db.String(20), nullable=False, default=DEFAULT_PRIORITY)
    case_severity = db.Column(db.String(20), nullable=False, default=DEFAULT_SEVERITY)
    call_status = db.Column(db.String(40), nullable=False, default=DEFAULT_CALL_STATUS)
    status = db.Column(db.String(30), nullable=False, default=STATUS_OPEN)

    # People
    opened_by = db.Column(db.JSON, nullable=False, comment="{name, designation, contact, user_id}")
    assigned_to = db.Column(db.JSON, nullable=True, comment="{user_id, name, email, role, assigned_date}")
    assigned_by = db.Column(db.String(120), nullable=True)
    closed_by = db.Column(db.JSON, nullable=True, comment="{name, designation, contact, closed_date, user_id}")
    finalized_by = db.Column(db.JSON, nullable=True)
    created_by = db.Column(db.String(120), nullable=True)

    # Logs
    troubleshooting_steps = db.Column(db.JSON, nullable=False, default=lambda: [])
    workflow_history = db.Column(db.JSON, nullable=False, default=lambda: [])
    attachments = db.Column(db.JSON, nullable=False, default=lambda: [])

    # Conversion
    conversion_to_rma = db.Column(
        db.JSON, nullable=False,
        default=lambda: {"can_convert": False},
        comment="{can_convert, conversion_reason, converted_by, converted_date, rma_manager_assigned}",
    )
    rma_case_number = db.Column(db.String(60), nullable=True, index=True)

    # Dates
    complaint_date = db.Column(LenientDateTime(), nullable=True)
    error_date = db.Column(LenientDateTime(), nullable=True)
    finalized_date = db.Column(LenientDateTime(), nullable=True)

    def __repr__(self):
        return f"<DTR {self.case_id} [{self.status}]>"
