"""
CaseDesk — DTR case-management engine
RMA (Return Merchandise Authorization) model.

Only the creation-time shape is modelled here; the RMA's own lifecycle
(shipping, SLA tracking) belongs to another subsystem.
"""

from casedesk.models import db
from casedesk.models.types import DocumentModel, LenientDateTime

# ── Constants ────────────────────────────────────────────────────────────────

RMA_PRIORITIES = ("Low", "Medium", "High")
RMA_INITIAL_CASE_STATUS = "Under Review"
RMA_INITIAL_APPROVAL_STATUS = "Pending Review"
WARRANTY_IN = "In Warranty"
WARRANTY_OUT = "Out of Warranty"


class RMA(DocumentModel):
    """RMA case materialized from a DTR by the conversion engine."""

    __tablename__ = "rmas"

    id = db.Column(db.Integer, primary_key=True)
    rma_number = db.Column(db.String(40), nullable=False, unique=True, index=True)
    originated_from_dtr = db.Column(
        db.JSON, nullable=True,
        comment="{dtr_id, dtr_case_id, conversion_date, conversion_reason, technician{name, user_id}}",
    )
    call_log_number = db.Column(db.String(80), nullable=True)
    rma_order_number = db.Column(db.String(80), nullable=True)

    # Site / product snapshot
    site_name = db.Column(db.String(200), nullable=False)
    product_name = db.Column(db.String(200), nullable=True)
    product_part_number = db.Column(db.String(120), nullable=True)
    serial_number = db.Column(db.String(120), nullable=False, index=True)
    brand = db.Column(db.String(120), nullable=True)
    projector_model = db.Column(db.String(200), nullable=True)

    # Defect
    defective_part_number = db.Column(db.String(120), nullable=True)
    defective_part_name = db.Column(db.String(300), nullable=True)
    defective_serial_number = db.Column(db.String(120), nullable=True)
    symptoms = db.Column(db.Text, default="")

    # Workflow seed
    case_status = db.Column(db.String(40), nullable=False, default=RMA_INITIAL_CASE_STATUS)
    approval_status = db.Column(db.String(40), nullable=False, default=RMA_INITIAL_APPROVAL_STATUS)
    priority = db.Column(db.String(20), nullable=False, default="Medium")
    warranty_status = db.Column(db.String(40), nullable=False, default=WARRANTY_OUT)
    estimated_cost = db.Column(db.Float, nullable=False, default=0)
    notes = db.Column(db.Text, default="")

    rma_manager = db.Column(db.JSON, nullable=True, comment="{user_id, name, email}")
    created_by = db.Column(db.String(120), nullable=True)

    ascomp_raised_date = db.Column(LenientDateTime(), nullable=True)
    customer_error_date = db.Column(LenientDateTime(), nullable=True)

    def __repr__(self):
        return f"<RMA {self.rma_number} from {self.call_log_number}>"
