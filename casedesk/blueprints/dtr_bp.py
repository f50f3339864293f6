"""
DTR Blueprint — case lifecycle, RMA conversion and bulk import endpoints.

Endpoints:
  GET    /api/v1/dtrs                                  — Paginated list with filters
  POST   /api/v1/dtrs                                  — Create a DTR
  GET    /api/v1/dtrs/<ref>                            — Read one DTR (id or case_id)
  PUT    /api/v1/dtrs/<ref>                            — Field edits / close / status change
  POST   /api/v1/dtrs/<ref>/troubleshooting            — Append a troubleshooting step
  POST   /api/v1/dtrs/<ref>/mark-for-conversion        — Record conversion intent
  POST   /api/v1/dtrs/<ref>/convert-to-rma             — Materialize the RMA
  POST   /api/v1/dtrs/<ref>/assign-technician          — Assign technician/engineer
  POST   /api/v1/dtrs/<ref>/assign-technical-head      — Hand to technical head
  POST   /api/v1/dtrs/<ref>/finalize-by-technical-head — Ready for RMA
  GET    /api/v1/dtrs/<ref>/attachments                — List attachment metadata
  POST   /api/v1/dtrs/<ref>/attachments                — Upload files (multipart or metadata JSON)
  POST   /api/v1/dtrs/bulk-import                      — JSON rows or CSV/XLSX upload
  GET    /api/v1/dtrs/bulk-import/template             — Download CSV template
  POST   /api/v1/dtrs/bulk-delete                      — Delete by ids
  GET    /api/v1/dtrs/lookup/projector/<serial>        — Pre-fill lookup by serial
  GET    /api/v1/rmas/<rma_number>                     — Read an RMA
"""

import logging
import os
import uuid

from flask import Blueprint, Response, current_app, g, jsonify, request
from werkzeug.exceptions import HTTPException
from werkzeug.utils import secure_filename

from casedesk import limiter
from casedesk.core.exceptions import (
    AlreadyConvertedError,
    ConflictError,
    NotFoundError,
    PermissionDenied,
    PersistenceError,
    ValidationError,
)
from casedesk.middleware.actor_context import require_actor
from casedesk.services import dtr_import_service, dtr_lifecycle, rma_conversion
from casedesk.services.unit_resolver import lookup_unit
from casedesk.utils.errors import E, api_error

logger = logging.getLogger(__name__)

dtr_bp = Blueprint("dtr", __name__, url_prefix="/api/v1")


def _bulk_import_limit():
    return current_app.config.get("BULK_IMPORT_RATE_LIMIT", "10 per minute")


# ═══════════════════════════════════════════════════════════════
# Error Handlers
# ═══════════════════════════════════════════════════════════════
@dtr_bp.errorhandler(PermissionDenied)
def handle_permission_denied(e):
    return api_error(E.FORBIDDEN, str(e), details={"action": e.action})


@dtr_bp.errorhandler(NotFoundError)
def handle_not_found(e):
    return api_error(E.NOT_FOUND, str(e))


@dtr_bp.errorhandler(ValidationError)
def handle_validation(e):
    return api_error(E.VALIDATION_INVALID, str(e), details=e.details)


@dtr_bp.errorhandler(AlreadyConvertedError)
def handle_already_converted(e):
    return api_error(E.ALREADY_CONVERTED, str(e), details={"rma_number": e.rma_number})


@dtr_bp.errorhandler(ConflictError)
def handle_conflict(e):
    code = E.CONFLICT_DUPLICATE if e.field in ("case_id", "rma_number") else E.CONFLICT_STATE
    return api_error(code, str(e), details={"field": e.field})


@dtr_bp.errorhandler(PersistenceError)
def handle_persistence(e):
    logger.error("Store failure during %s: %s", e.operation or "request", e)
    return api_error(E.DATABASE, str(e))


@dtr_bp.errorhandler(Exception)
def handle_unexpected(e):
    if isinstance(e, HTTPException):
        return e
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    return api_error(E.INTERNAL, "Internal server error")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# ═══════════════════════════════════════════════════════════════
# DTR CRUD
# ═══════════════════════════════════════════════════════════════
@dtr_bp.route("/dtrs", methods=["GET"])
@require_actor
def list_dtrs():
    filters = {k: request.args.get(k) for k in (
        "status", "priority", "call_status", "case_severity",
        "site_name", "serial_number", "start_date", "end_date",
    ) if request.args.get(k)}
    result = dtr_lifecycle.list_dtrs(
        g.actor, filters,
        page=request.args.get("page", 1, type=int),
        limit=request.args.get("limit", 10, type=int),
    )
    return jsonify(result), 200


@dtr_bp.route("/dtrs", methods=["POST"])
@require_actor
def create_dtr():
    dtr = dtr_lifecycle.create_dtr(g.actor, _json_body())
    return jsonify(dtr), 201


@dtr_bp.route("/dtrs/<dtr_ref>", methods=["GET"])
@require_actor
def get_dtr(dtr_ref):
    return jsonify(dtr_lifecycle.get_dtr(g.actor, dtr_ref)), 200


@dtr_bp.route("/dtrs/<dtr_ref>", methods=["PUT"])
@require_actor
def update_dtr(dtr_ref):
    return jsonify(dtr_lifecycle.update_dtr(g.actor, dtr_ref, _json_body())), 200


# ═══════════════════════════════════════════════════════════════
# Workflow
# ═══════════════════════════════════════════════════════════════
@dtr_bp.route("/dtrs/<dtr_ref>/troubleshooting", methods=["POST"])
@require_actor
def add_troubleshooting(dtr_ref):
    return jsonify(dtr_lifecycle.add_troubleshooting_step(g.actor, dtr_ref, _json_body())), 200


@dtr_bp.route("/dtrs/<dtr_ref>/mark-for-conversion", methods=["POST"])
@require_actor
def mark_for_conversion(dtr_ref):
    data = _json_body()
    return jsonify(dtr_lifecycle.mark_for_conversion(g.actor, dtr_ref, data.get("reason"))), 200


@dtr_bp.route("/dtrs/<dtr_ref>/convert-to-rma", methods=["POST"])
@require_actor
def convert_to_rma(dtr_ref):
    data = request.get_json(silent=True) or {}
    result = rma_conversion.convert_to_rma(
        g.actor, dtr_ref,
        reason=data.get("reason"),
        rma_manager=data.get("rma_manager"),
        additional_notes=data.get("additional_notes"),
    )
    return jsonify(result), 201


@dtr_bp.route("/dtrs/<dtr_ref>/assign-technician", methods=["POST"])
@require_actor
def assign_technician(dtr_ref):
    data = _json_body()
    return jsonify(dtr_lifecycle.assign_technician(g.actor, dtr_ref, data.get("assigned_to"))), 200


@dtr_bp.route("/dtrs/<dtr_ref>/assign-technical-head", methods=["POST"])
@require_actor
def assign_technical_head(dtr_ref):
    data = _json_body()
    return jsonify(dtr_lifecycle.assign_technical_head(g.actor, dtr_ref, data.get("technical_head"))), 200


@dtr_bp.route("/dtrs/<dtr_ref>/finalize-by-technical-head", methods=["POST"])
@require_actor
def finalize_by_technical_head(dtr_ref):
    data = _json_body()
    dtr = dtr_lifecycle.finalize_by_technical_head(
        g.actor, dtr_ref, data.get("resolution"), data.get("rma_handler"), notes=data.get("notes"),
    )
    return jsonify(dtr), 200


# ═══════════════════════════════════════════════════════════════
# Attachments
# ═══════════════════════════════════════════════════════════════
@dtr_bp.route("/dtrs/<dtr_ref>/attachments", methods=["GET"])
@require_actor
def list_attachments(dtr_ref):
    return jsonify({"attachments": dtr_lifecycle.list_attachments(g.actor, dtr_ref)}), 200


@dtr_bp.route("/dtrs/<dtr_ref>/attachments", methods=["POST"])
@require_actor
def upload_attachments(dtr_ref):
    """Multipart ``files`` upload, or JSON ``{"files": [metadata...]}`` for externally stored files."""
    uploads = request.files.getlist("files")
    if not uploads:
        data = _json_body()
        return jsonify(dtr_lifecycle.add_attachments(g.actor, dtr_ref, data.get("files"))), 200

    staged = []
    for upload in uploads:
        content = upload.read()
        original = upload.filename or "upload"
        staged.append((content, {
            "filename": f"{uuid.uuid4().hex[:12]}-{secure_filename(original)}",
            "original_name": original,
            "mimetype": upload.mimetype,
            "size": len(content),
        }))
    dtr = dtr_lifecycle.add_attachments(g.actor, dtr_ref, [meta for _, meta in staged])

    folder = current_app.config["UPLOAD_FOLDER"]
    os.makedirs(folder, exist_ok=True)
    for content, meta in staged:
        with open(os.path.join(folder, meta["filename"]), "wb") as fh:
            fh.write(content)
    return jsonify(dtr), 200


# ═══════════════════════════════════════════════════════════════
# Bulk operations
# ═══════════════════════════════════════════════════════════════
@dtr_bp.route("/dtrs/bulk-import", methods=["POST"])
@limiter.limit(_bulk_import_limit)
@require_actor
def bulk_import():
    """Import JSON ``{"dtrs": [...]}`` rows or an uploaded .csv/.xlsx file."""
    upload = request.files.get("file")
    if upload is not None:
        result = dtr_import_service.import_from_file(g.actor, upload.filename, upload.read())
    else:
        data = _json_body()
        result = dtr_import_service.bulk_import(g.actor, data.get("dtrs"))
    status_code = 200 if not result["failed"] and not result["timed_out"] else 207
    return jsonify(result), status_code


@dtr_bp.route("/dtrs/bulk-import/template", methods=["GET"])
@require_actor
def download_import_template():
    return Response(
        dtr_import_service.generate_csv_template(),
        mimetype="text/csv",
        headers={"Content-Disposition": "attachment; filename=dtr_import_template.csv"},
    )


@dtr_bp.route("/dtrs/bulk-delete", methods=["POST"])
@require_actor
def bulk_delete():
    data = _json_body()
    return jsonify(dtr_lifecycle.bulk_delete(g.actor, data.get("ids"))), 200


# ═══════════════════════════════════════════════════════════════
# Lookups
# ═══════════════════════════════════════════════════════════════
@dtr_bp.route("/dtrs/lookup/projector/<serial_number>", methods=["GET"])
@require_actor
def lookup_projector(serial_number):
    return jsonify(lookup_unit(serial_number)), 200


@dtr_bp.route("/rmas/<rma_number>", methods=["GET"])
@require_actor
def get_rma(rma_number):
    return jsonify(rma_conversion.get_rma(g.actor, rma_number)), 200
