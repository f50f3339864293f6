"""
DTR Bulk Import Service.

Turns loosely-structured spreadsheet rows into DTR records without letting
one bad row sink the batch.

Features:
  - JSON rows, CSV or XLSX upload (header aliases mapped to row keys)
  - Placeholder serial numbers for rows without one
  - Serial → Projector → Site → Auditorium resolution with "Unknown" sentinels
  - Legacy enum remapping (priority, call status, severity)
  - Date Normalizer on every date column
  - Per-row inserts, sub-batches, overall timeout with partial results
  - Template CSV generation
"""

import csv
import io
import logging
import re
import time

from openpyxl import load_workbook

from casedesk.core.exceptions import (
    ConflictError,
    ImportRowError,
    ImportTimeout,
    PersistenceError,
    ValidationError,
)
from casedesk.models.audit import record_audit
from casedesk.models.dtr import (
    CALL_STATUSES,
    CASE_SEVERITIES,
    DEFAULT_CALL_STATUS,
    DEFAULT_PRIORITY,
    DEFAULT_SEVERITY,
    HISTORY_IMPORTED,
    PRIORITIES,
    STATUS_CLOSED,
    STATUS_IN_PROGRESS,
    STATUS_OPEN,
    STATUS_UNABLE_TO_RESOLVE,
)
from casedesk.services.assignment import normalize_assignment
from casedesk.services.case_repository import get_repository
from casedesk.services.date_normalizer import format_iso, normalize_date, utcnow
from casedesk.services.dtr_lifecycle import config_value, history_entry
from casedesk.services.identifiers import generate_case_id
from casedesk.services.permission import check_permission
from casedesk.services.unit_resolver import resolve_site, resolve_unit

logger = logging.getLogger(__name__)

# ── Sentinels and defaults ───────────────────────────────────────────────────

UNKNOWN_SITE = "Unknown Site"
UNKNOWN_SITE_CODE = "UNKNOWN"
UNKNOWN_REGION = "Unknown"
UNKNOWN_MODEL = "Unknown"
UNKNOWN_AUDITORIUM = "Unknown"

IMPORT_OPENED_BY = {
    "name": "Bulk Import",
    "designation": "System",
    "contact": "system@import.com",
    "user_id": None,
}

# Imported cases cannot claim an RMA that does not exist
IMPORTABLE_STATUSES = (STATUS_OPEN, STATUS_IN_PROGRESS, STATUS_CLOSED, STATUS_UNABLE_TO_RESOLVE)

# ── Legacy enum remapping ────────────────────────────────────────────────────

PRIORITY_IMPORT_MAP = {
    "Major": "High",
    "Minor": "Low",
    "Information": "Low",
    "Urgent": "High",
    "Normal": "Medium",
}

CALL_STATUS_IMPORT_MAP = {
    "In Progress": "Open",
    "Waiting Cust Responses": "Waiting_Cust_Responses",
    "Waiting for Customer": "Waiting_Cust_Responses",
    "RMA Part return to CDS": "Escalated",
}

SEVERITY_IMPORT_MAP = {
    "High": "Major",
    "Medium": "Minor",
    "Low": "Minor",
    "Info": "Information",
    "Informational": "Information",
}

_DEFAULT_MAX_ROWS = 1000
_DEFAULT_BATCH_SIZE = 50
_DEFAULT_TIMEOUT_SECONDS = 300
_DEFAULT_ERROR_CAP = 50


# ═══════════════════════════════════════════════════════════════
# CSV Template
# ═══════════════════════════════════════════════════════════════

CSV_TEMPLATE_HEADER = [
    "Case ID", "Serial Number", "Site Name", "Complaint Description", "Problem Name",
    "Action Taken", "Remarks", "Priority", "Call Status", "Case Severity", "Status",
    "Complaint Date", "Error Date", "Opened By", "Assigned To", "Closed By", "Closed Date",
]
CSV_TEMPLATE_EXAMPLE = [
    ["", "EP2024001", "PVR Phoenix", "No display", "No display", "Checked lamp", "",
     "High", "Open", "Major", "Open", "25-06-2023", "250623", "A. Kumar", "", "", ""],
    ["DTR-LEGACY-17", "", "", "Colour banding on left edge", "", "", "Legacy ticket",
     "Minor", "closed", "Minor", "Closed", "45000", "45000", "", "T1", "T1", "45001"],
]


def generate_csv_template() -> str:
    """Generate a CSV template string for bulk DTR import."""
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_TEMPLATE_HEADER)
    writer.writerows(CSV_TEMPLATE_EXAMPLE)
    return output.getvalue()


# ═══════════════════════════════════════════════════════════════
# Spreadsheet parsing
# ═══════════════════════════════════════════════════════════════

HEADER_ALIASES = {
    "case_id": "case_id", "caseid": "case_id", "case_no": "case_id", "case_number": "case_id",
    "serial_number": "serial_number", "serial": "serial_number", "serial_no": "serial_number",
    "serialnumber": "serial_number",
    "site": "site_name", "site_name": "site_name", "sitename": "site_name",
    "site_code": "site_code",
    "region": "region",
    "model": "unit_model", "unit_model": "unit_model", "projector_model": "unit_model",
    "audi": "auditorium", "audi_no": "auditorium", "auditorium": "auditorium",
    "complaint": "complaint_description", "complaint_description": "complaint_description",
    "issue": "complaint_description",
    "problem": "problem_name", "problem_name": "problem_name",
    "action_taken": "action_taken",
    "remarks": "remarks",
    "priority": "priority",
    "call_status": "call_status",
    "severity": "case_severity", "case_severity": "case_severity",
    "status": "status",
    "complaint_date": "complaint_date", "date": "complaint_date", "call_date": "complaint_date",
    "error_date": "error_date", "date_of_error": "error_date",
    "opened_by": "opened_by_name", "opened_by_name": "opened_by_name", "reported_by": "opened_by_name",
    "designation": "opened_by_designation",
    "contact": "opened_by_contact",
    "assigned_to": "assigned_to", "technician": "assigned_to",
    "closed_by": "closed_by_name", "closed_by_name": "closed_by_name",
    "closed_date": "closed_date", "closed_on": "closed_date",
    "closed_reason": "closed_reason",
    "closed_remarks": "closed_remarks",
}

# Columns that must stay text even when a spreadsheet stores them as numbers
_TEXT_COLUMNS = {"case_id", "serial_number", "site_code", "auditorium"}


def _header_key(header) -> str | None:
    normalized = re.sub(r"[^a-z0-9]+", "_", str(header or "").strip().lower()).strip("_")
    return HEADER_ALIASES.get(normalized)


def _cell(key: str, value):
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if key in _TEXT_COLUMNS:
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        return str(value)
    return value


def _rows_from_table(headers, records) -> list[dict]:
    keys = [_header_key(h) for h in headers]
    if "serial_number" not in keys and "complaint_description" not in keys:
        raise ValidationError(
            "Spreadsheet needs at least a serial number or complaint column. "
            f"Found columns: {', '.join(str(h) for h in headers if h is not None)}"
        )
    rows = []
    for record in records:
        row = {}
        for key, value in zip(keys, record):
            if key is not None:
                row[key] = _cell(key, value)
        if any(v not in ("", None) for v in row.values()):
            rows.append(row)
    return rows


def parse_csv(file_content: str | bytes) -> list[dict]:
    """Parse CSV content into row dicts keyed by import field names."""
    if isinstance(file_content, bytes):
        file_content = file_content.decode("utf-8-sig")  # Handle BOM
    reader = csv.reader(io.StringIO(file_content))
    try:
        headers = next(reader)
    except StopIteration:
        raise ValidationError("CSV file is empty") from None
    return _rows_from_table(headers, reader)


def parse_xlsx(file_content: bytes) -> list[dict]:
    """Parse the first worksheet of an .xlsx workbook into row dicts."""
    try:
        wb = load_workbook(io.BytesIO(file_content), read_only=True, data_only=True)
    except Exception as exc:
        raise ValidationError(f"Could not read workbook: {exc}") from exc
    try:
        ws = wb.active
        records = ws.iter_rows(values_only=True)
        try:
            headers = next(records)
        except StopIteration:
            raise ValidationError("Worksheet is empty") from None
        return _rows_from_table(headers, records)
    finally:
        wb.close()


def import_from_file(actor, filename: str, file_content: bytes, **kwargs) -> dict:
    """Parse an uploaded CSV/XLSX file and run ``bulk_import`` on its rows."""
    name = (filename or "").lower()
    if name.endswith(".csv"):
        rows = parse_csv(file_content)
    elif name.endswith(".xlsx"):
        rows = parse_xlsx(file_content)
    else:
        raise ValidationError("Only .csv and .xlsx files are supported", details={"file": filename})
    logger.info("Parsed %d row(s) from %s", len(rows), filename)
    return bulk_import(actor, rows, **kwargs)


# ═══════════════════════════════════════════════════════════════
# Row materialization
# ═══════════════════════════════════════════════════════════════


def _text(row: dict, key: str) -> str:
    value = row.get(key)
    return "" if value is None else str(value).strip()


def _remap(value: str, mapping: dict) -> str:
    if value in mapping:
        return mapping[value]
    lowered = {k.lower(): v for k, v in mapping.items()}
    return lowered.get(value.lower(), value)


def _canonical(value: str, choices) -> str:
    """Match *value* to a choice case-insensitively; unknown values pass through."""
    for choice in choices:
        if choice.lower() == value.lower():
            return choice
    return value


def _enum(row: dict, key: str, mapping: dict, choices, default: str, index: int) -> str:
    raw = _text(row, key)
    if not raw:
        return default
    value = _canonical(_remap(raw, mapping), choices)
    if value not in choices:
        raise ImportRowError(index, f"Invalid {key} '{raw}'")
    return value


def _location(row: dict, serial: str, placeholder: bool) -> dict:
    """Resolve the site/unit snapshot, falling back to overrides and sentinels."""
    unit = site = audi = None
    if not placeholder:
        resolved = resolve_unit(serial)
        if resolved:
            unit, site, audi = resolved["unit"], resolved["site"], resolved["auditorium"]
        else:
            logger.debug("Import: serial %s not in installed base, using sentinels", serial)

    if site is None and (_text(row, "site_name") or _text(row, "site_code")):
        site = resolve_site(_text(row, "site_name") or None, _text(row, "site_code") or None)

    if site is not None:
        site_name, site_code, region = site["name"], site.get("code"), site.get("region")
    else:
        site_name, site_code, region = _text(row, "site_name"), _text(row, "site_code"), _text(row, "region")

    auditorium = None
    if audi:
        auditorium = audi.get("name") or f"Audi {audi['audi_number']}"
    return {
        "site_name": site_name or UNKNOWN_SITE,
        "site_code": site_code or UNKNOWN_SITE_CODE,
        "region": region or UNKNOWN_REGION,
        "unit_model": (unit or {}).get("model") or _text(row, "unit_model") or UNKNOWN_MODEL,
        "auditorium": auditorium or _text(row, "auditorium") or UNKNOWN_AUDITORIUM,
    }


def _opened_by(row: dict) -> dict:
    opened = row.get("opened_by")
    if isinstance(opened, dict) and opened.get("name"):
        return {**IMPORT_OPENED_BY, **{k: opened.get(k) for k in ("name", "designation", "contact", "user_id")
                                       if opened.get(k)}}
    if isinstance(opened, str) and opened.strip():
        return {**IMPORT_OPENED_BY, "name": opened.strip(), "designation": "", "contact": ""}
    if _text(row, "opened_by_name"):
        return {
            **IMPORT_OPENED_BY,
            "name": _text(row, "opened_by_name"),
            "designation": _text(row, "opened_by_designation"),
            "contact": _text(row, "opened_by_contact"),
        }
    return dict(IMPORT_OPENED_BY)


def _closed_by(row: dict, actor) -> dict:
    closed = row.get("closed_by")
    closed = dict(closed) if isinstance(closed, dict) else {}
    if isinstance(row.get("closed_by"), str):
        closed["name"] = row["closed_by"].strip()
    closed_date = closed.get("closed_date") or row.get("closed_date")
    return {
        "name": closed.get("name") or _text(row, "closed_by_name") or actor.name,
        "designation": closed.get("designation") or "",
        "contact": closed.get("contact") or "",
        "user_id": closed.get("user_id"),
        "closed_date": format_iso(normalize_date(closed_date)),
    }


def _build_record(row, index: int, actor, repo, seen_case_ids: set, batch_stamp: int) -> dict:
    if not isinstance(row, dict):
        raise ImportRowError(index, "row must be an object")

    complaint = _text(row, "complaint_description") or _text(row, "problem_name")
    if not complaint:
        raise ImportRowError(index, "complaint_description is required")

    serial = _text(row, "serial_number")
    placeholder = not serial
    if placeholder:
        serial = f"IMPORT-{batch_stamp}-{index}"

    case_id = _text(row, "case_id")
    if case_id:
        if case_id in seen_case_ids or repo.find_one("dtr", {"case_id": case_id}) is not None:
            raise ImportRowError(index, f"Duplicate case_id {case_id}")
    else:
        case_id = generate_case_id(repo)

    priority = _enum(row, "priority", PRIORITY_IMPORT_MAP, PRIORITIES, DEFAULT_PRIORITY, index)
    call_status = _enum(row, "call_status", CALL_STATUS_IMPORT_MAP, CALL_STATUSES, DEFAULT_CALL_STATUS, index)
    severity = _enum(row, "case_severity", SEVERITY_IMPORT_MAP, CASE_SEVERITIES, DEFAULT_SEVERITY, index)
    status = _enum(row, "status", {}, IMPORTABLE_STATUSES, STATUS_OPEN, index)

    complaint_date = normalize_date(row.get("complaint_date"))
    error_date = normalize_date(row["error_date"]) if row.get("error_date") not in (None, "") else None

    try:
        assigned_to = normalize_assignment(row.get("assigned_to"))
    except ValidationError as exc:
        raise ImportRowError(index, str(exc)) from exc

    record = {
        "case_id": case_id,
        "serial_number": serial,
        **_location(row, serial, placeholder),
        "complaint_description": complaint,
        "problem_name": _text(row, "problem_name") or complaint,
        "action_taken": _text(row, "action_taken"),
        "remarks": _text(row, "remarks"),
        "closed_remarks": _text(row, "closed_remarks"),
        "priority": priority,
        "case_severity": severity,
        "call_status": call_status,
        "status": status,
        "opened_by": _opened_by(row),
        "assigned_to": assigned_to,
        "created_by": actor.user_id,
        "complaint_date": complaint_date,
        "error_date": error_date,
        "troubleshooting_steps": [],
        "attachments": [],
        "conversion_to_rma": {"can_convert": False},
        "workflow_history": [history_entry(HISTORY_IMPORTED, actor, f"Imported from bulk upload row {index}")],
    }
    if status == STATUS_CLOSED:
        record["closed_by"] = _closed_by(row, actor)
        record["closed_reason"] = _text(row, "closed_reason") or None
    return record


def _import_row(row, index: int, actor, repo, seen_case_ids: set, batch_stamp: int) -> dict:
    record = _build_record(row, index, actor, repo, seen_case_ids, batch_stamp)
    try:
        dtr = repo.insert("dtr", record)
    except ConflictError as exc:
        raise ImportRowError(index, f"Duplicate case_id {record['case_id']}") from exc
    except (PersistenceError, ValidationError) as exc:
        raise ImportRowError(index, str(exc)) from exc
    seen_case_ids.add(dtr["case_id"])
    return dtr


# ═══════════════════════════════════════════════════════════════
# Batch orchestration
# ═══════════════════════════════════════════════════════════════


def bulk_import(
    actor,
    rows: list,
    *,
    timeout_seconds: float | None = None,
    batch_size: int | None = None,
    repo=None,
    clock=time.monotonic,
) -> dict:
    """
    Import a batch of rows, one DTR per row, tolerating per-row failures.

    Returns:
        {"imported", "failed", "skipped", "total", "errors" (capped),
         "timed_out", "duration_seconds", "message"}

    Raises:
        PermissionDenied: actor may not bulk import.
        ValidationError: empty batch, non-list payload, or too many rows.
    """
    repo = repo or get_repository()
    check_permission(actor, "dtr_bulk_import")

    max_rows = config_value("BULK_IMPORT_MAX_ROWS", _DEFAULT_MAX_ROWS)
    batch_size = batch_size or config_value("BULK_IMPORT_BATCH_SIZE", _DEFAULT_BATCH_SIZE)
    timeout_seconds = timeout_seconds or config_value("BULK_IMPORT_TIMEOUT_SECONDS", _DEFAULT_TIMEOUT_SECONDS)
    error_cap = config_value("BULK_IMPORT_ERROR_CAP", _DEFAULT_ERROR_CAP)

    if not isinstance(rows, list) or not rows:
        raise ValidationError("No rows to import", details={"dtrs": "must be a non-empty list"})
    if len(rows) > max_rows:
        raise ValidationError(f"Too many rows: {len(rows)} (maximum {max_rows})",
                              details={"dtrs": f"at most {max_rows} rows"})

    started = clock()
    deadline = started + timeout_seconds
    batch_stamp = int(time.time() * 1000)
    seen_case_ids: set[str] = set()
    imported = failed = processed = 0
    errors: list[str] = []
    timed_out = False

    try:
        for batch_start in range(0, len(rows), batch_size):
            batch = rows[batch_start:batch_start + batch_size]
            for offset, row in enumerate(batch):
                index = batch_start + offset + 1
                if clock() >= deadline:
                    raise ImportTimeout(f"Stopped before row {index}")
                try:
                    _import_row(row, index, actor, repo, seen_case_ids, batch_stamp)
                    imported += 1
                except ImportRowError as exc:
                    failed += 1
                    errors.append(str(exc))
                    logger.warning("Import %s", exc,
                                   extra={"actor": actor.user_id, "role": actor.role, "action": "bulk_import"})
                processed += 1
            logger.debug("Import batch %d-%d done: %d imported, %d failed so far",
                         batch_start + 1, batch_start + len(batch), imported, failed)
    except ImportTimeout as exc:
        timed_out = True
        logger.warning("Bulk import timed out after %ss: %s", timeout_seconds, exc,
                       extra={"actor": actor.user_id, "role": actor.role, "action": "bulk_import"})

    skipped = len(rows) - processed
    duration = round(clock() - started, 3)
    message = f"Imported {imported} of {len(rows)} row(s); {failed} failed"
    if timed_out:
        message += f"; timed out with {skipped} row(s) not processed"
    result = {
        "imported": imported,
        "failed": failed,
        "skipped": skipped,
        "total": len(rows),
        "errors": errors[:error_cap],
        "timed_out": timed_out,
        "duration_seconds": duration,
        "message": message,
    }
    logger.info("Bulk import by %s: %s", actor.user_id, message,
                extra={"actor": actor.user_id, "role": actor.role, "action": "bulk_import"})
    record_audit(entity_type="dtr_batch", entity_id=f"import-{batch_stamp}", action="dtr.bulk_import",
                 actor=actor, diff={k: result[k] for k in ("imported", "failed", "skipped", "total", "timed_out")})
    return result
