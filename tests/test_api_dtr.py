"""
HTTP API Tests:
  - Actor token handling (401 missing / invalid / expired, role claim)
  - Domain errors mapped to status codes with machine-readable codes
  - Create → assign → convert over HTTP
  - Bulk import (JSON, CSV upload), template download, bulk delete
  - Attachments upload, projector lookup, RMA read, health, request id
"""

import io
from datetime import datetime, timedelta, timezone

SERIAL = "EP2024001"


def _create(client, auth_headers, actor, **payload):
    body = {
        "serial_number": SERIAL,
        "complaint_description": "No display",
        "opened_by": {"name": "A. Kumar", "designation": "Site Manager", "contact": "9800000000"},
        **payload,
    }
    return client.post("/api/v1/dtrs", json=body, headers=auth_headers(actor))


# ── Authentication ───────────────────────────────────────────────────────


class TestAuth:

    def test_missing_token(self, client):
        res = client.get("/api/v1/dtrs")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_invalid_token(self, client):
        res = client.get("/api/v1/dtrs", headers={"Authorization": "Bearer not-a-jwt"})
        assert res.status_code == 401

    def test_expired_token(self, client, manager, auth_headers):
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        res = client.get("/api/v1/dtrs", headers=auth_headers(manager, iat=past, exp=past))
        assert res.status_code == 401

    def test_unknown_role(self, client, manager, auth_headers):
        res = client.get("/api/v1/dtrs", headers=auth_headers(manager, role="janitor"))
        assert res.status_code == 401

    def test_health_is_public(self, client):
        res = client.get("/api/v1/health")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_request_id_header(self, client):
        res = client.get("/api/v1/health", headers={"X-Request-ID": "req-42"})
        assert res.headers["X-Request-ID"] == "req-42"
        assert "X-Request-Duration-Ms" in res.headers


# ── CRUD and errors ──────────────────────────────────────────────────────


class TestDTREndpoints:

    def test_create_and_get(self, client, projector, manager, technician, auth_headers):
        res = _create(client, auth_headers, manager)
        assert res.status_code == 201
        dtr = res.get_json()
        assert dtr["status"] == "Open"
        assert dtr["site_name"] == "PVR Phoenix"

        res = client.get(f"/api/v1/dtrs/{dtr['case_id']}", headers=auth_headers(technician))
        assert res.status_code == 200
        assert res.get_json()["id"] == dtr["id"]

    def test_list_paginates(self, client, projector, manager, auth_headers):
        for _ in range(3):
            _create(client, auth_headers, manager)
        res = client.get("/api/v1/dtrs?limit=2&page=2", headers=auth_headers(manager))
        body = res.get_json()
        assert body["total"] == 3
        assert body["pages"] == 2
        assert len(body["dtrs"]) == 1

    def test_create_forbidden_for_technician(self, client, projector, technician, auth_headers):
        res = _create(client, auth_headers, technician)
        assert res.status_code == 403
        body = res.get_json()
        assert body["code"] == "ERR_FORBIDDEN"
        assert body["details"]["action"] == "dtr_create"

    def test_create_validation(self, client, projector, manager, auth_headers):
        res = _create(client, auth_headers, manager, complaint_description="")
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_non_object_body(self, client, manager, auth_headers):
        res = client.post("/api/v1/dtrs", json=["x"], headers=auth_headers(manager))
        assert res.status_code == 422

    def test_duplicate_case_id(self, client, projector, manager, auth_headers):
        _create(client, auth_headers, manager, case_id="LEG-9")
        res = _create(client, auth_headers, manager, case_id="LEG-9")
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"

    def test_not_found(self, client, manager, auth_headers):
        res = client.get("/api/v1/dtrs/DTR-1999-0001", headers=auth_headers(manager))
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_unknown_route(self, client):
        assert client.get("/api/v1/nothing-here").status_code == 404


# ── Workflow ─────────────────────────────────────────────────────────────


class TestWorkflowEndpoints:

    def test_assign_then_technician_converts(self, client, projector, manager, technician, auth_headers):
        dtr = _create(client, auth_headers, manager, priority="Critical").get_json()
        ref = dtr["case_id"]

        res = client.post(f"/api/v1/dtrs/{ref}/assign-technician",
                          json={"assigned_to": {"user_id": technician.user_id, "name": technician.name}},
                          headers=auth_headers(manager))
        assert res.status_code == 200
        assert res.get_json()["status"] == "In Progress"

        res = client.post(f"/api/v1/dtrs/{ref}/convert-to-rma", json={"reason": "Board failure"},
                          headers=auth_headers(technician))
        assert res.status_code == 201
        body = res.get_json()
        rma_number = body["rma"]["rma_number"]
        assert body["dtr"]["status"] == "Shifted to RMA"
        assert body["dtr"]["rma_case_number"] == rma_number
        assert body["rma"]["call_log_number"] == ref

        res = client.post(f"/api/v1/dtrs/{ref}/convert-to-rma", json={}, headers=auth_headers(manager))
        assert res.status_code == 409
        err = res.get_json()
        assert err["code"] == "ERR_ALREADY_CONVERTED"
        assert err["details"]["rma_number"] == rma_number

        res = client.get(f"/api/v1/rmas/{rma_number}", headers=auth_headers(technician))
        assert res.status_code == 200
        assert res.get_json()["originated_from_dtr"]["dtr_case_id"] == ref

    def test_unassigned_technician_cannot_convert(self, client, projector, manager, technician, auth_headers):
        ref = _create(client, auth_headers, manager).get_json()["case_id"]
        res = client.post(f"/api/v1/dtrs/{ref}/convert-to-rma", json={}, headers=auth_headers(technician))
        assert res.status_code == 403

    def test_invalid_transition_is_conflict(self, client, projector, manager, technical_head, auth_headers):
        ref = _create(client, auth_headers, manager).get_json()["case_id"]
        res = client.post(f"/api/v1/dtrs/{ref}/finalize-by-technical-head",
                          json={"resolution": "Replace board", "rma_handler": {"name": "Handler"}},
                          headers=auth_headers(technical_head))
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    def test_unknown_rma(self, client, manager, auth_headers):
        res = client.get("/api/v1/rmas/RMA-1999-001", headers=auth_headers(manager))
        assert res.status_code == 404


# ── Attachments ──────────────────────────────────────────────────────────


class TestAttachmentEndpoints:

    def test_multipart_upload_saves_file(self, app, client, projector, manager, handler, auth_headers,
                                         tmp_path, monkeypatch):
        monkeypatch.setitem(app.config, "UPLOAD_FOLDER", str(tmp_path))
        ref = _create(client, auth_headers, manager).get_json()["case_id"]

        res = client.post(
            f"/api/v1/dtrs/{ref}/attachments",
            data={"files": (io.BytesIO(b"\x89PNG fake"), "lamp photo.png", "image/png")},
            content_type="multipart/form-data",
            headers=auth_headers(handler),
        )
        assert res.status_code == 200
        attachment = res.get_json()["attachments"][0]
        assert attachment["original_name"] == "lamp photo.png"
        assert attachment["filename"].endswith("lamp_photo.png")
        assert (tmp_path / attachment["filename"]).read_bytes() == b"\x89PNG fake"

        res = client.get(f"/api/v1/dtrs/{ref}/attachments", headers=auth_headers(handler))
        assert len(res.get_json()["attachments"]) == 1

    def test_rejected_type_writes_nothing(self, app, client, projector, manager, handler, auth_headers,
                                          tmp_path, monkeypatch):
        monkeypatch.setitem(app.config, "UPLOAD_FOLDER", str(tmp_path))
        ref = _create(client, auth_headers, manager).get_json()["case_id"]

        res = client.post(
            f"/api/v1/dtrs/{ref}/attachments",
            data={"files": (io.BytesIO(b"MZ"), "tool.exe", "application/x-msdownload")},
            content_type="multipart/form-data",
            headers=auth_headers(handler),
        )
        assert res.status_code == 422
        assert list(tmp_path.iterdir()) == []


# ── Bulk operations and lookups ──────────────────────────────────────────


class TestBulkEndpoints:

    def test_json_import_partial(self, client, projector, manager, auth_headers):
        rows = [
            {"serial_number": SERIAL, "complaint_description": "No display"},
            {"serial_number": SERIAL},
        ]
        res = client.post("/api/v1/dtrs/bulk-import", json={"dtrs": rows}, headers=auth_headers(manager))
        assert res.status_code == 207
        body = res.get_json()
        assert (body["imported"], body["failed"]) == (1, 1)

    def test_json_import_all_good(self, client, projector, manager, auth_headers):
        rows = [{"serial_number": SERIAL, "complaint_description": "No display"}]
        res = client.post("/api/v1/dtrs/bulk-import", json={"dtrs": rows}, headers=auth_headers(manager))
        assert res.status_code == 200

    def test_empty_import_rejected(self, client, manager, auth_headers):
        res = client.post("/api/v1/dtrs/bulk-import", json={"dtrs": []}, headers=auth_headers(manager))
        assert res.status_code == 422

    def test_csv_upload(self, client, projector, manager, auth_headers):
        csv_bytes = b"Serial Number,Complaint,Error Date\nEP2024001,No display,250623\n"
        res = client.post(
            "/api/v1/dtrs/bulk-import",
            data={"file": (io.BytesIO(csv_bytes), "legacy.csv")},
            content_type="multipart/form-data",
            headers=auth_headers(manager),
        )
        assert res.status_code == 200
        assert res.get_json()["imported"] == 1

        listed = client.get("/api/v1/dtrs", headers=auth_headers(manager)).get_json()
        assert listed["dtrs"][0]["error_date"].startswith("2023-06-25")

    def test_template_download(self, client, manager, auth_headers):
        res = client.get("/api/v1/dtrs/bulk-import/template", headers=auth_headers(manager))
        assert res.status_code == 200
        assert res.mimetype == "text/csv"
        assert res.get_data(as_text=True).startswith("Case ID,Serial Number")

    def test_bulk_delete_admin_only(self, client, projector, manager, admin, auth_headers):
        ids = [_create(client, auth_headers, manager).get_json()["id"] for _ in range(2)]

        res = client.post("/api/v1/dtrs/bulk-delete", json={"ids": ids}, headers=auth_headers(manager))
        assert res.status_code == 403

        res = client.post("/api/v1/dtrs/bulk-delete", json={"ids": ids}, headers=auth_headers(admin))
        assert res.status_code == 200
        assert res.get_json()["deleted_count"] == 2

    def test_projector_lookup(self, client, projector, technician, auth_headers):
        res = client.get(f"/api/v1/dtrs/lookup/projector/{SERIAL}", headers=auth_headers(technician))
        assert res.status_code == 200
        body = res.get_json()
        assert body["site_code"] == "PVR-PHX"
        assert body["auditorium"] == "Audi 3"

        res = client.get("/api/v1/dtrs/lookup/projector/NOPE", headers=auth_headers(technician))
        assert res.status_code == 404


# ── CLI ──────────────────────────────────────────────────────────────────


def test_import_cli(app, projector, tmp_path):
    from casedesk.models.dtr import DTR

    path = tmp_path / "legacy.csv"
    path.write_bytes(b"Serial Number,Complaint\nEP2024001,No display\n,Lamp flicker\n")

    result = app.test_cli_runner().invoke(args=["import-dtrs", str(path)])

    assert result.exit_code == 0, result.output
    assert "Imported 2 of 2" in result.output
    assert DTR.query.count() == 2
