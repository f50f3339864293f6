"""
RMA Conversion Tests:
  - Idempotent conversion: one RMA, second call reports the first number
  - Field mapping, priority translation, warranty status, synthesized notes
  - Store failure before the commit point leaves the DTR untouched
  - Bounded retry of the DTR link; dangling RMA when every retry fails
  - Lost race: orphan RMA removed, winner's number reported
"""

from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest

from casedesk.core.exceptions import AlreadyConvertedError, PermissionDenied, PersistenceError
from casedesk.models.audit import AuditLog
from casedesk.models.notification import Notification
from casedesk.services import rma_conversion
from casedesk.services.case_repository import SQLCaseRepository
from casedesk.services.dtr_lifecycle import DTRTransitionError, add_troubleshooting_step, assign_technician, update_dtr
from casedesk.services.rma_conversion import (
    build_rma_notes,
    convert_to_rma,
    get_rma,
    map_priority,
    warranty_status,
)


def _assignment(actor):
    return {"user_id": actor.user_id, "name": actor.name, "email": actor.email, "role": actor.role}


@pytest.fixture()
def repo():
    return SQLCaseRepository()


@pytest.fixture()
def assigned_dtr(new_dtr, manager, technician):
    dtr = new_dtr(priority="Critical", action_taken="Power cycled", remarks="Recurring")
    return assign_technician(manager, dtr["case_id"], _assignment(technician))


@pytest.fixture(autouse=True)
def _no_backoff():
    with mock.patch.object(rma_conversion, "RETRY_BACKOFF_SECONDS", 0):
        yield


# ═══════════════════════════════════════════════════════════════════════════
# Idempotency
# ═══════════════════════════════════════════════════════════════════════════


class TestIdempotency:

    def test_second_call_reports_existing_rma(self, assigned_dtr, manager, repo):
        first = convert_to_rma(manager, assigned_dtr["case_id"])
        with pytest.raises(AlreadyConvertedError) as exc:
            convert_to_rma(manager, assigned_dtr["case_id"])
        assert exc.value.rma_number == first["rma"]["rma_number"]
        assert repo.count("rma", {}) == 1

    def test_guard_precedes_permission_check(self, assigned_dtr, manager, other_technician):
        first = convert_to_rma(manager, assigned_dtr["case_id"])
        with pytest.raises(AlreadyConvertedError) as exc:
            convert_to_rma(other_technician, assigned_dtr["case_id"])
        assert exc.value.rma_number == first["rma"]["rma_number"]

    def test_closed_case_cannot_convert(self, new_dtr, manager, repo):
        dtr = new_dtr()
        update_dtr(manager, dtr["case_id"], {"status": "Closed"})
        with pytest.raises(DTRTransitionError):
            convert_to_rma(manager, dtr["case_id"])
        assert repo.count("rma", {}) == 0

    def test_unassigned_technician_denied(self, new_dtr, technician, repo):
        with pytest.raises(PermissionDenied):
            convert_to_rma(technician, new_dtr()["case_id"])
        assert repo.count("rma", {}) == 0


# ═══════════════════════════════════════════════════════════════════════════
# Field mapping
# ═══════════════════════════════════════════════════════════════════════════


class TestMapping:

    def test_rma_fields(self, assigned_dtr, technician, manager):
        result = convert_to_rma(technician, assigned_dtr["case_id"], reason="DMD failure",
                                rma_manager={"user_id": "u-mgr", "name": manager.name})
        rma, dtr = result["rma"], result["dtr"]
        year = datetime.now(timezone.utc).year

        assert rma["rma_number"] == f"RMA-{year}-001"
        assert rma["call_log_number"] == dtr["case_id"]
        assert rma["rma_order_number"] == f"ORDER-{dtr['case_id']}"
        assert rma["serial_number"] == "EP2024001"
        assert rma["site_name"] == "PVR Phoenix"
        assert rma["brand"] == "Christie"
        assert rma["product_part_number"] == "PN-CP2220"
        assert rma["defective_part_number"] == "TBD"
        assert rma["priority"] == "High"
        assert rma["warranty_status"] == "In Warranty"
        assert rma["case_status"] == "Under Review"
        assert rma["approval_status"] == "Pending Review"
        assert rma["originated_from_dtr"]["conversion_reason"] == "DMD failure"
        assert rma["originated_from_dtr"]["technician"]["name"] == "T1"
        assert rma["rma_manager"]["user_id"] == "u-mgr"

        assert dtr["conversion_to_rma"]["converted_by"] == "T1"
        assert dtr["conversion_to_rma"]["rma_manager_assigned"]["name"] == manager.name

    def test_reason_defaults_to_marked_reason(self, assigned_dtr, manager):
        from casedesk.services.dtr_lifecycle import mark_for_conversion

        mark_for_conversion(manager, assigned_dtr["case_id"], "Colour wheel noise")
        result = convert_to_rma(manager, assigned_dtr["case_id"])
        assert result["rma"]["originated_from_dtr"]["conversion_reason"] == "Colour wheel noise"

    def test_priority_map(self):
        assert map_priority("Critical") == "High"
        assert map_priority("Low") == "Low"
        assert map_priority(None) == "Medium"

    def test_warranty_status(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert warranty_status({"warranty_end": "2025-01-01T00:00:00+00:00"}, now) == "In Warranty"
        assert warranty_status({"warranty_end": now - timedelta(days=1)}, now) == "Out of Warranty"
        assert warranty_status(None, now) == "Out of Warranty"

    def test_notes_include_every_step_in_order(self, assigned_dtr, technician):
        add_troubleshooting_step(technician, assigned_dtr["case_id"],
                                 {"description": "Checked lamp", "outcome": "Lamp OK"})
        add_troubleshooting_step(technician, assigned_dtr["case_id"],
                                 {"description": "Swapped board", "outcome": "Still no image"})
        result = convert_to_rma(technician, assigned_dtr["case_id"], additional_notes="Urgent show")
        notes = result["rma"]["notes"]

        assert notes.startswith(f"Auto-generated from DTR: {assigned_dtr['case_id']}")
        assert "Original Complaint: No display" in notes
        assert "Action Taken: Power cycled" in notes
        assert "Remarks: Recurring" in notes
        assert notes.index("Step 1: Checked lamp") < notes.index("Step 2: Swapped board")
        assert "Outcome: Still no image" in notes
        assert "Performed by: T1 on " in notes
        assert notes.endswith("Additional Notes: Urgent show")

    def test_notes_without_steps(self):
        dtr = {"case_id": "DTR-1", "complaint_description": "Dim image", "action_taken": "", "remarks": None}
        notes = build_rma_notes(dtr)
        assert "Action Taken: N/A" in notes
        assert "Troubleshooting History" not in notes

    def test_side_effects(self, assigned_dtr, manager):
        convert_to_rma(manager, assigned_dtr["case_id"], rma_manager={"user_id": "u-mgr", "name": "Ravi"})
        assert Notification.query.filter_by(recipient_id="u-mgr", category="conversion").count() == 1
        assert AuditLog.query.filter_by(action="dtr.convert_to_rma", entity_id=assigned_dtr["case_id"]).count() == 1

    def test_notification_failure_does_not_undo(self, assigned_dtr, manager):
        with mock.patch.object(rma_conversion.NotificationService, "notify_conversion",
                               side_effect=RuntimeError("smtp down")):
            result = convert_to_rma(manager, assigned_dtr["case_id"], rma_manager={"user_id": "u-mgr", "name": "R"})
        assert result["dtr"]["status"] == "Shifted to RMA"

    def test_get_rma(self, assigned_dtr, technician):
        result = convert_to_rma(technician, assigned_dtr["case_id"])
        assert get_rma(technician, result["rma"]["rma_number"])["id"] == result["rma"]["id"]


# ═══════════════════════════════════════════════════════════════════════════
# Failure handling
# ═══════════════════════════════════════════════════════════════════════════


class TestFailureHandling:

    def test_rma_insert_failure_leaves_dtr_untouched(self, assigned_dtr, manager, repo):
        with mock.patch.object(SQLCaseRepository, "insert",
                               side_effect=PersistenceError("disk full", operation="insert")):
            with pytest.raises(PersistenceError):
                convert_to_rma(manager, assigned_dtr["case_id"], repo=repo)
        dtr = repo.find_one("dtr", {"id": assigned_dtr["id"]})
        assert dtr["status"] == "In Progress"
        assert dtr["rma_case_number"] is None
        assert dtr["workflow_history"] == assigned_dtr["workflow_history"]

    def test_insert_failure_discards_field_edits_of_status_update(self, assigned_dtr, manager, repo):
        with mock.patch.object(SQLCaseRepository, "insert",
                               side_effect=PersistenceError("disk full", operation="insert")):
            with pytest.raises(PersistenceError):
                update_dtr(manager, assigned_dtr["case_id"],
                           {"status": "Shifted to RMA", "remarks": "sent to workshop"}, repo=repo)
        dtr = repo.find_one("dtr", {"id": assigned_dtr["id"]})
        assert dtr["status"] == "In Progress"
        assert dtr["remarks"] == assigned_dtr["remarks"]
        assert repo.count("rma", {}) == 0

    def test_link_retried_until_success(self, assigned_dtr, manager, repo):
        real_update = repo.update_by_id
        calls = {"n": 0}

        def flaky(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] < 3:
                raise PersistenceError("timeout", operation="update_by_id")
            return real_update(*args, **kwargs)

        with mock.patch.object(repo, "update_by_id", side_effect=flaky):
            result = convert_to_rma(manager, assigned_dtr["case_id"], repo=repo)
        assert calls["n"] == 3
        assert result["dtr"]["rma_case_number"] == result["rma"]["rma_number"]
        assert repo.count("rma", {}) == 1

    def test_link_failure_after_retries_leaves_rma(self, app, assigned_dtr, manager, repo):
        retries = app.config["CONVERSION_UPDATE_RETRIES"]
        with mock.patch.object(repo, "update_by_id",
                               side_effect=PersistenceError("down", operation="update_by_id")) as update:
            with pytest.raises(PersistenceError):
                convert_to_rma(manager, assigned_dtr["case_id"], repo=repo)
        assert update.call_count == retries + 1
        assert repo.count("rma", {}) == 1
        assert repo.find_one("dtr", {"id": assigned_dtr["id"]})["rma_case_number"] is None

    def test_lost_race_removes_orphan(self, assigned_dtr, manager, repo):
        real_update = repo.update_by_id

        def concurrent_winner(entity_type, record_id, patch, *, conditional_on=None):
            # Another request links the DTR first
            real_update("dtr", record_id, {"rma_case_number": "RMA-2024-777", "status": "Shifted to RMA"})
            return real_update(entity_type, record_id, patch, conditional_on=conditional_on)

        with mock.patch.object(repo, "update_by_id", side_effect=concurrent_winner):
            with pytest.raises(AlreadyConvertedError) as exc:
                convert_to_rma(manager, assigned_dtr["case_id"], repo=repo)
        assert exc.value.rma_number == "RMA-2024-777"
        assert repo.count("rma", {}) == 0
