# tests/test_app.py
import io
import logging
from datetime import date

import pytest

import app as appmod
from database import Employee, Schedule, db
from rota_store import RotaStore

START = date(2025, 3, 3)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def json_ok(resp):
    return resp.status_code == 200 and resp.is_json and resp.json.get("success") is True


def generate_rota(client, days=28, start=START):
    r = client.post("/api/rota/generate", json={"start_date": start.isoformat(), "days": days})
    assert json_ok(r), f"Rota generation failed: {r.json}"
    return r.json["schedule"]


# ---------------------------------------------------------------------------
# Employees
# ---------------------------------------------------------------------------
def test_employees_list_and_create(client, caplog):
    caplog.set_level(logging.INFO)

    r = client.get("/api/employees")
    assert json_ok(r), f"/api/employees GET failed: {r.json}"
    assert r.json["count"] == 11

    r = client.get("/api/employees", query_string={"schedulable": "true"})
    assert json_ok(r)
    assert r.json["count"] == 9
    assert {e["role"] for e in r.json["employees"]} == {"staff"}

    r = client.post("/api/employees", json={"name": "Zawadi Mutua", "username": "zawadi"})
    assert r.status_code == 201 and r.json.get("success") is True, f"Create employee failed: {r.json}"
    assert r.json["employee"]["branch"] == "main"
    assert r.json["employee"]["role"] == "staff"

    r = client.post("/api/employees", json={"name": "Zawadi Again", "username": "zawadi"})
    assert r.status_code == 409

    r = client.post("/api/employees", json={"name": "No Username"})
    assert r.status_code == 400


# ---------------------------------------------------------------------------
# Generation, analysis, editing
# ---------------------------------------------------------------------------
def test_generate_four_weeks_for_seeded_staff(client):
    r = client.post("/api/rota/generate", json={"start_date": START.isoformat(), "days": 28})
    assert json_ok(r), f"Rota generation failed: {r.json}"

    schedule = r.json["schedule"]
    assert len(schedule["days"]) == 28
    assert len(schedule["employees"]) == 9
    assert schedule["start_date"] == "2025-03-03"
    assert schedule["end_date"] == "2025-03-30"
    assert r.json["warning_count"] == 0
    assert r.json["stats"]["variance_ok"] is True
    assert all(row["total"] == 20 for row in r.json["stats"]["per_employee"])


def test_generate_defaults_to_rest_of_month(client):
    r = client.post("/api/rota/generate", json={"start_date": "2025-02-10"})
    assert json_ok(r), f"Rota generation failed: {r.json}"
    assert len(r.json["schedule"]["days"]) == 19
    assert r.json["schedule"]["end_date"] == "2025-02-28"


@pytest.mark.parametrize("payload", [
    {},
    {"start_date": "03/03/2025"},
    {"start_date": "2025-03-03", "days": 0},
    {"start_date": "2025-03-03", "days": "seven"},
    {"start_date": "2025-03-03", "night_crew_size": -1},
])
def test_generate_rejects_bad_input(client, payload):
    r = client.post("/api/rota/generate", json=payload)
    assert r.status_code == 400, f"Expected 400 for {payload}, got {r.status_code}"
    assert r.json["success"] is False


def test_generate_for_branch_without_staff(client):
    r = client.post("/api/rota/generate", json={"start_date": "2025-03-03", "branch": "annex"})
    assert r.status_code == 400


def test_analyze_endpoint(client):
    schedule = generate_rota(client, days=7)
    r = client.post("/api/rota/analyze", json={"schedule": schedule})
    assert json_ok(r), f"Analyze failed: {r.json}"
    assert len(r.json["stats"]["per_day"]) == 7

    r = client.post("/api/rota/analyze", json={})
    assert r.status_code == 400


def test_cycle_endpoint(client):
    schedule = generate_rota(client, days=7)
    emp_id = schedule["employees"][5]["id"]
    assert emp_id in schedule["days"][0]["assignments"]["OFF"]

    r = client.post("/api/rota/cycle", json={"schedule": schedule, "day_index": 0, "employee_id": emp_id})
    assert json_ok(r), f"Cycle failed: {r.json}"
    day = r.json["schedule"]["days"][0]
    assert emp_id in day["assignments"]["AM"]
    assert emp_id not in day["assignments"]["OFF"]
    assert r.json["schedule"]["days"][1] == schedule["days"][1]


def test_cycle_endpoint_errors(client):
    schedule = generate_rota(client, days=3)
    emp_id = schedule["employees"][0]["id"]

    r = client.post("/api/rota/cycle", json={"schedule": schedule, "day_index": 0, "employee_id": "9999"})
    assert r.status_code == 404

    r = client.post("/api/rota/cycle", json={"schedule": schedule, "day_index": 3, "employee_id": emp_id})
    assert r.status_code == 400


# ---------------------------------------------------------------------------
# Save / load
# ---------------------------------------------------------------------------
def test_save_and_reload_rota(client, caplog):
    caplog.set_level(logging.INFO)
    schedule = generate_rota(client)
    query = {"start_date": "2025-03-03", "end_date": "2025-03-30"}

    r = client.get("/api/rota", query_string=query)
    assert json_ok(r)
    assert r.json["status"] == "empty" and r.json["schedule"] is None

    r = client.post("/api/rota/save", json={"schedule": schedule})
    assert r.status_code == 409, "Saving without confirm should be refused"

    r = client.post("/api/rota/save", json={"schedule": schedule, "confirm": True})
    assert json_ok(r), f"Save failed: {r.json}"
    assert r.json["inserted_count"] == 180
    assert r.json["deleted_count"] == 0

    r = client.get("/api/rota", query_string=query)
    assert json_ok(r), f"Load failed: {r.json}"
    assert r.json["status"] == "saved"
    assert r.json["record_count"] == 180
    assert r.json["schedule"]["days"] == schedule["days"]

    # second save replaces rather than duplicates
    r = client.post("/api/rota/save", json={"schedule": schedule, "confirm": True})
    assert json_ok(r)
    assert r.json["deleted_count"] == 180
    assert db.session.query(Schedule).count() == 180


def test_edit_then_save_changes_one_shift(client):
    schedule = generate_rota(client, days=7)
    client.post("/api/rota/save", json={"schedule": schedule, "confirm": True})
    before = {(s.user_id, s.date): s.shift_type for s in Schedule.query.all()}

    emp_id = schedule["employees"][5]["id"]
    r = client.post("/api/rota/cycle", json={"schedule": schedule, "day_index": 0, "employee_id": emp_id})
    assert json_ok(r)
    r = client.post("/api/rota/save", json={"schedule": r.json["schedule"], "confirm": True})
    assert json_ok(r), f"Save after edit failed: {r.json}"

    after = {(s.user_id, s.date): s.shift_type for s in Schedule.query.all()}
    changed = set(before.items()) ^ set(after.items())
    assert changed == {((int(emp_id), START), "AM")}


def test_save_reports_partial_overwrite(client, monkeypatch):
    schedule = generate_rota(client, days=7)
    client.post("/api/rota/save", json={"schedule": schedule, "confirm": True})

    def broken_insert(self, records):
        raise RuntimeError("disk I/O error")

    monkeypatch.setattr(RotaStore, "bulk_insert_shifts", broken_insert)

    r = client.post("/api/rota/save", json={"schedule": schedule, "confirm": True})
    assert r.status_code == 502
    assert r.json["stage"] == "insert"
    assert r.json["deleted_count"] == 45
    assert r.json["pending_count"] == 45


def test_save_reports_delete_failure(client, monkeypatch):
    schedule = generate_rota(client, days=7)

    def broken_delete(self, start_date, end_date, branch=None):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(RotaStore, "delete_shifts_in_range", broken_delete)

    r = client.post("/api/rota/save", json={"schedule": schedule, "confirm": True})
    assert r.status_code == 500
    assert r.json["stage"] == "delete"


def test_save_rejects_tampered_schedule(client):
    schedule = generate_rota(client, days=2)
    schedule["days"][1]["date"] = "2025-03-10"

    r = client.post("/api/rota/save", json={"schedule": schedule, "confirm": True})
    assert r.status_code == 400


def test_save_rejects_unknown_staff(client):
    schedule = {
        "employees": [{"id": "999", "name": "Nobody"}],
        "days": [{"date": "2025-03-03", "assignments": {"AM": ["999"]}}],
    }
    r = client.post("/api/rota/save", json={"schedule": schedule, "confirm": True})
    assert r.status_code == 400, f"Expected 400 for unknown staff, got {r.status_code}: {r.json}"
    assert db.session.query(Schedule).count() == 0


def test_save_status(client):
    r = client.get("/api/rota/save-status", query_string={"start_date": "2025-03-03", "end_date": "2025-03-30"})
    assert json_ok(r)
    assert r.json["saving"] is False


def test_save_status_reports_unexpected_errors(client, monkeypatch, caplog):
    caplog.set_level(logging.ERROR)

    def broken_is_saving(*args):
        raise RuntimeError("lock unavailable")

    monkeypatch.setattr(appmod, "is_saving", broken_is_saving)

    r = client.get("/api/rota/save-status", query_string={"start_date": "2025-03-03", "end_date": "2025-03-30"})
    assert r.status_code == 500
    assert r.json["success"] is False
    assert "Error checking save status" in caplog.text


# ---------------------------------------------------------------------------
# Flat shift rows
# ---------------------------------------------------------------------------
def test_bulk_create_query_and_delete_range(client):
    emp = Employee.query.filter_by(username="amina").first()
    rows = [
        {"user_id": emp.id, "date": "2025-03-03", "shift_type": "AM"},
        {"user_id": emp.id, "date": "2025-03-04", "shift_type": "NT", "notes": "cover"},
    ]

    r = client.post("/api/schedule/bulk", json={"schedules": rows})
    assert r.status_code == 201, f"Bulk create failed: {r.json}"
    assert r.json["inserted"] == 2

    r = client.get("/api/schedule", query_string={"start_date": "2025-03-04", "end_date": "2025-03-04"})
    assert json_ok(r)
    assert r.json["count"] == 1
    row = r.json["schedules"][0]
    assert row["user_name"] == "Amina Otieno"
    assert (row["start_time"], row["end_time"]) == ("22:30:00", "07:30:00")

    r = client.post("/api/schedule/bulk", json={"schedules": rows[:1]})
    assert r.status_code == 409

    r = client.delete("/api/schedule/range", json={"start_date": "2025-03-01", "end_date": "2025-03-31"})
    assert json_ok(r)
    assert r.json["deleted"] == 2


def test_single_shift_create_update_delete(client, caplog):
    caplog.set_level(logging.INFO)
    emp = Employee.query.filter_by(username="brian").first()

    r = client.post("/api/schedule", json={"user_id": emp.id, "date": "2025-03-05", "shift_type": "PM"})
    assert r.status_code == 201, f"Create shift failed: {r.json}"
    created = r.json["schedule"]
    assert created["user_name"] == "Brian Mwangi"
    assert (created["start_time"], created["end_time"]) == ("15:30:00", "22:30:00")
    assert created["branch"] == "main"

    r = client.post("/api/schedule", json={"user_id": emp.id, "date": "2025-03-05", "shift_type": "PM"})
    assert r.status_code == 409

    r = client.put(f"/api/schedule/{created['id']}", json={"end_time": "21:00", "notes": "leaves early"})
    assert json_ok(r), f"Update shift failed: {r.json}"
    updated = r.json["schedule"]
    assert updated["end_time"] == "21:00:00"
    assert updated["notes"] == "leaves early"
    assert updated["start_time"] == "15:30:00"
    assert updated["shift_type"] == "PM"

    r = client.put(f"/api/schedule/{created['id']}", json={"shift_type": "nt"})
    assert json_ok(r)
    assert r.json["schedule"]["shift_type"] == "NT"

    r = client.delete(f"/api/schedule/{created['id']}")
    assert json_ok(r), f"Delete shift failed: {r.json}"
    assert db.session.get(Schedule, created["id"]) is None


def test_single_shift_errors(client):
    r = client.post("/api/schedule", json={"user_id": 999, "date": "2025-03-05", "shift_type": "AM"})
    assert r.status_code == 400

    r = client.post("/api/schedule", json={"user_id": 1, "date": "2025-03-05", "shift_type": "EVENING"})
    assert r.status_code == 400

    r = client.put("/api/schedule/999", json={"notes": "x"})
    assert r.status_code == 404

    r = client.delete("/api/schedule/999")
    assert r.status_code == 404

    emp = Employee.query.filter_by(username="cynthia").first()
    r = client.post("/api/schedule", json={"user_id": emp.id, "date": "2025-03-05", "shift_type": "AM"})
    assert r.status_code == 201
    r = client.put(f"/api/schedule/{r.json['schedule']['id']}", json={"start_time": "late"})
    assert r.status_code == 400


def test_bulk_create_rejects_bad_rows(client):
    r = client.post("/api/schedule/bulk", json={"schedules": [{"date": "2025-03-03", "shift_type": "AM"}]})
    assert r.status_code == 400

    r = client.post("/api/schedule/bulk", json={})
    assert r.status_code == 400


# ---------------------------------------------------------------------------
# Export / import
# ---------------------------------------------------------------------------
def test_export_csv(client):
    schedule = generate_rota(client, days=3)
    r = client.post("/api/rota/export", json={"schedule": schedule})

    assert r.status_code == 200
    assert r.headers["Content-Type"].startswith("text/csv")
    assert "rota_2025-03-03_2025-03-05.csv" in r.headers["Content-Disposition"]

    lines = r.data.decode().splitlines()
    assert lines[0].startswith("Date,Amina Otieno,Brian Mwangi")
    assert len(lines) == 4


def test_import_upload(client):
    data = b"Date,Amina Otieno,New Person\n2025-03-01,AM,NT\n2025-03-02,PM,OFF\n"
    r = client.post(
        "/api/rota/import",
        data={"file": (io.BytesIO(data), "rota.csv"), "branch": "main"},
        content_type="multipart/form-data",
    )
    assert json_ok(r), f"Import failed: {r.json}"
    assert r.json["stats"]["new_users"] == 1
    assert r.json["stats"]["shifts_created"] == 3

    r = client.get("/api/rota", query_string={"start_date": "2025-03-01", "end_date": "2025-03-02"})
    assert json_ok(r)
    assert r.json["status"] == "saved"
    names = [e["name"] for e in r.json["schedule"]["employees"]]
    assert "New Person" in names


def test_import_requires_a_file(client):
    r = client.post("/api/rota/import", data={}, content_type="multipart/form-data")
    assert r.status_code == 400

    r = client.post(
        "/api/rota/import",
        data={"file": (io.BytesIO(b""), "empty.csv")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 400


def test_unknown_route_returns_json_404(client):
    r = client.get("/api/does-not-exist")
    assert r.status_code == 404
    assert r.json == {"success": False, "error": "Resource not found"}
