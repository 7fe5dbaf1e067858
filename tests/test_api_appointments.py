import random

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from agenda.api import get_notifier, get_rng, router
from agenda.db import get_db
from agenda.notifications import Notifier
from conftest import MONDAY


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events = []

    def _send(self, event, payload):
        self.events.append((event, payload["id"]))
        return {"channel": "test", "ok": True}


def make_client(session_factory, notifier=None, seed=None):
    app = FastAPI()
    app.include_router(router)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier or Notifier()
    app.dependency_overrides[get_rng] = lambda: random.Random(seed) if seed is not None else None
    return TestClient(app)


def _headers(tenant: str) -> dict:
    return {"X-Tenant-Slug": tenant}


def _booking(world, slot_start=600, employee_id="any", service_id=None):
    return {
        "branch_id": world.branch_id,
        "service_id": service_id or world.haircut_id,
        "employee_id": employee_id,
        "client_id": world.client_id,
        "day": MONDAY.isoformat(),
        "slot_start": slot_start,
    }


def test_tenant_header_is_required(session_factory, world):
    client = make_client(session_factory)
    params = {"branch_id": world.branch_id, "service_id": world.haircut_id, "day": MONDAY.isoformat()}

    missing = client.get("/api/availability", params=params)
    assert missing.status_code == 400
    assert missing.json()["detail"]["code"] == "tenant_required"

    unknown = client.get("/api/availability", params=params, headers=_headers("nope"))
    assert unknown.status_code == 404
    assert unknown.json()["detail"]["code"] == "tenant_not_found"


def test_availability_endpoint(session_factory, world):
    client = make_client(session_factory)
    res = client.get(
        "/api/availability",
        params={"branch_id": world.branch_id, "service_id": world.haircut_id, "day": MONDAY.isoformat()},
        headers=_headers(world.tenant_slug.upper()),
    )
    assert res.status_code == 200
    slots = res.json()
    assert slots[0] == {
        "slot_start": 540,
        "employee_ids_free": [world.ana_id, world.bea_id],
        "time_string": "09:00",
        "time_string_12h": "9:00 AM",
    }


def test_availability_unknown_service_is_404(session_factory, world, other_world):
    client = make_client(session_factory)
    res = client.get(
        "/api/availability",
        params={"branch_id": world.branch_id, "service_id": other_world.haircut_id, "day": MONDAY.isoformat()},
        headers=_headers(world.tenant_slug),
    )
    assert res.status_code == 404
    assert res.json()["detail"]["code"] == "service_not_found"


def test_create_appointment_and_conflict(session_factory, world):
    notifier = RecordingNotifier()
    client = make_client(session_factory, notifier=notifier, seed=7)
    expected = random.Random(7).choice([world.ana_id, world.bea_id])

    created = client.post("/api/appointments", json=_booking(world, service_id=world.laser_id), headers=_headers(world.tenant_slug))
    assert created.status_code == 201
    body = created.json()
    assert body["employee_id"] == expected
    assert body["status"] == "CONFIRMED"
    assert body["time_string"] == "10:00"
    assert body["total_sessions"] == 3
    assert [s["status"] for s in body["sessions"]] == ["PENDING", "SCHEDULED_LATER", "SCHEDULED_LATER"]

    conflict = client.post(
        "/api/appointments",
        json=_booking(world, employee_id=expected, service_id=world.laser_id),
        headers=_headers(world.tenant_slug),
    )
    assert conflict.status_code == 409
    assert conflict.json()["detail"]["code"] == "slot_taken"

    bad_slot = client.post("/api/appointments", json=_booking(world, slot_start=601), headers=_headers(world.tenant_slug))
    assert bad_slot.status_code == 409


def test_create_appointment_validates_payload(session_factory, world):
    client = make_client(session_factory)
    res = client.post("/api/appointments", json=_booking(world, slot_start=1440), headers=_headers(world.tenant_slug))
    assert res.status_code == 422
    res = client.post("/api/appointments", json=_booking(world, employee_id="someone"), headers=_headers(world.tenant_slug))
    assert res.status_code == 422


def test_appointments_are_tenant_isolated(session_factory, world, other_world):
    client = make_client(session_factory)
    created = client.post("/api/appointments", json=_booking(world), headers=_headers(world.tenant_slug))
    assert created.status_code == 201
    appointment_id = created.json()["id"]

    other = client.get("/api/appointments", headers=_headers(other_world.tenant_slug))
    assert other.status_code == 200
    assert other.json() == []

    foreign_delete = client.delete(f"/api/appointments/{appointment_id}", headers=_headers(other_world.tenant_slug))
    assert foreign_delete.status_code == 404

    own = client.get("/api/appointments", params={"day": MONDAY.isoformat()}, headers=_headers(world.tenant_slug))
    assert [a["id"] for a in own.json()] == [appointment_id]


def test_cancel_endpoint(session_factory, world):
    notifier = RecordingNotifier()
    client = make_client(session_factory, notifier=notifier)
    created = client.post(
        "/api/appointments", json=_booking(world, employee_id=world.ana_id), headers=_headers(world.tenant_slug)
    )
    appointment_id = created.json()["id"]

    res = client.delete(f"/api/appointments/{appointment_id}", headers=_headers(world.tenant_slug))
    assert res.status_code == 204
    res = client.delete(f"/api/appointments/{appointment_id}", headers=_headers(world.tenant_slug))
    assert res.status_code == 204
    res = client.delete("/api/appointments/999999", headers=_headers(world.tenant_slug))
    assert res.status_code == 404

    listed = client.get("/api/appointments", headers=_headers(world.tenant_slug)).json()
    assert listed[0]["status"] == "CANCELLED"

    rebooked = client.post(
        "/api/appointments", json=_booking(world, employee_id=world.ana_id), headers=_headers(world.tenant_slug)
    )
    assert rebooked.status_code == 201


def test_reschedule_endpoint(session_factory, world):
    client = make_client(session_factory)
    created = client.post(
        "/api/appointments", json=_booking(world, employee_id=world.ana_id), headers=_headers(world.tenant_slug)
    )
    appointment_id = created.json()["id"]

    moved = client.patch(
        f"/api/appointments/{appointment_id}/reschedule",
        json={"employee_id": world.bea_id, "day": MONDAY.isoformat(), "slot_start": 720},
        headers=_headers(world.tenant_slug),
    )
    assert moved.status_code == 200
    assert moved.json()["employee_id"] == world.bea_id
    assert moved.json()["time_string"] == "12:00"

    client.delete(f"/api/appointments/{appointment_id}", headers=_headers(world.tenant_slug))
    inactive = client.patch(
        f"/api/appointments/{appointment_id}/reschedule",
        json={"day": MONDAY.isoformat(), "slot_start": 780},
        headers=_headers(world.tenant_slug),
    )
    assert inactive.status_code == 409
    assert inactive.json()["detail"]["code"] == "appointment_not_active"


def test_client_upcoming_endpoint(session_factory, world):
    client = make_client(session_factory)
    res = client.get(f"/api/clients/{world.client_id}/appointments/upcoming", headers=_headers(world.tenant_slug))
    assert res.status_code == 200
    res = client.get("/api/clients/999999/appointments/upcoming", headers=_headers(world.tenant_slug))
    assert res.status_code == 404


def test_weekly_schedule_endpoints(session_factory, world):
    client = make_client(session_factory)
    current = client.get(f"/api/employees/{world.ana_id}/weekly-schedule", headers=_headers(world.tenant_slug))
    assert current.status_code == 200
    assert current.json()[0] == {"weekday": 0, "is_working": True, "ranges": [[540, 1020]]}

    updated = client.put(
        f"/api/employees/{world.ana_id}/weekly-schedule",
        json={"days": [{"weekday": 0, "is_working": True, "ranges": [[600, 720]]}]},
        headers=_headers(world.tenant_slug),
    )
    assert updated.status_code == 200
    assert updated.json()[0]["ranges"] == [[600, 720]]

    invalid = client.put(
        f"/api/employees/{world.ana_id}/weekly-schedule",
        json={"days": [{"weekday": 0, "ranges": [[720, 600]]}]},
        headers=_headers(world.tenant_slug),
    )
    assert invalid.status_code == 400
    assert invalid.json()["detail"]["code"] == "invalid_schedule"

    missing = client.get("/api/employees/999999/weekly-schedule", headers=_headers(world.tenant_slug))
    assert missing.status_code == 404


def test_exception_endpoints_change_availability(session_factory, world):
    client = make_client(session_factory)
    headers = _headers(world.tenant_slug)
    params = {"branch_id": world.branch_id, "service_id": world.haircut_id, "day": MONDAY.isoformat()}

    for employee_id in (world.ana_id, world.bea_id):
        res = client.post(
            "/api/exceptions",
            json={"employee_id": employee_id, "day": MONDAY.isoformat(), "kind": "unavailable", "reason": "Feria"},
            headers=headers,
        )
        assert res.status_code == 201
        assert res.json()["kind"] == "UNAVAILABLE"

    assert client.get("/api/availability", params=params, headers=headers).json() == []

    special = client.post(
        "/api/exceptions",
        json={"employee_id": world.ana_id, "day": MONDAY.isoformat(), "kind": "SPECIAL_HOURS", "ranges": [[600, 660]]},
        headers=headers,
    )
    assert special.status_code == 201
    assert special.json()["ranges"] == [[600, 660]]
    slots = client.get("/api/availability", params=params, headers=headers).json()
    assert [s["slot_start"] for s in slots] == [600, 630]

    listed = client.get(
        f"/api/employees/{world.ana_id}/exceptions",
        params={"from": "2026-03-01", "to": "2026-03-31"},
        headers=headers,
    )
    assert listed.status_code == 200
    assert len(listed.json()) == 1

    deleted = client.delete(f"/api/exceptions/{special.json()['id']}", headers=headers)
    assert deleted.status_code == 204
    missing = client.delete(f"/api/exceptions/{special.json()['id']}", headers=headers)
    assert missing.status_code == 404

    bad = client.post(
        "/api/exceptions",
        json={"employee_id": world.ana_id, "day": MONDAY.isoformat(), "kind": "SPECIAL_HOURS", "ranges": []},
        headers=headers,
    )
    assert bad.status_code == 400


def test_time_only_reschedule_keeps_employee(session_factory, world):
    client = make_client(session_factory, seed=0)
    headers = _headers(world.tenant_slug)
    created = client.post("/api/appointments", json=_booking(world, employee_id=world.ana_id), headers=headers)
    appointment_id = created.json()["id"]

    for slot_start in range(720, 1020, 30):
        moved = client.patch(
            f"/api/appointments/{appointment_id}/reschedule",
            json={"day": MONDAY.isoformat(), "slot_start": slot_start},
            headers=headers,
        )
        assert moved.status_code == 200
        assert moved.json()["employee_id"] == world.ana_id


def test_store_failure_is_503(session_factory, world, monkeypatch):
    def locked(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr("agenda.availability.working_ranges_for_day", locked)
    client = make_client(session_factory)
    res = client.get(
        "/api/availability",
        params={"branch_id": world.branch_id, "service_id": world.haircut_id, "day": MONDAY.isoformat()},
        headers=_headers(world.tenant_slug),
    )
    assert res.status_code == 503
    assert res.json()["detail"]["code"] == "persistence_error"
