from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import DAY, STATION_ID, add_calculation, add_reading
from pumprecon.api.main import app
from pumprecon.core.database import get_db


@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_calculate_station(client, db, pump):
    add_reading(db, pump, DAY, "opening", "100")
    add_reading(db, pump, DAY, "closing", "200")

    r = client.post(f"/stations/{STATION_ID}/calculations",
                    json={"calculation_date": DAY.isoformat()},
                    headers={"X-User-Id": "alice"})

    assert r.status_code == 200
    body = r.json()
    assert body["calculated_count"] == 1
    assert body["state"] == "completed"
    assert body["failed"] == []
    calc = body["calculations"][0]
    assert float(calc["volume_dispensed"]) == 100.0
    assert float(calc["total_revenue"]) == 250.0
    assert calc["calculated_by"] == "alice"


def test_calculate_reports_failed_pumps(client, db, pump):
    pump.product.unit_price = None
    db.commit()

    r = client.post(f"/stations/{STATION_ID}/calculations", json={"calculation_date": DAY.isoformat()})
    assert r.status_code == 200
    assert r.json()["calculated_count"] == 0
    assert r.json()["failed"][0]["pump_id"] == pump.id


def test_calculate_without_pumps_is_404(client):
    r = client.post("/stations/77/calculations", json={"calculation_date": DAY.isoformat()})
    assert r.status_code == 404
    assert r.json()["error"] == "NotFoundError"


def test_calculate_rejects_bad_date(client, pump):
    r = client.post(f"/stations/{STATION_ID}/calculations", json={"calculation_date": "yesterday"})
    assert r.status_code == 422


def test_list_calculations(client, db, pump):
    add_calculation(db, pump, DAY - timedelta(days=1), "80")
    add_calculation(db, pump, DAY, "90")
    add_calculation(db, pump, DAY + timedelta(days=1), "70")

    r = client.get(f"/stations/{STATION_ID}/calculations",
                   params={"start": (DAY - timedelta(days=1)).isoformat(), "end": DAY.isoformat()})
    assert r.status_code == 200
    assert [c["calculation_date"] for c in r.json()] == [
        (DAY - timedelta(days=1)).isoformat(), DAY.isoformat(),
    ]

    r = client.get(f"/stations/{STATION_ID}/calculations",
                   params={"start": DAY.isoformat(), "end": (DAY - timedelta(days=1)).isoformat()})
    assert r.status_code == 422


def test_approval_flow(client, db, pump):
    add_reading(db, pump, DAY, "opening", "100")
    client.post(f"/stations/{STATION_ID}/calculations", json={"calculation_date": DAY.isoformat()})

    pending = client.get(f"/stations/{STATION_ID}/calculations/pending-approval").json()
    assert len(pending) == 1
    calc_id = pending[0]["id"]

    r = client.post(f"/calculations/{calc_id}/approve",
                    json={"approved": True, "notes": "ok"},
                    headers={"X-User-Id": "manager"})
    assert r.status_code == 200
    assert r.json()["approval_status"] == "approved"
    assert r.json()["approved_by"] == "manager"
    assert client.get(f"/stations/{STATION_ID}/calculations/pending-approval").json() == []


def test_approving_metered_calculation_is_400(client, db, pump):
    calc = add_calculation(db, pump, DAY, "100")
    r = client.post(f"/calculations/{calc.id}/approve", json={"approved": True})
    assert r.status_code == 400
    assert r.json()["error"] == "BusinessRuleViolation"


def test_confirm_rollover(client, db, pump):
    add_reading(db, pump, DAY, "opening", "950")
    add_reading(db, pump, DAY, "closing", "900")
    client.post(f"/stations/{STATION_ID}/calculations", json={"calculation_date": DAY.isoformat()})

    r = client.post("/calculations/rollover", json={
        "pump_id": pump.id,
        "calculation_date": DAY.isoformat(),
        "rollover_value": "1000",
        "new_closing_reading": "30",
    })
    assert r.status_code == 200
    assert r.json()["has_rollover"] is True
    assert float(r.json()["volume_dispensed"]) == 80.0

    r = client.post("/calculations/rollover", json={
        "pump_id": pump.id,
        "calculation_date": DAY.isoformat(),
        "rollover_value": "5000",
        "new_closing_reading": "30",
    })
    assert r.status_code == 422


def test_deviations(client, db, pump):
    for offset in range(1, 8):
        add_calculation(db, pump, DAY - timedelta(days=offset), "100")
    add_calculation(db, pump, DAY, "500")

    r = client.get(f"/stations/{STATION_ID}/deviations",
                   params={"start": DAY.isoformat(), "end": DAY.isoformat(), "threshold_percent": 20})
    assert r.status_code == 200
    [hit] = r.json()
    assert hit["pump_number"] == "P1"
    assert float(hit["deviation_percent"]) == 400.0

    r = client.get(f"/stations/{STATION_ID}/deviations",
                   params={"start": DAY.isoformat(), "end": DAY.isoformat(), "window_days": 0})
    assert r.status_code == 422


def test_record_and_correct_reading(client, pump):
    payload = {
        "pump_id": pump.id,
        "reading_date": DAY.isoformat(),
        "reading_type": "opening",
        "meter_value": "100",
    }
    r = client.post("/readings", json=payload, headers={"X-User-Id": "operator"})
    assert r.status_code == 201
    reading = r.json()
    assert reading["recorded_by"] == "operator"

    assert client.post("/readings", json=payload).status_code == 409
    assert client.post("/readings", json={**payload, "reading_type": "closing",
                                          "meter_value": "1500"}).status_code == 422

    # the window for a 2024 reading closed long ago
    r = client.patch(f"/readings/{reading['id']}", json={"meter_value": "110"})
    assert r.status_code == 400

    r = client.patch(f"/readings/{reading['id']}",
                     json={"meter_value": "110", "override_reason": "late paperwork"},
                     headers={"X-User-Id": "manager"})
    assert r.status_code == 200
    assert float(r.json()["meter_value"]) == 110.0
    assert float(r.json()["original_value"]) == 100.0
    assert r.json()["modified_by"] == "manager"
    assert "MANAGER OVERRIDE: late paperwork" in r.json()["notes"]


def test_reading_status(client, db, pump):
    add_reading(db, pump, DAY, "opening", "100")
    r = client.get(f"/stations/{STATION_ID}/readings/status", params={"reading_date": DAY.isoformat()})
    assert r.status_code == 200
    [status] = r.json()
    assert status["has_opening"] is True
    assert status["has_closing"] is False


def test_update_pump_status(client, pump):
    r = client.patch(f"/pumps/{pump.id}/status", json={"status": "repair"})
    assert r.status_code == 200
    assert r.json()["status"] == "repair"
    assert r.json()["is_active"] is False

    assert client.patch("/pumps/9999/status", json={"status": "active"}).status_code == 404
