import time
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

import database.db as db
import smartattend.config as config
from conftest import STUDENT
from smartattend.main import create_app

BRIDGE_SECRET = "test-bridge-secret"


@pytest.fixture()
def headers(monkeypatch):
    monkeypatch.setattr(config, "BRIDGE_SECRET", BRIDGE_SECRET)
    return {"X-Bridge-Secret": BRIDGE_SECRET}


@pytest.fixture()
def client(temp_db, headers):
    app = create_app(student=STUDENT, scan_timeout=5.0)
    with TestClient(app) as c:
        yield c


def _set_active_session(subject="UCS301", room="LT101", session_type="lect", is_extra=0):
    conn = db.connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT OR REPLACE INTO active_sessions (
            class_group, subject, room, type, session_id, date, is_extra, is_active
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, 1)
        """,
        (STUDENT.class_group, subject, room, session_type, "sess-001", "2026-03-02", is_extra),
    )
    conn.commit()
    conn.close()


def _poll(fn, predicate, attempts=300):
    for _ in range(attempts):
        result = fn()
        if predicate(result):
            return result
        time.sleep(0.01)
    raise AssertionError(f"condition not met, last result: {result}")


def _state(client, headers):
    res = client.get("/attendance/state", headers=headers)
    assert res.status_code == 200
    return res.json()


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_engine_config(client):
    res = client.get("/config/engine")
    assert res.status_code == 200
    body = res.json()
    assert body["scan_timeout_seconds"] == 5.0
    assert body["student_configured"] is True
    assert body["radio_state"] == "unknown"


def test_bridge_secret_is_required(client, headers):
    assert client.get("/attendance/state").status_code == 401
    res = client.get("/attendance/state", headers={"X-Bridge-Secret": "wrong"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid bridge secret."
    assert client.post("/bridge/radio/state", json={"state": "ready"}).status_code == 401
    assert client.get("/attendance/state", headers=headers).status_code == 200


def test_no_student_configured(temp_db, headers, monkeypatch):
    monkeypatch.setattr(config, "STUDENT_ID", "")
    app = create_app()
    with TestClient(app) as c:
        res = c.post("/attendance/start", headers=headers)
        assert res.status_code == 503
        assert c.get("/config/engine").json()["student_configured"] is False


def test_start_without_session_reports_error(client, headers):
    res = client.post("/attendance/start", headers=headers)
    assert res.status_code == 200
    body = res.json()
    assert body["phase"] == "error"
    assert body["failure"]["kind"] == "no_active_session"
    assert body["can_retry"] is False


def test_invalid_actions_conflict(client, headers):
    assert client.post("/attendance/confirm", headers=headers).status_code == 409
    assert client.post("/attendance/retry", headers=headers).status_code == 409

    _set_active_session()
    assert client.post("/attendance/start", headers=headers).status_code == 200
    res = client.post("/attendance/start", headers=headers)
    assert res.status_code == 409
    assert res.json()["detail"] == "An attendance attempt is already in progress."

    res = client.post("/attendance/cancel", headers=headers)
    assert res.status_code == 200
    assert res.json()["phase"] == "idle"


def test_radio_state_and_bad_advertisement(client, headers):
    res = client.post("/bridge/radio/state", json={"state": "OFF"}, headers=headers)
    assert res.json() == {"state": "off", "label": "Bluetooth Off"}
    res = client.post("/bridge/radio/state", json={"state": "resetting"}, headers=headers)
    assert res.json()["state"] == "unknown"

    res = client.post(
        "/bridge/radio/advertisements",
        json={"device_name": "LT101123", "manufacturer_data_hex": "zz"},
        headers=headers,
    )
    assert res.status_code == 400


def test_verifier_messages_without_request(client, headers):
    assert client.post("/bridge/verifier/authenticated", json={"identity": "2021001"}, headers=headers).status_code == 409
    assert client.post("/bridge/verifier/error", json={"code": 3}, headers=headers).status_code == 409
    assert client.post("/bridge/verifier/closed", headers=headers).status_code == 409
    assert client.post("/bridge/verifier/log", json={"message": "sdk ready"}, headers=headers).status_code == 200


def _scan_to_verification(client, headers):
    _set_active_session()
    client.post("/bridge/radio/state", json={"state": "ready"}, headers=headers)

    assert client.post("/attendance/start", headers=headers).json()["phase"] == "awaiting_confirmation"
    assert client.post("/attendance/confirm", headers=headers).json()["phase"] == "scanning"

    advertisement = {
        "device_name": "LT101123",
        "manufacturer_data_hex": "FFFF554353333031",
        "rssi": -60,
    }
    _poll(
        lambda: client.post("/bridge/radio/advertisements", json=advertisement, headers=headers).json(),
        lambda body: body["delivered"] >= 1,
    )
    _poll(
        lambda: client.get("/bridge/verifier/pending", headers=headers).json(),
        lambda body: body["awaiting"],
    )
    return _state(client, headers)


def test_attendance_over_bridge(client, headers):
    state = _scan_to_verification(client, headers)
    assert state["phase"] == "awaiting_verification"
    assert state["detected_room"]["device_name"] == "LT101123"
    assert state["detected_room"]["subject_code"] == "UCS301"

    res = client.post("/bridge/verifier/authenticated", json={"identity": "2021001"}, headers=headers)
    assert res.status_code == 200

    state = _poll(lambda: _state(client, headers), lambda body: body["phase"] == "success")
    assert state["record"]["type"] == "lecture"
    assert state["record"]["isExtra"] is False
    assert state["total_marked"] == 1

    rows = db.query_attendance_records("2021001", "UCS301", state["record"]["date"])
    assert len(rows) == 1

    recent = client.get("/attendance/recent", headers=headers).json()
    assert recent["total_marked"] == 1
    assert recent["sessions"][0]["device_name"] == "LT101123"

    by_subject = client.get("/attendance/recent", params={"subject": "UCS301"}, headers=headers).json()
    assert [s["subject"] for s in by_subject["sessions"]] == ["UCS301"]
    other = client.get("/attendance/recent", params={"subject": "UCS999"}, headers=headers).json()
    assert other["sessions"] == []
    assert other["total_marked"] == 1

    # second attempt the same day is denied before face verification
    client.post("/attendance/start", headers=headers)
    client.post("/attendance/confirm", headers=headers)
    advertisement = {"device_name": "LT101456"}
    _poll(
        lambda: client.post("/bridge/radio/advertisements", json=advertisement, headers=headers).json(),
        lambda body: body["delivered"] >= 1,
    )
    state = _poll(lambda: _state(client, headers), lambda body: body["phase"] == "denied")
    assert "lecture" in state["verdict"]["reason"]


def test_identity_mismatch_over_bridge(client, headers):
    _scan_to_verification(client, headers)

    client.post("/bridge/verifier/authenticated", json={"identity": "2021999"}, headers=headers)

    state = _poll(lambda: _state(client, headers), lambda body: body["phase"] == "security_rejected")
    assert state["failure"]["kind"] == "security_mismatch"
    assert state["record"] is None
    today = datetime.now().date().isoformat()
    assert db.query_attendance_records("2021001", "UCS301", today) == []


def test_biometric_error_then_retry_over_bridge(client, headers):
    _scan_to_verification(client, headers)

    client.post("/bridge/verifier/error", json={"code": 2}, headers=headers)
    state = _poll(lambda: _state(client, headers), lambda body: body["phase"] == "error")
    assert state["failure"]["code"] == "no_face_detected"
    assert state["can_retry"] is True

    assert client.post("/attendance/retry", headers=headers).json()["phase"] == "awaiting_verification"
    _poll(
        lambda: client.get("/bridge/verifier/pending", headers=headers).json(),
        lambda body: body["awaiting"],
    )
    client.post("/bridge/verifier/authenticated", json={"identity": "2021001"}, headers=headers)
    _poll(lambda: _state(client, headers), lambda body: body["phase"] == "success")
