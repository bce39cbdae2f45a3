"""
MedPlan — API Tests
====================
Tests: Medications CRUD, Schedule, Late dose, Intake & Adherence,
       Reminders, Interactions, Alert permission, WebSocket
"""

import datetime
import pytest

from medplan.config import get_config, get_local_now
from tests.conftest import db_count, db_query


def tomorrow() -> str:
    return (get_local_now().date() + datetime.timedelta(days=1)).isoformat()


def create_medication(client, **overrides):
    body = {
        "name": "Metformin",
        "dosage": "500mg",
        "doses_per_day": 2,
        "window_start": "08:00",
        "window_end": "20:00",
        "start_date": tomorrow(),
    }
    body.update(overrides)
    resp = client.post("/api/medications", json=body)
    assert resp.status_code == 200, resp.text
    return resp.json()


# ============================================================================
# HEALTH
# ============================================================================

class TestHealth:

    def test_root(self, client):
        data = client.get("/").json()
        assert data["ok"] is True
        assert data["service"] == "medplan"
        assert data["degraded"] is False

    def test_settings_roundtrip(self, client):
        resp = client.post("/api/settings", json={"snooze_minutes": 5})
        assert resp.json()["settings"]["snooze_minutes"] == 5
        assert client.get("/api/settings").json()["settings"]["snooze_minutes"] == 5

    def test_settings_reject_unknown_key(self, client):
        resp = client.post("/api/settings", json={"volume": 11})
        assert resp.status_code == 400


# ============================================================================
# MEDICATIONS
# ============================================================================

class TestMedications:
    """Rule CRUD and the reminder side effects."""

    def test_create_admits_reminders(self, client):
        data = create_medication(client)
        med = data["medication"]
        assert med["doses_per_day"] == 2
        assert data["notice"] is None

        reminders = client.get("/api/reminders").json()["reminders"]
        assert [r["time_of_day"] for r in reminders] == ["08:00", "20:00"]
        assert all(r["rule_id"] == med["id"] for r in reminders)
        assert db_count("pending_reminders") == 2

    def test_list_and_get(self, client):
        med = create_medication(client)["medication"]
        listed = client.get("/api/medications").json()["medications"]
        assert [m["id"] for m in listed] == [med["id"]]
        got = client.get(f"/api/medications/{med['id']}").json()
        assert got["medication"]["name"] == "Metformin"

    def test_get_unknown(self, client):
        resp = client.get("/api/medications/nope")
        assert resp.status_code == 404
        assert resp.json()["ok"] is False

    @pytest.mark.parametrize("overrides", [
        {"doses_per_day": 0},
        {"doses_per_day": 11},
        {"window_start": "25:00"},
        {"window_end": "noon"},
        {"doses_per_day": 10, "window_end": "08:05"},
    ])
    def test_create_rejects_invalid_rule(self, client, overrides):
        body = {"name": "Bad", "doses_per_day": 2, "window_start": "08:00", "window_end": "20:00"}
        body.update(overrides)
        resp = client.post("/api/medications", json=body)
        assert resp.status_code == 400
        assert db_count("medications") == 0

    def test_deactivate_cancels_reminders(self, client):
        med = create_medication(client)["medication"]
        resp = client.put(f"/api/medications/{med['id']}", json={"active": False})
        assert resp.json()["medication"]["active"] is False
        assert client.get("/api/reminders").json()["reminders"] == []
        assert db_count("pending_reminders") == 0

    def test_change_window_reschedules(self, client):
        med = create_medication(client)["medication"]
        client.put(f"/api/medications/{med['id']}", json={"doses_per_day": 3})
        reminders = client.get("/api/reminders").json()["reminders"]
        assert [r["time_of_day"] for r in reminders] == ["08:00", "14:00", "20:00"]

    def test_delete(self, client):
        med = create_medication(client)["medication"]
        resp = client.delete(f"/api/medications/{med['id']}")
        assert resp.json() == {"ok": True, "cancelled": 2}
        assert client.get(f"/api/medications/{med['id']}").status_code == 404
        assert client.delete(f"/api/medications/{med['id']}").status_code == 404


# ============================================================================
# SCHEDULE
# ============================================================================

class TestSchedule:
    """Schedule generation and day timelines."""

    def test_generate(self, client):
        data = client.get("/api/schedule/generate", params={"start": "07:00", "end": "23:00", "count": 3}).json()
        assert data["schedule"] == ["07:00", "15:00", "23:00"]

    def test_generate_wraparound(self, client):
        data = client.get("/api/schedule/generate", params={"start": "22:00", "end": "06:00", "count": 2}).json()
        assert data["schedule"] == ["22:00", "06:00"]

    def test_generate_with_delay(self, client):
        data = client.get("/api/schedule/generate",
                          params={"start": "08:00", "end": "20:00", "count": 3, "delay": 600}).json()
        assert data["schedule"] == ["18:00", "20:00", "22:00"]

    @pytest.mark.parametrize("params", [
        {"start": "25:00", "end": "23:00", "count": 3},
        {"start": "07:00", "end": "23:00", "count": 0},
        {"start": "07:00", "end": "23:00", "count": 2, "delay": -10},
    ])
    def test_generate_rejects_invalid(self, client, params):
        resp = client.get("/api/schedule/generate", params=params)
        assert resp.status_code == 400

    def test_medication_schedule(self, client):
        med = create_medication(client)["medication"]
        data = client.get(f"/api/medications/{med['id']}/schedule", params={"date": tomorrow()}).json()
        assert [d["time"] for d in data["doses"]] == ["08:00", "20:00"]

    def test_medication_schedule_bad_date(self, client):
        med = create_medication(client)["medication"]
        resp = client.get(f"/api/medications/{med['id']}/schedule", params={"date": "03/10/2026"})
        assert resp.status_code == 400

    def test_day_timeline_marks_taken(self, client):
        med = create_medication(client)["medication"]
        resp = client.post(f"/api/medications/{med['id']}/taken", json={"date": tomorrow(), "time": "08:00"})
        assert resp.json()["ok"] is True

        doses = client.get("/api/schedule/day", params={"date": tomorrow()}).json()["doses"]
        assert [(d["time"], d["status"]) for d in doses] == [("08:00", "taken"), ("20:00", "upcoming")]


# ============================================================================
# LATE DOSE
# ============================================================================

class TestLateDose:
    """Taking a dose late revises the rest of its day."""

    def test_late_dose_reschedules_remaining(self, client):
        med = create_medication(client)["medication"]
        taken_at = f"{tomorrow()}T09:00:00+00:00"
        resp = client.post(f"/api/medications/{med['id']}/late",
                           json={"date": tomorrow(), "time": "08:00", "taken_at": taken_at})
        data = resp.json()
        assert [d["time"] for d in data["doses"]] == ["09:00", "20:00"]
        assert all(d["revised"] for d in data["doses"])

        reminders = client.get("/api/reminders").json()["reminders"]
        assert [r["id"] for r in reminders] == [f"{med['id']}-20:00r-{tomorrow()}"]
        assert db_count("dose_intake", "source = ?", ("late",)) == 1

    def test_late_dose_requires_time(self, client):
        med = create_medication(client)["medication"]
        resp = client.post(f"/api/medications/{med['id']}/late", json={"date": tomorrow()})
        assert resp.status_code == 400


# ============================================================================
# ADHERENCE
# ============================================================================

class TestAdherence:

    def test_adherence_counts_taken_doses(self, client):
        today = get_local_now().date().isoformat()
        med = create_medication(client, start_date=today)["medication"]
        client.post(f"/api/medications/{med['id']}/taken", json={"date": today, "time": "08:00"})
        client.post(f"/api/medications/{med['id']}/taken", json={"date": today, "time": "08:00"})

        data = client.get(f"/api/medications/{med['id']}/adherence", params={"days": 7}).json()["adherence"]
        assert data["scheduled"] == 2
        assert data["taken"] == 1
        assert data["adherence_pct"] == 50

    def test_adherence_rejects_non_positive_days(self, client):
        med = create_medication(client)["medication"]
        resp = client.get(f"/api/medications/{med['id']}/adherence", params={"days": 0})
        assert resp.status_code == 400


# ============================================================================
# REMINDERS
# ============================================================================

class TestReminders:
    """Reminder listing, cancellation, sweep and interactions."""

    def test_cancel_single_reminder(self, client):
        create_medication(client)
        first = client.get("/api/reminders").json()["reminders"][0]
        assert client.delete(f"/api/reminders/{first['id']}").json()["cancelled"] is True
        assert client.delete(f"/api/reminders/{first['id']}").json()["cancelled"] is False
        assert len(client.get("/api/reminders").json()["reminders"]) == 1
        assert client.post("/api/reminders/sync").json()["created"] == 0
        assert len(client.get("/api/reminders").json()["reminders"]) == 1

    def test_cancel_by_rule(self, client):
        med = create_medication(client)["medication"]
        assert client.delete(f"/api/reminders/rule/{med['id']}").json()["cancelled"] == 2
        assert db_count("pending_reminders", "rule_id = ?", (med["id"],)) == 0
        history = client.get("/api/reminders/history", params={"rule_id": med["id"]}).json()["history"]
        assert [h["event"] for h in history] == ["cancelled", "cancelled"]

    def test_sync_is_idempotent(self, client):
        create_medication(client)
        assert client.post("/api/reminders/sync").json()["created"] == 0

    def test_sweep(self, client):
        stats = client.post("/api/reminders/sweep").json()["stats"]
        assert set(stats) == {"delivered", "expired", "purged"}

    def test_interaction_taken_records_intake(self, client):
        create_medication(client)
        reminder = client.get("/api/reminders").json()["reminders"][0]
        resp = client.post(f"/api/reminders/{reminder['id']}/interaction", json={"action": "taken"})
        data = resp.json()
        assert data["reminder"]["action"] == "taken"
        assert data["reminder"]["state"] == "delivered"
        assert db_count("dose_intake", "source = ?", ("alert",)) == 1

        history = client.get("/api/reminders/history").json()["history"]
        assert history[0]["event"] == "taken"
        assert history[0]["reminder_id"] == reminder["id"]

    def test_interaction_unknown_action(self, client):
        resp = client.post("/api/reminders/x/interaction", json={"action": "explode"})
        assert resp.status_code == 400

    def test_interaction_unknown_reminder(self, client):
        resp = client.post("/api/reminders/x/interaction", json={"action": "dismiss"})
        assert resp.status_code == 404

    def test_include_retired(self, client):
        create_medication(client)
        reminder = client.get("/api/reminders").json()["reminders"][0]
        client.post(f"/api/reminders/{reminder['id']}/interaction", json={"action": "dismiss"})
        assert len(client.get("/api/reminders").json()["reminders"]) == 1
        everything = client.get("/api/reminders", params={"include_retired": True}).json()["reminders"]
        assert len(everything) == 2


# ============================================================================
# ALERTS
# ============================================================================

class TestAlerts:
    """Alert permission, test alert, WebSocket channel."""

    def test_denied_permission_blocks_scheduling_and_notifies_once(self, client):
        resp = client.post("/api/alerts/permission", json={"granted": False})
        assert resp.json()["permission"] is False
        assert get_config("alert_permission") == "denied"

        first = create_medication(client)
        assert first["notice"]
        second = create_medication(client, name="Lisinopril")
        assert second["notice"] is None
        assert client.get("/api/reminders").json()["reminders"] == []

        resp = client.post("/api/alerts/permission", json={"granted": True})
        assert resp.json()["permission"] is True
        assert len(client.get("/api/reminders").json()["reminders"]) == 4

    def test_test_alert(self, client, api_surface):
        data = client.post("/api/alerts/test").json()
        assert data["ok"] is True
        assert api_surface.displayed[-1].tag == "test-notification"

    def test_test_alert_without_permission(self, client):
        client.post("/api/alerts/permission", json={"granted": False})
        assert client.post("/api/alerts/test").status_code == 409

    def test_websocket_permission_message(self, client):
        with client.websocket_connect("/ws/alerts?client_id=phone") as ws:
            hello = ws.receive_json()
            assert hello["type"] == "connected"
            assert hello["client_id"] == "phone"

            ws.send_json({"type": "permission", "granted": True})
            reply = ws.receive_json()
            assert reply == {"type": "permission", "granted": True}
        assert db_query("SELECT value FROM settings WHERE key = 'alert_permission'")[0]["value"] == "granted"

    def test_websocket_interaction_message(self, client):
        create_medication(client)
        reminder = client.get("/api/reminders").json()["reminders"][0]
        with client.websocket_connect("/ws/alerts") as ws:
            ws.receive_json()
            ws.send_json({"type": "interaction", "tag": reminder["payload"]["tag"], "action": "dismiss"})
            reply = ws.receive_json()
            assert reply["ok"] is True
            assert reply["reminder_id"] == reminder["id"]
