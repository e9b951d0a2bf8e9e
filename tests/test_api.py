import asyncio

import pytest
from fastapi.testclient import TestClient

from safefleet.api import endpoints
from safefleet.config import config
from safefleet.db import engine
from safefleet.main import app
from safefleet.models import Base
from safefleet.notifications import notification_queue


@pytest.fixture
def client():
    """Fresh database and notification queue; lifespan runs inside the context."""
    Base.metadata.drop_all(bind=engine)
    notification_queue.clear()
    with TestClient(app) as test_client:
        yield test_client
    notification_queue.clear()


def seed_scenario(client, config_points=6):
    """Report R1 / infraction I1 for driver D1 of partner P1 in 2024."""
    client.post("/api/collections/partners", json={"id": "P1", "name": "Atlas Logistics"})
    client.post("/api/collections/partners", json={"id": "P2", "name": "Sahara Transport"})
    client.post("/api/collections/obc_keys", json={"id": "K1", "partner_id": "P1", "key": "OBC-1"})
    client.post("/api/collections/drivers", json={
        "id": "D1", "first_name": "Ana", "last_name": "Silva", "obc_key_ids": ["K1"]
    })
    client.post("/api/collections/drivers", json={"id": "D2", "last_name": "Haddad"})
    client.post("/api/collections/rules", json={"id": "Speed", "partner_id": "P1", "title": "Speed limit exceeded"})
    if config_points is not None:
        client.post("/api/collections/sanction_configs", json={
            "id": "C1", "partner_id": "P1", "rule_id": "Speed", "classification": "Alarm", "points": config_points
        })
    client.post("/api/collections/reports", json={
        "id": "R1", "date": "2024-05-10", "partner_id": "P1", "driver_id": "D1", "rule_id": "Speed",
        "driving_duration": "08:15:00", "total_duration": "09:00:00", "distance_km": 320.5
    })
    response = client.post("/api/collections/infractions", json={
        "id": "I1", "partner_id": "P1", "date": "2024-05-10", "report_id": "R1",
        "declared_classification": "Alarm"
    })
    assert response.status_code == 201


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestCollections:
    """Generic record access through the live store."""

    def test_crud(self, client):
        response = client.post("/api/collections/partners", json={"id": "P1", "name": "Atlas"})
        assert response.status_code == 201
        assert response.json()["active"] is True

        assert [p["id"] for p in client.get("/api/collections/partners").json()] == ["P1"]
        assert client.get("/api/collections/partners/P1").json()["name"] == "Atlas"

        response = client.put("/api/collections/partners/P1", json={"name": "Atlas Logistics"})
        assert response.status_code == 200
        assert response.json()["name"] == "Atlas Logistics"

        response = client.delete("/api/collections/partners/P1")
        assert response.status_code == 200
        assert client.get("/api/collections/partners").json() == []

    def test_unknown_collection(self, client):
        assert client.get("/api/collections/trucks").status_code == 404
        assert client.post("/api/collections/trucks", json={"name": "x"}).status_code == 404

    def test_missing_record(self, client):
        assert client.get("/api/collections/partners/nope").status_code == 404
        assert client.put("/api/collections/partners/nope", json={"name": "x"}).status_code == 404
        assert client.delete("/api/collections/partners/nope").status_code == 404

    def test_invalid_record(self, client):
        response = client.post("/api/collections/sanction_configs", json={
            "partner_id": "P1", "rule_id": "Speed", "classification": "Critical", "points": 2
        })
        assert response.status_code == 422

    def test_duplicate_id(self, client):
        client.post("/api/collections/partners", json={"id": "P1", "name": "Atlas"})
        response = client.post("/api/collections/partners", json={"id": "P1", "name": "Atlas"})
        assert response.status_code == 409


class TestDashboardApi:
    """Point-read dashboard, driver and severity endpoints."""

    def test_dashboard_scenario(self, client):
        seed_scenario(client)
        response = client.get("/api/dashboard", params={"partner": "P1", "year": 2024})
        assert response.status_code == 200

        data = response.json()
        assert data["driver_points"] == [{"driver_id": "D1", "name": "Ana Silva", "points": 6}]
        assert data["kpis"]["points_lost"] == 6
        assert data["kpis"]["infractions"] == 1
        assert data["monthly"][4]["work"] == 9
        assert data["recent_infractions"][0]["severity"] == {"classification": "Alarm", "points": 6}

    def test_other_year_is_empty(self, client):
        seed_scenario(client)
        data = client.get("/api/dashboard", params={"partner": "P1", "year": 2023}).json()
        assert data["kpis"] == {"distance": 0, "infractions": 0, "points_lost": 0, "safety_score": 100}

    def test_invalid_year(self, client):
        assert client.get("/api/dashboard", params={"year": 1800}).status_code == 422

    def test_severity_endpoint(self, client):
        seed_scenario(client)
        response = client.get("/api/infractions/I1/severity")
        assert response.json() == {"infraction_id": "I1", "classification": "Alarm", "points": 6}
        assert client.get("/api/infractions/missing/severity").status_code == 404

    def test_severity_default_without_config(self, client):
        seed_scenario(client, config_points=None)
        assert client.get("/api/infractions/I1/severity").json()["points"] == 3

    def test_drivers_by_partner(self, client):
        seed_scenario(client)
        assert [d["id"] for d in client.get("/api/drivers", params={"partner": "P1"}).json()] == ["D1"]
        assert len(client.get("/api/drivers").json()) == 2

    def test_driver_summary_and_license(self, client):
        seed_scenario(client)
        summary = client.get("/api/drivers/D1/summary", params={"year": 2024}).json()
        assert summary["partner"] == "Atlas Logistics"
        assert summary["points_lost"] == 6
        assert summary["driving_time"] == "8h15"

        balance = client.get("/api/drivers/D1/license", params={"year": 2024}).json()
        assert balance["remaining_points"] == 6
        assert client.get("/api/drivers/ghost/summary").status_code == 404
        assert client.get("/api/drivers/ghost/license").status_code == 404

    def test_period_kpis(self, client):
        seed_scenario(client)
        kpis = client.get("/api/kpis", params={"partner": "P1", "year": 2024, "month": 5}).json()
        assert kpis["distance"] == 321
        assert kpis["driving_hours"] == 8
        assert kpis["objectives"]["driving_hours_max"] == 8580

        yearly = client.get("/api/kpis", params={"year": 2024}).json()
        assert yearly["period"] == "year"
        assert yearly["objectives"]["driving_hours_max"] == 8580 * 12 * 2
        assert client.get("/api/kpis", params={"month": 13}).status_code == 422

    def test_driver_weekly_time(self, client):
        seed_scenario(client)
        weekly = client.get("/api/drivers/D1/weekly-time", params={"year": 2024, "month": 5}).json()
        assert weekly["weeks"] == [{"week": 19, "reports": [{
            "id": "R1", "date": "2024-05-10", "driving_time": "08h15",
            "waiting_time": "00h00", "service_time": "08h15"
        }]}]
        assert weekly["service_time"] == "08h15"
        assert client.get("/api/drivers/ghost/weekly-time", params={"month": 5}).status_code == 404
        assert client.get("/api/drivers/D1/weekly-time").status_code == 422

    def test_duplicate_config_report(self, client):
        seed_scenario(client)
        client.post("/api/collections/sanction_configs", json={
            "id": "C2", "partner_id": "P1", "rule_id": "Speed", "classification": "Alarm", "points": 9
        })
        report = client.get("/api/data-quality/sanction-configs").json()
        assert report["total_configs"] == 2
        assert report["duplicates"][0]["effective_config_id"] == "C1"
        assert client.get("/api/infractions/I1/severity").json()["points"] == 6


class TestNotificationsApi:
    def test_new_infraction_raises_notification(self, client):
        seed_scenario(client)
        data = client.get("/api/notifications").json()
        assert data["unread"] == 2
        messages = [item["message"] for item in data["items"]]
        assert "New infraction (Alarm) recorded on 2024-05-10" in messages

        assert client.post("/api/notifications/read").json() == {"unread": 0}

        first_id = data["items"][0]["id"]
        assert client.post(f"/api/notifications/{first_id}/dismiss").status_code == 200
        assert client.post(f"/api/notifications/{first_id}/dismiss").status_code == 404

        client.post("/api/notifications/clear")
        assert client.get("/api/notifications").json()["items"] == []

    def test_queue_routes_run_on_the_event_loop(self):
        """Reads and dismissals share the loop thread with push()."""
        for route in (endpoints.list_notifications, endpoints.dismiss_notification,
                      endpoints.mark_notifications_read, endpoints.clear_notifications):
            assert asyncio.iscoroutinefunction(route)


class TestScoringConfigApi:
    def test_read_and_update(self, client):
        saved = client.get("/api/config/scoring").json()
        assert saved["default_alarm_points"] == 3
        assert saved["license_points_start"] == 12
        try:
            updated = client.put("/api/config/scoring", json={"default_alarm_points": 4}).json()
            assert updated["default_alarm_points"] == 4
            assert updated["safety_points_weight"] == saved["safety_points_weight"]
        finally:
            config.update_severity_defaults(alarm_points=saved["default_alarm_points"])

    @pytest.mark.parametrize("body", [
        {"default_alarm_points": -5},
        {"default_alert_points": -1},
        {"license_points_start": 0},
        {"safety_points_weight": -2},
    ])
    def test_out_of_range_values_rejected(self, client, body):
        saved = client.get("/api/config/scoring").json()
        assert client.put("/api/config/scoring", json=body).status_code == 422
        assert client.get("/api/config/scoring").json() == saved

    def test_negative_default_cannot_raise_license_balance(self, client):
        seed_scenario(client, config_points=None)
        with pytest.raises(ValueError):
            config.update_severity_defaults(alarm_points=-5)
        balance = client.get("/api/drivers/D1/license", params={"year": 2024}).json()
        assert balance["remaining_points"] == 9


class TestWebSockets:
    """Live dashboard and notification sockets."""

    def test_dashboard_socket_pushes_updates(self, client):
        seed_scenario(client)
        with client.websocket_connect("/ws/dashboard?partner=P1&year=2024") as websocket:
            message = websocket.receive_json()
            assert message["type"] == "dashboard"
            assert message["payload"]["kpis"]["infractions"] == 1

            client.post("/api/collections/infractions", json={
                "id": "I2", "partner_id": "P1", "date": "2024-06-01", "report_id": "R1",
                "declared_classification": "Alert"
            })
            for _ in range(10):
                message = websocket.receive_json()
                if message["payload"]["kpis"]["infractions"] == 2:
                    break
            assert message["payload"]["kpis"]["infractions"] == 2

    def test_dashboard_socket_scope_change(self, client):
        seed_scenario(client)
        with client.websocket_connect("/ws/dashboard?partner=P1&year=2024") as websocket:
            websocket.receive_json()
            websocket.send_json({"partner": "P2"})
            for _ in range(10):
                message = websocket.receive_json()
                if message["payload"]["scope"]["partner"] == "P2":
                    break
            assert message["payload"]["kpis"]["infractions"] == 0

    def test_notification_socket(self, client):
        with client.websocket_connect("/ws/notifications") as websocket:
            client.post("/api/collections/infractions", json={
                "id": "I9", "partner_id": "P1", "date": "2024-06-01", "declared_classification": "Alarm"
            })
            message = websocket.receive_json()
            assert message["type"] == "notification"
            assert message["payload"]["severity"] == "warning"


if __name__ == "__main__":
    pytest.main([__file__])
