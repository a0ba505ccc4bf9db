import pytest

from fieldtrack.main import app
from fieldtrack.models.models import AuditLog
from fieldtrack.routes.team_locations import get_tasks

from .conftest import TENANT, OTHER_TENANT, FailingTaskSource


BASE = "/team-locations"


def _post_location(client, team_ref, lat=40.7, lng=-74.0, tenant_id=TENANT, **body):
    return client.post(
        f"{BASE}/{team_ref}/location",
        params={"tenant_id": tenant_id},
        json={"location": {"lat": lat, "lng": lng}, **body},
    )


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_update_and_read_location(client):
    response = _post_location(client, "T1", status="active", battery_level=90)
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["team_id"] == "T1"
    assert body["created"] is True

    current = client.get(f"{BASE}/T1", params={"tenant_id": TENANT}).json()
    assert current["status"] == "active"
    assert current["battery_level"] == 90
    assert current["location"]["lat"] == 40.7


def test_invalid_coordinates_is_400(client):
    response = _post_location(client, "T1", lat=95)
    assert response.status_code == 400
    assert "Latitude" in response.json()["detail"]


def test_unknown_team_is_404(client):
    assert _post_location(client, "nope").status_code == 404
    assert client.get(f"{BASE}/nope", params={"tenant_id": TENANT}).status_code == 404


def test_request_validation(client):
    assert _post_location(client, "T1", battery_level=150).status_code == 422
    response = client.post(f"{BASE}/T1/location", json={"location": {"lat": 1, "lng": 1}})
    assert response.status_code == 422


def test_tenants_are_isolated(client):
    _post_location(client, "T1", status="active")

    other = client.get(f"{BASE}/T1", params={"tenant_id": OTHER_TENANT}).json()
    assert other["name"] == "Charlie Crew"
    assert other["status"] == "offline"
    assert other["has_record"] is False


def test_list_with_filters(client):
    _post_location(client, "19", status="active")

    everyone = client.get(BASE, params={"tenant_id": TENANT}).json()
    assert [t["id"] for t in everyone] == ["19", "T1"]

    active = client.get(BASE, params={"tenant_id": TENANT, "status": "active"}).json()
    assert [t["id"] for t in active] == ["19"]


def test_actor_is_audited(client, db):
    client.post(
        f"{BASE}/19/location",
        params={"tenant_id": TENANT},
        json={"location": {"lat": 49.2, "lng": -123.1}},
        headers={"X-User-Id": "user-42"},
    )
    audit = db.query(AuditLog).filter_by(action="location_updated").one()
    assert audit.actor_id == "user-42"
    assert audit.entity_id == "19"
    assert audit.integrity_hash


def test_stats_and_availability_with_task_service_down(client):
    app.dependency_overrides[get_tasks] = lambda: FailingTaskSource()
    _post_location(client, "19", status="active")

    stats = client.get(f"{BASE}/stats", params={"tenant_id": TENANT})
    assert stats.status_code == 200
    assert stats.json()["avg_response_time"] == 0

    single = client.get(f"{BASE}/availability", params={"tenant_id": TENANT, "team_ref": "19"})
    assert single.status_code == 200
    assert single.json()["performance"]["efficiency"] == 0

    fleet = client.get(f"{BASE}/availability", params={"tenant_id": TENANT}).json()
    assert fleet["summary"]["total_teams"] == 2


def test_route_progress_lifecycle(client):
    params = {"tenant_id": TENANT}
    assert client.get(f"{BASE}/19/route-progress", params=params).status_code == 404

    body = {"task_ids": ["a", "b", "c"], "current_task_index": 1, "completed_tasks": 1}
    response = client.post(f"{BASE}/19/route-progress", params=params, json=body)
    assert response.status_code == 200
    assert [s["status"] for s in response.json()["stops"]] == ["completed", "in_progress", "pending"]

    skipped = client.post(f"{BASE}/19/route-progress/stops/c/skip", params=params, json={"reason": "Gate locked"})
    assert skipped.status_code == 200
    assert skipped.json()["stops"][2]["status"] == "skipped"
    assert client.post(f"{BASE}/19/route-progress/stops/c/cancel", params=params).status_code == 409

    assert client.post(f"{BASE}/19/route-progress/pause", params=params).json()["route_status"] == "paused"
    assert client.post(f"{BASE}/19/route-progress/pause", params=params).status_code == 409
    assert client.post(f"{BASE}/19/route-progress/resume", params=params).json()["route_status"] == "in_progress"

    fetched = client.get(f"{BASE}/19/route-progress", params=params).json()
    assert fetched["completed_count"] == 1
    assert len(fetched["progress_updates"]) == 4

    assert client.post(f"{BASE}/19/route-progress/cancel", params=params).json()["route_status"] == "cancelled"
    assert client.post(f"{BASE}/19/route-progress", params=params, json=body).status_code == 409


@pytest.mark.parametrize("body", [
    {"task_ids": ["a"], "current_task_index": 0, "completed_tasks": 2},
    {"task_ids": ["a"], "current_task_index": 3, "completed_tasks": 0},
])
def test_route_progress_rejects_bad_counters(client, body):
    response = client.post(f"{BASE}/19/route-progress", params={"tenant_id": TENANT}, json=body)
    assert response.status_code == 409


def test_history_and_export(client):
    _post_location(client, "19", lat=49.2, lng=-123.1)
    _post_location(client, "19", lat=49.3, lng=-123.2)

    hist = client.get(f"{BASE}/19/history", params={"tenant_id": TENANT, "limit": 10}).json()
    assert hist["total"] == 2
    assert hist["team_name"] == "Alpha Crew"
    assert client.get(f"{BASE}/19/history", params={"tenant_id": TENANT, "limit": 0}).status_code == 422

    export = client.get(f"{BASE}/export", params={"tenant_id": TENANT}).json()
    assert export["success"] is True
    assert len(export["data"]) == 2


def test_decommission(client):
    _post_location(client, "T1", status="active")

    response = client.delete(f"{BASE}/T1", params={"tenant_id": TENANT})
    assert response.status_code == 200
    assert response.json()["team_id"] == "T1"

    assert client.delete(f"{BASE}/T1", params={"tenant_id": TENANT}).status_code == 404
    assert client.get(f"{BASE}/T1", params={"tenant_id": TENANT}).json()["status"] == "offline"
