import uuid
from datetime import datetime, timedelta

import httpx
import pytest

from fieldtrack.config import settings
from fieldtrack.errors import CollaboratorUnavailable
from fieldtrack.services import task_source
from fieldtrack.services.route_progress import advance_route
from fieldtrack.services.task_source import HttpTaskSource, SqlTaskSource, get_task_source
from fieldtrack.services.time_rules import utcnow

from .conftest import TENANT, OTHER_TENANT, make_task


@pytest.fixture
def mock_transport(monkeypatch):
    """Route every httpx.Client built by the task source through a handler."""
    real_client = httpx.Client

    def install(handler):
        monkeypatch.setattr(
            task_source.httpx, "Client",
            lambda **kw: real_client(transport=httpx.MockTransport(handler), **kw),
        )

    return install


def test_sql_source_filters_by_team_and_window(db, teams):
    today = make_task(db, "19")
    make_task(db, "19", day_offset=2)
    make_task(db, "T1")
    make_task(db, "19", tenant_id=OTHER_TENANT)
    make_task(db, "19", is_deleted=True)

    source = SqlTaskSource(db)
    start = today.scheduled_date - timedelta(hours=1)
    found = source.tasks_between(TENANT, ["19"], start, start + timedelta(days=1))

    assert [t["id"] for t in found] == [str(today.id)]
    assert found[0]["scheduled_date"] == today.scheduled_date


def test_sql_source_completed_since_newest_first(db, teams):
    older = make_task(db, "19", status="completed", completed_at=utcnow() - timedelta(days=2))
    newer = make_task(db, "19", status="completed", completed_at=utcnow() - timedelta(hours=1))
    make_task(db, "19", status="scheduled")

    found = SqlTaskSource(db).completed_since(TENANT, ["19"], utcnow() - timedelta(days=7))
    assert [t["id"] for t in found] == [str(newer.id), str(older.id)]


def test_sql_source_by_id_skips_unknown_ids(db, teams):
    task = make_task(db, "19")
    found = SqlTaskSource(db).tasks_by_id(TENANT, [str(task.id), "not-a-uuid", str(uuid.uuid4())])
    assert list(found) == [str(task.id)]
    assert SqlTaskSource(db).tasks_by_id(TENANT, ["a", "b"]) == {}


def test_http_source_parses_tasks(mock_transport):
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        seen["params"] = request.url.params
        return httpx.Response(200, json={"tasks": [{
            "id": 7,
            "status": "completed",
            "scheduled_date": "2024-05-01T16:00:00Z",
            "completed_at": "2024-05-01T17:30:00+00:00",
            "estimated_duration": 60,
        }]})

    mock_transport(handler)
    source = HttpTaskSource(base_url="https://tasks.example.test/", api_key="secret", timeout=2)
    found = source.completed_since(TENANT, ["19", "1748608291431"], datetime(2024, 4, 1))

    assert seen["auth"] == "Bearer secret"
    assert seen["params"].get_list("team_id") == ["19", "1748608291431"]
    assert seen["params"]["order"] == "completed_desc"
    assert found[0]["id"] == "7"
    assert found[0]["scheduled_date"] == datetime(2024, 5, 1, 16, 0)
    assert found[0]["completed_at"] == datetime(2024, 5, 1, 17, 30)
    assert found[0]["satisfaction_rating"] is None


def test_http_source_timeout_is_unavailable(mock_transport):
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    mock_transport(handler)
    with pytest.raises(CollaboratorUnavailable):
        HttpTaskSource(base_url="https://tasks.example.test").tasks_between(TENANT, ["19"], None, None)


def test_http_source_error_status_is_unavailable(mock_transport):
    mock_transport(lambda request: httpx.Response(502, text="bad gateway"))
    with pytest.raises(CollaboratorUnavailable):
        HttpTaskSource(base_url="https://tasks.example.test").tasks_between(TENANT, ["19"], None, None)


@pytest.mark.parametrize("payload", [
    {"tasks": [{"id": 1, "scheduled_date": "next tuesday"}]},
    {"tasks": ["not-a-task"]},
    {"tasks": 5},
    "tasks",
])
def test_http_source_malformed_payload_is_unavailable(mock_transport, payload):
    mock_transport(lambda request: httpx.Response(200, json=payload))
    with pytest.raises(CollaboratorUnavailable):
        HttpTaskSource(base_url="https://tasks.example.test").tasks_between(TENANT, ["19"], None, None)


def test_malformed_task_payload_degrades_route_seeding(db, teams, mock_transport, monkeypatch):
    monkeypatch.setattr(settings, "task_service_url", "https://tasks.example.test")
    mock_transport(lambda request: httpx.Response(200, json={"tasks": [{"id": "a", "scheduled_date": "soon"}]}))

    route = advance_route(db, TENANT, "19", ["a", "b"], 0, 0)
    assert [s["estimated_duration"] for s in route["stops"]] == [60, 60]


def test_http_source_requires_url(monkeypatch):
    monkeypatch.setattr(settings, "task_service_url", None)
    with pytest.raises(ValueError):
        HttpTaskSource()


def test_get_task_source_prefers_configured_service(db, monkeypatch):
    assert isinstance(get_task_source(db), SqlTaskSource)
    monkeypatch.setattr(settings, "task_service_url", "https://tasks.example.test")
    assert isinstance(get_task_source(db), HttpTaskSource)
