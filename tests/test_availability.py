import uuid
from datetime import date, time, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from fieldtrack.errors import TeamNotFound
from fieldtrack.models.models import AuditLog, TeamAvailability
from fieldtrack.schemas.team_locations import CanonicalTeam, PositionFix
from fieldtrack.services import availability
from fieldtrack.services.availability import (
    map_location_status,
    performance_metrics,
    today_availability,
    upcoming_schedule,
    week_availability,
)
from fieldtrack.services.location_store import update_position
from fieldtrack.services.time_rules import combine_local, utcnow

from .conftest import TENANT, make_task


MONDAY = date(2024, 3, 11)


def _team(**kw):
    values = dict(storage_key=uuid.uuid4(), canonical_id="19", internal_id="1748608291431", legacy_id="19", name="Alpha Crew")
    values.update(kw)
    return CanonicalTeam(**values)


def _task(status, day=MONDAY, hour=10, **kw):
    return {"id": str(uuid.uuid4()), "status": status, "scheduled_date": combine_local(day, time(hour, 0)), **kw}


@pytest.mark.parametrize("location_status, expected", [
    ("active", "available"),
    ("break", "break"),
    ("emergency", "emergency"),
    ("offline", "offline"),
    ("inactive", "offline"),
    (None, "offline"),
])
def test_map_location_status(location_status, expected):
    assert map_location_status(location_status) == expected


def test_break_is_unavailable_regardless_of_load():
    today = today_availability(_team(), "break", [_task("scheduled") for _ in range(12)], max_capacity=8)
    assert today["status"] == "unavailable"
    assert today["utilization_percentage"] == 150


@pytest.mark.parametrize("location_status", ["offline", "inactive", None])
def test_offline_or_missing_record_is_offline(location_status):
    today = today_availability(_team(), location_status, [_task("scheduled")])
    assert today["status"] == "offline"


def test_over_capacity_is_busy():
    tasks = [_task("scheduled") for _ in range(9)]
    today = today_availability(_team(max_daily_capacity=8), "active", tasks)

    assert today["utilization_percentage"] == 112
    assert today["status"] == "busy"
    assert today["max_capacity"] == 8


def test_busy_threshold_is_inclusive():
    tasks = [_task("scheduled") for _ in range(4)]
    assert today_availability(_team(), "active", tasks, max_capacity=5)["status"] == "busy"
    assert today_availability(_team(), "active", tasks, max_capacity=6)["status"] == "available"


def test_available_counts_and_defaults():
    tasks = [_task("completed"), _task("in_progress"), _task("scheduled")]
    today = today_availability(_team(), "active", tasks)

    assert today["status"] == "available"
    assert today["max_capacity"] == 8
    assert today["utilization_percentage"] == 38
    assert today["status_explanation"] == "Working within capacity (38% utilized)"
    assert today["workload_summary"] == {"total": 3, "completed": 1, "in_progress": 1, "pending": 1}
    assert today["working_hours"] == {"start": "8:00 AM", "end": "5:00 PM"}


def test_team_working_hours_override_defaults():
    team = _team(working_hours={"start": "7:00 AM", "end": "4:00 PM"})
    assert today_availability(team, "active", [])["working_hours"] == {"start": "7:00 AM", "end": "4:00 PM"}
    assert today_availability(team, "active", [])["status_explanation"] == "Available for new assignments"


def test_emergency_is_unavailable():
    today = today_availability(_team(), "emergency", [])
    assert today["status"] == "unavailable"
    assert today["status_explanation"] == "Team reported an emergency"


def test_week_classifies_each_day():
    tasks = [
        _task("in_progress", MONDAY),
        _task("scheduled", MONDAY),
        _task("scheduled", MONDAY + timedelta(days=1), estimated_duration=90),
        _task("completed", MONDAY + timedelta(days=2)),
        _task("cancelled", MONDAY + timedelta(days=3)),
    ]
    week = week_availability(tasks, MONDAY)

    assert len(week) == 7
    assert [d["status"] for d in week] == ["busy", "scheduled", "available", "scheduled", "available", "available", "available"]
    assert [d["day_of_week"] for d in week][:2] == ["Monday", "Tuesday"]
    assert week[0]["date"] == "2024-03-11"
    assert week[0]["scheduled_hours"] == 2.0
    assert week[1]["scheduled_hours"] == 1.5
    assert week[0]["task_breakdown"] == {"total": 2, "completed": 0, "in_progress": 1, "pending": 1}


def test_week_uses_local_days():
    # 11:30 PM Pacific on Monday is Tuesday in UTC
    late = {"id": "t", "status": "scheduled", "scheduled_date": combine_local(MONDAY, time(23, 30))}
    week = week_availability([late], MONDAY)
    assert week[0]["tasks"] == 1
    assert week[1]["tasks"] == 0


def test_performance_metrics():
    start = combine_local(MONDAY, time(9, 30))
    tasks = [
        _task("completed", estimated_duration=60, actual_duration=30, time_window_start="09:00",
              actual_start_time=start, satisfaction_rating=4),
        _task("completed", estimated_duration=30, actual_duration=60, time_window_start="09:00",
              actual_start_time=start + timedelta(hours=3), satisfaction_rating=5),
        _task("scheduled"),
        _task("cancelled"),
    ]
    metrics = performance_metrics(tasks)

    assert metrics["efficiency"] == 125.0
    assert metrics["completion_rate"] == 50.0
    assert metrics["average_response_time"] == 75
    assert metrics["rating"] == 4.5


def test_efficiency_is_capped():
    tasks = [_task("completed", estimated_duration=120, actual_duration=10)]
    assert performance_metrics(tasks)["efficiency"] == 200


def test_performance_metrics_empty_input_is_zero():
    assert performance_metrics([]) == {"efficiency": 0, "completion_rate": 0, "average_response_time": 0, "rating": 0}
    assert performance_metrics([_task("scheduled")])["efficiency"] == 0


def test_upcoming_schedule_orders_open_work():
    later = _task("scheduled", MONDAY + timedelta(days=1), name="Later", address="2 Pine St")
    sooner = _task("assigned", MONDAY, scheduled_time="08:30")
    done = _task("completed", MONDAY)
    schedule = upcoming_schedule([later, done, sooner])

    assert [s["task_id"] for s in schedule] == [sooner["id"], later["id"]]
    assert schedule[0]["time"] == "08:30"
    assert schedule[0]["location"] == "Location TBD"
    assert schedule[1]["task"] == "Later"
    assert schedule[1]["duration"] == 1.0


def test_status_change_syncs_cached_availability(db, teams):
    availability.sync_availability(db, TENANT, "19", "active", team_name="Alpha Crew")
    availability.sync_availability(db, TENANT, "19", "break")

    rows = db.query(TeamAvailability).filter_by(tenant_id=TENANT, team_id="19").all()
    assert len(rows) == 1
    assert rows[0].status == "break"
    assert rows[0].team_name == "Alpha Crew"


def test_single_team_availability(db, teams):
    update_position(db, TENANT, "19", PositionFix(lat=49.2, lng=-123.1), status="active")
    for _ in range(9):
        make_task(db, "19")
    make_task(db, "19", day_offset=1)
    make_task(db, "19", status="completed", completed_at=utcnow() - timedelta(days=1), actual_duration=45)

    details = availability.get_availability(db, TENANT, "1748608291431")
    today = details["availability"]["today"]

    assert details["team_id"] == "19"
    assert today["scheduled_tasks"] == 10
    assert today["utilization_percentage"] == 125
    assert today["status"] == "busy"
    assert details["availability"]["week"][1]["status"] == "scheduled"
    assert len(details["availability"]["upcoming_schedule"]) == 10
    assert len(details["availability"]["recent_completed_tasks"]) == 1
    assert details["cached_status"]["status"] == "available"
    assert details["emergency_contact"]["phone"] == "555-0199"
    assert db.query(AuditLog).filter_by(action="availability_accessed").count() == 1


def test_unavailable_tasks_degrade_to_zero(db, teams, failing_tasks):
    update_position(db, TENANT, "19", PositionFix(lat=49.2, lng=-123.1), status="active")

    details = availability.get_availability(db, TENANT, "19", task_source=failing_tasks)

    assert details["availability"]["today"]["scheduled_tasks"] == 0
    assert details["availability"]["today"]["status"] == "available"
    assert details["performance"] == {"efficiency": 0, "completion_rate": 0, "average_response_time": 0, "rating": 0}
    assert details["availability"]["upcoming_schedule"] == []


def test_all_teams_availability_summary(db, teams):
    update_position(db, TENANT, "19", PositionFix(lat=49.2, lng=-123.1), status="active")

    result = availability.get_availability(db, TENANT)
    by_id = {t["team_id"]: t for t in result["teams"]}

    assert set(by_id) == {"19", "T1"}
    assert by_id["19"]["available"] is True
    assert by_id["19"]["location"]["lat"] == 49.2
    assert by_id["T1"]["status"] == "offline"
    assert by_id["T1"]["location"] is None
    assert result["summary"] == {
        "total_teams": 2,
        "available_teams": 1,
        "busy_teams": 0,
        "offline_teams": 1,
        "teams_with_emergency_contact": 1,
    }


def test_unknown_team_availability(db, teams):
    with pytest.raises(TeamNotFound):
        availability.get_availability(db, TENANT, "nope")


def test_one_live_availability_row_per_team(db, teams):
    db.add_all([TeamAvailability(tenant_id=TENANT, team_id="19"), TeamAvailability(tenant_id=TENANT, team_id="19")])
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()

    db.add_all([TeamAvailability(tenant_id=TENANT, team_id="19", is_deleted=True), TeamAvailability(tenant_id=TENANT, team_id="19")])
    db.commit()
    assert db.query(TeamAvailability).count() == 2


def test_sync_retries_as_update_when_row_appears_concurrently(db, other_db, teams, monkeypatch):
    availability.sync_availability(other_db, TENANT, "19", "active", team_name="Alpha Crew")

    lookup = availability._live_availability
    calls = []

    def first_lookup_misses(*args):
        calls.append(args)
        return None if len(calls) == 1 else lookup(*args)

    monkeypatch.setattr(availability, "_live_availability", first_lookup_misses)
    row = availability.sync_availability(db, TENANT, "19", "break")

    assert row is not None
    assert len(calls) == 2
    rows = db.query(TeamAvailability).filter_by(tenant_id=TENANT, team_id="19").all()
    assert len(rows) == 1
    assert rows[0].status == "break"
    assert rows[0].team_name == "Alpha Crew"
