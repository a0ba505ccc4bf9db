"""
Availability engine.
Combines a team's location status with its task load into today's status, a 7-day outlook
and trailing performance metrics. Task lookups go through a TaskSource; when it is
unavailable every task-derived figure falls back to zero.
"""
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import CollaboratorUnavailable
from ..models.models import TeamAvailability, TeamLocation
from ..schemas.team_locations import (
    AvailabilityStatus,
    CanonicalTeam,
    OPEN_TASK_STATUSES,
    TaskStatus,
    TeamLocationStatus,
)
from .audit import record_event
from .identity import candidate_keys, list_teams, resolve_team
from .task_source import TaskSource, get_task_source
from .time_rules import combine_local, local_date, local_day_bounds, parse_clock, utcnow


logger = structlog.get_logger(__name__)

# Today's derived status
STATUS_AVAILABLE = "available"
STATUS_BUSY = "busy"
STATUS_OFFLINE = "offline"
STATUS_UNAVAILABLE = "unavailable"

# Day classification in the weekly outlook
DAY_BUSY = "busy"
DAY_SCHEDULED = "scheduled"
DAY_AVAILABLE = "available"

UPCOMING_STATUSES = OPEN_TASK_STATUSES + (TaskStatus.in_progress.value,)
DAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

STATUS_EXPLANATIONS = {
    STATUS_BUSY: "High workload ({utilization}% capacity)",
    STATUS_OFFLINE: "Team is offline or inactive",
    STATUS_UNAVAILABLE: "Team is on break",
}


def map_location_status(location_status: Optional[str]) -> str:
    """Cached availability status for a location status."""
    location_status = getattr(location_status, "value", location_status)
    if location_status == TeamLocationStatus.active.value:
        return AvailabilityStatus.available.value
    if location_status == TeamLocationStatus.on_break.value:
        return AvailabilityStatus.on_break.value
    if location_status == TeamLocationStatus.emergency.value:
        return AvailabilityStatus.emergency.value
    return AvailabilityStatus.offline.value


def _live_availability(db: Session, tenant_id: str, team_id: str) -> Optional[TeamAvailability]:
    return (
        db.query(TeamAvailability)
        .filter(
            TeamAvailability.tenant_id == tenant_id,
            TeamAvailability.team_id == team_id,
            TeamAvailability.is_deleted.is_(False),
        )
        .first()
    )


def _write_availability(
    db: Session,
    tenant_id: str,
    team_id: str,
    status: str,
    team_name: Optional[str],
    now: datetime,
) -> TeamAvailability:
    row = _live_availability(db, tenant_id, team_id)
    if row is None:
        row = TeamAvailability(tenant_id=tenant_id, team_id=team_id, team_name=team_name)
        db.add(row)
    row.status = status
    row.status_since = now
    row.last_status_update = now
    if team_name:
        row.team_name = team_name
    db.commit()
    return row


def sync_availability(
    db: Session,
    tenant_id: str,
    team_id: str,
    location_status: Optional[str],
    team_name: Optional[str] = None,
) -> Optional[TeamAvailability]:
    """
    Upsert the team's cached availability after a location status change.
    When another writer inserts the live row first, the write is retried once as an update.
    Failures are logged and rolled back; the location write has already committed.
    """
    now = utcnow()
    status = map_location_status(location_status)
    try:
        try:
            row = _write_availability(db, tenant_id, team_id, status, team_name, now)
        except IntegrityError:
            db.rollback()
            logger.info("availability_sync_retry", tenant_id=tenant_id, team_id=team_id)
            row = _write_availability(db, tenant_id, team_id, status, team_name, now)
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("availability_sync_failed", tenant_id=tenant_id, team_id=team_id, error=str(e))
        return None

    logger.info("availability_synced", tenant_id=tenant_id, team_id=team_id, status=status)
    return row


def _task_day(task: Dict[str, Any]) -> Optional[date]:
    if not task.get("scheduled_date"):
        return None
    return local_date(task["scheduled_date"])


def _count(tasks: List[Dict[str, Any]], *statuses: str) -> int:
    return sum(1 for t in tasks if t.get("status") in statuses)


def today_availability(
    team: CanonicalTeam,
    location_status: Optional[str],
    tasks: List[Dict[str, Any]],
    max_capacity: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Today's status from the location status and today's task load.

    Priority: break is unavailable, offline/inactive (or no record) is offline,
    active at or above the busy threshold is busy, active is available, emergency is unavailable.
    """
    working_hours = {
        "start": (team.working_hours or {}).get("start") or settings.working_hours_start,
        "end": (team.working_hours or {}).get("end") or settings.working_hours_end,
    }
    scheduled = len(tasks)
    completed = _count(tasks, TaskStatus.completed.value)
    in_progress = _count(tasks, TaskStatus.in_progress.value)
    max_capacity = max_capacity or team.max_daily_capacity or settings.default_max_daily_capacity
    utilization = round(scheduled / max_capacity * 100)

    location_status = getattr(location_status, "value", location_status)
    if location_status == TeamLocationStatus.on_break.value:
        status = STATUS_UNAVAILABLE
    elif location_status in (None, TeamLocationStatus.offline.value, TeamLocationStatus.inactive.value):
        status = STATUS_OFFLINE
    elif location_status == TeamLocationStatus.active.value:
        status = STATUS_BUSY if utilization >= settings.busy_utilization_pct else STATUS_AVAILABLE
    elif location_status == TeamLocationStatus.emergency.value:
        status = STATUS_UNAVAILABLE
    else:
        status = STATUS_OFFLINE

    if status == STATUS_AVAILABLE:
        if scheduled > 0:
            explanation = f"Working within capacity ({utilization}% utilized)"
        else:
            explanation = "Available for new assignments"
    elif location_status == TeamLocationStatus.emergency.value:
        explanation = "Team reported an emergency"
    else:
        explanation = STATUS_EXPLANATIONS[status].format(utilization=utilization)

    return {
        "status": status,
        "status_explanation": explanation,
        "working_hours": working_hours,
        "scheduled_tasks": scheduled,
        "completed_tasks": completed,
        "in_progress_tasks": in_progress,
        "current_capacity": scheduled,
        "max_capacity": max_capacity,
        "utilization_percentage": utilization,
        "workload_summary": {
            "total": scheduled,
            "completed": completed,
            "in_progress": in_progress,
            "pending": scheduled - completed - in_progress,
        },
    }


def week_availability(tasks: List[Dict[str, Any]], start_day: date) -> List[Dict[str, Any]]:
    """Seven consecutive local days starting at start_day."""
    by_day: Dict[date, List[Dict[str, Any]]] = defaultdict(list)
    for task in tasks:
        day = _task_day(task)
        if day is not None:
            by_day[day].append(task)

    week = []
    for offset in range(7):
        day = start_day + timedelta(days=offset)
        day_tasks = by_day.get(day, [])
        in_progress = _count(day_tasks, TaskStatus.in_progress.value)
        completed = _count(day_tasks, TaskStatus.completed.value)
        pending = _count(day_tasks, *OPEN_TASK_STATUSES)

        if in_progress > 0:
            status = DAY_BUSY
        elif pending > 0:
            status = DAY_SCHEDULED
        elif day_tasks and completed == 0:
            # Only cancelled work left on the day
            status = DAY_SCHEDULED
        else:
            status = DAY_AVAILABLE

        hours = sum((t.get("estimated_duration") or settings.default_stop_duration_min) / 60 for t in day_tasks)
        week.append({
            "date": day.isoformat(),
            "day_of_week": DAY_NAMES[day.weekday()],
            "status": status,
            "scheduled_hours": round(hours, 1),
            "tasks": len(day_tasks),
            "task_breakdown": {
                "total": len(day_tasks),
                "completed": completed,
                "in_progress": in_progress,
                "pending": pending,
            },
        })
    return week


def _scheduled_start(task: Dict[str, Any]) -> datetime:
    day = local_date(task["scheduled_date"])
    clock = parse_clock(task.get("time_window_start")) or parse_clock(task.get("scheduled_time")) or time(9, 0)
    return combine_local(day, clock)


def performance_metrics(tasks: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Efficiency, completion rate, response time and rating over the given tasks.
    Every metric is 0 when nothing qualifies.
    """
    completed = [t for t in tasks if t.get("status") == TaskStatus.completed.value]
    completion_rate = len(completed) / len(tasks) * 100 if tasks else 0

    readings = [
        min(settings.efficiency_cap_pct, t["estimated_duration"] / t["actual_duration"] * 100)
        for t in completed
        if t.get("estimated_duration") and t.get("actual_duration")
    ]
    efficiency = sum(readings) / len(readings) if readings else 0

    response_times = []
    for t in completed:
        if not t.get("actual_start_time") or not t.get("scheduled_date"):
            continue
        diff = abs((t["actual_start_time"] - _scheduled_start(t)).total_seconds()) / 60
        response_times.append(min(settings.response_time_cap_min, diff))
    response_time = sum(response_times) / len(response_times) if response_times else 0

    ratings = [t["satisfaction_rating"] for t in completed if t.get("satisfaction_rating")]
    rating = sum(ratings) / len(ratings) if ratings else 0

    return {
        "efficiency": round(efficiency, 1),
        "completion_rate": round(completion_rate, 1),
        "average_response_time": round(response_time),
        "rating": round(rating, 1),
    }


def _task_time(task: Dict[str, Any]) -> str:
    if task.get("time_window_start"):
        return task["time_window_start"]
    if task.get("scheduled_time"):
        return task["scheduled_time"]
    if task.get("time_window_end"):
        return f"Before {task['time_window_end']}"
    return "9:00 AM"


def upcoming_schedule(tasks: List[Dict[str, Any]], limit: int = 10) -> List[Dict[str, Any]]:
    upcoming = [t for t in tasks if t.get("status") in UPCOMING_STATUSES and t.get("scheduled_date")]
    upcoming.sort(key=lambda t: (t["scheduled_date"], t.get("scheduled_time") or ""))
    return [
        {
            "date": local_date(t["scheduled_date"]).isoformat(),
            "time": _task_time(t),
            "task": t.get("name") or t.get("description") or "Scheduled task",
            "location": t.get("address") or "Location TBD",
            "duration": round((t.get("estimated_duration") or settings.default_stop_duration_min) / 60, 1),
            "task_id": t["id"],
            "status": t.get("status"),
        }
        for t in upcoming[:limit]
    ]


def future_work(tasks: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Open work scheduled after the current 7-day window."""
    dated = sorted((t for t in tasks if t.get("scheduled_date")), key=lambda t: t["scheduled_date"])
    if not dated:
        return {"has_future_tasks": False, "future_tasks_count": 0, "next_task_date": None, "furthest_task_date": None}
    return {
        "has_future_tasks": True,
        "future_tasks_count": len(dated),
        "next_task_date": local_date(dated[0]["scheduled_date"]).isoformat(),
        "furthest_task_date": local_date(dated[-1]["scheduled_date"]).isoformat(),
    }


def recent_completed_tasks(tasks: List[Dict[str, Any]], limit: int = 3) -> List[Dict[str, Any]]:
    recent = []
    for t in tasks[:limit]:
        estimated = t.get("estimated_duration")
        actual = t.get("actual_duration")
        recent.append({
            "task_id": t["id"],
            "name": t.get("name") or t.get("description") or "Completed task",
            "description": t.get("description"),
            "completed_at": t["completed_at"].isoformat() if t.get("completed_at") else None,
            "location": t.get("address") or "Location not specified",
            "duration": actual or estimated,
            "estimated_duration": estimated,
            "actual_duration": actual,
            "satisfaction_rating": t.get("satisfaction_rating"),
            "efficiency": round(estimated / actual * 100, 1) if estimated and actual else None,
        })
    return recent


def _fetch(fetch: Callable[[], List[Dict[str, Any]]], team_id: str, what: str) -> List[Dict[str, Any]]:
    try:
        return fetch()
    except CollaboratorUnavailable as e:
        logger.warning("task_lookup_degraded", team_id=team_id, lookup=what, error=e.detail)
        return []


def team_availability_details(
    tenant_id: str,
    team: CanonicalTeam,
    record: Optional[TeamLocation],
    task_source: TaskSource,
    cached: Optional[TeamAvailability] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utcnow()
    keys = candidate_keys(team)
    today = local_date(now)
    today_start, today_end = local_day_bounds(today)
    week_end = local_day_bounds(today + timedelta(days=6))[1]
    horizon_end = local_day_bounds(today + timedelta(days=14))[1]
    team_id = team.canonical_id

    window = _fetch(lambda: task_source.tasks_between(tenant_id, keys, today_start, horizon_end), team_id, "window")
    later = _fetch(
        lambda: task_source.tasks_between(tenant_id, keys, week_end, None, statuses=UPCOMING_STATUSES),
        team_id, "future",
    )
    created = _fetch(
        lambda: task_source.tasks_created_since(tenant_id, keys, now - timedelta(days=settings.performance_window_days)),
        team_id, "performance",
    )
    completed = _fetch(
        lambda: task_source.completed_since(tenant_id, keys, now - timedelta(days=7), limit=3),
        team_id, "recent",
    )

    todays = [t for t in window if t.get("scheduled_date") and today_start <= t["scheduled_date"] < today_end]
    max_capacity = team.max_daily_capacity or (cached.max_tasks_per_day if cached else None)
    location_status = record.status if record else None

    return {
        "team_id": team_id,
        "team_name": team.name,
        "availability": {
            "today": today_availability(team, location_status, todays, max_capacity),
            "week": week_availability([t for t in window if t.get("scheduled_date") and t["scheduled_date"] < week_end], today),
            "upcoming_schedule": upcoming_schedule(window),
            "future_work": future_work(later),
            "recent_completed_tasks": recent_completed_tasks(completed),
        },
        "performance": performance_metrics(created),
        "cached_status": {
            "status": cached.status,
            "status_since": cached.status_since.isoformat() if cached.status_since else None,
        } if cached else None,
        "last_updated": (record.last_update if record else now).isoformat(),
        "emergency_contact": team.emergency_contact,
    }


def _pick(rows: List[Any], keys: List[str]) -> Optional[Any]:
    matches = [r for r in rows if r.team_id in keys]
    if not matches:
        return None
    return min(matches, key=lambda r: keys.index(r.team_id))


def get_availability(
    db: Session,
    tenant_id: str,
    team_ref: Optional[str] = None,
    task_source: Optional[TaskSource] = None,
    actor_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Availability detail for one team, or every team of the tenant with a summary.

    Raises:
        TeamNotFound: when team_ref is given and does not resolve
    """
    if task_source is None:
        task_source = get_task_source(db)
    now = utcnow()

    records = (
        db.query(TeamLocation)
        .filter(TeamLocation.tenant_id == tenant_id, TeamLocation.is_deleted.is_(False))
        .all()
    )
    cached_rows = (
        db.query(TeamAvailability)
        .filter(TeamAvailability.tenant_id == tenant_id, TeamAvailability.is_deleted.is_(False))
        .all()
    )

    if team_ref:
        team = resolve_team(db, tenant_id, team_ref)
        keys = candidate_keys(team, team_ref)
        details = team_availability_details(
            tenant_id, team, _pick(records, keys), task_source, _pick(cached_rows, keys), now,
        )
        today = details["availability"]["today"]
        record_event(
            db,
            entity_type="team_availability",
            entity_id=team.canonical_id,
            action="availability_accessed",
            tenant_id=tenant_id,
            actor_id=actor_id,
            source="api",
            context={
                "team_name": team.name,
                "current_status": today["status"],
                "scheduled_tasks": today["scheduled_tasks"],
                "completed_tasks": today["completed_tasks"],
                "utilization": today["utilization_percentage"],
                "efficiency": details["performance"]["efficiency"],
                "completion_rate": details["performance"]["completion_rate"],
                "has_emergency_contact": bool(team.emergency_contact),
            },
        )
        return details

    teams = []
    for team in list_teams(db, tenant_id):
        keys = candidate_keys(team)
        record = _pick(records, keys)
        details = team_availability_details(tenant_id, team, record, task_source, _pick(cached_rows, keys), now)
        teams.append({
            **details,
            "available": bool(record and record.status == TeamLocationStatus.active.value),
            "status": record.status if record else TeamLocationStatus.offline.value,
            "location": {"lat": record.latitude, "lng": record.longitude, "address": record.address} if record else None,
        })

    def with_status(status: str) -> int:
        return sum(1 for t in teams if t["availability"]["today"]["status"] == status)

    summary = {
        "total_teams": len(teams),
        "available_teams": with_status(STATUS_AVAILABLE),
        "busy_teams": with_status(STATUS_BUSY),
        "offline_teams": with_status(STATUS_OFFLINE),
        "teams_with_emergency_contact": sum(1 for t in teams if (t["emergency_contact"] or {}).get("phone")),
    }

    record_event(
        db,
        entity_type="team_availability",
        entity_id=None,
        action="availability_accessed",
        tenant_id=tenant_id,
        actor_id=actor_id,
        source="api",
        context=summary,
    )
    return {"teams": teams, "summary": summary}
