"""
Route progress tracking.
One route per (tenant, canonical team, local calendar day). Stop statuses are re-derived from
the caller's counters on every advance, so repeated calls with the same counters are no-ops
apart from the progress log. The stored completed_count is always the number of stops whose
status is completed.
"""
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..config import settings
from ..errors import (
    CollaboratorUnavailable,
    ConcurrencyConflict,
    InvalidRouteTransition,
    RecordNotFound,
    TeamNotFound,
)
from ..models.models import RouteProgress, TeamLocation
from ..schemas.team_locations import CanonicalTeam, RouteStatus, StopStatus, TERMINAL_STOP_STATUSES
from .audit import compute_diff, record_event
from .identity import candidate_keys, resolve_team
from .task_source import TaskSource, get_task_source
from .time_rules import combine_local, format_clock, local_date, parse_timestamp, utcnow


logger = structlog.get_logger(__name__)

# Per-stop fields that carry execution state across a re-seed
STOP_STATE_FIELDS = ("status", "actual_start", "actual_end", "actual_duration", "delay_reasons")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def seed_stops(task_ids: List[str], tasks: Dict[str, Dict[str, Any]], route_date: date) -> List[Dict[str, Any]]:
    """
    Build the stop list in the given order.
    The first stop starts at the configured day-start hour (local); every next stop starts
    when the previous one is estimated to end.
    """
    cursor = combine_local(route_date, time(settings.route_day_start_hour, 0))
    stops = []
    for index, task_id in enumerate(task_ids):
        task = tasks.get(str(task_id))
        duration = (task or {}).get("estimated_duration") or settings.default_stop_duration_min
        if task and task.get("latitude") is not None and task.get("longitude") is not None:
            location = {"latitude": task["latitude"], "longitude": task["longitude"], "address": task.get("address")}
        else:
            location = {"latitude": 0, "longitude": 0, "address": None}

        end = cursor + timedelta(minutes=duration)
        stops.append({
            "task_id": str(task_id),
            "scheduled_order": index,
            "location": location,
            "estimated_start": cursor.isoformat(),
            "estimated_end": end.isoformat(),
            "actual_start": None,
            "actual_end": None,
            "status": StopStatus.pending.value,
            "estimated_duration": duration,
            "actual_duration": None,
            "delay_reasons": [],
        })
        cursor = end
    return stops


def derive_stop_statuses(
    stops: List[Dict[str, Any]],
    current_index: int,
    completed_count: int,
    now: datetime,
) -> List[Dict[str, Any]]:
    """
    Re-derive every stop's status from the two counters.

    index < completed_count is completed, index == current_index is in progress, the rest
    pending. Stops closed as skipped or cancelled keep that status. actual_start/actual_end
    are stamped only when missing. Returns new stop dicts; the input is not modified.
    """
    derived = []
    for index, stop in enumerate(stops):
        stop = dict(stop)
        if stop.get("status") in (StopStatus.skipped.value, StopStatus.cancelled.value):
            derived.append(stop)
            continue

        if index < completed_count:
            stop["status"] = StopStatus.completed.value
            if not stop.get("actual_end"):
                stop["actual_end"] = now.isoformat()
            started = parse_timestamp(stop.get("actual_start"))
            ended = parse_timestamp(stop.get("actual_end"))
            if started and ended and stop.get("actual_duration") is None:
                stop["actual_duration"] = max(0, round((ended - started).total_seconds() / 60))
        elif index == current_index:
            stop["status"] = StopStatus.in_progress.value
            if not stop.get("actual_start"):
                stop["actual_start"] = now.isoformat()
        else:
            stop["status"] = StopStatus.pending.value
        derived.append(stop)
    return derived


def count_completed(stops: List[Dict[str, Any]]) -> int:
    return sum(1 for s in stops if s.get("status") == StopStatus.completed.value)


def derive_route_status(stops: List[Dict[str, Any]]) -> str:
    """A route is completed once every stop is closed as completed, skipped or cancelled."""
    if all(s.get("status") in TERMINAL_STOP_STATUSES for s in stops):
        return RouteStatus.completed.value
    return RouteStatus.in_progress.value


def _reconcile_stops(
    stops: List[Dict[str, Any]],
    task_ids: List[str],
    tasks: Dict[str, Dict[str, Any]],
    route_date: date,
) -> List[Dict[str, Any]]:
    """Re-seed for a changed task sequence, keeping execution state of stops that remain."""
    previous = {s["task_id"]: s for s in stops}
    reconciled = []
    for stop in seed_stops(task_ids, tasks, route_date):
        old = previous.get(stop["task_id"])
        if old:
            stop.update({field: old.get(field) for field in STOP_STATE_FIELDS})
            stop["location"] = old.get("location", stop["location"])
            stop["estimated_duration"] = old.get("estimated_duration", stop["estimated_duration"])
        reconciled.append(stop)
    return reconciled


def _progress_entry(now: datetime, location: Dict[str, Any], status: str, notes: Optional[str] = None) -> Dict[str, Any]:
    return {
        "timestamp": now.isoformat(),
        "location": location,
        "status": status,
        "notes": notes,
    }


def _append_progress(route: RouteProgress, entry: Dict[str, Any]) -> None:
    updates = list(route.progress_updates or [])
    updates.append(entry)
    if settings.route_progress_log_max > 0:
        updates = updates[-settings.route_progress_log_max:]
    route.progress_updates = updates


def _last_known_location(db: Session, tenant_id: str, team: CanonicalTeam) -> Dict[str, Any]:
    record = (
        db.query(TeamLocation)
        .filter(
            TeamLocation.tenant_id == tenant_id,
            TeamLocation.team_id == team.canonical_id,
            TeamLocation.is_deleted.is_(False),
        )
        .first()
    )
    if record is None:
        return {"latitude": 0, "longitude": 0}
    return {"latitude": record.latitude, "longitude": record.longitude}


def _load_route(db: Session, tenant_id: str, team_id: str, route_date: date) -> Optional[RouteProgress]:
    return (
        db.query(RouteProgress)
        .filter(
            RouteProgress.tenant_id == tenant_id,
            RouteProgress.team_id == team_id,
            RouteProgress.route_date == route_date,
            RouteProgress.is_deleted.is_(False),
        )
        .first()
    )


def _commit(db: Session, route: RouteProgress, team_id: str) -> None:
    try:
        db.commit()
    except (StaleDataError, IntegrityError) as e:
        db.rollback()
        logger.warning("route_progress_conflict", team_id=team_id, error=str(e))
        raise ConcurrencyConflict(f"Route for team {team_id} was modified concurrently") from e
    db.refresh(route)


def _audit_values(route: RouteProgress) -> Dict[str, Any]:
    return {
        "current_stop_index": route.current_stop_index,
        "completed_count": route.completed_count,
        "route_status": route.route_status,
    }


def serialize_route(route: RouteProgress) -> Dict[str, Any]:
    total = len(route.stops or [])
    return {
        "id": str(route.id),
        "team_id": route.team_id,
        "team_name": route.team_name,
        "route_date": route.route_date.isoformat(),
        "route_status": route.route_status,
        "current_stop_index": route.current_stop_index,
        "completed_count": route.completed_count,
        "total_stops": total,
        "progress_percentage": round(route.completed_count / total * 100) if total else 0,
        "stops": list(route.stops or []),
        "route_start_time": _iso(route.route_start_time),
        "route_end_time": _iso(route.route_end_time),
        "estimated_completion_time": _iso(route.estimated_completion_time),
        "total_estimated_duration": route.total_estimated_duration,
        "progress_updates": list(route.progress_updates or []),
        "version": route.version,
    }


def advance_route(
    db: Session,
    tenant_id: str,
    team_ref: str,
    task_ids: List[str],
    current_index: int,
    completed_count: int,
    route_date: Optional[date] = None,
    location: Optional[Dict[str, Any]] = None,
    task_source: Optional[TaskSource] = None,
    actor_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Bring the team's route for the day in line with the caller's counters.

    Creates and seeds the route on first call. Every call appends one progress entry.
    Advancing a paused route resumes it.

    Raises:
        TeamNotFound: when the reference does not resolve
        InvalidRouteTransition: when the route is cancelled or a counter is out of range
        ConcurrencyConflict: when another writer updated the same route first
    """
    total = len(task_ids)
    if not (0 <= completed_count <= total) or not (0 <= current_index <= total):
        raise InvalidRouteTransition(
            f"Counters out of range: current_index={current_index}, completed={completed_count}, stops={total}"
        )

    try:
        team = resolve_team(db, tenant_id, team_ref)
    except TeamNotFound as e:
        record_event(
            db,
            entity_type="route_progress",
            entity_id=team_ref,
            action="route_progress_tracked",
            tenant_id=tenant_id,
            actor_id=actor_id,
            source="api",
            success=False,
            error_message=e.detail,
            context={"task_ids": task_ids, "current_index": current_index, "completed_count": completed_count},
        )
        raise

    now = utcnow()
    day = route_date or local_date(now)
    route = _load_route(db, tenant_id, team.canonical_id, day)
    task_ids = [str(t) for t in task_ids]

    if route is not None and route.route_status == RouteStatus.cancelled.value:
        raise InvalidRouteTransition(f"Route for team {team.canonical_id} on {day.isoformat()} is cancelled")

    stored_ids = [s["task_id"] for s in route.stops or []] if route is not None else None
    tasks: Dict[str, Dict[str, Any]] = {}
    if stored_ids != task_ids:
        if task_source is None:
            task_source = get_task_source(db)
        try:
            tasks = task_source.tasks_by_id(tenant_id, task_ids)
        except CollaboratorUnavailable:
            logger.warning("route_seed_without_tasks", tenant_id=tenant_id, team_id=team.canonical_id)

    created = route is None
    before = {} if created else _audit_values(route)
    previous_counters = None if created else (route.current_stop_index, route.completed_count)

    if created:
        stops = seed_stops(task_ids, tasks, day)
        route = RouteProgress(
            tenant_id=tenant_id,
            team_id=team.canonical_id,
            team_name=team.name,
            route_date=day,
            route_start_time=now,
            progress_updates=[],
        )
        db.add(route)
    else:
        stops = list(route.stops or [])
        if stored_ids != task_ids:
            stops = _reconcile_stops(stops, task_ids, tasks, day)
            previous_counters = None

    # Skipped and cancelled stops keep their status, so the stored count can trail the reported one
    stops = derive_stop_statuses(stops, current_index, completed_count, now)
    done = count_completed(stops)
    counters_changed = previous_counters != (current_index, done)

    route.stops = stops
    route.current_stop_index = current_index
    route.completed_count = done
    route.route_status = derive_route_status(stops)
    route.total_estimated_duration = sum(s.get("estimated_duration") or 0 for s in stops)
    if route.route_status == RouteStatus.completed.value and route.route_end_time is None:
        route.route_end_time = now
    if counters_changed or route.estimated_completion_time is None:
        remaining = sum(1 for s in stops if s.get("status") not in TERMINAL_STOP_STATUSES)
        route.estimated_completion_time = now + timedelta(minutes=remaining * settings.default_stop_duration_min)
    route.updated_at = now

    if location:
        entry_location = {"latitude": location.get("lat"), "longitude": location.get("lng")}
    else:
        entry_location = _last_known_location(db, tenant_id, team)
    _append_progress(route, _progress_entry(now, entry_location, f"{done}/{total} tasks completed"))

    _commit(db, route, team.canonical_id)

    after = _audit_values(route)
    record_event(
        db,
        entity_type="route_progress",
        entity_id=str(route.id),
        action="route_progress_tracked",
        tenant_id=tenant_id,
        actor_id=actor_id,
        source="api",
        changes_json=compute_diff(before, after),
        context={
            "team_id": team.canonical_id,
            "team_name": team.name,
            "route_date": day.isoformat(),
            "total_tasks": total,
            "current_index": current_index,
            "reported_completed": completed_count,
            "completed_count": done,
            "progress_percentage": round(done / total * 100) if total else 0,
            "route_status": route.route_status,
            "estimated_completion": _iso(route.estimated_completion_time),
        },
    )

    logger.info(
        "route_progress_tracked",
        tenant_id=tenant_id,
        team_id=team.canonical_id,
        route_date=day.isoformat(),
        completed=done,
        total=total,
    )
    return serialize_route(route)


def _transition(
    db: Session,
    tenant_id: str,
    team_ref: str,
    route_date: Optional[date],
    action: str,
    mutate: Callable[[RouteProgress, datetime], str],
    actor_id: Optional[str] = None,
) -> Dict[str, Any]:
    team = resolve_team(db, tenant_id, team_ref)
    now = utcnow()
    day = route_date or local_date(now)
    route = _load_route(db, tenant_id, team.canonical_id, day)
    if route is None:
        raise RecordNotFound(f"No route for team {team.canonical_id} on {day.isoformat()}")

    before = _audit_values(route)
    note = mutate(route, now)
    route.updated_at = now
    _append_progress(route, _progress_entry(now, _last_known_location(db, tenant_id, team), route.route_status, note))
    _commit(db, route, team.canonical_id)

    record_event(
        db,
        entity_type="route_progress",
        entity_id=str(route.id),
        action=action,
        tenant_id=tenant_id,
        actor_id=actor_id,
        source="api",
        changes_json=compute_diff(before, _audit_values(route)),
        context={"team_id": team.canonical_id, "route_date": day.isoformat(), "notes": note},
    )
    logger.info(action, tenant_id=tenant_id, team_id=team.canonical_id, route_date=day.isoformat())
    return serialize_route(route)


def pause_route(db: Session, tenant_id: str, team_ref: str, route_date: Optional[date] = None,
                reason: Optional[str] = None, actor_id: Optional[str] = None) -> Dict[str, Any]:
    def mutate(route: RouteProgress, now: datetime) -> str:
        if route.route_status != RouteStatus.in_progress.value:
            raise InvalidRouteTransition(f"Cannot pause a {route.route_status} route")
        route.route_status = RouteStatus.paused.value
        return reason or "Route paused"

    return _transition(db, tenant_id, team_ref, route_date, "route_paused", mutate, actor_id)


def resume_route(db: Session, tenant_id: str, team_ref: str, route_date: Optional[date] = None,
                 actor_id: Optional[str] = None) -> Dict[str, Any]:
    def mutate(route: RouteProgress, now: datetime) -> str:
        if route.route_status != RouteStatus.paused.value:
            raise InvalidRouteTransition(f"Cannot resume a {route.route_status} route")
        route.route_status = RouteStatus.in_progress.value
        return "Route resumed"

    return _transition(db, tenant_id, team_ref, route_date, "route_resumed", mutate, actor_id)


def cancel_route(db: Session, tenant_id: str, team_ref: str, route_date: Optional[date] = None,
                 reason: Optional[str] = None, actor_id: Optional[str] = None) -> Dict[str, Any]:
    """Cancel the day's route; every stop still open is cancelled with it."""
    def mutate(route: RouteProgress, now: datetime) -> str:
        if route.route_status in (RouteStatus.completed.value, RouteStatus.cancelled.value):
            raise InvalidRouteTransition(f"Cannot cancel a {route.route_status} route")
        stops = []
        for stop in route.stops or []:
            stop = dict(stop)
            if stop.get("status") not in TERMINAL_STOP_STATUSES:
                stop["status"] = StopStatus.cancelled.value
                stop["actual_end"] = stop.get("actual_end") or now.isoformat()
            stops.append(stop)
        route.stops = stops
        route.route_status = RouteStatus.cancelled.value
        route.route_end_time = now
        return reason or "Route cancelled"

    return _transition(db, tenant_id, team_ref, route_date, "route_cancelled", mutate, actor_id)


def close_stop(
    db: Session,
    tenant_id: str,
    team_ref: str,
    task_id: str,
    status: str,
    reason: Optional[str] = None,
    delay_minutes: Optional[int] = None,
    route_date: Optional[date] = None,
    actor_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Close an open stop as skipped or cancelled, recording why.

    Raises:
        RecordNotFound: when the route or the stop does not exist
        InvalidRouteTransition: when the stop is already closed or the route is cancelled
    """
    status = getattr(status, "value", status)
    if status not in (StopStatus.skipped.value, StopStatus.cancelled.value):
        raise InvalidRouteTransition(f"Stops can only be closed as skipped or cancelled, not {status}")

    def mutate(route: RouteProgress, now: datetime) -> str:
        if route.route_status == RouteStatus.cancelled.value:
            raise InvalidRouteTransition("Route is cancelled")
        stops = [dict(s) for s in route.stops or []]
        stop = next((s for s in stops if s["task_id"] == str(task_id)), None)
        if stop is None:
            raise RecordNotFound(f"Stop {task_id} is not on this route")
        if stop.get("status") in TERMINAL_STOP_STATUSES:
            raise InvalidRouteTransition(f"Stop {task_id} is already {stop['status']}")

        stop["status"] = status
        stop["actual_end"] = now.isoformat()
        stop["delay_reasons"] = list(stop.get("delay_reasons") or []) + [{
            "reason": reason or status,
            "minutes": delay_minutes,
            "recorded_at": now.isoformat(),
        }]
        route.stops = stops
        route.completed_count = count_completed(stops)
        if derive_route_status(stops) == RouteStatus.completed.value:
            route.route_status = RouteStatus.completed.value
            route.route_end_time = now
        return f"Stop {task_id} {status}" + (f": {reason}" if reason else "")

    return _transition(db, tenant_id, team_ref, route_date, "route_stop_closed", mutate, actor_id)


def get_route_summary(db: Session, tenant_id: str, team_keys: List[str], day: date) -> Optional[Dict[str, Any]]:
    """Compact progress of the team's route for a day, or None when there is no route."""
    routes = (
        db.query(RouteProgress)
        .filter(
            RouteProgress.tenant_id == tenant_id,
            RouteProgress.team_id.in_(team_keys),
            RouteProgress.route_date == day,
            RouteProgress.is_deleted.is_(False),
        )
        .all()
    )
    if not routes:
        return None
    route = min(routes, key=lambda r: team_keys.index(r.team_id))
    return {
        "current_stop_index": route.current_stop_index,
        "total_stops": len(route.stops or []),
        "completed_count": route.completed_count,
        "route_status": route.route_status,
        "estimated_completion": format_clock(route.estimated_completion_time) or "Unknown",
    }


def get_route(db: Session, tenant_id: str, team_ref: str, route_date: Optional[date] = None) -> Dict[str, Any]:
    team = resolve_team(db, tenant_id, team_ref)
    day = route_date or local_date(utcnow())
    routes = (
        db.query(RouteProgress)
        .filter(
            RouteProgress.tenant_id == tenant_id,
            RouteProgress.team_id.in_(candidate_keys(team, team_ref)),
            RouteProgress.route_date == day,
            RouteProgress.is_deleted.is_(False),
        )
        .all()
    )
    if not routes:
        raise RecordNotFound(f"No route for team {team.canonical_id} on {day.isoformat()}")
    return serialize_route(routes[0])
