"""
Location store.
One live record per (tenant, canonical team) holding the current fix and a bounded
history of prior fixes. Writes are read-modify-write guarded by the record's version.
"""
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..config import settings
from ..errors import CollaboratorUnavailable, ConcurrencyConflict, RecordNotFound, TeamNotFound
from ..models.models import TeamAvailability, TeamLocation
from ..schemas.team_locations import (
    CanonicalTeam,
    ConnectivityStatus,
    PositionFix,
    TeamLocationStatus,
    UpdateResult,
)
from .audit import compute_diff, record_event
from .availability import sync_availability
from .geo import haversine_km, initial_bearing, speed_kmh, validate_coordinates
from .identity import candidate_keys, list_teams, resolve_team
from .route_progress import get_route_summary
from .task_source import TaskSource, get_task_source
from .time_rules import local_date, parse_timestamp, to_naive_utc, utcnow


logger = structlog.get_logger(__name__)

PLACEHOLDER_ADDRESS = "Location not available"


def _enum_value(value):
    return getattr(value, "value", value)


def _history_entry(timestamp: datetime, latitude: float, longitude: float, accuracy: Optional[float]) -> Dict[str, Any]:
    return {
        "timestamp": timestamp.isoformat(),
        "latitude": latitude,
        "longitude": longitude,
        "accuracy": accuracy,
    }


def _audit_values(record: TeamLocation) -> Dict[str, Any]:
    return {
        "location": {
            "latitude": record.latitude,
            "longitude": record.longitude,
            "address": record.address,
        },
        "status": record.status,
        "battery_level": record.battery_level,
        "connectivity": record.connectivity,
    }


def derive_motion(history: List[Dict[str, Any]], index: int) -> Tuple[Optional[float], Optional[float]]:
    """
    Speed (km/h, 1 decimal) and heading (degrees [0, 360)) between fix `index` and its
    predecessor in a chronologically ascending list of fixes.
    Both are None when there is no predecessor or no elapsed time between the two.
    """
    if index < 1 or index >= len(history):
        return None, None

    previous = history[index - 1]
    current = history[index]
    prev_ts = parse_timestamp(previous.get("timestamp"))
    curr_ts = parse_timestamp(current.get("timestamp"))
    if prev_ts is None or curr_ts is None:
        return None, None

    elapsed = (curr_ts - prev_ts).total_seconds()
    if elapsed <= 0:
        return None, None

    distance = haversine_km(previous["latitude"], previous["longitude"], current["latitude"], current["longitude"])
    speed = speed_kmh(distance, elapsed)
    heading = initial_bearing(previous["latitude"], previous["longitude"], current["latitude"], current["longitude"])
    return round(speed, 1), round(heading) % 360


def apply_position(
    record: TeamLocation,
    fix: PositionFix,
    now: datetime,
    status: Optional[str] = None,
    connectivity: Optional[str] = None,
    battery_level: Optional[int] = None,
    current_task_id: Optional[str] = None,
    device_id: Optional[str] = None,
    app_version: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Move an existing record to a new fix.

    The previous current fix is pushed onto the history, stamped with its own update time,
    and the oldest entries are evicted past history_max_entries. The address belongs to the
    fix and is cleared when the fix carries none. Other optional fields are only touched when
    supplied. Nothing is flushed; the caller owns the transaction.

    Returns:
        Dict with status_changed, changed_fields and before/after audit values
    """
    before = _audit_values(record)
    fix_time = to_naive_utc(fix.timestamp) if fix.timestamp else now

    history = list(record.location_history or [])
    history.append(_history_entry(record.last_update, record.latitude, record.longitude, record.accuracy))
    if len(history) > settings.history_max_entries:
        history = history[-settings.history_max_entries:]
    record.location_history = history

    record.latitude = fix.lat
    record.longitude = fix.lng
    record.address = fix.address
    record.accuracy = fix.accuracy
    record.altitude = fix.altitude
    record.speed = fix.speed
    record.heading = fix.heading
    record.last_update = fix_time

    status_changed = False
    status = _enum_value(status)
    if status is not None and status != record.status:
        record.status = status
        record.status_changed_at = now
        status_changed = True

    connectivity = _enum_value(connectivity)
    if connectivity is not None:
        record.connectivity = connectivity
    if battery_level is not None:
        record.battery_level = battery_level
    if current_task_id is not None:
        record.current_task_id = current_task_id
    if device_id is not None:
        record.device_id = device_id
    if app_version is not None:
        record.app_version = app_version
    if metadata is not None:
        record.extra = {**(record.extra or {}), **metadata}

    after = _audit_values(record)
    return {
        "status_changed": status_changed,
        "changed_fields": sorted(compute_diff(before, after).keys()),
        "before": before,
        "after": after,
    }


def _new_record(
    tenant_id: str,
    team: CanonicalTeam,
    fix: PositionFix,
    now: datetime,
    status: Optional[str],
    connectivity: Optional[str],
    battery_level: Optional[int],
    current_task_id: Optional[str],
    device_id: Optional[str],
    app_version: Optional[str],
    metadata: Optional[Dict[str, Any]],
) -> TeamLocation:
    return TeamLocation(
        tenant_id=tenant_id,
        team_id=team.canonical_id,
        team_name=team.name,
        latitude=fix.lat,
        longitude=fix.lng,
        address=fix.address,
        accuracy=fix.accuracy,
        altitude=fix.altitude,
        speed=fix.speed,
        heading=fix.heading,
        status=_enum_value(status) or TeamLocationStatus.active.value,
        connectivity=_enum_value(connectivity) or ConnectivityStatus.online.value,
        battery_level=battery_level,
        current_task_id=current_task_id,
        device_id=device_id,
        app_version=app_version,
        location_history=[],
        extra=dict(metadata or {}),
        last_update=to_naive_utc(fix.timestamp) if fix.timestamp else now,
        status_changed_at=now if status is not None else None,
    )


def find_live_record(db: Session, tenant_id: str, keys: List[str]) -> Optional[TeamLocation]:
    """Live record stored under any of the keys, the canonical (first) key preferred."""
    records = (
        db.query(TeamLocation)
        .filter(
            TeamLocation.tenant_id == tenant_id,
            TeamLocation.team_id.in_(keys),
            TeamLocation.is_deleted.is_(False),
        )
        .all()
    )
    if not records:
        return None
    records.sort(key=lambda r: (keys.index(r.team_id), -r.last_update.timestamp()))
    return records[0]


def update_position(
    db: Session,
    tenant_id: str,
    team_ref: str,
    fix: PositionFix,
    status: Optional[str] = None,
    connectivity: Optional[str] = None,
    battery_level: Optional[int] = None,
    current_task_id: Optional[str] = None,
    device_id: Optional[str] = None,
    app_version: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    actor_id: Optional[str] = None,
) -> UpdateResult:
    """
    Record a position report for a team.

    Raises:
        InvalidCoordinates: before anything is read or written
        TeamNotFound: when the reference does not resolve within the tenant
        ConcurrencyConflict: when another writer updated the same record first
    """
    validate_coordinates(fix.lat, fix.lng)

    try:
        team = resolve_team(db, tenant_id, team_ref)
    except TeamNotFound as e:
        record_event(
            db,
            entity_type="team_location",
            entity_id=team_ref,
            action="location_updated",
            tenant_id=tenant_id,
            actor_id=actor_id,
            source="api",
            success=False,
            error_message=e.detail,
            context={"requested_team_id": team_ref, "coordinates": {"lat": fix.lat, "lng": fix.lng}},
        )
        raise

    now = utcnow()
    record = find_live_record(db, tenant_id, [team.canonical_id])
    created = record is None

    if created:
        previous_fix = None
        record = _new_record(
            tenant_id, team, fix, now, status, connectivity, battery_level,
            current_task_id, device_id, app_version, metadata,
        )
        db.add(record)
        status_changed = status is not None
        changes = {"before": {}, "after": _audit_values(record)}
        changed_fields = ["location", "status", "connectivity"]
        if battery_level is not None:
            changed_fields.append("battery_level")
    else:
        previous_fix = _history_entry(record.last_update, record.latitude, record.longitude, record.accuracy)
        outcome = apply_position(
            record, fix, now,
            status=status,
            connectivity=connectivity,
            battery_level=battery_level,
            current_task_id=current_task_id,
            device_id=device_id,
            app_version=app_version,
            metadata=metadata,
        )
        status_changed = outcome["status_changed"]
        changes = {"before": outcome["before"], "after": outcome["after"]}
        changed_fields = outcome["changed_fields"]

    if previous_fix is not None and (fix.speed is None or fix.heading is None):
        current_fix = _history_entry(record.last_update, record.latitude, record.longitude, record.accuracy)
        speed, heading = derive_motion([previous_fix, current_fix], 1)
        if fix.speed is None:
            record.speed = speed
        if fix.heading is None:
            record.heading = heading

    try:
        db.commit()
    except (StaleDataError, IntegrityError) as e:
        db.rollback()
        logger.warning("location_update_conflict", tenant_id=tenant_id, team_id=team.canonical_id, error=str(e))
        raise ConcurrencyConflict(f"Location for team {team.canonical_id} was modified concurrently") from e
    db.refresh(record)

    if status_changed:
        sync_availability(db, tenant_id, team.canonical_id, record.status, team_name=team.name)

    history_count = len(record.location_history or [])
    record_event(
        db,
        entity_type="team_location",
        entity_id=team.canonical_id,
        action="location_updated",
        tenant_id=tenant_id,
        actor_id=actor_id,
        source="api",
        changes_json={**compute_diff(changes["before"], changes["after"]), "changed_fields": changed_fields},
        context={
            "team_name": team.name,
            "coordinates": {"latitude": fix.lat, "longitude": fix.lng, "accuracy": fix.accuracy},
            "location_update": "creating_new" if created else "updating_existing",
            "status": _enum_value(status),
            "battery_level": battery_level,
            "connectivity": _enum_value(connectivity),
            "current_task_id": current_task_id,
            "device_info": {"device_id": device_id, "app_version": app_version},
            "location_history_count": history_count,
        },
    )

    logger.info(
        "location_updated",
        tenant_id=tenant_id,
        team_ref=team_ref,
        team_id=team.canonical_id,
        created=created,
        status_changed=status_changed,
    )

    return UpdateResult(
        success=True,
        message=f"Location updated for team {team.name}",
        team_id=team.canonical_id,
        created=created,
        status_changed=status_changed,
        history_count=history_count,
        speed=record.speed,
        heading=record.heading,
    )


def _members(team: CanonicalTeam) -> List[Dict[str, Any]]:
    members = []
    for m in team.members or []:
        members.append({
            "id": str(m.get("id") or ""),
            "name": m.get("name") or "Unknown",
            "role": m.get("role") or "member",
            "phone": m.get("phone"),
        })
    return members


def _emergency_contact(team: CanonicalTeam) -> Optional[Dict[str, Any]]:
    contact = team.emergency_contact
    if not contact:
        return None
    return {
        "name": contact.get("name"),
        "phone": contact.get("phone"),
        "relationship": contact.get("relationship"),
    }


def _vehicle_info(team: CanonicalTeam) -> Optional[Dict[str, Any]]:
    vehicle = team.vehicle_info
    if not vehicle:
        return None
    return {
        "type": vehicle.get("type"),
        "license_plate": vehicle.get("license_plate"),
        "fuel_level": vehicle.get("fuel_level"),
        "model": vehicle.get("model"),
        "year": vehicle.get("year"),
    }


def _placeholder(team: CanonicalTeam, now: datetime) -> Dict[str, Any]:
    return {
        "id": team.canonical_id,
        "name": team.name,
        "members": _members(team),
        "location": {"lat": 0, "lng": 0, "address": PLACEHOLDER_ADDRESS},
        "status": TeamLocationStatus.offline.value,
        "connectivity": ConnectivityStatus.offline.value,
        "last_updated": now.isoformat(),
        "has_record": False,
        "location_history": [],
        "project_name": team.project_name,
        "emergency_contact": _emergency_contact(team),
        "vehicle_info": _vehicle_info(team),
    }


def _serialize_location(record: TeamLocation, team: CanonicalTeam) -> Dict[str, Any]:
    return {
        "id": team.canonical_id,
        "name": team.name,
        "members": _members(team),
        "location": {
            "lat": record.latitude,
            "lng": record.longitude,
            "address": record.address or "Address not available",
            "accuracy": record.accuracy,
            "altitude": record.altitude,
            "speed": record.speed,
            "heading": record.heading,
        },
        "status": record.status,
        "connectivity": record.connectivity,
        "last_updated": record.last_update.isoformat(),
        "status_changed_at": record.status_changed_at.isoformat() if record.status_changed_at else None,
        "has_record": True,
        "current_task": record.current_task_id,
        "battery_level": record.battery_level,
        "location_history": list(record.location_history or []),
        "working_hours": team.working_hours,
        "device_info": {"device_id": record.device_id, "app_version": record.app_version},
        "metadata": record.extra or {},
        "project_name": team.project_name,
        "emergency_contact": _emergency_contact(team),
        "vehicle_info": _vehicle_info(team),
    }


def get_current(db: Session, tenant_id: str, team_ref: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Current location view of one team.
    A team without a record is reported offline at a placeholder location rather than raising.
    """
    team = resolve_team(db, tenant_id, team_ref)
    keys = candidate_keys(team, team_ref)
    record = find_live_record(db, tenant_id, keys)
    now = utcnow()

    if record is None:
        view = _placeholder(team, now)
    else:
        view = _serialize_location(record, team)
    view["route_progress"] = get_route_summary(db, tenant_id, keys, local_date(now))

    record_event(
        db,
        entity_type="team_location",
        entity_id=team.canonical_id,
        action="location_accessed",
        tenant_id=tenant_id,
        actor_id=actor_id,
        source="api",
        context={"has_record": view["has_record"], "status": view["status"]},
    )
    return view


def get_current_locations(
    db: Session,
    tenant_id: str,
    status: Optional[str] = None,
    project: Optional[str] = None,
    updated_since: Optional[datetime] = None,
    actor_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    One entry per roster team, placeholders included.
    status and project filter on the resulting view ("all" disables a filter);
    updated_since drops teams whose last fix is older, or who have none.
    """
    teams = list_teams(db, tenant_id)
    records = (
        db.query(TeamLocation)
        .filter(TeamLocation.tenant_id == tenant_id, TeamLocation.is_deleted.is_(False))
        .order_by(TeamLocation.last_update.desc())
        .all()
    )
    by_key: Dict[str, TeamLocation] = {}
    for r in records:
        by_key.setdefault(r.team_id, r)

    now = utcnow()
    today = local_date(now)
    status = _enum_value(status)
    since = to_naive_utc(updated_since) if updated_since else None

    results = []
    for team in teams:
        keys = candidate_keys(team)
        record = next((by_key[k] for k in keys if k in by_key), None)

        if since is not None and (record is None or record.last_update < since):
            continue
        if project and project != "all" and team.project_name != project:
            continue

        view = _serialize_location(record, team) if record else _placeholder(team, now)
        if status and status != "all" and view["status"] != status:
            continue

        view["route_progress"] = get_route_summary(db, tenant_id, keys, today)
        results.append(view)

    record_event(
        db,
        entity_type="team_location",
        entity_id=None,
        action="location_accessed",
        tenant_id=tenant_id,
        actor_id=actor_id,
        source="api",
        context={
            "teams_retrieved": len(results),
            "total_teams": len(teams),
            "active_teams": sum(1 for v in results if v["status"] == TeamLocationStatus.active.value),
            "offline_teams": sum(1 for v in results if v["status"] == TeamLocationStatus.offline.value),
            "filters": {"status": status, "project": project, "has_date_filter": since is not None},
        },
    )

    logger.info("team_locations_listed", tenant_id=tenant_id, count=len(results))
    return results


def _average_response_time(tenant_id: str, task_source: TaskSource, now: datetime) -> int:
    since = now - timedelta(days=settings.performance_window_days)
    try:
        tasks = task_source.completed_since(tenant_id, None, since, limit=50)
    except CollaboratorUnavailable:
        return 0
    durations = [t["actual_duration"] for t in tasks if t.get("actual_duration") and t["actual_duration"] > 0]
    if not durations:
        return 0
    return round(sum(durations) / len(durations))


def get_location_stats(
    db: Session,
    tenant_id: str,
    task_source: Optional[TaskSource] = None,
    actor_id: Optional[str] = None,
) -> Dict[str, Any]:
    teams = list_teams(db, tenant_id)
    records = (
        db.query(TeamLocation)
        .filter(TeamLocation.tenant_id == tenant_id, TeamLocation.is_deleted.is_(False))
        .all()
    )

    now = utcnow()
    recent_threshold = now - timedelta(hours=settings.stats_recent_hours)
    recent = [r for r in records if r.last_update > recent_threshold]

    active_teams = sum(1 for r in recent if r.status == TeamLocationStatus.active.value)
    offline_teams = max(0, len(teams) - len(recent))
    teams_on_break = sum(1 for r in records if r.status == TeamLocationStatus.on_break.value)

    accuracies = [r.accuracy for r in records if r.accuracy is not None]
    avg_accuracy = sum(accuracies) / len(accuracies) if accuracies else 0

    if task_source is None:
        task_source = get_task_source(db)

    stats = {
        "total_teams": len(teams),
        "active_teams": active_teams,
        "offline_teams": offline_teams,
        "teams_on_break": teams_on_break,
        "avg_response_time": _average_response_time(tenant_id, task_source, now),
        "coverage_areas": math.ceil(active_teams * 1.5),
        "location_accuracy_avg": round(avg_accuracy),
        "last_update_time": max(r.last_update for r in records).isoformat() if records else now.isoformat(),
    }

    record_event(
        db,
        entity_type="team_location",
        entity_id=None,
        action="location_accessed",
        tenant_id=tenant_id,
        actor_id=actor_id,
        source="api",
        context={"stats_type": "location_statistics", **stats},
    )
    return stats


def decommission_team(db: Session, tenant_id: str, team_ref: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Soft-delete the team's live location record and availability rows.

    Raises:
        RecordNotFound: when the team has no live location record
    """
    team = resolve_team(db, tenant_id, team_ref)
    keys = candidate_keys(team, team_ref)
    record = find_live_record(db, tenant_id, keys)
    if record is None:
        raise RecordNotFound(f"No location record for team {team.canonical_id}")

    now = utcnow()
    record.is_deleted = True
    record.deleted_at = now

    availability_rows = (
        db.query(TeamAvailability)
        .filter(
            TeamAvailability.tenant_id == tenant_id,
            TeamAvailability.team_id.in_(keys),
            TeamAvailability.is_deleted.is_(False),
        )
        .all()
    )
    for row in availability_rows:
        row.is_deleted = True
        row.deleted_at = now

    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        raise ConcurrencyConflict(f"Location for team {team.canonical_id} was modified concurrently") from e

    record_event(
        db,
        entity_type="team_location",
        entity_id=team.canonical_id,
        action="team_decommissioned",
        tenant_id=tenant_id,
        actor_id=actor_id,
        source="api",
        context={"record_id": str(record.id), "availability_rows": len(availability_rows)},
    )
    logger.info("team_decommissioned", tenant_id=tenant_id, team_id=team.canonical_id)

    return {"success": True, "team_id": team.canonical_id, "deleted_at": now.isoformat()}
