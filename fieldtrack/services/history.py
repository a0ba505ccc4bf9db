"""
Location history and export formatting.
"""
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import TeamLocation
from ..schemas.team_locations import ConnectivityStatus, TeamLocationStatus
from .audit import record_event
from .geo import format_coordinates
from .identity import candidate_keys, resolve_team
from .location_store import derive_motion, find_live_record, get_current_locations
from .time_rules import parse_timestamp, to_naive_utc, utc_to_local


logger = structlog.get_logger(__name__)

BATTERY_DRAIN_PER_ENTRY = 2
WORKDAY_START_HOUR = 8
WORKDAY_END_HOUR = 18


def infer_source(accuracy: Optional[float], address: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> str:
    if metadata and metadata.get("is_custom_entry"):
        return metadata.get("entry_method") or "manual"
    if accuracy and accuracy < settings.gps_accuracy_threshold_m:
        return "gps"
    if address and not accuracy:
        return "address"
    return "gps"


def _current_notes(record: TeamLocation) -> Optional[str]:
    notes = []
    if record.current_task_id:
        notes.append(f"Working on task: {record.current_task_id}")
    if record.status == TeamLocationStatus.on_break.value:
        notes.append("Team on break")
    if (record.extra or {}).get("notes"):
        notes.append(record.extra["notes"])
    if record.connectivity == ConnectivityStatus.poor.value:
        notes.append("Poor connectivity")
    return ", ".join(notes) or None


def _history_notes(entry: Dict[str, Any], timestamp: datetime, index: int) -> Optional[str]:
    notes = []
    if index == 0:
        notes.append("Recent location update")
    if entry.get("accuracy") and entry["accuracy"] > settings.low_accuracy_m:
        notes.append("Low GPS accuracy")
    hour = utc_to_local(timestamp).hour
    if hour < WORKDAY_START_HOUR or hour > WORKDAY_END_HOUR:
        notes.append("Outside working hours")
    return ", ".join(notes) or None


def interpolate_battery(current: Optional[int], index: int) -> Optional[int]:
    """Older fixes had more charge: add a fixed drain per step back, capped at 100."""
    if current is None or not index:
        return current
    return min(100, max(0, current + index * BATTERY_DRAIN_PER_ENTRY))


def _is_duplicate(a: Dict[str, Any], b: Dict[str, Any]) -> bool:
    return (
        abs(a["latitude"] - b["latitude"]) < settings.dedup_distance_deg
        and abs(a["longitude"] - b["longitude"]) < settings.dedup_distance_deg
        and abs((a["_ts"] - b["_ts"]).total_seconds()) < settings.dedup_window_s
    )


def _candidates(record: TeamLocation, start: Optional[datetime], end: Optional[datetime]) -> Iterator[Dict[str, Any]]:
    yield {
        "id": f"current-{record.id}",
        "_ts": record.last_update,
        "timestamp": record.last_update.isoformat(),
        "latitude": record.latitude,
        "longitude": record.longitude,
        "address": record.address or "Address not available",
        "accuracy": record.accuracy,
        "source": infer_source(record.accuracy, record.address, record.extra),
        "notes": _current_notes(record),
        "is_manual_update": bool((record.extra or {}).get("is_custom_entry")),
        "is_current": True,
        "battery_level": record.battery_level,
        "speed": record.speed,
        "heading": record.heading,
    }

    stored = []
    for entry in record.location_history or []:
        ts = parse_timestamp(entry.get("timestamp"))
        if ts is None:
            continue
        if start and ts < start:
            continue
        if end and ts > end:
            continue
        stored.append((ts, entry))
    stored.sort(key=lambda pair: pair[0], reverse=True)

    for index, (ts, entry) in enumerate(stored):
        if index + 1 < len(stored):
            older = stored[index + 1][1]
            speed, heading = derive_motion([older, entry], 1)
        else:
            speed, heading = None, None
        yield {
            "id": f"history-{record.id}-{index}",
            "_ts": ts,
            "timestamp": ts.isoformat(),
            "latitude": entry["latitude"],
            "longitude": entry["longitude"],
            "address": format_coordinates(entry["latitude"], entry["longitude"]),
            "accuracy": entry.get("accuracy"),
            "source": infer_source(entry.get("accuracy")),
            "notes": _history_notes(entry, ts, index),
            "is_manual_update": False,
            "is_current": False,
            "battery_level": interpolate_battery(record.battery_level, index),
            "speed": speed,
            "heading": heading,
        }


def iter_history(
    record: TeamLocation,
    limit: Optional[int] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Iterator[Dict[str, Any]]:
    """
    Current fix followed by stored fixes, newest first.
    Fixes closer than the dedup distance on both axes and within the dedup window of an
    already yielded fix are dropped. Stops after `limit` entries.
    """
    start = to_naive_utc(start) if start else None
    end = to_naive_utc(end) if end else None
    kept: List[Dict[str, Any]] = []
    for entry in _candidates(record, start, end):
        if limit is not None and len(kept) >= limit:
            return
        if any(_is_duplicate(entry, seen) for seen in kept):
            continue
        kept.append(entry)
        yield {k: v for k, v in entry.items() if k != "_ts"}


def get_location_history(
    db: Session,
    tenant_id: str,
    team_ref: str,
    limit: int = 50,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    actor_id: Optional[str] = None,
) -> Dict[str, Any]:
    team = resolve_team(db, tenant_id, team_ref)
    record = find_live_record(db, tenant_id, candidate_keys(team, team_ref))

    if record is None:
        history: List[Dict[str, Any]] = []
        total = 0
    else:
        history = list(iter_history(record, limit, start, end))
        total = sum(1 for _ in iter_history(record, None, start, end))

    sources: Dict[str, int] = {}
    for entry in history:
        sources[entry["source"]] = sources.get(entry["source"], 0) + 1

    record_event(
        db,
        entity_type="team_location",
        entity_id=team.canonical_id,
        action="location_accessed",
        tenant_id=tenant_id,
        actor_id=actor_id,
        source="api",
        context={
            "view": "history",
            "history_entries": len(history),
            "total_history_available": total,
            "filters": {"limit": limit, "start": start, "end": end},
            "location_sources": sources,
            "result": "ok" if record else "no_location_data",
        },
    )

    return {
        "history": history,
        "total": total,
        "team_id": team.canonical_id,
        "team_name": team.name,
    }


def _or_na(value: Any) -> Any:
    return "N/A" if value is None or value == "" else value


def export_location_data(db: Session, tenant_id: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
    """Flat per-team rows for spreadsheet export; missing values read "N/A"."""
    locations = get_current_locations(db, tenant_id, actor_id=actor_id)

    rows = []
    for loc in locations:
        device = loc.get("device_info") or {}
        route = loc.get("route_progress")
        contact = loc.get("emergency_contact") or {}
        vehicle = loc.get("vehicle_info") or {}
        rows.append({
            "team_id": loc["id"],
            "team_name": loc["name"],
            "status": loc["status"],
            "latitude": loc["location"]["lat"],
            "longitude": loc["location"]["lng"],
            "address": loc["location"]["address"],
            "accuracy": _or_na(loc["location"].get("accuracy")),
            "speed": _or_na(loc["location"].get("speed")),
            "heading": _or_na(loc["location"].get("heading")),
            "last_updated": loc["last_updated"],
            "current_task": _or_na(loc.get("current_task")),
            "battery_level": _or_na(loc.get("battery_level")),
            "connectivity": loc["connectivity"],
            "project_name": _or_na(loc.get("project_name")),
            "member_count": len(loc["members"]),
            "members": ", ".join(m["name"] for m in loc["members"]),
            "device_id": _or_na(device.get("device_id")),
            "app_version": _or_na(device.get("app_version")),
            "route_progress": f"{route['completed_count']}/{route['total_stops']}" if route else "N/A",
            "emergency_contact_name": _or_na(contact.get("name")),
            "emergency_contact_phone": _or_na(contact.get("phone")),
            "emergency_contact_relationship": _or_na(contact.get("relationship")),
            "vehicle_type": _or_na(vehicle.get("type")),
            "vehicle_license_plate": _or_na(vehicle.get("license_plate")),
            "vehicle_fuel_level": _or_na(vehicle.get("fuel_level")),
            "vehicle_model": _or_na(vehicle.get("model")),
            "vehicle_year": _or_na(vehicle.get("year")),
        })

    record_event(
        db,
        entity_type="team_location",
        entity_id=None,
        action="location_data_exported",
        tenant_id=tenant_id,
        actor_id=actor_id,
        source="api",
        context={
            "total_teams_exported": len(rows),
            "teams_with_emergency_contacts": sum(1 for r in rows if r["emergency_contact_phone"] != "N/A"),
            "teams_with_vehicle_info": sum(1 for r in rows if r["vehicle_license_plate"] != "N/A"),
            "active_teams": sum(1 for r in rows if r["status"] == TeamLocationStatus.active.value),
            "offline_teams": sum(1 for r in rows if r["status"] == TeamLocationStatus.offline.value),
            "export_format": "json",
        },
    )
    logger.info("location_data_exported", tenant_id=tenant_id, teams=len(rows))

    return {
        "success": True,
        "data": rows,
        "message": f"Exported data for {len(rows)} teams",
    }
