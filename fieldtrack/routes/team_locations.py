"""
Team location API routes.
Position reports, route progress, availability and history for field teams.
Every endpoint is scoped by the tenant_id query parameter.
"""
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..schemas.team_locations import (
    LocationUpdateRequest,
    RouteProgressRequest,
    StopCloseRequest,
    StopStatus,
    UpdateResult,
)
from ..services import availability, history, location_store, route_progress
from ..services.task_source import TaskSource, get_task_source


router = APIRouter(prefix="/team-locations", tags=["team-locations"])


def get_tasks(db: Session = Depends(get_db)) -> TaskSource:
    return get_task_source(db)


# Fleet-wide views (registered before /{team_ref} so the literal paths win)

@router.get("")
def list_team_locations(
    tenant_id: str = Query(...),
    status: Optional[str] = Query(None),
    project: Optional[str] = Query(None),
    updated_since: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
    actor_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    return location_store.get_current_locations(
        db, tenant_id, status=status, project=project, updated_since=updated_since, actor_id=actor_id,
    )


@router.get("/stats")
def location_stats(
    tenant_id: str = Query(...),
    db: Session = Depends(get_db),
    tasks: TaskSource = Depends(get_tasks),
    actor_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    return location_store.get_location_stats(db, tenant_id, task_source=tasks, actor_id=actor_id)


@router.get("/availability")
def team_availability(
    tenant_id: str = Query(...),
    team_ref: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    tasks: TaskSource = Depends(get_tasks),
    actor_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    return availability.get_availability(db, tenant_id, team_ref=team_ref, task_source=tasks, actor_id=actor_id)


@router.get("/export")
def export_locations(
    tenant_id: str = Query(...),
    db: Session = Depends(get_db),
    actor_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    return history.export_location_data(db, tenant_id, actor_id=actor_id)


# Position reports

@router.post("/{team_ref}/location", response_model=UpdateResult)
def update_location(
    team_ref: str,
    payload: LocationUpdateRequest,
    tenant_id: str = Query(...),
    db: Session = Depends(get_db),
    actor_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    return location_store.update_position(
        db,
        tenant_id,
        team_ref,
        payload.location,
        status=payload.status,
        connectivity=payload.connectivity,
        battery_level=payload.battery_level,
        current_task_id=payload.current_task_id,
        device_id=payload.device_id,
        app_version=payload.app_version,
        metadata=payload.metadata,
        actor_id=actor_id,
    )


@router.get("/{team_ref}/history")
def location_history(
    team_ref: str,
    tenant_id: str = Query(...),
    limit: int = Query(50, ge=1, le=500),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
    actor_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    return history.get_location_history(db, tenant_id, team_ref, limit=limit, start=start, end=end, actor_id=actor_id)


# Route progress

@router.post("/{team_ref}/route-progress")
def track_route_progress(
    team_ref: str,
    payload: RouteProgressRequest,
    tenant_id: str = Query(...),
    db: Session = Depends(get_db),
    tasks: TaskSource = Depends(get_tasks),
    actor_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    return route_progress.advance_route(
        db,
        tenant_id,
        team_ref,
        payload.task_ids,
        payload.current_task_index,
        payload.completed_tasks,
        route_date=payload.route_date,
        location=payload.location.model_dump() if payload.location else None,
        task_source=tasks,
        actor_id=actor_id,
    )


@router.get("/{team_ref}/route-progress")
def get_route_progress(
    team_ref: str,
    tenant_id: str = Query(...),
    route_date: Optional[date] = Query(None),
    db: Session = Depends(get_db),
):
    return route_progress.get_route(db, tenant_id, team_ref, route_date=route_date)


@router.post("/{team_ref}/route-progress/pause")
def pause_route(
    team_ref: str,
    tenant_id: str = Query(...),
    route_date: Optional[date] = Query(None),
    reason: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    actor_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    return route_progress.pause_route(db, tenant_id, team_ref, route_date=route_date, reason=reason, actor_id=actor_id)


@router.post("/{team_ref}/route-progress/resume")
def resume_route(
    team_ref: str,
    tenant_id: str = Query(...),
    route_date: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    actor_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    return route_progress.resume_route(db, tenant_id, team_ref, route_date=route_date, actor_id=actor_id)


@router.post("/{team_ref}/route-progress/cancel")
def cancel_route(
    team_ref: str,
    tenant_id: str = Query(...),
    route_date: Optional[date] = Query(None),
    reason: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    actor_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    return route_progress.cancel_route(db, tenant_id, team_ref, route_date=route_date, reason=reason, actor_id=actor_id)


@router.post("/{team_ref}/route-progress/stops/{task_id}/skip")
def skip_stop(
    team_ref: str,
    task_id: str,
    payload: Optional[StopCloseRequest] = None,
    tenant_id: str = Query(...),
    route_date: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    actor_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    payload = payload or StopCloseRequest()
    return route_progress.close_stop(
        db, tenant_id, team_ref, task_id, StopStatus.skipped,
        reason=payload.reason, delay_minutes=payload.delay_minutes, route_date=route_date, actor_id=actor_id,
    )


@router.post("/{team_ref}/route-progress/stops/{task_id}/cancel")
def cancel_stop(
    team_ref: str,
    task_id: str,
    payload: Optional[StopCloseRequest] = None,
    tenant_id: str = Query(...),
    route_date: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    actor_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    payload = payload or StopCloseRequest()
    return route_progress.close_stop(
        db, tenant_id, team_ref, task_id, StopStatus.cancelled,
        reason=payload.reason, delay_minutes=payload.delay_minutes, route_date=route_date, actor_id=actor_id,
    )


# Single team

@router.get("/{team_ref}")
def get_team_location(
    team_ref: str,
    tenant_id: str = Query(...),
    db: Session = Depends(get_db),
    actor_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    return location_store.get_current(db, tenant_id, team_ref, actor_id=actor_id)


@router.delete("/{team_ref}")
def decommission_team(
    team_ref: str,
    tenant_id: str = Query(...),
    db: Session = Depends(get_db),
    actor_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    return location_store.decommission_team(db, tenant_id, team_ref, actor_id=actor_id)
