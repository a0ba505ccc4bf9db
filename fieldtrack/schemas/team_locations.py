import uuid
from datetime import date, datetime
from typing import List, Optional, Dict, Any
from enum import Enum

from pydantic import BaseModel, Field


# Enums
class TeamLocationStatus(str, Enum):
    active = "active"
    inactive = "inactive"
    on_break = "break"
    offline = "offline"
    emergency = "emergency"


class ConnectivityStatus(str, Enum):
    online = "online"
    offline = "offline"
    poor = "poor"


class RouteStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    paused = "paused"
    cancelled = "cancelled"


class StopStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    skipped = "skipped"
    cancelled = "cancelled"


class AvailabilityStatus(str, Enum):
    available = "available"
    busy = "busy"
    on_break = "break"
    offline = "offline"
    emergency = "emergency"


class TaskStatus(str, Enum):
    pending = "pending"
    scheduled = "scheduled"
    assigned = "assigned"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


OPEN_TASK_STATUSES = (TaskStatus.pending.value, TaskStatus.scheduled.value, TaskStatus.assigned.value)
TERMINAL_STOP_STATUSES = (StopStatus.completed.value, StopStatus.skipped.value, StopStatus.cancelled.value)


# Identity
class CanonicalTeam(BaseModel):
    storage_key: uuid.UUID
    canonical_id: str
    internal_id: str
    legacy_id: Optional[str] = None
    name: str
    members: List[Dict[str, Any]] = []
    working_hours: Optional[Dict[str, Any]] = None
    max_daily_capacity: Optional[int] = None
    emergency_contact: Optional[Dict[str, Any]] = None
    vehicle_info: Optional[Dict[str, Any]] = None
    project_name: Optional[str] = None


# Position reports
class PositionFix(BaseModel):
    lat: float
    lng: float
    address: Optional[str] = None
    accuracy: Optional[float] = None
    altitude: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None
    timestamp: Optional[datetime] = None


class LocationUpdateRequest(BaseModel):
    location: PositionFix
    status: Optional[TeamLocationStatus] = None
    connectivity: Optional[ConnectivityStatus] = None
    battery_level: Optional[int] = Field(default=None, ge=0, le=100)
    current_task_id: Optional[str] = None
    device_id: Optional[str] = None
    app_version: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class UpdateResult(BaseModel):
    success: bool
    message: str
    team_id: str
    created: bool
    status_changed: bool
    history_count: int
    speed: Optional[float] = None
    heading: Optional[float] = None


# Route progress
class RouteLocation(BaseModel):
    lat: float
    lng: float


class RouteProgressRequest(BaseModel):
    task_ids: List[str]
    current_task_index: int = Field(ge=0)
    completed_tasks: int = Field(ge=0)
    route_date: Optional[date] = None
    location: Optional[RouteLocation] = None


class StopCloseRequest(BaseModel):
    reason: Optional[str] = None
    delay_minutes: Optional[int] = Field(default=None, ge=0)
