import uuid
from datetime import datetime, date
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Boolean,
    Integer,
    Float,
    JSON,
    Text,
    Index,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base
from ..services.time_rules import utcnow


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


# Roster & task collaborators (read-only to the tracking engine)

class Team(Base):
    """Roster entry owned by the tenant. The tracking engine only reads it."""
    __tablename__ = "teams"

    id: Mapped[uuid.UUID] = uuid_pk()  # Storage key
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    internal_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)  # Generated identifier
    legacy_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)  # Identifier from the legacy system
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    members: Mapped[Optional[list]] = mapped_column(JSON)  # [{id, name, role, phone}]
    working_hours: Mapped[Optional[dict]] = mapped_column(JSON)  # {start: "8:00 AM", end: "5:00 PM"}
    max_daily_capacity: Mapped[Optional[int]] = mapped_column(Integer)
    emergency_contact: Mapped[Optional[dict]] = mapped_column(JSON)  # {name, phone, relationship}
    vehicle_info: Mapped[Optional[dict]] = mapped_column(JSON)  # {type, license_plate, fuel_level, model, year}
    project_name: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "internal_id", name="uq_team_tenant_internal"),
    )


class FieldTask(Base):
    """Scheduled field assignment. Written by the task service, read here for load and metrics."""
    __tablename__ = "field_tasks"

    id: Mapped[uuid.UUID] = uuid_pk()
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    assigned_team_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)  # pending|scheduled|assigned|in_progress|completed|cancelled
    scheduled_date: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True)  # UTC
    scheduled_time: Mapped[Optional[str]] = mapped_column(String(10))  # "HH:MM" local
    time_window_start: Mapped[Optional[str]] = mapped_column(String(10))  # "HH:MM" local
    time_window_end: Mapped[Optional[str]] = mapped_column(String(10))
    estimated_duration: Mapped[Optional[int]] = mapped_column(Integer)  # minutes
    actual_duration: Mapped[Optional[int]] = mapped_column(Integer)  # minutes
    actual_start_time: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True)
    satisfaction_rating: Mapped[Optional[float]] = mapped_column(Float)  # 1-5 from client signoff
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)
    address: Mapped[Optional[str]] = mapped_column(String(500))
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

    __table_args__ = (
        Index("idx_field_tasks_team_date", "tenant_id", "assigned_team_id", "scheduled_date"),
    )


# Tracking engine state

class TeamLocation(Base):
    """Current fix plus bounded movement history, one live row per (tenant, team)"""
    __tablename__ = "team_locations"

    id: Mapped[uuid.UUID] = uuid_pk()
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    team_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)  # Canonical team key
    team_name: Mapped[str] = mapped_column(String(255), nullable=False)

    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(500))
    accuracy: Mapped[Optional[float]] = mapped_column(Float)  # meters
    altitude: Mapped[Optional[float]] = mapped_column(Float)
    speed: Mapped[Optional[float]] = mapped_column(Float)  # km/h
    heading: Mapped[Optional[float]] = mapped_column(Float)  # degrees [0, 360)

    status: Mapped[str] = mapped_column(String(20), default="active")  # active|inactive|break|offline|emergency
    connectivity: Mapped[str] = mapped_column(String(20), default="online")  # online|offline|poor
    battery_level: Mapped[Optional[int]] = mapped_column(Integer)
    current_task_id: Mapped[Optional[str]] = mapped_column(String(64))
    device_id: Mapped[Optional[str]] = mapped_column(String(255))
    app_version: Mapped[Optional[str]] = mapped_column(String(50))
    location_history: Mapped[list] = mapped_column(JSON, default=list)  # [{timestamp, latitude, longitude, accuracy}]
    extra: Mapped[Optional[dict]] = mapped_column("metadata", JSON)  # {is_custom_entry, entry_method, notes}

    last_update: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    status_changed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index(
            "uq_team_locations_live", "tenant_id", "team_id", unique=True,
            postgresql_where=text("is_deleted = false"),
            sqlite_where=text("is_deleted = 0"),
        ),
        Index("idx_team_locations_tenant_status", "tenant_id", "status"),
    )


class RouteProgress(Base):
    """Ordered stop sequence of one team for one local calendar day"""
    __tablename__ = "route_progress"

    id: Mapped[uuid.UUID] = uuid_pk()
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    team_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)  # Canonical team key
    team_name: Mapped[str] = mapped_column(String(255), nullable=False)
    route_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)  # Local date

    stops: Mapped[list] = mapped_column(JSON, default=list)
    route_status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|in_progress|completed|paused|cancelled
    current_stop_index: Mapped[int] = mapped_column(Integer, default=0)
    completed_count: Mapped[int] = mapped_column(Integer, default=0)
    route_start_time: Mapped[Optional[datetime]] = mapped_column(DateTime)
    route_end_time: Mapped[Optional[datetime]] = mapped_column(DateTime)
    estimated_completion_time: Mapped[Optional[datetime]] = mapped_column(DateTime)
    total_estimated_duration: Mapped[Optional[int]] = mapped_column(Integer)  # minutes
    progress_updates: Mapped[list] = mapped_column(JSON, default=list)  # Append-only [{timestamp, location, status, notes}]

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index(
            "uq_route_progress_live", "tenant_id", "team_id", "route_date", unique=True,
            postgresql_where=text("is_deleted = false"),
            sqlite_where=text("is_deleted = 0"),
        ),
        Index("idx_route_progress_tenant_status", "tenant_id", "route_status"),
    )


class TeamAvailability(Base):
    """Cached availability derived from location status transitions"""
    __tablename__ = "team_availability"

    id: Mapped[uuid.UUID] = uuid_pk()
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    team_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    team_name: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(20), default="available")  # available|busy|break|offline|emergency
    status_since: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    last_status_update: Mapped[Optional[datetime]] = mapped_column(DateTime)
    current_task_id: Mapped[Optional[str]] = mapped_column(String(64))
    working_hours: Mapped[Optional[dict]] = mapped_column(JSON)  # {monday: {start, end, available}, ...}
    unavailable_periods: Mapped[Optional[list]] = mapped_column(JSON)  # [{start, end, reason, type}]
    skills: Mapped[Optional[list]] = mapped_column(JSON)  # [{skill, level}]
    max_tasks_per_day: Mapped[Optional[int]] = mapped_column(Integer)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index(
            "uq_team_availability_live", "tenant_id", "team_id", unique=True,
            postgresql_where=text("is_deleted = false"),
            sqlite_where=text("is_deleted = 0"),
        ),
    )


class AuditLog(Base):
    """Append-only audit log for tracking actions"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # team_location|route_progress|team_availability
    entity_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # location_updated|route_progress_tracked|availability_accessed|...
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    source: Mapped[Optional[str]] = mapped_column(String(50))  # app|api|system
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)  # Before/after diff
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
        Index('idx_audit_tenant_time', 'tenant_id', 'timestamp_utc'),
    )
