import os

# Configure before any fieldtrack import reads settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTO_CREATE_DB"] = "false"
os.environ["RATE_LIMIT"] = "10000/minute"
os.environ["TZ_DEFAULT"] = "America/Vancouver"
os.environ.pop("TASK_SERVICE_URL", None)

from datetime import time, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fieldtrack.db import Base, get_db
from fieldtrack.errors import CollaboratorUnavailable
from fieldtrack.models.models import FieldTask, Team
from fieldtrack.services.task_source import TaskSource
from fieldtrack.services.time_rules import combine_local, local_date, utcnow


TENANT = "tenant-1"
OTHER_TENANT = "tenant-2"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def other_db(engine):
    """Second session on the same database, acting as a concurrent writer."""
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def teams(db):
    alpha = Team(
        tenant_id=TENANT,
        internal_id="1748608291431",
        legacy_id="19",
        name="Alpha Crew",
        members=[
            {"id": "u1", "name": "Dana Ruiz", "role": "lead", "phone": "555-0100"},
            {"id": "u2", "name": "Sam Okafor", "role": "technician"},
        ],
        working_hours={"start": "7:00 AM", "end": "4:00 PM"},
        max_daily_capacity=8,
        emergency_contact={"name": "Lee Park", "phone": "555-0199", "relationship": "supervisor"},
        vehicle_info={"type": "van", "license_plate": "FT-1001", "fuel_level": 80, "model": "Transit", "year": 2021},
        project_name="Harbor",
    )
    bravo = Team(tenant_id=TENANT, internal_id="T1", name="Bravo Crew", project_name="Uptown")
    charlie = Team(tenant_id=OTHER_TENANT, internal_id="T1", name="Charlie Crew")
    db.add_all([alpha, bravo, charlie])
    db.commit()
    return {"alpha": alpha, "bravo": bravo, "charlie": charlie}


def make_task(db, team_key, status="scheduled", day_offset=0, hour=10, tenant_id=TENANT, **fields):
    """Persist a task scheduled at a local wall-clock hour, day_offset days from today."""
    day = local_date(utcnow()) + timedelta(days=day_offset)
    task = FieldTask(
        tenant_id=tenant_id,
        assigned_team_id=team_key,
        name=fields.pop("name", f"Task {status}"),
        status=status,
        scheduled_date=combine_local(day, time(hour, 0)),
        estimated_duration=fields.pop("estimated_duration", 60),
        **fields,
    )
    db.add(task)
    db.commit()
    return task


class FailingTaskSource(TaskSource):
    def find_tasks(self, tenant_id, team_keys=None, **filters):
        raise CollaboratorUnavailable("Task service timed out")


@pytest.fixture
def failing_tasks():
    return FailingTaskSource()


@pytest.fixture
def client(engine, teams):
    from fieldtrack.main import app

    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

    def override_get_db():
        session = Session()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
