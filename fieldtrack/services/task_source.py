"""
Read-only access to the task collaborator.
SqlTaskSource reads the local field_tasks table; HttpTaskSource calls the task service.
Both raise CollaboratorUnavailable on failure so callers can degrade to zero-valued metrics.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import CollaboratorUnavailable
from ..models.models import FieldTask
from .time_rules import to_naive_utc


logger = structlog.get_logger(__name__)

TASK_FIELDS = (
    "id", "name", "description", "status", "assigned_team_id", "scheduled_date", "scheduled_time",
    "time_window_start", "time_window_end", "estimated_duration", "actual_duration",
    "actual_start_time", "completed_at", "satisfaction_rating", "latitude", "longitude",
    "address", "created_at",
)
DATETIME_FIELDS = ("scheduled_date", "actual_start_time", "completed_at", "created_at")


class TaskSource:
    def find_tasks(
        self,
        tenant_id: str,
        team_keys: Optional[List[str]] = None,
        scheduled_from: Optional[datetime] = None,
        scheduled_to: Optional[datetime] = None,
        created_since: Optional[datetime] = None,
        completed_since: Optional[datetime] = None,
        statuses: Optional[Iterable[str]] = None,
        task_ids: Optional[List[str]] = None,
        order: str = "scheduled",
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Tasks of a tenant as plain dicts (see TASK_FIELDS), datetimes naive UTC.
        scheduled_from is inclusive, scheduled_to exclusive. order is "scheduled" or "completed_desc".
        """
        raise NotImplementedError

    def tasks_between(self, tenant_id: str, team_keys: List[str], start: Optional[datetime], end: Optional[datetime], statuses: Optional[Iterable[str]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return self.find_tasks(tenant_id, team_keys, scheduled_from=start, scheduled_to=end, statuses=statuses, limit=limit)

    def tasks_created_since(self, tenant_id: str, team_keys: List[str], since: datetime) -> List[Dict[str, Any]]:
        return self.find_tasks(tenant_id, team_keys, created_since=since)

    def completed_since(self, tenant_id: str, team_keys: Optional[List[str]], since: datetime, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return self.find_tasks(
            tenant_id, team_keys, completed_since=since, statuses=["completed"], order="completed_desc", limit=limit,
        )

    def tasks_by_id(self, tenant_id: str, task_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        return {t["id"]: t for t in self.find_tasks(tenant_id, task_ids=task_ids)}


def _task_to_dict(task: FieldTask) -> Dict[str, Any]:
    data = {field: getattr(task, field) for field in TASK_FIELDS}
    data["id"] = str(task.id)
    return data


class SqlTaskSource(TaskSource):
    def __init__(self, db: Session):
        self.db = db

    def find_tasks(
        self,
        tenant_id: str,
        team_keys: Optional[List[str]] = None,
        scheduled_from: Optional[datetime] = None,
        scheduled_to: Optional[datetime] = None,
        created_since: Optional[datetime] = None,
        completed_since: Optional[datetime] = None,
        statuses: Optional[Iterable[str]] = None,
        task_ids: Optional[List[str]] = None,
        order: str = "scheduled",
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        query = self.db.query(FieldTask).filter(
            FieldTask.tenant_id == tenant_id,
            FieldTask.is_deleted.is_(False),
        )
        if team_keys:
            query = query.filter(FieldTask.assigned_team_id.in_(team_keys))
        if scheduled_from is not None:
            query = query.filter(FieldTask.scheduled_date >= scheduled_from)
        if scheduled_to is not None:
            query = query.filter(FieldTask.scheduled_date < scheduled_to)
        if created_since is not None:
            query = query.filter(FieldTask.created_at >= created_since)
        if completed_since is not None:
            query = query.filter(FieldTask.completed_at >= completed_since)
        if statuses:
            query = query.filter(FieldTask.status.in_(list(statuses)))
        if task_ids is not None:
            ids = []
            for task_id in task_ids:
                try:
                    ids.append(uuid.UUID(str(task_id)))
                except ValueError:
                    continue
            if not ids:
                return []
            query = query.filter(FieldTask.id.in_(ids))

        if order == "completed_desc":
            query = query.order_by(FieldTask.completed_at.desc())
        else:
            query = query.order_by(FieldTask.scheduled_date.asc(), FieldTask.scheduled_time.asc())
        if limit:
            query = query.limit(limit)

        try:
            return [_task_to_dict(t) for t in query.all()]
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("task_query_failed", tenant_id=tenant_id, error=str(e))
            raise CollaboratorUnavailable("Task lookup failed") from e


class HttpTaskSource(TaskSource):
    """Client for the task service's read API"""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.task_service_url or "").rstrip("/")
        self.api_key = api_key or settings.task_service_api_key
        self.timeout = timeout if timeout is not None else settings.task_service_timeout_s

        if not self.base_url:
            raise ValueError("Task service URL is required")

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    def find_tasks(
        self,
        tenant_id: str,
        team_keys: Optional[List[str]] = None,
        scheduled_from: Optional[datetime] = None,
        scheduled_to: Optional[datetime] = None,
        created_since: Optional[datetime] = None,
        completed_since: Optional[datetime] = None,
        statuses: Optional[Iterable[str]] = None,
        task_ids: Optional[List[str]] = None,
        order: str = "scheduled",
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"tenant_id": tenant_id, "order": order}
        if team_keys:
            params["team_id"] = list(team_keys)
        if scheduled_from is not None:
            params["scheduled_from"] = scheduled_from.isoformat()
        if scheduled_to is not None:
            params["scheduled_to"] = scheduled_to.isoformat()
        if created_since is not None:
            params["created_since"] = created_since.isoformat()
        if completed_since is not None:
            params["completed_since"] = completed_since.isoformat()
        if statuses:
            params["status"] = list(statuses)
        if task_ids is not None:
            if not task_ids:
                return []
            params["id"] = list(task_ids)
        if limit:
            params["limit"] = limit

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.get(f"{self.base_url}/tasks", params=params, headers=self._headers())
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException as e:
            logger.warning("task_service_timeout", tenant_id=tenant_id, timeout=self.timeout)
            raise CollaboratorUnavailable("Task service timed out") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("task_service_error", tenant_id=tenant_id, error=str(e))
            raise CollaboratorUnavailable("Task service request failed") from e

        items = payload.get("tasks", []) if isinstance(payload, dict) else payload
        try:
            return [_parse_task(item) for item in items or []]
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("task_service_bad_payload", tenant_id=tenant_id, error=str(e))
            raise CollaboratorUnavailable("Task service returned a malformed payload") from e


def _parse_task(item: Dict[str, Any]) -> Dict[str, Any]:
    data = {field: item.get(field) for field in TASK_FIELDS}
    for field in DATETIME_FIELDS:
        value = data.get(field)
        if isinstance(value, str):
            data[field] = to_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    if data.get("id") is not None:
        data["id"] = str(data["id"])
    return data


def get_task_source(db: Session) -> TaskSource:
    if settings.task_service_url:
        return HttpTaskSource()
    return SqlTaskSource(db)
