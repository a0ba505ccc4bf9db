"""
Audit logging service.
Append-only audit log with integrity hashing.
"""
import hashlib
import json
from typing import Optional, Dict, Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.models import AuditLog
from ..config import settings
from .time_rules import utcnow


logger = structlog.get_logger(__name__)


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id: Optional[str],
    action: str,
    tenant_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    source: Optional[str] = None,
    success: bool = True,
    error_message: Optional[str] = None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
    integrity_secret: Optional[str] = None
) -> AuditLog:
    """
    Create an append-only audit log entry.

    Args:
        db: Database session
        entity_type: Type of entity (team_location|route_progress|team_availability)
        entity_id: Entity ID (canonical team key or record id)
        action: Action performed (location_updated|route_progress_tracked|availability_accessed|...)
        tenant_id: Owning tenant
        actor_id: User ID who performed the action
        source: Source of the action (app|api|system)
        success: Outcome of the audited operation
        error_message: Failure description when success is False
        changes_json: Before/after diff
        context: Additional context (coordinates, counters, filters, etc.)
        integrity_secret: Secret for integrity hash (defaults to AUDIT_INTEGRITY_SECRET)

    Returns:
        Created AuditLog object
    """
    timestamp_utc = utcnow()

    integrity_hash = None
    if integrity_secret is None:
        integrity_secret = settings.audit_integrity_secret

    if integrity_secret:
        canonical_data = {
            "tenant_id": tenant_id,
            "entity_type": entity_type,
            "entity_id": str(entity_id) if entity_id else None,
            "action": action,
            "actor_id": str(actor_id) if actor_id else None,
            "source": source,
            "success": success,
            "timestamp_utc": timestamp_utc.isoformat(),
            "changes": changes_json,
            "context": context,
        }

        # Remove None values and sort keys for consistency
        canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
        canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)

        hash_input = f"{canonical_json}:{integrity_secret}"
        integrity_hash = hashlib.sha256(hash_input.encode()).hexdigest()

    audit_log = AuditLog(
        tenant_id=tenant_id,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id else None,
        action=action,
        actor_id=actor_id,
        source=source or "system",
        success=success,
        error_message=error_message,
        changes_json=_jsonable(changes_json),
        timestamp_utc=timestamp_utc,
        context=_jsonable(context),
        integrity_hash=integrity_hash,
    )

    db.add(audit_log)
    db.commit()
    db.refresh(audit_log)

    return audit_log


def record_event(db: Session, **kwargs: Any) -> Optional[AuditLog]:
    """
    Fire-and-forget audit write. The primary operation has already committed, so a
    failing audit insert is rolled back and logged instead of raised.
    """
    try:
        return create_audit_log(db, **kwargs)
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("audit_write_failed", action=kwargs.get("action"), error=str(e))
        return None


def compute_diff(before: Dict, after: Dict) -> Dict:
    """
    Compute a diff between two dictionaries.

    Args:
        before: Before state
        after: After state

    Returns:
        Dict with before/after values for changed fields
    """
    diff = {}
    all_keys = set(before.keys()) | set(after.keys())

    for key in all_keys:
        before_val = before.get(key)
        after_val = after.get(key)

        if before_val != after_val:
            diff[key] = {
                "before": before_val,
                "after": after_val,
            }

    return diff


def _jsonable(value: Optional[Dict]) -> Optional[Dict]:
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))
