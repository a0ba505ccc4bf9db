"""
Team identity resolution.
A team can be addressed by its legacy id, its generated internal id or the roster row's
storage key. Every store keys its rows by the canonical id: the legacy id when present,
otherwise the internal id.
"""
import uuid
from typing import List, Optional

from sqlalchemy.orm import Session

from ..errors import TeamNotFound
from ..models.models import Team
from ..schemas.team_locations import CanonicalTeam


def canonical_key(team: Team) -> str:
    return team.legacy_id or team.internal_id


def _to_canonical(team: Team) -> CanonicalTeam:
    return CanonicalTeam(
        storage_key=team.id,
        canonical_id=canonical_key(team),
        internal_id=team.internal_id,
        legacy_id=team.legacy_id,
        name=team.name,
        members=team.members or [],
        working_hours=team.working_hours,
        max_daily_capacity=team.max_daily_capacity,
        emergency_contact=team.emergency_contact,
        vehicle_info=team.vehicle_info,
        project_name=team.project_name,
    )


def _find_roster_entry(db: Session, tenant_id: str, team_ref: str) -> Optional[Team]:
    ref = str(team_ref).strip()
    if not ref:
        return None
    base = db.query(Team).filter(Team.tenant_id == tenant_id)

    team = base.filter(Team.legacy_id == ref).first()
    if team:
        return team

    team = base.filter(Team.internal_id == ref).first()
    if team:
        return team

    try:
        storage_key = uuid.UUID(ref)
    except ValueError:
        return None
    return base.filter(Team.id == storage_key).first()


def resolve_team(db: Session, tenant_id: str, team_ref: str) -> CanonicalTeam:
    """
    Resolve a tenant-scoped team reference to its canonical team.

    Raises:
        TeamNotFound: when no roster entry of the tenant matches the reference
    """
    team = _find_roster_entry(db, tenant_id, team_ref)
    if not team:
        raise TeamNotFound(f"Team {team_ref} not found")
    return _to_canonical(team)


def list_teams(db: Session, tenant_id: str) -> List[CanonicalTeam]:
    teams = db.query(Team).filter(Team.tenant_id == tenant_id).order_by(Team.name).all()
    return [_to_canonical(t) for t in teams]


def candidate_keys(team: CanonicalTeam, team_ref: Optional[str] = None) -> List[str]:
    """
    Every key a team's rows may have been written under, canonical key first.
    Used by read paths that must tolerate rows written before keys were normalized.
    """
    keys: List[str] = []
    for key in (team.legacy_id, team.internal_id, str(team.storage_key), team_ref):
        if key and key not in keys:
            keys.append(key)
    return keys
