"""
Migration script to store every tracking row under its team's canonical key.
Rows written under a team's internal id or storage key are moved to the canonical key
(legacy id when present). When a live row already exists under the canonical key the
stale duplicate is soft-deleted instead.
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import argparse
from typing import Optional

from fieldtrack.db import SessionLocal
from fieldtrack.models.models import FieldTask, RouteProgress, Team, TeamAvailability, TeamLocation
from fieldtrack.services.identity import canonical_key
from fieldtrack.services.time_rules import utcnow


def _stale_keys(team: Team):
    canonical = canonical_key(team)
    return [k for k in (team.internal_id, str(team.id)) if k and k != canonical]


def _move_live_rows(db, model, team: Team, stale, canonical: str, now, extra_match=None) -> dict:
    counts = {"moved": 0, "retired": 0}
    rows = db.query(model).filter(
        model.tenant_id == team.tenant_id,
        model.team_id.in_(stale),
        model.is_deleted.is_(False),
    ).all()
    for row in rows:
        query = db.query(model).filter(
            model.tenant_id == team.tenant_id,
            model.team_id == canonical,
            model.is_deleted.is_(False),
        )
        if extra_match is not None:
            query = query.filter(extra_match(row))
        if query.first():
            row.is_deleted = True
            row.deleted_at = now
            counts["retired"] += 1
        else:
            row.team_id = canonical
            counts["moved"] += 1
        # Flush so the next row sees this one under its new key
        db.flush()
    return counts


def normalize_team_keys(tenant_id: Optional[str] = None, dry_run: bool = False, db=None):
    owns_session = db is None
    if owns_session:
        db = SessionLocal()
    try:
        query = db.query(Team)
        if tenant_id:
            query = query.filter(Team.tenant_id == tenant_id)
        teams = query.all()

        now = utcnow()
        totals = {"locations": 0, "routes": 0, "availability": 0, "tasks": 0, "retired": 0}

        for team in teams:
            stale = _stale_keys(team)
            if not stale:
                continue
            canonical = canonical_key(team)

            loc = _move_live_rows(db, TeamLocation, team, stale, canonical, now)
            routes = _move_live_rows(
                db, RouteProgress, team, stale, canonical, now,
                extra_match=lambda row: RouteProgress.route_date == row.route_date,
            )
            avail = _move_live_rows(db, TeamAvailability, team, stale, canonical, now)

            tasks = db.query(FieldTask).filter(
                FieldTask.tenant_id == team.tenant_id,
                FieldTask.assigned_team_id.in_(stale),
            ).all()
            for task in tasks:
                task.assigned_team_id = canonical

            moved = loc["moved"] + routes["moved"] + avail["moved"] + len(tasks)
            retired = loc["retired"] + routes["retired"] + avail["retired"]
            if moved or retired:
                print(f"  Team {team.name} ({team.tenant_id}) -> {canonical}: {moved} moved, {retired} retired")

            totals["locations"] += loc["moved"]
            totals["routes"] += routes["moved"]
            totals["availability"] += avail["moved"]
            totals["tasks"] += len(tasks)
            totals["retired"] += retired

        if dry_run:
            db.rollback()
            print("\nDry run, no changes written.")
        else:
            db.commit()

        print(f"\nNormalization complete:")
        print(f"  Location records moved: {totals['locations']}")
        print(f"  Routes moved: {totals['routes']}")
        print(f"  Availability rows moved: {totals['availability']}")
        print(f"  Tasks reassigned: {totals['tasks']}")
        print(f"  Duplicates retired: {totals['retired']}")
        return totals

    except Exception as e:
        db.rollback()
        print(f"Error normalizing team keys: {e}")
        raise
    finally:
        if owns_session:
            db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Rewrite tracking rows to canonical team keys")
    parser.add_argument("--tenant", help="Only normalize this tenant")
    parser.add_argument("--dry-run", action="store_true", help="Don't make any changes")
    args = parser.parse_args()
    normalize_team_keys(tenant_id=args.tenant, dry_run=args.dry_run)
