"""Dashboard and statistics endpoints"""

from datetime import timedelta

from fastapi import APIRouter, Depends
from sqlalchemy import desc
from sqlalchemy.orm import Session

from tracksync.api.deps import get_db
from tracksync.models import Conflict, Issue, PendingMutation, Project, SyncLog
from tracksync.models.base import utcnow
from tracksync.models.pending_mutation import MutationStatus
from tracksync.models.sync_log import SyncStatus

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


@router.get("/stats")
def get_dashboard_stats(db: Session = Depends(get_db)):
    """Get cache and queue statistics"""
    total_projects = db.query(Project).count()
    total_issues = db.query(Issue).count()
    dirty_issues = db.query(Issue).filter(Issue.dirty.is_(True)).count()
    local_only_issues = db.query(Issue).filter(Issue.id < 0).count()
    unresolved_conflicts = db.query(Conflict).filter(Conflict.resolved.is_(False)).count()

    queue = {
        status.value: db.query(PendingMutation).filter(PendingMutation.status == status).count()
        for status in MutationStatus
    }

    # Recent sync activity (last 24 hours)
    last_24h = utcnow() - timedelta(hours=24)
    recent_syncs = db.query(SyncLog).filter(SyncLog.created_at >= last_24h, SyncLog.mutation_id.is_(None)).count()
    recent_successes = (
        db.query(SyncLog)
        .filter(SyncLog.created_at >= last_24h, SyncLog.status == SyncStatus.SUCCESS)
        .count()
    )
    recent_failures = (
        db.query(SyncLog)
        .filter(SyncLog.created_at >= last_24h, SyncLog.status == SyncStatus.FAILED)
        .count()
    )
    last_log = db.query(SyncLog).filter(SyncLog.mutation_id.is_(None)).order_by(desc(SyncLog.created_at)).first()

    return {
        "total_projects": total_projects,
        "total_issues": total_issues,
        "dirty_issues": dirty_issues,
        "local_only_issues": local_only_issues,
        "unresolved_conflicts": unresolved_conflicts,
        "queue": queue,
        "recent_syncs": recent_syncs,
        "recent_successes": recent_successes,
        "recent_failures": recent_failures,
        "last_status": last_log.status if last_log else None,
        "last_message": last_log.message if last_log else None,
    }
