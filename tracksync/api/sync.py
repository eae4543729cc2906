"""Sync management endpoints"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from tracksync.api.deps import get_db, get_engine, http_error
from tracksync.entities import COLLECTIONS
from tracksync.errors import SyncError
from tracksync.models import Conflict, SyncLog
from tracksync.models.sync_log import SyncStatus
from tracksync.services.sync_engine import SyncEngine

router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncTriggerRequest(BaseModel):
    collections: Optional[List[str]] = None
    wait: bool = False


class SyncLogResponse(BaseModel):
    id: int
    collection: Optional[str] = None
    mutation_id: Optional[str] = None
    status: SyncStatus
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ConflictResponse(BaseModel):
    id: int
    mutation_id: str
    entity_kind: str
    entity_id: int
    description: str
    local_delta: Dict[str, Any]
    remote_changes: Optional[Dict[str, Any]] = None
    base_version: Optional[datetime] = None
    remote_version: Optional[datetime] = None
    resolved: bool
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ConflictResolveRequest(BaseModel):
    resolution_notes: Optional[str] = None
    # Queued on top of the remote state once the conflict is closed
    delta: Optional[Dict[str, Any]] = None


@router.post("/trigger")
def trigger_sync(
    payload: Optional[SyncTriggerRequest] = None,
    engine: SyncEngine = Depends(get_engine),
):
    """Start a sync run (or join the one in progress)"""
    payload = payload or SyncTriggerRequest()
    unknown = [c for c in payload.collections or [] if c not in COLLECTIONS]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown collections: {', '.join(unknown)}")
    if engine.paused:
        raise HTTPException(status_code=409, detail="Sync is paused; resume it first")

    future = engine.trigger_sync(payload.collections)
    if payload.wait:
        return future.result().to_dict()
    return {"status": "started"}


@router.get("/status")
def sync_status(request: Request, engine: SyncEngine = Depends(get_engine)):
    """Engine state, queue counts and cursors"""
    status = engine.status()
    scheduler = getattr(request.app.state, "scheduler", None)
    status["next_scheduled_run"] = scheduler.next_run_time() if scheduler is not None else None
    return status


@router.post("/resume")
def resume_sync(engine: SyncEngine = Depends(get_engine)):
    """Leave the paused state after credentials were fixed"""
    try:
        return {"resumed": engine.resume()}
    except SyncError as e:
        raise http_error(e)


@router.post("/cancel")
def cancel_sync(engine: SyncEngine = Depends(get_engine)):
    """Cancel the run in progress"""
    return {"cancelled": engine.cancel_run()}


@router.get("/logs", response_model=List[SyncLogResponse])
def list_sync_logs(
    limit: int = 100,
    status: Optional[SyncStatus] = None,
    db: Session = Depends(get_db),
):
    """List sync logs"""
    query = db.query(SyncLog).order_by(SyncLog.created_at.desc(), SyncLog.id.desc())
    if status is not None:
        query = query.filter(SyncLog.status == status)
    logs = query.limit(limit).all()
    return logs


@router.get("/conflicts", response_model=List[ConflictResponse])
def list_conflicts(
    resolved: Optional[bool] = None,
    db: Session = Depends(get_db),
):
    """List conflicts"""
    query = db.query(Conflict).order_by(Conflict.created_at.desc())
    if resolved is not None:
        query = query.filter(Conflict.resolved == resolved)
    conflicts = query.all()
    return conflicts


@router.post("/conflicts/{conflict_id}/resolve")
def resolve_conflict(
    conflict_id: int,
    payload: Optional[ConflictResolveRequest] = None,
    engine: SyncEngine = Depends(get_engine),
):
    """Close a conflict, optionally queueing a replacement edit"""
    payload = payload or ConflictResolveRequest()
    try:
        return engine.resolve_conflict(conflict_id, delta=payload.delta, notes=payload.resolution_notes)
    except SyncError as e:
        raise http_error(e)
