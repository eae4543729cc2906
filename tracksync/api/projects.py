"""Cached project endpoints"""
from typing import Optional

from fastapi import APIRouter, Depends

from tracksync.api.deps import get_engine
from tracksync.services.sync_engine import SyncEngine

router = APIRouter(prefix="/api/projects", tags=["projects"])


@router.get("/")
def list_projects(name: Optional[str] = None, engine: SyncEngine = Depends(get_engine)):
    """List cached projects, optionally filtered by name or identifier"""
    return engine.store.query_projects(name)


@router.get("/lookups/{kind}")
def list_lookups(kind: str, engine: SyncEngine = Depends(get_engine)):
    """Cached statuses, priorities or trackers"""
    return engine.store.list_lookups(kind)
