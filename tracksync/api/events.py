"""Change notification polling endpoint"""
from fastapi import APIRouter, Depends

from tracksync.api.deps import get_engine
from tracksync.services.sync_engine import SyncEngine

router = APIRouter(prefix="/api/events", tags=["events"])


@router.get("/")
def poll_events(since: int = 0, limit: int = 100, engine: SyncEngine = Depends(get_engine)):
    """Events newer than `since`, oldest first"""
    events = engine.notifier.poll(since_seq=since, limit=max(1, min(limit, 1000)))
    return {
        "last_seq": engine.notifier.last_seq,
        "events": [event.to_dict() for event in events],
    }
