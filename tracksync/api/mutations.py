"""Queued mutation endpoints"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from tracksync.api.deps import get_engine, http_error
from tracksync.errors import SyncError
from tracksync.models.pending_mutation import MutationOperation, MutationStatus
from tracksync.services.sync_engine import SyncEngine

router = APIRouter(prefix="/api/mutations", tags=["mutations"])


class MutationCreate(BaseModel):
    entity_kind: str = "issue"
    # None creates a new issue
    entity_id: Optional[int] = None
    delta: Dict[str, Any]


class MutationResponse(BaseModel):
    id: str
    submission_order: int
    entity_kind: str
    target_id: int
    operation: MutationOperation
    payload: Dict[str, Any]
    base_version: Optional[datetime] = None
    expected_version: Optional[datetime] = None
    status: MutationStatus
    retry_count: int
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    batch_id: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


@router.get("/", response_model=List[MutationResponse])
def list_mutations(
    status: Optional[MutationStatus] = None,
    batch_id: Optional[str] = None,
    engine: SyncEngine = Depends(get_engine),
):
    """List queued mutations in submission order"""
    return engine.queue.list_mutations(status=status, batch_id=batch_id)


@router.post("/")
def enqueue_mutation(mutation: MutationCreate, engine: SyncEngine = Depends(get_engine)):
    """Queue a local change; it shows in the cache immediately"""
    try:
        mutation_id = engine.enqueue_mutation(mutation.entity_kind, mutation.entity_id, mutation.delta)
    except SyncError as e:
        raise http_error(e)
    queued = engine.queue.get(mutation_id)
    return {"mutation_id": mutation_id, "target_id": queued.target_id if queued else None}


@router.get("/{mutation_id}", response_model=MutationResponse)
def get_mutation(mutation_id: str, engine: SyncEngine = Depends(get_engine)):
    """Get a queued mutation"""
    mutation = engine.queue.get(mutation_id)
    if not mutation:
        raise HTTPException(status_code=404, detail="Mutation not found")
    return mutation


@router.post("/{mutation_id}/cancel")
def cancel_mutation(mutation_id: str, engine: SyncEngine = Depends(get_engine)):
    """Withdraw a mutation that has not been sent yet"""
    try:
        cancelled = engine.cancel_mutation(mutation_id)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not cancelled:
        raise HTTPException(status_code=404, detail="Mutation not found")
    return {"message": "Mutation cancelled"}


@router.delete("/{mutation_id}")
def acknowledge_mutation(mutation_id: str, engine: SyncEngine = Depends(get_engine)):
    """Acknowledge (drop) a failed or conflicted mutation"""
    try:
        acknowledged = engine.acknowledge_mutation(mutation_id)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not acknowledged:
        raise HTTPException(status_code=404, detail="Mutation not found")
    return {"message": "Mutation acknowledged"}
