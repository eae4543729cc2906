"""Bulk edit endpoints"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from tracksync.api.deps import get_bulk, http_error
from tracksync.errors import SyncError
from tracksync.services.bulk import BulkOperationCoordinator

router = APIRouter(prefix="/api/bulk", tags=["bulk"])


class BulkEditRequest(BaseModel):
    issue_ids: List[int]
    delta: Dict[str, Any]


@router.post("/")
def enqueue_bulk(request: BulkEditRequest, bulk: BulkOperationCoordinator = Depends(get_bulk)):
    """Queue the same edit for many issues"""
    try:
        batch_id = bulk.enqueue_bulk(request.issue_ids, request.delta)
    except SyncError as e:
        raise http_error(e)
    return {"batch_id": batch_id}


@router.get("/{batch_id}")
def batch_status(
    batch_id: str,
    wait_seconds: Optional[float] = None,
    bulk: BulkOperationCoordinator = Depends(get_bulk),
):
    """Per-member outcomes of a bulk edit, optionally waiting for it to finish"""
    if wait_seconds:
        result = bulk.await_batch(batch_id, timeout=min(wait_seconds, 60.0))
    else:
        result = bulk.batch_status(batch_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    return result.to_dict()
