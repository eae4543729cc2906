"""Cached issue endpoints"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from tracksync.api.deps import get_engine, http_error
from tracksync.errors import SyncError
from tracksync.services.local_store import GROUP_KEYS, SORT_ORDERS, IssueFilter
from tracksync.services.sync_engine import SyncEngine

router = APIRouter(prefix="/api/issues", tags=["issues"])


@router.get("/")
def list_issues(
    project_id: Optional[int] = None,
    status_id: Optional[int] = None,
    status_name: Optional[str] = None,
    assigned_to_id: Optional[int] = None,
    dirty: Optional[bool] = None,
    search: Optional[str] = None,
    sort: str = "updated_desc",
    group_by: Optional[str] = None,
    engine: SyncEngine = Depends(get_engine),
):
    """Query the local cache (never blocks on the network)"""
    if sort not in SORT_ORDERS:
        raise HTTPException(status_code=400, detail=f"sort must be one of: {', '.join(SORT_ORDERS)}")
    if group_by is not None and group_by not in GROUP_KEYS:
        raise HTTPException(status_code=400, detail=f"group_by must be one of: {', '.join(GROUP_KEYS)}")

    issue_filter = IssueFilter(
        project_id=project_id,
        status_id=status_id,
        status_name=status_name,
        assigned_to_id=assigned_to_id,
        dirty=dirty,
        search=search,
    )
    result = engine.query(issue_filter, sort=sort, group_by=group_by)
    if group_by is None:
        return {"count": len(result), "issues": result}
    return {
        "count": sum(len(v) for v in result.values()),
        "groups": [{"key": key, "issues": issues} for key, issues in result.items()],
    }


@router.get("/{issue_id}")
def get_issue(issue_id: int, details: bool = False, engine: SyncEngine = Depends(get_engine)):
    """Get a cached issue, optionally with journals and attachments"""
    issue = engine.store.get_issue(issue_id, with_details=details)
    if not issue:
        raise HTTPException(status_code=404, detail="Issue not found")
    return issue


@router.post("/{issue_id}/refresh")
def refresh_issue(issue_id: int, engine: SyncEngine = Depends(get_engine)):
    """Fetch the issue with journals and attachments from the server"""
    try:
        issue = engine.refresh_issue_details(issue_id)
    except SyncError as e:
        raise http_error(e)
    if not issue:
        raise HTTPException(status_code=404, detail="Issue not found")
    return issue
