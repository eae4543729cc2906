"""Attachment endpoints"""
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from tracksync.api.deps import get_engine, http_error
from tracksync.errors import SyncError
from tracksync.services.sync_engine import SyncEngine

router = APIRouter(prefix="/api/attachments", tags=["attachments"])


@router.get("/{attachment_id}/content")
def download_attachment(attachment_id: int, engine: SyncEngine = Depends(get_engine)):
    """Stream attachment content from the server"""
    try:
        meta, chunks = engine.open_attachment(attachment_id)
    except SyncError as e:
        raise http_error(e)
    headers = {"Content-Disposition": f'attachment; filename="{meta["filename"]}"'}
    return StreamingResponse(
        chunks,
        media_type=meta.get("content_type") or "application/octet-stream",
        headers=headers,
    )


@router.post("/uploads")
async def upload_attachment(filename: str, request: Request, engine: SyncEngine = Depends(get_engine)):
    """Upload raw file content; reference the returned entry from a mutation's `uploads`"""
    if not filename:
        raise HTTPException(status_code=400, detail="filename is required")
    content = await request.body()
    try:
        return engine.upload_attachment(filename, content)
    except SyncError as e:
        raise http_error(e)
