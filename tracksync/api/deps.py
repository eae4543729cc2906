"""Request-scoped access to the running sync components"""

from fastapi import HTTPException, Request

from tracksync.errors import (
    AuthError,
    EnginePausedError,
    NetworkError,
    StorageError,
    SyncError,
    ValidationError,
)
from tracksync.services.bulk import BulkOperationCoordinator
from tracksync.services.sync_engine import SyncEngine


def get_engine(request: Request) -> SyncEngine:
    return request.app.state.engine


def get_bulk(request: Request) -> BulkOperationCoordinator:
    return request.app.state.bulk


def get_db(request: Request):
    """Get a read session over the last committed cache snapshot"""
    with request.app.state.engine.store.read() as session:
        yield session


def http_error(e: SyncError) -> HTTPException:
    """Translate engine errors into HTTP errors"""
    if isinstance(e, ValidationError):
        return HTTPException(status_code=404 if e.not_found else 422, detail=e.user_message())
    if isinstance(e, AuthError):
        return HTTPException(status_code=401, detail=e.user_message())
    if isinstance(e, EnginePausedError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, NetworkError):
        return HTTPException(status_code=503, detail=e.user_message())
    if isinstance(e, StorageError):
        return HTTPException(status_code=500, detail=str(e))
    return HTTPException(status_code=500, detail=e.user_message())
