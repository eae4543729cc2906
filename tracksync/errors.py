"""Error taxonomy shared by the remote client, the cache and the engine.

RemoteClient and LocalStore raise these; the SyncEngine decides whether to
retry, pause or surface based on the class, never on the message.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base class for every error the engine knows how to classify."""

    retryable = False

    def user_message(self) -> str:
        return str(self)


class NetworkError(SyncError):
    """Transport failure, timeout or transient server error."""

    retryable = True

    def __init__(self, message: str, *, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    def user_message(self) -> str:
        if self.status is None:
            return "Cannot reach the server. Changes stay queued until it is back."
        return f"Server temporarily unavailable (HTTP {self.status})."


class RateLimitError(NetworkError):
    """Server asked us to slow down (HTTP 429)."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None):
        super().__init__(message, status=429)
        self.retry_after = retry_after


class AuthError(SyncError):
    """Credentials rejected. Fatal to the whole engine run."""

    def __init__(self, message: str, *, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    def user_message(self) -> str:
        return "Authentication failed. Please check the API key and resume sync."


class ValidationError(SyncError):
    """The server rejected one specific mutation; retrying cannot help."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        errors: Optional[list] = None,
    ):
        super().__init__(message)
        self.status = status
        self.errors = list(errors or [])

    @property
    def not_found(self) -> bool:
        return self.status == 404

    def user_message(self) -> str:
        if self.not_found:
            return "Resource not found."
        if self.errors:
            return "Validation failed: " + "; ".join(str(e) for e in self.errors)
        return f"Validation failed: {self}"


class AmbiguousCreateError(SyncError):
    """A create may or may not have reached the server.

    Never retried automatically: a blind retry could create a duplicate.
    """

    def user_message(self) -> str:
        return (
            "The server may have created this issue before the connection failed. "
            "Check the tracker before re-submitting."
        )


class ConflictError(SyncError):
    """A pending mutation collides with a remote change."""

    def __init__(
        self,
        message: str,
        *,
        local_delta: Optional[Dict[str, Any]] = None,
        remote_state: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.local_delta = dict(local_delta or {})
        self.remote_state = dict(remote_state or {})

    def user_message(self) -> str:
        return (
            "This issue changed on the server while your edit was queued. "
            "Review the conflict to keep or drop your change."
        )


class StorageError(SyncError):
    """A cache read or write failed.

    ``corrupted`` marks damage a retry cannot fix (malformed file, missing
    schema); the engine answers those with a full cache rebuild.
    """

    def __init__(self, message: str, *, corrupted: bool = False):
        super().__init__(message)
        self.corrupted = corrupted


class EnginePausedError(SyncError):
    """The engine is paused after an authorization failure."""


class SyncCancelled(SyncError):
    """A run was cancelled by the caller."""
