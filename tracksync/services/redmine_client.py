"""Redmine REST API client wrapper"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests
import urllib3

from tracksync.entities import EntityKind, parse_remote_datetime
from tracksync.errors import (
    AmbiguousCreateError,
    AuthError,
    NetworkError,
    RateLimitError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Remote collection path per entity kind
_KIND_PATHS = {
    EntityKind.PROJECT: "projects",
    EntityKind.ISSUE: "issues",
}


@dataclass
class Page:
    """One page of a collection fetch"""

    items: List[Dict[str, Any]]
    next_cursor: Optional[datetime]
    next_page_token: Optional[int]
    has_more: bool


@dataclass
class ConflictSignal:
    """Returned by update_entity when the remote version moved past the precondition."""

    remote: Dict[str, Any]
    remote_version: Optional[datetime] = None
    expected_version: Optional[datetime] = None


class RedmineClient:
    """Wrapper for Redmine API operations"""

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        timeout: float = 30.0,
        page_size: int = 100,
        session: Optional[requests.Session] = None,
    ):
        """Initialize Redmine client"""
        self.url = (url or "").rstrip("/")
        self.timeout = timeout
        self.page_size = page_size
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "X-Redmine-API-Key": api_key,
                "Accept": "application/json",
            }
        )

    @staticmethod
    def _should_retry(exc: Exception) -> bool:
        """Retry predicate for transient failures of idempotent calls."""
        return isinstance(exc, NetworkError)

    def _with_retries(self, fn: Callable[[], Any], *, max_attempts: int = 3, base_delay_s: float = 0.5):
        """Run callable with small exponential backoff on transient errors."""
        attempt = 1
        while True:
            try:
                return fn()
            except Exception as e:
                if attempt >= max_attempts or not self._should_retry(e):
                    raise
                delay = base_delay_s * (2 ** (attempt - 1))
                if isinstance(e, RateLimitError) and e.retry_after:
                    delay = max(delay, e.retry_after)
                time.sleep(delay)
                attempt += 1

    @staticmethod
    def _kind_path(kind: Any) -> str:
        try:
            return _KIND_PATHS[EntityKind(kind)]
        except (KeyError, ValueError):
            raise ValueError(f"Entity kind {kind!r} is not a remote collection") from None

    def _build_url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.url}/{path.lstrip('/')}"

    @staticmethod
    def _never_sent(exc: requests.exceptions.ConnectionError) -> bool:
        """True if the connection failed before any byte of the request left."""
        if isinstance(exc, requests.exceptions.ConnectTimeout):
            return True
        reason = exc.args[0] if exc.args else None
        if isinstance(reason, urllib3.exceptions.MaxRetryError):
            reason = reason.reason
        return isinstance(
            reason, (urllib3.exceptions.NewConnectionError, urllib3.exceptions.ConnectTimeoutError)
        )

    @staticmethod
    def _error_details(response: requests.Response) -> List[str]:
        try:
            body = response.json()
        except ValueError:
            text = (response.text or "").strip()
            return [text[:500]] if text else []
        errors = body.get("errors") if isinstance(body, dict) else None
        if isinstance(errors, list):
            return [str(e) for e in errors]
        return []

    def _raise_for_status(self, response: requests.Response, method: str, path: str, *, create: bool = False):
        status = response.status_code
        if 200 <= status < 300:
            return
        details = self._error_details(response)
        message = f"{method} {path} failed with status {status}"
        if details:
            message += f": {'; '.join(details)}"

        if status == 401 or (status == 403 and method == "GET"):
            raise AuthError(message, status=status)
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                retry_after_s = float(retry_after) if retry_after else None
            except ValueError:
                retry_after_s = None
            raise RateLimitError(message, retry_after=retry_after_s)
        if status >= 500:
            if create:
                raise AmbiguousCreateError(message)
            raise NetworkError(message, status=status)
        # 400/403/404/409/422 on a specific resource or mutation
        raise ValidationError(message, status=status, errors=details)

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        data: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
        stream: bool = False,
        create: bool = False,
    ) -> requests.Response:
        """Send one request and translate failures into the engine's error taxonomy."""
        url = self._build_url(path)
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json,
                data=data,
                headers=headers,
                timeout=self.timeout,
                stream=stream,
            )
        except requests.exceptions.Timeout as e:
            if create and not isinstance(e, requests.exceptions.ConnectTimeout):
                raise AmbiguousCreateError(f"{method} {path} timed out after sending: {e}") from e
            raise NetworkError(f"{method} {path} timed out: {e}") from e
        except requests.exceptions.ConnectionError as e:
            if create and not self._never_sent(e):
                raise AmbiguousCreateError(f"{method} {path} lost the connection: {e}") from e
            raise NetworkError(f"{method} {path} failed: {e}") from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e

        try:
            self._raise_for_status(response, method, path, create=create)
        except Exception:
            response.close()
            raise
        return response

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        def _call():
            response = self._request("GET", path, params=params)
            try:
                return response.json()
            except ValueError as e:
                raise NetworkError(f"GET {path} returned invalid JSON: {e}") from e

        return self._with_retries(_call)

    def fetch_collection(
        self, kind: Any, since_cursor: Optional[datetime] = None, page_token: Optional[int] = None
    ) -> Page:
        """Fetch one page of a collection, oldest change first.

        Issues are paged by key: each page asks for ``updated_on >= since_cursor``
        again, and ``page_token`` only skips the items already seen at exactly
        that timestamp. Edits landing mid-pull move issues to the end of the
        result instead of shifting unseen ones past the offset. Callers pass the
        previous page's ``next_cursor`` with its token. Projects cannot be
        filtered by date and use a plain offset.
        """
        path = self._kind_path(kind)
        keyset = EntityKind(kind) == EntityKind.ISSUE
        offset = int(page_token or 0)
        params: Dict[str, Any] = {"limit": self.page_size, "offset": offset}
        if keyset:
            # Include closed issues; the id breaks ties so skipped items stay put.
            params["status_id"] = "*"
            params["sort"] = "updated_on,id"
            if since_cursor is not None:
                params["updated_on"] = ">=" + since_cursor.strftime("%Y-%m-%dT%H:%M:%SZ")

        try:
            body = self._get_json(f"{path}.json", params=params)
        except Exception as e:
            logger.error(f"Failed to fetch {path} page at offset {offset}: {e}")
            raise

        items = list(body.get(path) or [])
        total = body.get("total_count")
        fetched_until = offset + len(items)
        if total is not None:
            has_more = fetched_until < int(total) and len(items) > 0
        else:
            has_more = len(items) >= self.page_size

        next_cursor = since_cursor
        stamps = [parse_remote_datetime(item.get("updated_on")) for item in items]
        for updated in stamps:
            if updated is not None and (next_cursor is None or updated > next_cursor):
                next_cursor = updated

        if not has_more:
            next_token = None
        elif keyset:
            next_token = sum(1 for updated in stamps if updated == next_cursor)
            if next_cursor == since_cursor:
                next_token += offset
        else:
            next_token = fetched_until

        return Page(
            items=items,
            next_cursor=next_cursor,
            next_page_token=next_token,
            has_more=has_more,
        )

    def fetch_entity(self, kind: Any, entity_id: int) -> Dict[str, Any]:
        """Get a single entity by id"""
        path = self._kind_path(kind)
        body = self._get_json(f"{path}/{int(entity_id)}.json")
        return body[EntityKind(kind).value]

    def fetch_issue_details(self, issue_id: int) -> Dict[str, Any]:
        """Get an issue together with its journals and attachment metadata"""
        try:
            body = self._get_json(
                f"issues/{int(issue_id)}.json", params={"include": "journals,attachments"}
            )
            return body["issue"]
        except Exception as e:
            logger.error(f"Failed to get details for issue {issue_id}: {e}")
            raise

    def create_entity(self, kind: Any, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Create a new entity.

        Never retried here: a failure after the request may have reached the
        server surfaces as AmbiguousCreateError instead of risking a duplicate.
        """
        path = self._kind_path(kind)
        wrapper = EntityKind(kind).value
        try:
            response = self._request("POST", f"{path}.json", json={wrapper: payload}, create=True)
            try:
                created = response.json()[wrapper]
            except (ValueError, KeyError) as e:
                raise AmbiguousCreateError(f"POST {path}.json returned an unreadable body: {e}") from e
            logger.info(f"Created {wrapper} #{created.get('id')}")
            return created
        except Exception as e:
            logger.error(f"Failed to create {wrapper}: {e}")
            raise

    def update_entity(
        self,
        kind: Any,
        entity_id: int,
        expected_version: Optional[datetime],
        payload: Dict[str, Any],
    ) -> Any:
        """Update an entity if its remote version still matches `expected_version`.

        The remote has no conditional PUT, so the precondition is checked with a
        fresh GET right before writing. Returns the server copy after the write,
        or a ConflictSignal carrying the current remote state.
        """
        path = self._kind_path(kind)
        wrapper = EntityKind(kind).value
        try:
            current = self.fetch_entity(kind, entity_id)
            remote_version = parse_remote_datetime(current.get("updated_on"))
            if expected_version is not None and remote_version != expected_version:
                logger.info(
                    f"Precondition failed for {wrapper} #{entity_id}: "
                    f"expected {expected_version}, remote {remote_version}"
                )
                return ConflictSignal(
                    remote=current, remote_version=remote_version, expected_version=expected_version
                )
            response = self._request("PUT", f"{path}/{int(entity_id)}.json", json={wrapper: payload})
            response.close()
            logger.info(f"Updated {wrapper} #{entity_id}")
            return self.fetch_entity(kind, entity_id)
        except Exception as e:
            logger.error(f"Failed to update {wrapper} #{entity_id}: {e}")
            raise

    def fetch_attachment_content(self, attachment_id: int, content_url: Optional[str] = None) -> Iterator[bytes]:
        """Stream attachment content in chunks"""
        if not content_url:
            body = self._get_json(f"attachments/{int(attachment_id)}.json")
            content_url = body["attachment"]["content_url"]
        response = self._request("GET", content_url, stream=True)

        def _chunks() -> Iterator[bytes]:
            try:
                for chunk in response.iter_content(chunk_size=64 * 1024):
                    if chunk:
                        yield chunk
            except requests.exceptions.RequestException as e:
                raise NetworkError(f"Attachment {attachment_id} download interrupted: {e}") from e
            finally:
                response.close()

        return _chunks()

    def upload_file(self, filename: str, content: bytes) -> str:
        """Upload a file and return the token to reference it from an issue"""
        response = self._request(
            "POST",
            "uploads.json",
            params={"filename": filename},
            data=content,
            headers={"Content-Type": "application/octet-stream"},
        )
        try:
            token = response.json()["upload"]["token"]
        except (ValueError, KeyError) as e:
            raise NetworkError(f"Upload of {filename} returned an unreadable body: {e}") from e
        logger.info(f"Uploaded '{filename}' ({len(content)} bytes)")
        return token

    def fetch_lookups(self) -> Dict[str, List[Dict[str, Any]]]:
        """Get issue statuses, priorities and trackers"""
        statuses = self._get_json("issue_statuses.json").get("issue_statuses") or []
        priorities = self._get_json("enumerations/issue_priorities.json").get("issue_priorities") or []
        trackers = self._get_json("trackers.json").get("trackers") or []
        return {
            "issue_status": [
                {"id": s["id"], "name": s.get("name", ""), "position": i, "is_closed": s.get("is_closed")}
                for i, s in enumerate(statuses)
            ],
            "issue_priority": [
                {"id": p["id"], "name": p.get("name", ""), "position": i, "is_closed": None}
                for i, p in enumerate(priorities)
            ],
            "tracker": [
                {"id": t["id"], "name": t.get("name", ""), "position": i, "is_closed": None}
                for i, t in enumerate(trackers)
            ],
        }

    def get_current_user(self) -> Dict[str, Any]:
        """Get the account the API key belongs to"""
        return self._get_json("users/current.json")["user"]

    def test_connection(self) -> Dict[str, Any]:
        """Raise if the server is unreachable or the key is rejected.

        Public trackers answer project listings anonymously, so the check asks
        for the key's own account instead.
        """
        user = self.get_current_user()
        logger.info(f"Connected to {self.url} as {user.get('login') or user.get('id')}")
        return user
