"""Entity kinds and their per-kind capabilities.

Every cached kind (project, issue, journal, attachment) gets one adapter that
knows how to turn a remote payload into column values (``from_remote``), how
to upsert it into the cache (``apply_upsert``), how to read its version token
(``version_of``) and how to serialize a cached row (``serialize``).

Version tokens are the server's ``updated_on`` timestamps (``created_on`` for
append-only kinds), parsed to UTC tz-naive datetimes so they compare strictly.
"""

from __future__ import annotations

import enum
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Type

from sqlalchemy.orm import Session

from tracksync.errors import ValidationError
from tracksync.models import Attachment, Issue, Journal, Project

logger = logging.getLogger(__name__)


class EntityKind(str, enum.Enum):
    PROJECT = "project"
    ISSUE = "issue"
    JOURNAL = "journal"
    ATTACHMENT = "attachment"


# Pullable collections and the kind each one holds
COLLECTIONS: Dict[str, EntityKind] = {
    "projects": EntityKind.PROJECT,
    "issues": EntityKind.ISSUE,
}

# Fields a mutation may carry for issues (remote update keys).
ISSUE_MUTABLE_FIELDS = {
    "project_id",
    "tracker_id",
    "status_id",
    "priority_id",
    "assigned_to_id",
    "subject",
    "description",
    "start_date",
    "due_date",
    "done_ratio",
    "is_private",
    "estimated_hours",
    "category_id",
    "notes",
    "private_notes",
    "uploads",
}

# Append-only fields: they add a journal/attachment and never collide with remote edits.
APPEND_ONLY_FIELDS = {"notes", "private_notes", "uploads"}

# Issue columns an optimistic write may touch; remote_data keeps their server values.
OVERLAY_COLUMNS = (
    "project_id",
    "project_name",
    "tracker_id",
    "tracker_name",
    "status_id",
    "status_name",
    "priority_id",
    "priority_name",
    "assigned_to_id",
    "assigned_to_name",
    "subject",
    "description",
    "start_date",
    "due_date",
    "done_ratio",
    "is_private",
    "estimated_hours",
)

# *_id delta keys that have a cached display name, and the lookup table kind behind it
NAMED_REFERENCES = {
    "status_id": ("status_name", "issue_status"),
    "priority_id": ("priority_name", "issue_priority"),
    "tracker_id": ("tracker_name", "tracker"),
    "assigned_to_id": ("assigned_to_name", None),
}


def normalize_utc_naive(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to UTC tz-naive (safe for comparisons)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_remote_datetime(value: Any) -> Optional[datetime]:
    """Parse remote ISO8601 timestamps into UTC tz-naive datetimes."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return normalize_utc_naive(value)
    dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return normalize_utc_naive(dt)


def json_safe(value: Any) -> Any:
    """Make cached values storable in JSON columns and notifications."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value


def _ref(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = data.get(name)
    return value if isinstance(value, dict) else {}


class EntityAdapter:
    """Capability interface implemented once per entity kind."""

    kind: EntityKind
    model: Type[Any]
    columns: tuple = ()

    def from_remote(self, data: Dict[str, Any], **context: Any) -> Dict[str, Any]:
        raise NotImplementedError

    def version_of(self, record: Any) -> Optional[datetime]:
        raise NotImplementedError

    def serialize(self, row: Any) -> Dict[str, Any]:
        return {col: json_safe(getattr(row, col)) for col in self.columns}

    def apply_upsert(self, session: Session, record: Dict[str, Any], now: datetime) -> bool:
        """Write `record` unless the cached row is newer or identical. Returns True if written."""
        return self._write_row(session, record) is not None

    def _write_row(self, session: Session, record: Dict[str, Any]) -> Optional[Any]:
        row = session.get(self.model, record["id"])
        if row is None:
            row = self.model(**record)
            session.add(row)
            return row

        incoming = self.version_of(record)
        stored = self.version_of(row)
        if stored is not None and incoming is not None and incoming < stored:
            logger.debug(f"Discarding out-of-order {self.kind.value} {record['id']} ({incoming} < {stored})")
            return None

        if all(getattr(row, key) == value for key, value in record.items()):
            return None

        for key, value in record.items():
            setattr(row, key, value)
        return row


class ProjectAdapter(EntityAdapter):
    kind = EntityKind.PROJECT
    model = Project
    columns = (
        "id",
        "name",
        "identifier",
        "description",
        "status",
        "parent_id",
        "created_on",
        "updated_on",
        "last_synced_at",
    )

    def from_remote(self, data: Dict[str, Any], **context: Any) -> Dict[str, Any]:
        return {
            "id": int(data["id"]),
            "name": data.get("name") or "",
            "identifier": data.get("identifier") or "",
            "description": data.get("description"),
            "status": data.get("status"),
            "parent_id": _ref(data, "parent").get("id"),
            "created_on": parse_remote_datetime(data.get("created_on")),
            "updated_on": parse_remote_datetime(data.get("updated_on")),
        }

    def version_of(self, record: Any) -> Optional[datetime]:
        if isinstance(record, dict):
            return record.get("updated_on")
        return record.updated_on

    def apply_upsert(self, session: Session, record: Dict[str, Any], now: datetime) -> bool:
        row = self._write_row(session, record)
        if row is None:
            return False
        row.last_synced_at = now
        return True


class IssueAdapter(EntityAdapter):
    kind = EntityKind.ISSUE
    model = Issue
    columns = (
        "id",
        "project_id",
        "project_name",
        "tracker_id",
        "tracker_name",
        "status_id",
        "status_name",
        "priority_id",
        "priority_name",
        "author_id",
        "author_name",
        "assigned_to_id",
        "assigned_to_name",
        "subject",
        "description",
        "start_date",
        "due_date",
        "done_ratio",
        "is_private",
        "estimated_hours",
        "created_on",
        "updated_on",
        "version",
        "dirty",
        "last_synced_at",
    )

    def from_remote(self, data: Dict[str, Any], **context: Any) -> Dict[str, Any]:
        project = _ref(data, "project")
        tracker = _ref(data, "tracker")
        status = _ref(data, "status")
        priority = _ref(data, "priority")
        author = _ref(data, "author")
        assignee = _ref(data, "assigned_to")
        updated_on = parse_remote_datetime(data.get("updated_on"))
        return {
            "id": int(data["id"]),
            "project_id": project.get("id"),
            "project_name": project.get("name"),
            "tracker_id": tracker.get("id"),
            "tracker_name": tracker.get("name"),
            "status_id": status.get("id"),
            "status_name": status.get("name"),
            "priority_id": priority.get("id"),
            "priority_name": priority.get("name"),
            "author_id": author.get("id"),
            "author_name": author.get("name"),
            "assigned_to_id": assignee.get("id"),
            "assigned_to_name": assignee.get("name"),
            "subject": data.get("subject") or "",
            "description": data.get("description"),
            "start_date": data.get("start_date"),
            "due_date": data.get("due_date"),
            "done_ratio": data.get("done_ratio"),
            "is_private": data.get("is_private"),
            "estimated_hours": data.get("estimated_hours"),
            "created_on": parse_remote_datetime(data.get("created_on")),
            "updated_on": updated_on,
            "version": updated_on,
        }

    def version_of(self, record: Any) -> Optional[datetime]:
        if isinstance(record, dict):
            return record.get("version")
        return record.version

    def apply_upsert(self, session: Session, record: Dict[str, Any], now: datetime) -> bool:
        row = session.get(Issue, record["id"])
        if row is not None and row.dirty and self.version_of(record) == row.version:
            # Remote unchanged since the optimistic write; keep showing the local intent.
            return False
        row = self._write_row(session, record)
        if row is None:
            return False
        row.dirty = False
        row.remote_data = self.snapshot(record, OVERLAY_COLUMNS)
        row.last_synced_at = now
        return True

    @staticmethod
    def validate_delta(delta: Dict[str, Any], *, for_create: bool) -> Dict[str, Any]:
        """Reject deltas the remote could never accept, before they are queued."""
        if not isinstance(delta, dict) or not delta:
            raise ValidationError("Mutation delta must be a non-empty mapping")
        unknown = sorted(set(delta) - ISSUE_MUTABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown issue fields: {', '.join(unknown)}")
        if for_create:
            missing = [f for f in ("project_id", "subject") if not delta.get(f)]
            if missing:
                raise ValidationError(f"Missing required fields for create: {', '.join(missing)}")
        elif "subject" in delta and not str(delta["subject"] or "").strip():
            raise ValidationError("Subject cannot be blank")
        return dict(delta)

    @staticmethod
    def comparable_fields(delta: Dict[str, Any]) -> List[str]:
        """Delta fields whose remote value can collide with a concurrent edit."""
        return sorted(k for k in delta if k not in APPEND_ONLY_FIELDS)

    def snapshot(self, record: Any, fields: Iterable[str]) -> Dict[str, Any]:
        """Values of `fields` in a cached row or a from_remote() record."""
        out = {}
        for name in fields:
            if isinstance(record, dict):
                value = record.get(name)
            else:
                value = getattr(record, name, None)
            out[name] = json_safe(value)
        return out


class JournalAdapter(EntityAdapter):
    kind = EntityKind.JOURNAL
    model = Journal
    columns = ("id", "issue_id", "user_id", "user_name", "notes", "private_notes", "details", "created_on")

    def from_remote(self, data: Dict[str, Any], **context: Any) -> Dict[str, Any]:
        user = _ref(data, "user")
        return {
            "id": int(data["id"]),
            "issue_id": int(context["issue_id"]),
            "user_id": user.get("id"),
            "user_name": user.get("name"),
            "notes": data.get("notes"),
            "private_notes": bool(data.get("private_notes", False)),
            "details": list(data.get("details") or []),
            "created_on": parse_remote_datetime(data.get("created_on")),
        }

    def version_of(self, record: Any) -> Optional[datetime]:
        if isinstance(record, dict):
            return record.get("created_on")
        return record.created_on

    def apply_upsert(self, session: Session, record: Dict[str, Any], now: datetime) -> bool:
        # Append-only: a stored journal is never rewritten.
        if session.get(Journal, record["id"]) is not None:
            return False
        session.add(Journal(**record))
        return True


class AttachmentAdapter(EntityAdapter):
    kind = EntityKind.ATTACHMENT
    model = Attachment
    columns = (
        "id",
        "issue_id",
        "filename",
        "filesize",
        "content_type",
        "description",
        "content_url",
        "author_name",
        "created_on",
    )

    def from_remote(self, data: Dict[str, Any], **context: Any) -> Dict[str, Any]:
        return {
            "id": int(data["id"]),
            "issue_id": int(context["issue_id"]),
            "filename": data.get("filename") or "",
            "filesize": data.get("filesize"),
            "content_type": data.get("content_type"),
            "description": data.get("description") or "",
            "content_url": data.get("content_url") or "",
            "author_name": _ref(data, "author").get("name"),
            "created_on": parse_remote_datetime(data.get("created_on")),
        }

    def version_of(self, record: Any) -> Optional[datetime]:
        if isinstance(record, dict):
            return record.get("created_on")
        return record.created_on


ADAPTERS: Dict[EntityKind, EntityAdapter] = {
    EntityKind.PROJECT: ProjectAdapter(),
    EntityKind.ISSUE: IssueAdapter(),
    EntityKind.JOURNAL: JournalAdapter(),
    EntityKind.ATTACHMENT: AttachmentAdapter(),
}


def adapter_for(kind: Any) -> EntityAdapter:
    try:
        return ADAPTERS[EntityKind(kind)]
    except ValueError:
        raise ValueError(f"Unknown entity kind: {kind}") from None


def collection_kind(collection: str) -> EntityKind:
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown collection: {collection}")
    return COLLECTIONS[collection]
