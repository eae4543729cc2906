"""Local cache of remote entities.

All writes go through ``write()``: a process-wide lock plus one SQLAlchemy
session committed on exit, so there is exactly one writer at a time. Reads use
``read()`` sessions which (SQLite in WAL mode) keep seeing the last committed
snapshot while a writer is busy.
"""

import logging
import threading
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tracksync.entities import (
    APPEND_ONLY_FIELDS,
    NAMED_REFERENCES,
    OVERLAY_COLUMNS,
    EntityKind,
    adapter_for,
    json_safe,
)
from tracksync.errors import StorageError
from tracksync.models import (
    Attachment,
    BatchMember,
    Conflict,
    Issue,
    Journal,
    Lookup,
    PendingMutation,
    Project,
    SyncCursor,
)
from tracksync.models.base import Base, init_db, make_session_factory, utcnow
from tracksync.models.pending_mutation import MutationOperation, MutationStatus

logger = logging.getLogger(__name__)

# SQLite messages that mean the file or schema is damaged rather than busy.
_CORRUPTION_MARKERS = (
    "malformed",
    "not a database",
    "no such table",
    "no such column",
    "disk i/o error",
)

SORT_ORDERS = ("updated_desc", "status_asc", "status_desc", "priority_asc", "priority_desc")

GROUP_KEYS = {
    "status": "status_name",
    "project": "project_name",
    "assignee": "assigned_to_name",
}


def status_rank(status_name: Optional[str]) -> int:
    """Workflow order used when sorting or grouping by status"""
    name = (status_name or "").lower()
    if "progress" in name:
        return 1
    if "feedback" in name:
        return 2
    if "new" in name:
        return 3
    if "resolved" in name:
        return 4
    if "closed" in name:
        return 5
    return 99


@dataclass
class IssueFilter:
    project_id: Optional[int] = None
    status_id: Optional[int] = None
    status_name: Optional[str] = None
    assigned_to_id: Optional[int] = None
    dirty: Optional[bool] = None
    search: Optional[str] = None


def _storage_error(exc: SQLAlchemyError, action: str) -> StorageError:
    text = str(exc).lower()
    corrupted = any(marker in text for marker in _CORRUPTION_MARKERS)
    return StorageError(f"Cache {action} failed: {exc}", corrupted=corrupted)


class LocalStore:
    """Persistent cache plus the transactions the engine and queue write through."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.SessionLocal = make_session_factory(engine)
        self._write_lock = threading.Lock()
        self._local = threading.local()

    def init(self) -> None:
        try:
            init_db(self.engine)
        except SQLAlchemyError as e:
            raise _storage_error(e, "initialization") from e

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    @contextmanager
    def write(self) -> Iterator[Session]:
        """The single-writer transaction. Nested calls on one thread join the outer one."""
        active = getattr(self._local, "session", None)
        if active is not None:
            yield active
            return

        with self._write_lock:
            session = self.SessionLocal()
            self._local.session = session
            try:
                yield session
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise _storage_error(e, "write") from e
            except BaseException:
                session.rollback()
                raise
            finally:
                self._local.session = None
                session.close()

    @contextmanager
    def read(self) -> Iterator[Session]:
        """A read-only session over the last committed snapshot"""
        active = getattr(self._local, "session", None)
        if active is not None:
            # Inside a write: read your own uncommitted changes.
            yield active
            return

        session = self.SessionLocal()
        try:
            yield session
        except SQLAlchemyError as e:
            raise _storage_error(e, "read") from e
        finally:
            # close() ends the read transaction without expiring loaded rows.
            session.close()

    # ------------------------------------------------------------------
    # Remote state
    # ------------------------------------------------------------------
    def upsert_from_remote(
        self,
        session: Session,
        kind: Any,
        items: Iterable[Dict[str, Any]],
        now: Optional[datetime] = None,
        **context: Any,
    ) -> List[int]:
        """Apply raw remote payloads. Returns ids of rows that actually changed."""
        adapter = adapter_for(kind)
        now = now or utcnow()
        changed = []
        for data in items:
            record = adapter.from_remote(data, **context)
            if adapter.apply_upsert(session, record, now):
                changed.append(record["id"])
        # Later lookups in this transaction must see the new rows.
        session.flush()
        return changed

    def apply_confirmed_mutation(
        self,
        session: Session,
        data: Dict[str, Any],
        temp_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Replace the optimistic copy with the server's confirmed copy.

        For creates the temporary row is dropped and the issue re-keyed to the
        server id.
        """
        adapter = adapter_for(EntityKind.ISSUE)
        record = adapter.from_remote(data)
        now = utcnow()

        if temp_id is not None and temp_id != record["id"]:
            temp_row = session.get(Issue, temp_id)
            if temp_row is not None:
                session.delete(temp_row)
                session.flush()

        row = session.get(Issue, record["id"])
        if row is None:
            row = Issue(**record)
            session.add(row)
            overwrite = True
        else:
            stored = adapter.version_of(row)
            incoming = adapter.version_of(record)
            overwrite = stored is None or incoming is None or incoming >= stored

        if overwrite:
            for key, value in record.items():
                setattr(row, key, value)
            row.remote_data = adapter.snapshot(record, OVERLAY_COLUMNS)
        else:
            # A pull already cached a newer server copy; only the overlay is cleared.
            logger.debug(f"Confirmed copy of issue {record['id']} is older than the cache; keeping cache")
            self._reset_to_remote(row)
        row.dirty = False
        row.last_synced_at = now
        session.flush()
        return adapter.serialize(row)

    # ------------------------------------------------------------------
    # Optimistic writes
    # ------------------------------------------------------------------
    def mark_dirty(self, session: Session, issue_id: int, delta: Dict[str, Any]) -> Optional[Issue]:
        """Show `delta` in the cache before the server has confirmed it"""
        row = session.get(Issue, issue_id)
        if row is None:
            return None
        self._apply_delta(session, row, delta)
        row.dirty = True
        return row

    def insert_local_issue(self, session: Session, temp_id: int, payload: Dict[str, Any]) -> Issue:
        """Optimistic row for an issue that only exists in the queue so far"""
        now = utcnow()
        row = Issue(
            id=temp_id,
            project_id=int(payload["project_id"]),
            subject="",
            created_on=now,
            updated_on=now,
            version=None,
            dirty=True,
        )
        session.add(row)
        self._apply_delta(session, row, payload)
        session.flush()
        return row

    def restore_issue(
        self,
        session: Session,
        issue_id: int,
        snapshot: Optional[Dict[str, Any]] = None,
        pending_deltas: Sequence[Dict[str, Any]] = (),
    ) -> Optional[Issue]:
        """Rebuild an issue's overlay from its server values.

        `snapshot` is only used when no server copy has been cached yet. The
        deltas of mutations still queued for the issue are re-applied in order.
        """
        row = session.get(Issue, issue_id)
        if row is None:
            return None
        if row.remote_data:
            self._reset_to_remote(row)
        elif snapshot:
            for key, value in snapshot.items():
                if key in OVERLAY_COLUMNS:
                    setattr(row, key, value)
            self._refresh_names(session, row, snapshot)
        for delta in pending_deltas:
            self._apply_delta(session, row, delta)
        row.dirty = bool(pending_deltas) or row.id < 0
        return row

    def discard_local_issue(self, session: Session, temp_id: int) -> bool:
        row = session.get(Issue, temp_id)
        if row is None or temp_id >= 0:
            return False
        session.delete(row)
        session.flush()
        return True

    def _reset_to_remote(self, row: Issue) -> None:
        if not row.remote_data:
            return
        for key in OVERLAY_COLUMNS:
            if key in row.remote_data:
                setattr(row, key, row.remote_data[key])

    def _apply_delta(self, session: Session, row: Issue, delta: Dict[str, Any]) -> None:
        for key, value in delta.items():
            if key in APPEND_ONLY_FIELDS:
                continue
            if key == "project_id":
                row.project_id = int(value)
                project = session.get(Project, row.project_id)
                if project is not None:
                    row.project_name = project.name
            elif key in NAMED_REFERENCES:
                setattr(row, key, value)
            elif key in OVERLAY_COLUMNS:
                setattr(row, key, value)
        self._refresh_names(session, row, delta)

    def _refresh_names(self, session: Session, row: Issue, delta: Dict[str, Any]) -> None:
        for key, (name_column, lookup_kind) in NAMED_REFERENCES.items():
            if key not in delta:
                continue
            value = delta[key]
            if value is None:
                setattr(row, name_column, None)
            elif lookup_kind is not None:
                setattr(row, name_column, self.lookup_name(session, lookup_kind, value))
            else:
                # No user directory is cached; borrow the name from another issue.
                other = (
                    session.query(Issue.assigned_to_name)
                    .filter(Issue.assigned_to_id == value, Issue.assigned_to_name.isnot(None))
                    .first()
                )
                setattr(row, name_column, other[0] if other else None)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def query(
        self,
        filter: Optional[IssueFilter] = None,
        sort: str = "updated_desc",
        group_by: Optional[str] = None,
    ):
        """Issues from the cache, filtered and sorted. Never touches the network."""
        if sort not in SORT_ORDERS:
            raise ValueError(f"Unknown sort order: {sort}")
        if group_by is not None and group_by not in GROUP_KEYS:
            raise ValueError(f"Unknown grouping: {group_by}")
        filter = filter or IssueFilter()
        adapter = adapter_for(EntityKind.ISSUE)

        with self.read() as session:
            q = session.query(Issue)
            if filter.project_id is not None:
                q = q.filter(Issue.project_id == filter.project_id)
            if filter.status_id is not None:
                q = q.filter(Issue.status_id == filter.status_id)
            if filter.status_name:
                q = q.filter(Issue.status_name == filter.status_name)
            if filter.assigned_to_id is not None:
                q = q.filter(Issue.assigned_to_id == filter.assigned_to_id)
            if filter.dirty is not None:
                q = q.filter(Issue.dirty.is_(filter.dirty))
            if filter.search:
                pattern = f"%{filter.search}%"
                q = q.filter(or_(Issue.subject.ilike(pattern), Issue.description.ilike(pattern)))

            if sort == "priority_asc":
                q = q.order_by(Issue.priority_id.asc(), Issue.updated_on.desc())
            elif sort == "priority_desc":
                q = q.order_by(Issue.priority_id.desc(), Issue.updated_on.desc())
            else:
                q = q.order_by(Issue.updated_on.desc(), Issue.id.desc())
            issues = [adapter.serialize(row) for row in q.all()]

        if sort in ("status_asc", "status_desc"):
            # Stable: ties keep the most recently updated first.
            issues.sort(
                key=lambda i: (status_rank(i["status_name"]), i["status_name"] or ""),
                reverse=(sort == "status_desc"),
            )

        if group_by is None:
            return issues

        column = GROUP_KEYS[group_by]
        groups: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
        keys = sorted({i[column] or "" for i in issues})
        if group_by == "status":
            keys.sort(key=status_rank)
        for key in keys:
            groups[key] = [i for i in issues if (i[column] or "") == key]
        return groups

    def query_projects(self, name_filter: Optional[str] = None) -> List[Dict[str, Any]]:
        adapter = adapter_for(EntityKind.PROJECT)
        with self.read() as session:
            q = session.query(Project)
            if name_filter:
                pattern = f"%{name_filter}%"
                q = q.filter(or_(Project.name.ilike(pattern), Project.identifier.ilike(pattern)))
            rows = q.order_by(Project.name.asc()).all()
            return [adapter.serialize(row) for row in rows]

    def get_issue(self, issue_id: int, with_details: bool = False) -> Optional[Dict[str, Any]]:
        with self.read() as session:
            row = session.get(Issue, issue_id)
            if row is None:
                return None
            issue = adapter_for(EntityKind.ISSUE).serialize(row)
            if with_details:
                issue["journals"] = self._journals(session, issue_id)
                issue["attachments"] = self._attachments(session, issue_id)
            return issue

    def journals_for(self, issue_id: int) -> List[Dict[str, Any]]:
        with self.read() as session:
            return self._journals(session, issue_id)

    def attachments_for(self, issue_id: int) -> List[Dict[str, Any]]:
        with self.read() as session:
            return self._attachments(session, issue_id)

    def get_attachment(self, attachment_id: int) -> Optional[Dict[str, Any]]:
        with self.read() as session:
            row = session.get(Attachment, attachment_id)
            return adapter_for(EntityKind.ATTACHMENT).serialize(row) if row is not None else None

    def _journals(self, session: Session, issue_id: int) -> List[Dict[str, Any]]:
        adapter = adapter_for(EntityKind.JOURNAL)
        rows = (
            session.query(Journal)
            .filter(Journal.issue_id == issue_id)
            .order_by(Journal.created_on.asc(), Journal.id.asc())
            .all()
        )
        return [adapter.serialize(row) for row in rows]

    def _attachments(self, session: Session, issue_id: int) -> List[Dict[str, Any]]:
        adapter = adapter_for(EntityKind.ATTACHMENT)
        rows = (
            session.query(Attachment)
            .filter(Attachment.issue_id == issue_id)
            .order_by(Attachment.created_on.asc(), Attachment.id.asc())
            .all()
        )
        return [adapter.serialize(row) for row in rows]

    # ------------------------------------------------------------------
    # Cursors & lookups
    # ------------------------------------------------------------------
    def get_cursor(self, collection: str) -> Optional[datetime]:
        with self.read() as session:
            row = session.get(SyncCursor, collection)
            return row.watermark if row is not None else None

    def list_cursors(self) -> Dict[str, Dict[str, Any]]:
        with self.read() as session:
            return {
                row.collection: {
                    "watermark": json_safe(row.watermark),
                    "last_pulled_at": json_safe(row.last_pulled_at),
                }
                for row in session.query(SyncCursor).all()
            }

    def advance_cursor(self, session: Session, collection: str, watermark: Optional[datetime]) -> bool:
        """Move a collection's watermark forward. Backward moves are ignored."""
        row = session.get(SyncCursor, collection)
        if row is None:
            row = SyncCursor(collection=collection)
            session.add(row)
            session.flush()
        row.last_pulled_at = utcnow()
        if watermark is None:
            return False
        if row.watermark is not None and watermark <= row.watermark:
            return False
        row.watermark = watermark
        return True

    def reset_cursors(self, session: Session) -> None:
        session.query(SyncCursor).delete()

    def replace_lookups(self, session: Session, kind: str, rows: Iterable[Dict[str, Any]]) -> int:
        session.query(Lookup).filter(Lookup.kind == kind).delete()
        count = 0
        for item in rows:
            session.add(
                Lookup(
                    kind=kind,
                    id=int(item["id"]),
                    name=item.get("name") or "",
                    position=item.get("position"),
                    is_closed=item.get("is_closed"),
                )
            )
            count += 1
        session.flush()
        return count

    def lookup_name(self, session: Session, kind: str, lookup_id: Any) -> Optional[str]:
        try:
            row = session.get(Lookup, (kind, int(lookup_id)))
        except (TypeError, ValueError):
            return None
        return row.name if row is not None else None

    def list_lookups(self, kind: str) -> List[Dict[str, Any]]:
        with self.read() as session:
            rows = session.query(Lookup).filter(Lookup.kind == kind).order_by(Lookup.position, Lookup.id).all()
            return [
                {"id": r.id, "name": r.name, "position": r.position, "is_closed": r.is_closed} for r in rows
            ]

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------
    def rebuild_cache(self) -> Dict[str, int]:
        """Drop and recreate every table, keeping the queue.

        Pending, in-flight and conflicted mutations survive with their
        unresolved conflicts and batch bookkeeping; failed ones are discarded.
        In-flight updates go back to pending, in-flight creates become failed.
        Cursors are gone, so the next pull is a clean one.
        """
        with self._write_lock:
            session = self.SessionLocal()
            try:
                mutations = [
                    self._row_values(m)
                    for m in session.query(PendingMutation)
                    .filter(PendingMutation.status != MutationStatus.FAILED)
                    .order_by(PendingMutation.submission_order)
                    .all()
                ]
                conflicts = [
                    self._row_values(c) for c in session.query(Conflict).filter(Conflict.resolved.is_(False)).all()
                ]
                members = [self._row_values(b) for b in session.query(BatchMember).all()]
            except SQLAlchemyError as e:
                # Without the queue contents a rebuild would lose user changes.
                raise StorageError(f"Cannot read pending mutations, refusing to rebuild: {e}") from e
            finally:
                session.close()

            kept_ids = {m["id"] for m in mutations}
            try:
                Base.metadata.drop_all(bind=self.engine)
                init_db(self.engine)
                session = self.SessionLocal()
                try:
                    for values in mutations:
                        if values["status"] == MutationStatus.IN_FLIGHT:
                            if values["operation"] == MutationOperation.CREATE:
                                # May already exist remotely; never resend it blindly.
                                values["status"] = MutationStatus.FAILED
                                values["last_error"] = "Interrupted while creating; check the tracker before re-submitting"
                            else:
                                values["status"] = MutationStatus.PENDING
                        session.add(PendingMutation(**values))
                    for values in conflicts:
                        if values["mutation_id"] in kept_ids:
                            session.add(Conflict(**values))
                    for values in members:
                        session.add(BatchMember(**values))
                    session.flush()
                    for values in mutations:
                        if values["operation"] == MutationOperation.CREATE:
                            self.insert_local_issue(session, values["target_id"], values["payload"])
                    session.commit()
                except SQLAlchemyError:
                    session.rollback()
                    raise
                finally:
                    session.close()
            except SQLAlchemyError as e:
                raise StorageError(f"Cache rebuild failed: {e}", corrupted=True) from e

        logger.warning(f"Cache rebuilt; kept {len(mutations)} queued mutation(s)")
        return {"mutations_kept": len(mutations), "conflicts_kept": len(conflicts)}

    @staticmethod
    def _row_values(row: Any) -> Dict[str, Any]:
        return {col.key: getattr(row, col.key) for col in row.__table__.columns}
