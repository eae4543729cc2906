"""Bulk edits: one queued mutation per issue, tracked as a batch"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from tracksync.entities import EntityKind, IssueAdapter
from tracksync.errors import ValidationError
from tracksync.models import BatchMember
from tracksync.models.batch_member import BatchOutcome
from tracksync.models.pending_mutation import MutationOperation
from tracksync.services.notifier import ChangeEvent, EventKind

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    batch_id: str
    succeeded: List[int] = field(default_factory=list)
    failed: List[Tuple[int, str]] = field(default_factory=list)
    conflicted: List[int] = field(default_factory=list)
    pending: List[int] = field(default_factory=list)

    @property
    def done(self) -> bool:
        return not self.pending

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "done": self.done,
            "succeeded": list(self.succeeded),
            "failed": [{"issue_id": issue_id, "reason": reason} for issue_id, reason in self.failed],
            "conflicted": list(self.conflicted),
            "pending": list(self.pending),
        }


def record_member_outcome(
    session: Session, mutation_id: str, outcome: BatchOutcome, reason: Optional[str] = None
) -> Optional[str]:
    """Store a member's outcome. Returns the batch id once no member is pending."""
    member = session.query(BatchMember).filter(BatchMember.mutation_id == mutation_id).first()
    if member is None:
        return None
    member.outcome = outcome
    member.reason = reason
    session.flush()
    remaining = (
        session.query(BatchMember)
        .filter(BatchMember.batch_id == member.batch_id, BatchMember.outcome == BatchOutcome.PENDING)
        .count()
    )
    return member.batch_id if remaining == 0 else None


class BulkOperationCoordinator:
    """Applies one delta to many issues.

    Members are independent: a failed member never rolls back the ones that
    already reached the server.
    """

    def __init__(self, engine: Any):
        self.engine = engine
        self.store = engine.store
        self.notifier = engine.notifier

    def enqueue_bulk(self, issue_ids: Iterable[int], delta: Dict[str, Any]) -> str:
        ids = list(dict.fromkeys(int(i) for i in issue_ids))
        if not ids:
            raise ValidationError("Bulk edit needs at least one issue")
        IssueAdapter.validate_delta(delta, for_create=False)

        batch_id = uuid.uuid4().hex
        queued: List[str] = []
        missing: List[int] = []
        with self.store.write() as session:
            for issue_id in ids:
                try:
                    mutation = self.engine.enqueue_update(
                        session, issue_id, delta, operation=MutationOperation.BULK_MEMBER, batch_id=batch_id
                    )
                except ValidationError as e:
                    # Unknown locally: recorded as failed, nothing queued.
                    missing.append(issue_id)
                    session.add(
                        BatchMember(
                            batch_id=batch_id,
                            issue_id=issue_id,
                            mutation_id=uuid.uuid4().hex,
                            outcome=BatchOutcome.FAILED,
                            reason=e.user_message(),
                        )
                    )
                    continue
                queued.append(mutation.id)
                session.add(
                    BatchMember(
                        batch_id=batch_id,
                        issue_id=issue_id,
                        mutation_id=mutation.id,
                        outcome=BatchOutcome.PENDING,
                    )
                )

        logger.info(f"Queued bulk edit {batch_id}: {len(queued)} issue(s), {len(missing)} not cached")
        self.notifier.publish(
            ChangeEvent(
                kind=EventKind.MUTATION_ENQUEUED,
                entity_kind=EntityKind.ISSUE.value,
                entity_ids=[i for i in ids if i not in missing],
                details={"batch_id": batch_id, "mutation_ids": queued},
            )
        )
        if not queued:
            self.notifier.publish(
                ChangeEvent(kind=EventKind.BATCH_COMPLETED, details={"batch_id": batch_id})
            )
        return batch_id

    def batch_status(self, batch_id: str) -> Optional[BatchResult]:
        with self.store.read() as session:
            members = (
                session.query(BatchMember)
                .filter(BatchMember.batch_id == batch_id)
                .order_by(BatchMember.id.asc())
                .all()
            )
            if not members:
                return None
            result = BatchResult(batch_id=batch_id)
            for member in members:
                if member.outcome == BatchOutcome.SUCCEEDED:
                    result.succeeded.append(member.issue_id)
                elif member.outcome == BatchOutcome.FAILED:
                    result.failed.append((member.issue_id, member.reason or ""))
                elif member.outcome == BatchOutcome.CONFLICTED:
                    result.conflicted.append(member.issue_id)
                else:
                    result.pending.append(member.issue_id)
            return result

    def await_batch(self, batch_id: str, timeout: Optional[float] = None) -> Optional[BatchResult]:
        """Block until every member has an outcome or `timeout` elapses"""
        finished = threading.Event()

        def _on_event(event: ChangeEvent) -> None:
            if event.kind == EventKind.BATCH_COMPLETED and event.details.get("batch_id") == batch_id:
                finished.set()

        unsubscribe = self.notifier.subscribe(_on_event)
        try:
            result = self.batch_status(batch_id)
            if result is None or result.done:
                return result
            finished.wait(timeout)
            return self.batch_status(batch_id)
        finally:
            unsubscribe()
