"""Durable queue of local mutations waiting to be pushed"""

import enum
import logging
import random
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from tracksync.models import PendingMutation
from tracksync.models.base import utcnow
from tracksync.models.pending_mutation import MutationOperation, MutationStatus
from tracksync.services.local_store import LocalStore

logger = logging.getLogger(__name__)

# Statuses whose delta is still shown in the cache overlay
OVERLAY_STATUSES = (MutationStatus.PENDING, MutationStatus.IN_FLIGHT)


class MutationOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CONFLICT = "conflict"


class ChangeQueue:
    """Persistent FIFO of mutations, ordered per target entity.

    Only the head (lowest submission order) of each entity's mutations can be
    pushed. A failed or conflicted head keeps blocking its entity until it is
    acknowledged, so later edits never overtake an earlier one.
    """

    def __init__(
        self,
        store: LocalStore,
        *,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._rng = rng or random.Random()

    def enqueue(
        self,
        entity_kind: str,
        target_id: int,
        operation: MutationOperation,
        payload: Dict[str, Any],
        *,
        base_version: Optional[datetime] = None,
        base_snapshot: Optional[Dict[str, Any]] = None,
        batch_id: Optional[str] = None,
    ) -> PendingMutation:
        """Persist a mutation. Joins the caller's write transaction if one is open."""
        mutation = PendingMutation(
            id=uuid.uuid4().hex,
            entity_kind=entity_kind.value if isinstance(entity_kind, enum.Enum) else entity_kind,
            target_id=target_id,
            operation=operation,
            payload=dict(payload),
            base_version=base_version,
            base_snapshot=base_snapshot,
            expected_version=base_version,
            status=MutationStatus.PENDING,
            retry_count=0,
            batch_id=batch_id,
        )
        with self.store.write() as session:
            session.add(mutation)
            session.flush()
        logger.debug(f"Queued {operation.value} for {entity_kind} {target_id} as {mutation.id}")
        return mutation

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------
    def ready_batch(
        self,
        limit: Optional[int] = None,
        exclude_targets: Iterable[Tuple[str, int]] = (),
        now: Optional[datetime] = None,
    ) -> List[PendingMutation]:
        """Heads of each entity's queue that may be pushed now, oldest first"""
        now = now or utcnow()
        excluded = set(exclude_targets)
        with self.store.read() as session:
            rows = session.query(PendingMutation).order_by(PendingMutation.submission_order.asc()).all()

        seen = set()
        ready = []
        for mutation in rows:
            key = (mutation.entity_kind, mutation.target_id)
            if key in seen:
                continue
            seen.add(key)
            if key in excluded or mutation.status != MutationStatus.PENDING:
                continue
            if mutation.next_attempt_at is not None and mutation.next_attempt_at > now:
                continue
            ready.append(mutation)
            if limit is not None and len(ready) >= limit:
                break
        return ready

    def peek_next_ready(self, now: Optional[datetime] = None) -> Optional[PendingMutation]:
        batch = self.ready_batch(limit=1, now=now)
        return batch[0] if batch else None

    def next_attempt_at(self) -> Optional[datetime]:
        """Earliest scheduled retry among backed-off mutations"""
        with self.store.read() as session:
            row = (
                session.query(PendingMutation.next_attempt_at)
                .filter(
                    PendingMutation.status == MutationStatus.PENDING,
                    PendingMutation.next_attempt_at.isnot(None),
                )
                .order_by(PendingMutation.next_attempt_at.asc())
                .first()
            )
        return row[0] if row else None

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------
    def mark_in_flight(self, mutation_id: str) -> bool:
        """Claim a pending mutation for a push. False if someone else got it first."""
        with self.store.write() as session:
            mutation = self._get(session, mutation_id)
            if mutation is None or mutation.status != MutationStatus.PENDING:
                return False
            mutation.status = MutationStatus.IN_FLIGHT
            return True

    def mark_result(
        self, mutation_id: str, outcome: MutationOutcome, reason: Optional[str] = None
    ) -> Optional[PendingMutation]:
        """Record the end of a push. Successful mutations leave the queue."""
        outcome = MutationOutcome(outcome)
        with self.store.write() as session:
            mutation = self._get(session, mutation_id)
            if mutation is None:
                return None
            if outcome == MutationOutcome.SUCCESS:
                session.delete(mutation)
            elif outcome == MutationOutcome.FAILURE:
                mutation.status = MutationStatus.FAILED
                mutation.last_error = reason
                mutation.next_attempt_at = None
            else:
                mutation.status = MutationStatus.CONFLICTED
                mutation.last_error = reason
                mutation.next_attempt_at = None
            session.flush()
        return mutation

    def requeue_with_backoff(
        self, mutation_id: str, error: str, min_delay: Optional[float] = None
    ) -> Optional[PendingMutation]:
        """Schedule another attempt, or give up once max_retries is exceeded"""
        with self.store.write() as session:
            mutation = self._get(session, mutation_id)
            if mutation is None:
                return None
            mutation.retry_count = (mutation.retry_count or 0) + 1
            mutation.last_error = error
            if mutation.retry_count > self.max_retries:
                mutation.status = MutationStatus.FAILED
                mutation.next_attempt_at = None
                logger.warning(f"Mutation {mutation_id} failed after {mutation.retry_count - 1} retries: {error}")
                return mutation

            delay = self.backoff_delay(mutation.retry_count)
            if min_delay is not None:
                delay = max(delay, min_delay)
            mutation.status = MutationStatus.PENDING
            mutation.next_attempt_at = utcnow() + timedelta(seconds=delay)
            logger.info(f"Retrying mutation {mutation_id} in {delay:.1f}s (attempt {mutation.retry_count})")
        return mutation

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with full jitter"""
        ceiling = min(self.max_delay, self.base_delay * (2 ** max(attempt - 1, 0)))
        return self._rng.uniform(0, ceiling)

    def revert_to_pending(self, mutation_id: str) -> bool:
        """Release an in-flight claim without counting an attempt (cancelled push)"""
        with self.store.write() as session:
            mutation = self._get(session, mutation_id)
            if mutation is None or mutation.status != MutationStatus.IN_FLIGHT:
                return False
            mutation.status = MutationStatus.PENDING
            return True

    def recover(self) -> Dict[str, int]:
        """Startup pass over mutations left in flight by a previous process.

        Updates go back to pending in their original order. An in-flight create
        may already exist remotely, so it is failed for the user to check.
        """
        stats = {"requeued": 0, "ambiguous_creates": 0}
        with self.store.write() as session:
            rows = (
                session.query(PendingMutation)
                .filter(PendingMutation.status == MutationStatus.IN_FLIGHT)
                .order_by(PendingMutation.submission_order.asc())
                .all()
            )
            for mutation in rows:
                if mutation.is_create:
                    mutation.status = MutationStatus.FAILED
                    mutation.last_error = "Interrupted while creating; the issue may already exist on the server"
                    stats["ambiguous_creates"] += 1
                else:
                    mutation.status = MutationStatus.PENDING
                    stats["requeued"] += 1
        if rows:
            logger.info(f"Recovered in-flight mutations: {stats}")
        return stats

    def acknowledge(self, mutation_id: str) -> Optional[PendingMutation]:
        """Drop a failed or conflicted mutation the user has seen"""
        with self.store.write() as session:
            mutation = self._get(session, mutation_id)
            if mutation is None:
                return None
            if mutation.status not in (MutationStatus.FAILED, MutationStatus.CONFLICTED):
                raise ValueError(f"Mutation {mutation_id} is {mutation.status.value}, not failed or conflicted")
            session.delete(mutation)
            session.flush()
        return mutation

    def remove(self, mutation_id: str) -> Optional[PendingMutation]:
        """Withdraw a mutation that is not being pushed right now"""
        with self.store.write() as session:
            mutation = self._get(session, mutation_id)
            if mutation is None:
                return None
            if mutation.status == MutationStatus.IN_FLIGHT:
                raise ValueError(f"Mutation {mutation_id} is being pushed and cannot be withdrawn")
            session.delete(mutation)
            session.flush()
        return mutation

    def retarget(self, old_target_id: int, new_target_id: int, entity_kind: str = "issue") -> int:
        """Point queued follow-ups of a created issue at its server id"""
        with self.store.write() as session:
            count = (
                session.query(PendingMutation)
                .filter(
                    PendingMutation.entity_kind == entity_kind,
                    PendingMutation.target_id == old_target_id,
                )
                .update({PendingMutation.target_id: new_target_id}, synchronize_session=False)
            )
        return count

    def rebase(
        self,
        mutation_id: str,
        expected_version: Optional[datetime],
        base_snapshot: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Move the push precondition to a newer remote version"""
        with self.store.write() as session:
            mutation = self._get(session, mutation_id)
            if mutation is None:
                return False
            mutation.expected_version = expected_version
            if base_snapshot is not None:
                mutation.base_snapshot = base_snapshot
            return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get(self, mutation_id: str) -> Optional[PendingMutation]:
        with self.store.read() as session:
            return self._get(session, mutation_id)

    def list_mutations(
        self,
        status: Optional[MutationStatus] = None,
        batch_id: Optional[str] = None,
    ) -> List[PendingMutation]:
        with self.store.read() as session:
            q = session.query(PendingMutation)
            if status is not None:
                q = q.filter(PendingMutation.status == MutationStatus(status))
            if batch_id is not None:
                q = q.filter(PendingMutation.batch_id == batch_id)
            return q.order_by(PendingMutation.submission_order.asc()).all()

    def for_target(
        self,
        entity_kind: str,
        target_id: int,
        statuses: Optional[Iterable[MutationStatus]] = None,
    ) -> List[PendingMutation]:
        with self.store.read() as session:
            q = session.query(PendingMutation).filter(
                PendingMutation.entity_kind == entity_kind,
                PendingMutation.target_id == target_id,
            )
            if statuses is not None:
                q = q.filter(PendingMutation.status.in_(list(statuses)))
            return q.order_by(PendingMutation.submission_order.asc()).all()

    def overlay_deltas(self, entity_kind: str, target_id: int) -> List[Dict[str, Any]]:
        """Payloads still shown optimistically for an entity, in submission order"""
        return [m.payload for m in self.for_target(entity_kind, target_id, OVERLAY_STATUSES)]

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in MutationStatus}
        for mutation in self.list_mutations():
            counts[mutation.status.value] += 1
        return counts

    @staticmethod
    def _get(session, mutation_id: str) -> Optional[PendingMutation]:
        return session.query(PendingMutation).filter(PendingMutation.id == mutation_id).first()
