"""Sync engine: pull remote changes, reconcile queued mutations, push them.

A run walks IDLE -> PULLING -> RECONCILING -> PUSHING -> IDLE. An
authorization failure in any active phase parks the engine in ERROR_PAUSED
until ``resume()`` is called; every other failure ends the run and leaves the
queue intact for the next one.
"""

import enum
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from tracksync.entities import (
    COLLECTIONS,
    OVERLAY_COLUMNS,
    EntityKind,
    IssueAdapter,
    adapter_for,
    collection_kind,
    json_safe,
)
from tracksync.errors import (
    AmbiguousCreateError,
    AuthError,
    ConflictError,
    EnginePausedError,
    NetworkError,
    StorageError,
    SyncCancelled,
    SyncError,
    ValidationError,
)
from tracksync.models import Conflict, Issue, PendingMutation, SyncLog
from tracksync.models.base import utcnow
from tracksync.models.batch_member import BatchOutcome
from tracksync.models.pending_mutation import MutationOperation, MutationStatus
from tracksync.models.sync_log import SyncStatus
from tracksync.services.bulk import record_member_outcome
from tracksync.services.change_queue import MutationOutcome
from tracksync.services.conflict_resolver import Resolution, ResolutionOutcome, resolve
from tracksync.services.local_store import IssueFilter
from tracksync.services.notifier import ChangeEvent, EventKind
from tracksync.services.redmine_client import ConflictSignal

if TYPE_CHECKING:
    from tracksync.context import SyncContext

logger = logging.getLogger(__name__)

ISSUE = EntityKind.ISSUE.value


class EngineState(str, enum.Enum):
    IDLE = "idle"
    PULLING = "pulling"
    RECONCILING = "reconciling"
    PUSHING = "pushing"
    ERROR_PAUSED = "error_paused"


@dataclass
class SyncRunResult:
    status: SyncStatus
    stats: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "stats": dict(self.stats),
            "error": self.error,
            "started_at": json_safe(self.started_at),
            "finished_at": json_safe(self.finished_at),
        }


def _new_stats() -> Dict[str, int]:
    return {
        "pulled": 0,
        "changed": 0,
        "pushed": 0,
        "created": 0,
        "superseded": 0,
        "conflicts": 0,
        "retried": 0,
        "failed": 0,
        "errors": 0,
    }


class SyncEngine:
    """Orchestrates pulls and pushes between the local cache and the remote tracker"""

    def __init__(self, context: "SyncContext"):
        self.context = context
        self.settings = context.settings
        self.store = context.store
        self.queue = context.queue
        self.client = context.client
        self.notifier = context.notifier

        self._state = EngineState.IDLE
        self._state_lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._runner = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tracksync-run")
        self._current: Optional[Future] = None
        self._cancel = threading.Event()
        self._pause_reason: Optional[str] = None
        self._last_result: Optional[SyncRunResult] = None
        self._retry_timer: Optional[threading.Timer] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def paused(self) -> bool:
        return self._state == EngineState.ERROR_PAUSED

    def _set_state(self, state: EngineState, force: bool = False) -> None:
        with self._state_lock:
            if self._state == state:
                return
            # Only resume() leaves ERROR_PAUSED.
            if self._state == EngineState.ERROR_PAUSED and not force:
                return
            previous, self._state = self._state, state
        logger.debug(f"Sync engine {previous.value} -> {state.value}")
        self.notifier.publish(
            ChangeEvent(
                kind=EventKind.SYNC_STATE_CHANGED,
                details={"from": previous.value, "to": state.value},
            )
        )

    def _pause(self, error: AuthError) -> None:
        with self._state_lock:
            self._state = EngineState.ERROR_PAUSED
            self._pause_reason = error.user_message()
        logger.error(f"Sync paused: {error}")
        self._log_sync(SyncStatus.PAUSED, f"Sync paused: {error}")
        self.notifier.publish(
            ChangeEvent(
                kind=EventKind.ENGINE_PAUSED,
                details={"reason": self._pause_reason, "error": str(error)},
            )
        )

    def resume(self, trigger: bool = True) -> bool:
        """Leave ERROR_PAUSED (after the user fixed the credentials).

        The credentials are checked first; an AuthError leaves the engine
        paused and propagates. An unreachable server does not block resuming.
        """
        if not self.paused:
            return False
        try:
            self.client.test_connection()
        except AuthError as e:
            logger.warning(f"Credentials still rejected, staying paused: {e}")
            with self._state_lock:
                self._pause_reason = e.user_message()
            raise
        except NetworkError as e:
            logger.warning(f"Could not verify credentials before resuming: {e}")
        with self._state_lock:
            if self._state != EngineState.ERROR_PAUSED:
                return False
            self._pause_reason = None
        self._set_state(EngineState.IDLE, force=True)
        logger.info("Sync resumed")
        if trigger:
            self.trigger_sync()
        return True

    def status(self) -> Dict[str, Any]:
        running = self._current is not None and not self._current.done()
        return {
            "state": self._state.value,
            "running": running,
            "paused": self.paused,
            "pause_reason": self._pause_reason,
            "last_result": self._last_result.to_dict() if self._last_result else None,
            "queue": self.queue.counts(),
            "cursors": self.store.list_cursors(),
            "last_event_seq": self.notifier.last_seq,
        }

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------
    def trigger_sync(self, collections: Optional[Iterable[str]] = None) -> Future:
        """Start a run in the background. A run already in progress is joined."""
        with self._state_lock:
            if self._current is not None and not self._current.done():
                return self._current
            self._cancel = threading.Event()
            self._current = self._runner.submit(
                self.run, list(collections) if collections is not None else None, self._cancel
            )
            return self._current

    def cancel_run(self) -> bool:
        if self._current is None or self._current.done():
            return False
        logger.info("Cancelling sync run")
        self._cancel.set()
        return True

    def run(
        self,
        collections: Optional[List[str]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> SyncRunResult:
        """Run one full pull/reconcile/push cycle and block until it ends"""
        cancel = cancel or threading.Event()
        with self._run_lock:
            stats = _new_stats()
            started = utcnow()
            if self.paused:
                result = SyncRunResult(SyncStatus.PAUSED, stats, self._pause_reason, started, utcnow())
                self._last_result = result
                return result

            logger.info(f"Starting sync run (collections={collections or 'all'})")
            error = None
            try:
                self._set_state(EngineState.PULLING)
                changed = self._pull(collections, cancel, stats)
                self._set_state(EngineState.RECONCILING)
                self._reconcile(changed, stats)
                self._set_state(EngineState.PUSHING)
                self._push(cancel, stats)
                status = SyncStatus.SUCCESS
            except SyncCancelled:
                status = SyncStatus.CANCELLED
                error = "Sync cancelled"
            except AuthError as e:
                self._pause(e)
                status = SyncStatus.PAUSED
                error = e.user_message()
            except StorageError as e:
                logger.error(f"Sync failed on the local cache: {e}")
                status = SyncStatus.FAILED
                error = str(e)
                stats["errors"] += 1
                if e.corrupted:
                    self.rebuild_cache()
            except SyncError as e:
                logger.error(f"Sync failed: {e}")
                status = SyncStatus.FAILED
                error = e.user_message()
                stats["errors"] += 1
            except Exception as e:
                logger.error(f"Sync failed unexpectedly: {e}")
                status = SyncStatus.FAILED
                error = str(e)
                stats["errors"] += 1
            finally:
                self._set_state(EngineState.IDLE)

            result = SyncRunResult(status, stats, error, started, utcnow())
            self._last_result = result
            if status == SyncStatus.SUCCESS:
                logger.info(f"Sync completed: {stats}")
            if status != SyncStatus.PAUSED:
                self._log_sync(status, f"Sync {status.value}: {error or stats}", details=stats)
            self.notifier.publish(ChangeEvent(kind=EventKind.SYNC_COMPLETED, details=result.to_dict()))

        if status in (SyncStatus.SUCCESS, SyncStatus.FAILED):
            self._schedule_retry()
        return result

    def _schedule_retry(self) -> None:
        """Wake up for the earliest backed-off mutation"""
        due = self.queue.next_attempt_at()
        if due is None:
            return
        delay = max((due - utcnow()).total_seconds(), 0.0) + 0.05
        if self._retry_timer is not None:
            self._retry_timer.cancel()
        self._retry_timer = threading.Timer(delay, self._retry_due)
        self._retry_timer.daemon = True
        self._retry_timer.start()

    def _retry_due(self) -> None:
        if not self.paused:
            self.trigger_sync(collections=[])

    def shutdown(self, wait: bool = True) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
        self.cancel_run()
        self._runner.shutdown(wait=wait)

    @staticmethod
    def _check_cancel(cancel: threading.Event) -> None:
        if cancel.is_set():
            raise SyncCancelled("Sync cancelled")

    def _collections(self, requested: Optional[List[str]]) -> List[str]:
        if requested is not None:
            names = list(requested)
        elif self.settings.sync_collections:
            names = [c.strip() for c in self.settings.sync_collections.split(",") if c.strip()]
        else:
            names = list(COLLECTIONS)
        for name in names:
            collection_kind(name)
        return names

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------
    def _pull(self, collections: Optional[List[str]], cancel: threading.Event, stats: Dict[str, int]) -> Set[int]:
        """Pull every collection; returns ids of issues whose cached copy changed"""
        names = self._collections(collections)
        if not names:
            return set()

        self._check_cancel(cancel)
        self._refresh_lookups()

        changed_issues: Set[int] = set()
        errors: List[Exception] = []
        workers = max(1, min(self.settings.pull_concurrency, len(names)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tracksync-pull") as pool:
            futures = {pool.submit(self._pull_collection, name, cancel): name for name in names}
            for future in futures:
                try:
                    kind, pulled, changed = future.result()
                except Exception as e:
                    errors.append(e)
                    continue
                stats["pulled"] += pulled
                stats["changed"] += len(changed)
                if kind == EntityKind.ISSUE:
                    changed_issues.update(changed)

        if errors:
            # Authorization beats everything else: it must pause the engine.
            for e in errors:
                if isinstance(e, AuthError):
                    raise e
            raise errors[0]
        return changed_issues

    def _refresh_lookups(self) -> None:
        lookups = self.client.fetch_lookups()
        with self.store.write() as session:
            for kind, rows in lookups.items():
                self.store.replace_lookups(session, kind, rows)

    def _pull_collection(self, name: str, cancel: threading.Event) -> Tuple[EntityKind, int, List[int]]:
        kind = collection_kind(name)
        cursor = self.store.get_cursor(name)
        token = None
        pulled = 0
        changed: List[int] = []
        while True:
            self._check_cancel(cancel)
            page = self.client.fetch_collection(kind, cursor, token)
            self._check_cancel(cancel)
            # One transaction per page: rows and the cursor land together or not at all.
            with self.store.write() as session:
                ids = self.store.upsert_from_remote(session, kind, page.items)
                if kind == EntityKind.ISSUE:
                    self._reapply_overlays(session, ids)
                self.store.advance_cursor(session, name, page.next_cursor)
            pulled += len(page.items)
            changed.extend(ids)
            if ids:
                self.notifier.publish(ChangeEvent(kind=EventKind.ENTITIES_CHANGED, entity_kind=kind.value, entity_ids=ids))
            if not page.has_more or page.next_page_token is None:
                break
            cursor, token = page.next_cursor, page.next_page_token
        logger.info(f"Pulled {name}: {pulled} item(s), {len(changed)} changed")
        return kind, pulled, changed

    def _reapply_overlays(self, session: Session, issue_ids: Iterable[int]) -> None:
        """Put queued optimistic edits back on top of freshly pulled issues"""
        ids = set(issue_ids)
        if not ids:
            return
        targets = (
            session.query(PendingMutation.target_id)
            .filter(
                PendingMutation.entity_kind == ISSUE,
                PendingMutation.target_id.in_(ids),
                PendingMutation.status.in_([MutationStatus.PENDING, MutationStatus.IN_FLIGHT]),
            )
            .distinct()
            .all()
        )
        for (target_id,) in targets:
            self.store.restore_issue(session, target_id, None, self.queue.overlay_deltas(ISSUE, target_id))

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------
    def _reconcile(self, changed_issues: Set[int], stats: Dict[str, int]) -> None:
        """Check queued updates against issues that changed remotely during the pull"""
        if not changed_issues:
            return
        for mutation in self.queue.list_mutations(status=MutationStatus.PENDING):
            if mutation.entity_kind != ISSUE or mutation.is_create or mutation.target_id not in changed_issues:
                continue
            with self.store.read() as session:
                row = session.get(Issue, mutation.target_id)
                if row is None:
                    continue
                remote_version = row.version
                remote_values = dict(row.remote_data or {})

            resolution = resolve(mutation, mutation.expected_version, remote_version, remote_values)
            if resolution.outcome == ResolutionOutcome.APPLY:
                continue
            if resolution.should_apply:
                self.queue.rebase(mutation.id, remote_version)
                stats["superseded"] += 1
                logger.info(f"Mutation {mutation.id} superseded by remote changes; rebased to {remote_version}")
            else:
                self._record_conflict(mutation, resolution, remote_values)
                stats["conflicts"] += 1

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------
    def _push(self, cancel: threading.Event, stats: Dict[str, int]) -> None:
        """Drain the queue: concurrent across entities, serialized within one entity"""
        limit = max(1, self.settings.push_concurrency)
        fatal: Optional[SyncError] = None
        busy: Dict[Future, Tuple[str, int]] = {}
        with ThreadPoolExecutor(max_workers=limit, thread_name_prefix="tracksync-push") as pool:
            while True:
                if not cancel.is_set() and fatal is None and len(busy) < limit:
                    in_flight = set(busy.values())
                    for mutation in self.queue.ready_batch(limit=limit - len(busy), exclude_targets=in_flight):
                        if not self.queue.mark_in_flight(mutation.id):
                            continue
                        key = (mutation.entity_kind, mutation.target_id)
                        busy[pool.submit(self._push_one, mutation, cancel)] = key
                if not busy:
                    break
                done, _ = wait(list(busy), return_when=FIRST_COMPLETED)
                for future in done:
                    busy.pop(future)
                    try:
                        outcome = future.result()
                    except (AuthError, StorageError) as e:
                        # Authorization wins over storage: it must pause the engine.
                        if fatal is None or isinstance(e, AuthError):
                            fatal = e
                        continue
                    if outcome in stats:
                        stats[outcome] += 1

        if fatal is not None:
            raise fatal
        self._check_cancel(cancel)

    def _push_one(self, mutation: PendingMutation, cancel: threading.Event) -> str:
        """Push one claimed mutation. Returns the stats key of its outcome."""
        if cancel.is_set():
            self.queue.revert_to_pending(mutation.id)
            return "cancelled"
        try:
            if mutation.is_create:
                return self._push_create(mutation)
            return self._push_update(mutation)
        except AuthError:
            self.queue.revert_to_pending(mutation.id)
            raise
        except (AmbiguousCreateError, ValidationError) as e:
            self._record_failure(mutation, e)
            return "failed"
        except NetworkError as e:
            updated = self.queue.requeue_with_backoff(
                mutation.id, e.user_message(), min_delay=getattr(e, "retry_after", None)
            )
            if updated is not None and updated.status == MutationStatus.FAILED:
                self._record_failure(mutation, e, already_marked=True)
                return "failed"
            return "retried"
        except StorageError as e:
            logger.error(f"Cache write failed while pushing {mutation.id}: {e}")
            try:
                if mutation.is_create:
                    # The server may hold the issue already; never send it twice.
                    self.queue.mark_result(
                        mutation.id, MutationOutcome.FAILURE, "The local cache could not record the created issue"
                    )
                else:
                    self.queue.revert_to_pending(mutation.id)
            except StorageError as inner:
                logger.error(f"Could not release mutation {mutation.id}: {inner}")
            raise
        except Exception as e:
            logger.error(f"Unexpected error pushing mutation {mutation.id}: {e}")
            self._record_failure(mutation, e)
            return "failed"

    def _push_create(self, mutation: PendingMutation) -> str:
        temp_id = mutation.target_id
        created = self.client.create_entity(EntityKind.ISSUE, dict(mutation.payload))
        new_id = int(created["id"])
        with self.store.write() as session:
            self.store.apply_confirmed_mutation(session, created, temp_id=temp_id)
            self.queue.mark_result(mutation.id, MutationOutcome.SUCCESS)
            self.queue.retarget(temp_id, new_id, ISSUE)
            row = session.get(Issue, new_id)
            for follower in self.queue.for_target(ISSUE, new_id, [MutationStatus.PENDING]):
                self.queue.rebase(
                    follower.id,
                    row.version,
                    adapter_for(EntityKind.ISSUE).snapshot(
                        row.remote_data or {}, IssueAdapter.comparable_fields(follower.payload)
                    ),
                )
            self.store.restore_issue(session, new_id, None, self.queue.overlay_deltas(ISSUE, new_id))
            completed_batch = record_member_outcome(session, mutation.id, BatchOutcome.SUCCEEDED)

        logger.info(f"Created issue #{new_id} from local issue {temp_id}")
        self.notifier.publish(
            ChangeEvent(
                kind=EventKind.MUTATION_SUCCEEDED,
                entity_kind=ISSUE,
                entity_ids=[new_id],
                mutation_id=mutation.id,
                details={"temp_id": temp_id, "id": new_id},
            )
        )
        self.notifier.publish(ChangeEvent(kind=EventKind.ENTITIES_CHANGED, entity_kind=ISSUE, entity_ids=[temp_id, new_id]))
        self._publish_batch(completed_batch)
        return "created"

    def _push_update(self, mutation: PendingMutation) -> str:
        issue_id = mutation.target_id
        if issue_id < 0:
            raise ValidationError(f"Issue {issue_id} was never created on the server")

        result = self.client.update_entity(EntityKind.ISSUE, issue_id, mutation.expected_version, dict(mutation.payload))
        adapter = adapter_for(EntityKind.ISSUE)

        if isinstance(result, ConflictSignal):
            remote_values = adapter.snapshot(adapter.from_remote(result.remote), OVERLAY_COLUMNS)
            resolution = resolve(mutation, mutation.expected_version, result.remote_version, remote_values)
            with self.store.write() as session:
                self.store.upsert_from_remote(session, EntityKind.ISSUE, [result.remote])
                self.store.restore_issue(session, issue_id, None, self.queue.overlay_deltas(ISSUE, issue_id))
            if resolution.should_apply:
                # Untouched fields moved remotely; retry right away on the new version.
                self.queue.rebase(mutation.id, result.remote_version)
                self.queue.revert_to_pending(mutation.id)
                logger.info(f"Mutation {mutation.id} rebased onto remote version {result.remote_version}")
                return "superseded"
            self._record_conflict(mutation, resolution, remote_values)
            return "conflicts"

        with self.store.write() as session:
            self.store.apply_confirmed_mutation(session, result)
            self.queue.mark_result(mutation.id, MutationOutcome.SUCCESS)
            row = session.get(Issue, issue_id)
            for follower in self.queue.for_target(ISSUE, issue_id, [MutationStatus.PENDING]):
                self.queue.rebase(
                    follower.id,
                    row.version,
                    adapter.snapshot(row.remote_data or {}, IssueAdapter.comparable_fields(follower.payload)),
                )
            self.store.restore_issue(session, issue_id, None, self.queue.overlay_deltas(ISSUE, issue_id))
            completed_batch = record_member_outcome(session, mutation.id, BatchOutcome.SUCCEEDED)

        logger.info(f"Pushed mutation {mutation.id} to issue #{issue_id}")
        self.notifier.publish(
            ChangeEvent(
                kind=EventKind.MUTATION_SUCCEEDED,
                entity_kind=ISSUE,
                entity_ids=[issue_id],
                mutation_id=mutation.id,
            )
        )
        self.notifier.publish(ChangeEvent(kind=EventKind.ENTITIES_CHANGED, entity_kind=ISSUE, entity_ids=[issue_id]))
        self._publish_batch(completed_batch)
        return "pushed"

    # ------------------------------------------------------------------
    # Terminal outcomes
    # ------------------------------------------------------------------
    def _record_conflict(
        self, mutation: PendingMutation, resolution: Resolution, remote_values: Dict[str, Any]
    ) -> None:
        fields = ", ".join(sorted(resolution.remote_changes))
        description = f"Issue #{mutation.target_id} changed remotely ({fields}) while a local edit was queued"
        error = ConflictError(
            description,
            local_delta=json_safe(resolution.local_delta),
            remote_state=json_safe(remote_values),
        )
        with self.store.write() as session:
            self.queue.mark_result(mutation.id, MutationOutcome.CONFLICT, description)
            conflict = Conflict(
                mutation_id=mutation.id,
                entity_kind=mutation.entity_kind,
                entity_id=mutation.target_id,
                description=description,
                local_delta=error.local_delta,
                remote_data=error.remote_state,
                remote_changes=json_safe(resolution.remote_changes),
                base_version=mutation.base_version,
                remote_version=resolution.remote_version,
            )
            session.add(conflict)
            self.store.restore_issue(
                session, mutation.target_id, mutation.base_snapshot, self.queue.overlay_deltas(ISSUE, mutation.target_id)
            )
            completed_batch = record_member_outcome(session, mutation.id, BatchOutcome.CONFLICTED, description)
            self._log_sync(SyncStatus.FAILED, description, mutation_id=mutation.id)
            session.flush()
            conflict_id = conflict.id

        logger.warning(f"Conflict detected for issue #{mutation.target_id} on fields: {fields}")
        self.notifier.publish(
            ChangeEvent(
                kind=EventKind.MUTATION_CONFLICTED,
                entity_kind=mutation.entity_kind,
                entity_ids=[mutation.target_id],
                mutation_id=mutation.id,
                details={
                    "conflict_id": conflict_id,
                    "message": error.user_message(),
                    "local_delta": error.local_delta,
                    "remote_changes": json_safe(resolution.remote_changes),
                },
            )
        )
        self.notifier.publish(
            ChangeEvent(kind=EventKind.ENTITIES_CHANGED, entity_kind=mutation.entity_kind, entity_ids=[mutation.target_id])
        )
        self._publish_batch(completed_batch)

    def _record_failure(self, mutation: PendingMutation, error: Exception, already_marked: bool = False) -> None:
        reason = error.user_message() if isinstance(error, SyncError) else str(error)
        with self.store.write() as session:
            if not already_marked:
                self.queue.mark_result(mutation.id, MutationOutcome.FAILURE, reason)
            if not mutation.is_create:
                self.store.restore_issue(
                    session, mutation.target_id, mutation.base_snapshot, self.queue.overlay_deltas(ISSUE, mutation.target_id)
                )
            completed_batch = record_member_outcome(session, mutation.id, BatchOutcome.FAILED, reason)
            self._log_sync(
                SyncStatus.FAILED,
                f"Mutation failed: {error}",
                mutation_id=mutation.id,
                details={"error_type": type(error).__name__, "target_id": mutation.target_id},
            )

        logger.error(f"Mutation {mutation.id} for issue {mutation.target_id} failed: {error}")
        self.notifier.publish(
            ChangeEvent(
                kind=EventKind.MUTATION_FAILED,
                entity_kind=mutation.entity_kind,
                entity_ids=[mutation.target_id],
                mutation_id=mutation.id,
                details={"reason": reason, "error_type": type(error).__name__},
            )
        )
        self._publish_batch(completed_batch)

    def _publish_batch(self, batch_id: Optional[str]) -> None:
        if batch_id is not None:
            self.notifier.publish(ChangeEvent(kind=EventKind.BATCH_COMPLETED, details={"batch_id": batch_id}))

    def _log_sync(
        self,
        status: SyncStatus,
        message: str = "",
        collection: Optional[str] = None,
        mutation_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log sync operation"""
        try:
            with self.store.write() as session:
                session.add(
                    SyncLog(
                        collection=collection,
                        mutation_id=mutation_id,
                        status=status,
                        message=message,
                        details=details,
                    )
                )
        except StorageError as e:
            logger.error(f"Failed to persist sync log ({status.value}): {e}")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def enqueue_mutation(self, kind: str, entity_id: Optional[int], delta: Dict[str, Any]) -> str:
        """Queue a local change and show it in the cache immediately.

        ``entity_id=None`` creates a new issue under a temporary negative id.
        """
        if kind != ISSUE:
            raise ValidationError(f"Entities of kind '{kind}' are read-only")

        if entity_id is None:
            payload = IssueAdapter.validate_delta(delta, for_create=True)
            with self.store.write() as session:
                mutation = self.queue.enqueue(ISSUE, 0, MutationOperation.CREATE, payload)
                mutation.target_id = -mutation.submission_order
                self.store.insert_local_issue(session, mutation.target_id, payload)
        else:
            with self.store.write() as session:
                mutation = self.enqueue_update(session, int(entity_id), delta)

        logger.info(f"Queued {mutation.operation.value} mutation {mutation.id} for issue {mutation.target_id}")
        self.notifier.publish(
            ChangeEvent(
                kind=EventKind.MUTATION_ENQUEUED,
                entity_kind=ISSUE,
                entity_ids=[mutation.target_id],
                mutation_id=mutation.id,
            )
        )
        self.notifier.publish(ChangeEvent(kind=EventKind.ENTITIES_CHANGED, entity_kind=ISSUE, entity_ids=[mutation.target_id]))
        return mutation.id

    def enqueue_update(
        self,
        session: Session,
        issue_id: int,
        delta: Dict[str, Any],
        operation: MutationOperation = MutationOperation.UPDATE,
        batch_id: Optional[str] = None,
    ) -> PendingMutation:
        """Queue an update inside the caller's write transaction"""
        payload = IssueAdapter.validate_delta(delta, for_create=False)
        row = session.get(Issue, issue_id)
        if row is None:
            raise ValidationError(f"Issue {issue_id} is not in the local cache", status=404)

        adapter = IssueAdapter()
        # Base is the server's copy, not the optimistic one the user is looking at.
        base_source = row.remote_data if row.remote_data else row
        mutation = self.queue.enqueue(
            ISSUE,
            issue_id,
            operation,
            payload,
            base_version=row.version,
            base_snapshot=adapter.snapshot(base_source, IssueAdapter.comparable_fields(payload)),
            batch_id=batch_id,
        )
        self.store.mark_dirty(session, issue_id, payload)
        return mutation

    def upload_attachment(self, filename: str, content: bytes) -> Dict[str, Any]:
        """Upload a file now; the returned entry goes into a mutation's `uploads`"""
        try:
            token = self.client.upload_file(filename, content)
        except AuthError as e:
            self._pause(e)
            raise
        return {"token": token, "filename": filename}

    def cancel_mutation(self, mutation_id: str) -> bool:
        """Withdraw a queued mutation that has not been pushed yet"""
        with self.store.write() as session:
            mutation = self.queue.remove(mutation_id)
            if mutation is None:
                return False
            withdrawn = [mutation] + self._drop_followers(mutation)
            completed = self._settle_withdrawn(session, mutation, withdrawn, "Cancelled before it was sent")
        logger.info(f"Cancelled mutation {mutation_id}")
        self._after_withdraw(mutation, completed)
        return True

    def acknowledge_mutation(self, mutation_id: str, notes: Optional[str] = None) -> bool:
        """Drop a failed or conflicted mutation after the user has seen it"""
        with self.store.write() as session:
            mutation = self.queue.acknowledge(mutation_id)
            if mutation is None:
                return False
            # The mutation's own batch outcome was recorded when it failed.
            followers = self._drop_followers(mutation)
            completed = self._settle_withdrawn(
                session, mutation, followers, "Issue was never created on the server"
            )
            now = utcnow()
            for conflict in session.query(Conflict).filter(
                Conflict.mutation_id == mutation.id, Conflict.resolved.is_(False)
            ):
                conflict.resolved = True
                conflict.resolved_at = now
                conflict.resolution_notes = notes or "Acknowledged"
        logger.info(f"Acknowledged mutation {mutation_id}")
        self._after_withdraw(mutation, completed)
        return True

    def _drop_followers(self, mutation: PendingMutation) -> List[PendingMutation]:
        """Follow-ups of a create that will never reach the server go with it"""
        if not mutation.is_create:
            return []
        return [self.queue.remove(f.id) for f in self.queue.for_target(ISSUE, mutation.target_id)]

    def _settle_withdrawn(
        self,
        session: Session,
        mutation: PendingMutation,
        withdrawn: List[PendingMutation],
        reason: str,
    ) -> List[str]:
        completed = []
        for m in withdrawn:
            batch_id = record_member_outcome(session, m.id, BatchOutcome.FAILED, reason)
            if batch_id is not None:
                completed.append(batch_id)
        if mutation.is_create:
            self.store.discard_local_issue(session, mutation.target_id)
        else:
            self.store.restore_issue(
                session, mutation.target_id, mutation.base_snapshot, self.queue.overlay_deltas(ISSUE, mutation.target_id)
            )
        return completed

    def _after_withdraw(self, mutation: PendingMutation, completed_batches: List[str]) -> None:
        self.notifier.publish(
            ChangeEvent(kind=EventKind.ENTITIES_CHANGED, entity_kind=ISSUE, entity_ids=[mutation.target_id])
        )
        for batch_id in completed_batches:
            self._publish_batch(batch_id)

    def resolve_conflict(
        self,
        conflict_id: int,
        delta: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Close a conflict, optionally queueing `delta` on top of the remote state"""
        with self.store.read() as session:
            conflict = session.get(Conflict, conflict_id)
            if conflict is None:
                raise ValidationError(f"Conflict {conflict_id} not found", status=404)
            if conflict.resolved:
                raise ValidationError(f"Conflict {conflict_id} is already resolved")
            mutation_id = conflict.mutation_id
            entity_kind = conflict.entity_kind
            entity_id = conflict.entity_id

        mutation = self.queue.get(mutation_id)
        if mutation is not None and mutation.status == MutationStatus.CONFLICTED:
            self.acknowledge_mutation(mutation_id, notes=notes or "Resolved")
        else:
            with self.store.write() as session:
                conflict = session.get(Conflict, conflict_id)
                conflict.resolved = True
                conflict.resolved_at = utcnow()
                conflict.resolution_notes = notes or "Resolved"

        new_mutation_id = None
        if delta:
            new_mutation_id = self.enqueue_mutation(entity_kind, entity_id, delta)
        logger.info(f"Resolved conflict {conflict_id} (requeued={new_mutation_id is not None})")
        return {"conflict_id": conflict_id, "mutation_id": new_mutation_id}

    # ------------------------------------------------------------------
    # On-demand reads
    # ------------------------------------------------------------------
    def refresh_issue_details(self, issue_id: int) -> Optional[Dict[str, Any]]:
        """Fetch one issue with journals and attachments into the cache"""
        if self.paused:
            raise EnginePausedError(self._pause_reason or "Sync is paused")
        try:
            data = self.client.fetch_issue_details(issue_id)
        except AuthError as e:
            self._pause(e)
            raise

        with self.store.write() as session:
            changed = self.store.upsert_from_remote(session, EntityKind.ISSUE, [data])
            self._reapply_overlays(session, changed)
            journals = self.store.upsert_from_remote(
                session, EntityKind.JOURNAL, data.get("journals") or [], issue_id=issue_id
            )
            attachments = self.store.upsert_from_remote(
                session, EntityKind.ATTACHMENT, data.get("attachments") or [], issue_id=issue_id
            )
        if changed or journals or attachments:
            self.notifier.publish(ChangeEvent(kind=EventKind.ENTITIES_CHANGED, entity_kind=ISSUE, entity_ids=[issue_id]))
        return self.store.get_issue(issue_id, with_details=True)

    def open_attachment(self, attachment_id: int) -> Tuple[Dict[str, Any], Iterator[bytes]]:
        """Attachment metadata from the cache plus a stream of its content"""
        meta = self.store.get_attachment(attachment_id)
        if meta is None:
            raise ValidationError(f"Attachment {attachment_id} is not in the local cache", status=404)
        try:
            chunks = self.client.fetch_attachment_content(attachment_id, meta.get("content_url") or None)
        except AuthError as e:
            self._pause(e)
            raise
        return meta, chunks

    def query(
        self,
        filter: Optional[IssueFilter] = None,
        sort: str = "updated_desc",
        group_by: Optional[str] = None,
    ):
        return self.store.query(filter, sort, group_by)

    def subscribe(self, callback: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        return self.notifier.subscribe(callback)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------
    def recover(self) -> Dict[str, int]:
        """Startup recovery of the queue left behind by a previous process"""
        interrupted = [m for m in self.queue.list_mutations(status=MutationStatus.IN_FLIGHT) if m.is_create]
        stats = self.queue.recover()
        for mutation in interrupted:
            error = AmbiguousCreateError(f"Create of local issue {mutation.target_id} was interrupted")
            self._record_failure(mutation, error, already_marked=True)
        return stats

    def rebuild_cache(self) -> bool:
        try:
            stats = self.store.rebuild_cache()
        except StorageError as e:
            logger.error(f"Cache rebuild failed: {e}")
            return False
        self.notifier.publish(ChangeEvent(kind=EventKind.CACHE_REBUILT, details=stats))
        return True
