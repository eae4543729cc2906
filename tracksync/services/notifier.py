"""
Cache change notifications for the interface layer.

One producer (the engine), any number of consumers. Subscribers are called on
a dedicated dispatcher thread so a slow consumer never blocks a sync run;
polling consumers read from a bounded ring buffer by sequence number.
"""
from __future__ import annotations

import enum
import itertools
import logging
import queue
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from tracksync.models.base import utcnow

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    ENTITIES_CHANGED = "entities_changed"
    MUTATION_ENQUEUED = "mutation_enqueued"
    MUTATION_SUCCEEDED = "mutation_succeeded"
    MUTATION_FAILED = "mutation_failed"
    MUTATION_CONFLICTED = "mutation_conflicted"
    SYNC_STATE_CHANGED = "sync_state_changed"
    SYNC_COMPLETED = "sync_completed"
    ENGINE_PAUSED = "engine_paused"
    CACHE_REBUILT = "cache_rebuilt"
    BATCH_COMPLETED = "batch_completed"


@dataclass
class ChangeEvent:
    kind: EventKind
    entity_kind: Optional[str] = None
    entity_ids: List[int] = field(default_factory=list)
    mutation_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    seq: int = 0
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "kind": self.kind.value,
            "entity_kind": self.entity_kind,
            "entity_ids": list(self.entity_ids),
            "mutation_id": self.mutation_id,
            "details": self.details,
            "created_at": self.created_at.isoformat(),
        }


Handler = Callable[[ChangeEvent], None]

_STOP = object()


class ChangeNotifier:
    """Publishes cache-changed events to subscribers and pollers."""

    def __init__(self, buffer_size: int = 1000) -> None:
        self._lock = threading.Lock()
        self._subscribers: Dict[int, Handler] = {}
        self._ids = itertools.count(1)
        self._seq = 0
        self._buffer: deque = deque(maxlen=buffer_size)
        self._pending: "queue.Queue[Any]" = queue.Queue()
        self._dispatcher: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the dispatcher thread (idempotent)"""
        with self._lock:
            if self._dispatcher is not None and self._dispatcher.is_alive():
                return
            self._dispatcher = threading.Thread(
                target=self._dispatch_loop, name="tracksync-notifier", daemon=True
            )
            self._dispatcher.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Deliver what is queued, then stop the dispatcher"""
        thread = self._dispatcher
        if thread is None:
            return
        self._pending.put(_STOP)
        thread.join(timeout)
        self._dispatcher = None

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        """Register a handler for every event. Returns an unsubscribe callable."""
        with self._lock:
            token = next(self._ids)
            self._subscribers[token] = handler
        self.start()

        def _unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return _unsubscribe

    def publish(self, event: ChangeEvent) -> ChangeEvent:
        """Record an event and hand it to the dispatcher. Never blocks on consumers."""
        with self._lock:
            self._seq += 1
            event.seq = self._seq
            self._buffer.append(event)
            has_subscribers = bool(self._subscribers)
        if has_subscribers:
            self._pending.put(event)
        return event

    def poll(self, since_seq: int = 0, limit: int = 100) -> List[ChangeEvent]:
        """Events with seq > since_seq still held in the buffer, oldest first"""
        with self._lock:
            events = [e for e in self._buffer if e.seq > since_seq]
        return events[:limit]

    @property
    def last_seq(self) -> int:
        with self._lock:
            return self._seq

    def _dispatch_loop(self) -> None:
        while True:
            event = self._pending.get()
            if event is _STOP:
                return
            with self._lock:
                handlers = list(self._subscribers.values())
            for handler in handlers:
                try:
                    handler(event)
                except Exception as exc:
                    logger.error(f"Change subscriber failed for '{event.kind.value}': {exc}")
