"""Explicit wiring of the sync components.

One ``SyncContext`` per process (or per test). Nothing below this module reads
the global ``settings``; components get what they need from the context.
"""

from dataclasses import dataclass
from typing import Any, Optional

from tracksync.config import Settings
from tracksync.models.base import create_db_engine
from tracksync.services.change_queue import ChangeQueue
from tracksync.services.local_store import LocalStore
from tracksync.services.notifier import ChangeNotifier
from tracksync.services.redmine_client import RedmineClient


@dataclass
class SyncContext:
    settings: Settings
    store: LocalStore
    queue: ChangeQueue
    client: Any
    notifier: ChangeNotifier


def build_context(settings: Settings, *, client: Optional[Any] = None) -> SyncContext:
    """Create the cache (tables included), queue, remote client and notifier"""
    store = LocalStore(create_db_engine(settings.database_url))
    store.init()
    queue = ChangeQueue(
        store,
        max_retries=settings.max_retries,
        base_delay=settings.retry_base_delay_seconds,
        max_delay=settings.retry_max_delay_seconds,
    )
    if client is None:
        client = RedmineClient(
            settings.redmine_url,
            settings.redmine_api_key,
            timeout=settings.request_timeout_seconds,
            page_size=settings.page_size,
        )
    notifier = ChangeNotifier(buffer_size=settings.event_buffer_size)
    return SyncContext(settings=settings, store=store, queue=queue, client=client, notifier=notifier)
