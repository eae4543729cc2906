"""Services"""

from tracksync.services.bulk import BulkOperationCoordinator
from tracksync.services.change_queue import ChangeQueue
from tracksync.services.local_store import LocalStore
from tracksync.services.notifier import ChangeNotifier
from tracksync.services.redmine_client import RedmineClient
from tracksync.services.sync_engine import SyncEngine

__all__ = [
    "RedmineClient",
    "LocalStore",
    "ChangeQueue",
    "ChangeNotifier",
    "SyncEngine",
    "BulkOperationCoordinator",
]
