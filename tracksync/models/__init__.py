"""Database models"""

from tracksync.models.attachment import Attachment
from tracksync.models.base import Base
from tracksync.models.batch_member import BatchMember
from tracksync.models.conflict import Conflict
from tracksync.models.issue import Issue
from tracksync.models.journal import Journal
from tracksync.models.lookup import Lookup
from tracksync.models.pending_mutation import PendingMutation
from tracksync.models.project import Project
from tracksync.models.sync_cursor import SyncCursor
from tracksync.models.sync_log import SyncLog

__all__ = [
    "Base",
    "Project",
    "Issue",
    "Journal",
    "Attachment",
    "PendingMutation",
    "SyncCursor",
    "SyncLog",
    "Conflict",
    "BatchMember",
    "Lookup",
]
