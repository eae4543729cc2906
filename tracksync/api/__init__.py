"""API routes"""

from tracksync.api import attachments, bulk, dashboard, events, issues, mutations, projects, sync

__all__ = ["sync", "mutations", "bulk", "issues", "projects", "attachments", "events", "dashboard"]
