"""Sync log model"""
from sqlalchemy import JSON, Column, Integer, String, DateTime, Text, Enum
import enum
from tracksync.models.base import Base, utcnow


class SyncStatus(str, enum.Enum):
    """Sync status enumeration"""
    SUCCESS = "success"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class SyncLog(Base):
    """Log of sync runs and terminal mutation failures"""

    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, index=True)

    # Collection pulled, or None for whole-run entries
    collection = Column(String, nullable=True)
    mutation_id = Column(String(32), nullable=True)

    # Sync details
    status = Column(Enum(SyncStatus), nullable=False)
    message = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)  # run stats

    # Timestamp
    created_at = Column(DateTime, default=utcnow, index=True)

    def __repr__(self):
        return f"<SyncLog(status={self.status}, collection={self.collection})>"
