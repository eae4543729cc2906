"""Sync cursor model"""

from sqlalchemy import Column, DateTime, String

from tracksync.models.base import Base


class SyncCursor(Base):
    """Per-collection watermark of the last fully applied pull page"""

    __tablename__ = "sync_cursors"

    collection = Column(String, primary_key=True)
    # Highest remote updated_on applied so far; only ever moves forward.
    watermark = Column(DateTime, nullable=True)
    last_pulled_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<SyncCursor(collection='{self.collection}', watermark={self.watermark})>"
