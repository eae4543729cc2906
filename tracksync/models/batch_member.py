"""Bulk batch member model"""

import enum

from sqlalchemy import Column, DateTime, Enum, Integer, String, Text, UniqueConstraint

from tracksync.models.base import Base, utcnow


class BatchOutcome(str, enum.Enum):
    """Per-member outcome of a bulk edit"""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CONFLICTED = "conflicted"


class BatchMember(Base):
    """One issue of a bulk edit.

    Outcomes are kept here because successful mutation rows are deleted.
    """

    __tablename__ = "batch_members"
    __table_args__ = (UniqueConstraint("batch_id", "issue_id", name="uq_batch_members_batch_issue"),)

    id = Column(Integer, primary_key=True, index=True)
    batch_id = Column(String(32), nullable=False, index=True)
    issue_id = Column(Integer, nullable=False)
    mutation_id = Column(String(32), nullable=False, unique=True)

    outcome = Column(Enum(BatchOutcome), nullable=False, default=BatchOutcome.PENDING)
    reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<BatchMember(batch={self.batch_id}, issue={self.issue_id}, outcome={self.outcome})>"
