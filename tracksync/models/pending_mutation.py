"""Pending mutation model"""

import enum

from sqlalchemy import JSON, Column, DateTime, Enum, Index, Integer, String, Text

from tracksync.models.base import Base, utcnow


class MutationStatus(str, enum.Enum):
    """Mutation status enumeration"""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    FAILED = "failed"
    CONFLICTED = "conflicted"


class MutationOperation(str, enum.Enum):
    """Mutation kind enumeration"""

    CREATE = "create"
    UPDATE = "update"
    BULK_MEMBER = "bulk_member"


class PendingMutation(Base):
    """Durable queued local change waiting to reach the server"""

    __tablename__ = "pending_mutations"
    # AUTOINCREMENT keeps submission_order strictly increasing even after deletes.
    __table_args__ = (
        Index("ix_pending_mutations_target", "entity_kind", "target_id", "submission_order"),
        {"sqlite_autoincrement": True},
    )

    submission_order = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(32), unique=True, nullable=False, index=True)

    entity_kind = Column(String, nullable=False)
    # Issue id, or the negative temporary id of a locally created issue.
    target_id = Column(Integer, nullable=False)
    operation = Column(Enum(MutationOperation), nullable=False)

    # Field-level delta. Never modified after enqueue; corrections are new mutations.
    payload = Column(JSON, nullable=False)

    # What the user saw when the mutation was made
    base_version = Column(DateTime, nullable=True)
    base_snapshot = Column(JSON, nullable=True)
    # Precondition sent with the push; advanced when a remote change is superseded.
    expected_version = Column(DateTime, nullable=True)

    status = Column(Enum(MutationStatus), nullable=False, default=MutationStatus.PENDING, index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    batch_id = Column(String(32), nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_create(self) -> bool:
        return self.operation == MutationOperation.CREATE

    def __repr__(self):
        return (
            f"<PendingMutation(order={self.submission_order}, target={self.entity_kind}:{self.target_id}, "
            f"status={self.status})>"
        )
