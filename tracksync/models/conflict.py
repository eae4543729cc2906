"""Conflict model"""
from sqlalchemy import JSON, Column, Integer, String, DateTime, Text, Boolean
from tracksync.models.base import Base, utcnow


class Conflict(Base):
    """Conflicted mutation surfaced for explicit user resolution"""

    __tablename__ = "conflicts"

    id = Column(Integer, primary_key=True, index=True)

    # Mutation that could not be applied (its row stays in `conflicted` until acknowledged)
    mutation_id = Column(String(32), nullable=False, index=True)

    # Entity information
    entity_kind = Column(String, nullable=False)
    entity_id = Column(Integer, nullable=False)

    # Conflict details
    description = Column(Text, nullable=False)
    local_delta = Column(JSON, nullable=False)  # what the user intended
    remote_data = Column(JSON, nullable=True)  # remote state when the conflict was seen
    remote_changes = Column(JSON, nullable=True)  # fields changed remotely since enqueue
    base_version = Column(DateTime, nullable=True)
    remote_version = Column(DateTime, nullable=True)

    # Resolution
    resolved = Column(Boolean, default=False)
    resolved_at = Column(DateTime, nullable=True)
    resolution_notes = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, index=True)

    def __repr__(self):
        return f"<Conflict(entity={self.entity_kind}:{self.entity_id}, resolved={self.resolved})>"
