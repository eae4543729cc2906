"""Journal (comment) model"""

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text

from tracksync.models.base import Base


class Journal(Base):
    """Issue journal entry. Append-only once stored."""

    __tablename__ = "journals"

    id = Column(Integer, primary_key=True, autoincrement=False)
    issue_id = Column(Integer, nullable=False, index=True)

    user_id = Column(Integer, nullable=True)
    user_name = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    # Visibility: private notes are only shown to privileged members remotely.
    private_notes = Column(Boolean, nullable=False, default=False)
    # Property changes recorded with the entry, e.g. status_id 1 -> 2
    details = Column(JSON, nullable=True)

    created_on = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<Journal(id={self.id}, issue_id={self.issue_id})>"
