"""Issue model"""

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Index, Integer, String, Text

from tracksync.models.base import Base


class Issue(Base):
    """Cached remote issue (or an optimistic local copy of one)"""

    __tablename__ = "issues"
    __table_args__ = (
        Index("ix_issues_project_status", "project_id", "status_id"),
        Index("ix_issues_project_assigned", "project_id", "assigned_to_id"),
    )

    # Server id; locally created issues use a negative temporary id until confirmed.
    id = Column(Integer, primary_key=True, autoincrement=False)

    # Reference, not ownership: issues may arrive before their project.
    project_id = Column(Integer, nullable=False)
    project_name = Column(String, nullable=True)

    tracker_id = Column(Integer, nullable=True)
    tracker_name = Column(String, nullable=True)
    status_id = Column(Integer, nullable=True)
    status_name = Column(String, nullable=True)
    priority_id = Column(Integer, nullable=True, index=True)
    priority_name = Column(String, nullable=True)
    author_id = Column(Integer, nullable=True)
    author_name = Column(String, nullable=True)
    assigned_to_id = Column(Integer, nullable=True, index=True)
    assigned_to_name = Column(String, nullable=True)

    subject = Column(String, nullable=False, default="")
    description = Column(Text, nullable=True)
    start_date = Column(String, nullable=True)
    due_date = Column(String, nullable=True)
    done_ratio = Column(Integer, nullable=True)
    is_private = Column(Boolean, nullable=True)
    estimated_hours = Column(Float, nullable=True)

    created_on = Column(DateTime, nullable=True)
    updated_on = Column(DateTime, nullable=True, index=True)

    # Version token used for optimistic concurrency (the server's updated_on).
    version = Column(DateTime, nullable=True)

    # Local optimistic write not yet confirmed by the server
    dirty = Column(Boolean, nullable=False, default=False)
    # Server-confirmed values of the overlay columns; optimistic writes are rebuilt on top of it.
    remote_data = Column(JSON, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<Issue(id={self.id}, status='{self.status_name}', dirty={self.dirty})>"
