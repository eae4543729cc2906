"""Project model"""

from sqlalchemy import Column, DateTime, Integer, String, Text

from tracksync.models.base import Base


class Project(Base):
    """Cached remote project"""

    __tablename__ = "projects"

    # Server-assigned, never reused
    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String, nullable=False, index=True)
    identifier = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(Integer, nullable=True)
    parent_id = Column(Integer, nullable=True)

    created_on = Column(DateTime, nullable=True)
    # Version token
    updated_on = Column(DateTime, nullable=True, index=True)

    # Revision marker: when this row was last confirmed by a pull
    last_synced_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<Project(id={self.id}, identifier='{self.identifier}')>"
