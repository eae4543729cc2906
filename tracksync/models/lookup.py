"""Remote enumeration model"""

from sqlalchemy import Boolean, Column, Integer, String

from tracksync.models.base import Base


class Lookup(Base):
    """Cached remote enumeration value (issue status, priority, tracker)"""

    __tablename__ = "lookups"

    kind = Column(String, primary_key=True)
    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String, nullable=False)
    position = Column(Integer, nullable=True)
    is_closed = Column(Boolean, nullable=True)

    def __repr__(self):
        return f"<Lookup({self.kind}:{self.id} '{self.name}')>"
