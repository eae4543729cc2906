"""Attachment metadata model"""

from sqlalchemy import Column, DateTime, Integer, String, Text

from tracksync.models.base import Base


class Attachment(Base):
    """Attachment metadata; content is downloaded on demand and never cached."""

    __tablename__ = "attachments"

    id = Column(Integer, primary_key=True, autoincrement=False)
    issue_id = Column(Integer, nullable=False, index=True)

    filename = Column(String, nullable=False)
    filesize = Column(Integer, nullable=True)
    content_type = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    content_url = Column(String, nullable=False)
    author_name = Column(String, nullable=True)
    created_on = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<Attachment(id={self.id}, filename='{self.filename}')>"
