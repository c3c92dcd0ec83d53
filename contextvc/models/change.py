"""Change log model (audit trail)."""

from sqlalchemy import Column, ForeignKey, Index, Integer, JSON, String
from sqlalchemy.orm import relationship

from ..database import Base, UTCDateTime


class ContextChange(Base):
    """Immutable record of one field's transition in one commit.

    Written only for fields the commit explicitly updated; copied-forward
    fields never appear here.
    """

    __tablename__ = "context_changes"
    __table_args__ = (
        Index("ix_context_changes_version_id", "version_id"),
        Index("ix_context_changes_field_name", "field_name"),
        Index("ix_context_changes_created_at", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    version_id = Column(
        String(36), ForeignKey("context_versions.id", ondelete="CASCADE"), nullable=False
    )
    field_name = Column(String(100), nullable=False)
    old_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    change_type = Column(String(10), nullable=False)  # create | update | delete
    source = Column(String(50), nullable=False)
    created_at = Column(UTCDateTime, nullable=False)

    version = relationship("ContextVersion", back_populates="changes")
