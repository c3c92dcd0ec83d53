"""Business state field model."""

from sqlalchemy import Column, ForeignKey, Index, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import relationship

from ..database import Base, UTCDateTime


class StateField(Base):
    """A named value as of one version.

    Every version holds its owner's complete field set: fields the commit
    did not touch are copied forward from the parent with their original
    ``updated_at``.
    """

    __tablename__ = "business_state"
    __table_args__ = (
        UniqueConstraint("version_id", "field_name", name="uq_business_state_version_field"),
        Index("ix_business_state_field_name", "field_name"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    version_id = Column(
        String(36), ForeignKey("context_versions.id", ondelete="CASCADE"), nullable=False
    )
    field_name = Column(String(100), nullable=False)
    field_value = Column(JSON, nullable=False)
    field_type = Column(String(20), nullable=False)  # FieldType value
    source = Column(String(50), nullable=False)  # FieldSource value
    updated_at = Column(UTCDateTime, nullable=False)

    version = relationship("ContextVersion", back_populates="fields")
