"""Context version model (one row per commit)."""

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, JSON, String, Text, text
from sqlalchemy.orm import relationship

from ..database import Base, UTCDateTime

SHORT_HASH_LENGTH = 7


class ContextVersion(Base):
    """Immutable snapshot of an owner's business state.

    Only ``is_current`` (true -> false when superseded) and ``tags`` ever
    change after insert.
    """

    __tablename__ = "context_versions"
    __table_args__ = (
        Index("ix_context_versions_owner_created", "owner_id", "created_at"),
        Index("ix_context_versions_content_hash", "content_hash"),
        # At most one current version per owner.
        Index(
            "uq_context_versions_owner_current",
            "owner_id",
            unique=True,
            postgresql_where=text("is_current"),
            sqlite_where=text("is_current = 1"),
        ),
    )

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(100), nullable=False)

    # sha1(owner | message | created_at); not unique
    content_hash = Column(String(40), nullable=False)
    message = Column(Text, nullable=False)
    author = Column(String(255), nullable=False, default="system")
    tags = Column(JSON, nullable=False, default=list)

    # Lineage only. Concurrent commits can share a parent.
    parent_id = Column(String(36), ForeignKey("context_versions.id"), nullable=True)
    # parent.sequence + 1; breaks created_at ties
    sequence = Column(Integer, nullable=False, default=1)

    is_current = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False)

    fields = relationship("StateField", back_populates="version", cascade="all, delete-orphan")
    changes = relationship("ContextChange", back_populates="version", cascade="all, delete-orphan")

    @property
    def short_hash(self) -> str:
        return self.content_hash[:SHORT_HASH_LENGTH]
