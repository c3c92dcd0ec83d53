"""Sync result contract shared by every integration source.

A source (social metrics, CRM, webhook, chat extraction) never writes
state itself. It reports what it found as a ``SyncResult`` whose
``updates`` can be passed straight to ``VersionControlEngine.commit``.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, computed_field, model_validator

from .version import FieldUpdate, VersionResponse


class SyncResult(BaseModel):
    """Outcome of one sync run."""
    source: str
    success: bool
    fields_updated: List[str] = []
    updates: List[FieldUpdate] = []
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @computed_field
    @property
    def changes_count(self) -> int:
        return len(self.updates)

    @model_validator(mode="after")
    def check_consistency(self) -> "SyncResult":
        if not self.success and not self.error:
            raise ValueError("A failed sync result must carry an error message")
        if not self.fields_updated and self.updates:
            self.fields_updated = [u.field_name for u in self.updates]
        return self

    @classmethod
    def failed(cls, source: str, error: str) -> "SyncResult":
        return cls(source=source, success=False, error=error)


class SyncRequest(BaseModel):
    """Apply a sync result to an owner's state."""
    owner_id: str = Field(min_length=1, max_length=100)
    result: SyncResult
    message: Optional[str] = None
    author: Optional[str] = None
    thresholds: Optional[Dict[str, float]] = None


class SyncCommitResponse(BaseModel):
    """Whether a sync result produced a commit, and which one."""
    committed: bool
    version: Optional[VersionResponse] = None
