"""Version, state and change schemas."""

from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.field_types import FieldSource, FieldType


class FieldUpdate(BaseModel):
    """One field write inside a commit."""
    field_name: str = Field(min_length=1, max_length=100)
    field_value: Any
    field_type: FieldType
    source: FieldSource = FieldSource.MANUAL

    @field_validator('field_name')
    @classmethod
    def strip_field_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("field_name cannot be blank")
        return v


class CommitRequest(BaseModel):
    """Schema for creating a version."""
    owner_id: str = Field(min_length=1, max_length=100)
    message: str = Field(min_length=1)
    updates: List[FieldUpdate]
    tags: List[str] = []
    author: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "owner_id": "founder-1",
                    "message": "Narrow ICP to B2B SaaS",
                    "updates": [
                        {
                            "field_name": "icp",
                            "field_value": {"target_customer": "B2B SaaS founders"},
                            "field_type": "json",
                            "source": "manual",
                        }
                    ],
                    "tags": ["strategy"],
                    "author": "founder",
                }
            ]
        }
    }


class RollbackRequest(BaseModel):
    """Schema for rolling back to an earlier version."""
    owner_id: str = Field(min_length=1, max_length=100)
    version_id: str
    reason: Optional[str] = None


class TagRequest(BaseModel):
    """Replacement tag set for a version."""
    tags: List[str]


class VersionResponse(BaseModel):
    """Schema for version response."""
    id: str
    owner_id: str
    short_hash: str
    content_hash: str
    message: str
    author: str
    tags: List[str]
    parent_id: Optional[str] = None
    sequence: int
    is_current: bool
    created_at: datetime

    class Config:
        from_attributes = True


class VersionSummaryResponse(VersionResponse):
    """History entry: a version plus the fields its commit changed."""
    change_count: int
    changed_fields: List[str]


class FieldResponse(BaseModel):
    """One field of a snapshot."""
    field_value: Any
    field_type: FieldType
    source: FieldSource
    updated_at: datetime

    class Config:
        from_attributes = True


class StateResponse(BaseModel):
    """A version and its complete field set."""
    version: VersionResponse
    fields: Dict[str, FieldResponse]

    @classmethod
    def from_state(cls, state) -> "StateResponse":
        return cls(
            version=VersionResponse.model_validate(state.version),
            fields={name: FieldResponse.model_validate(f) for name, f in state.fields.items()},
        )


class ChangeResponse(BaseModel):
    """Change-log row."""
    id: int
    version_id: str
    field_name: str
    old_value: Any = None
    new_value: Any = None
    change_type: str
    source: str
    created_at: datetime

    class Config:
        from_attributes = True


class FieldDiffResponse(BaseModel):
    field_name: str
    old_value: Any = None
    new_value: Any = None
    change_type: str

    class Config:
        from_attributes = True


class DiffResponse(BaseModel):
    """Field-by-field comparison of two versions."""
    version_from: str
    version_to: str
    changes: List[FieldDiffResponse]
    computed_at: datetime


class SnapshotGapResponse(BaseModel):
    version_id: str
    parent_id: str
    missing_fields: List[str]

    class Config:
        from_attributes = True


class IntegrityResponse(BaseModel):
    """Invariant check result for one owner."""
    owner_id: str
    version_count: int
    current_version_ids: List[str]
    gaps: List[SnapshotGapResponse]
    ok: bool

    class Config:
        from_attributes = True
