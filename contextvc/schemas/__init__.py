"""Pydantic schemas for API validation."""

from .version import (
    FieldUpdate,
    CommitRequest,
    RollbackRequest,
    TagRequest,
    VersionResponse,
    VersionSummaryResponse,
    FieldResponse,
    StateResponse,
    ChangeResponse,
    FieldDiffResponse,
    DiffResponse,
    SnapshotGapResponse,
    IntegrityResponse,
)
from .stats import FieldChangeCount, DailyActivity, StatsResponse
from .sync import SyncResult, SyncRequest, SyncCommitResponse

__all__ = [
    "FieldUpdate",
    "CommitRequest",
    "RollbackRequest",
    "TagRequest",
    "VersionResponse",
    "VersionSummaryResponse",
    "FieldResponse",
    "StateResponse",
    "ChangeResponse",
    "FieldDiffResponse",
    "DiffResponse",
    "SnapshotGapResponse",
    "IntegrityResponse",
    "FieldChangeCount",
    "DailyActivity",
    "StatsResponse",
    "SyncResult",
    "SyncRequest",
    "SyncCommitResponse",
]
