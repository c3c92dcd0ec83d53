"""Statistics schemas."""

from pydantic import BaseModel
from typing import List


class FieldChangeCount(BaseModel):
    field_name: str
    change_count: int


class DailyActivity(BaseModel):
    date: str  # YYYY-MM-DD (UTC)
    commit_count: int


class StatsResponse(BaseModel):
    """Aggregate view of one owner's history."""
    owner_id: str
    total_versions: int
    total_changes: int
    most_changed_fields: List[FieldChangeCount]
    recent_activity: List[DailyActivity]
    window_days: int
