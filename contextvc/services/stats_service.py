"""Statistics aggregator over an owner's versions and change log."""

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.field_types import ensure_utc
from ..exceptions import ValidationError
from ..repositories.snapshot_store import SnapshotStore, SqlSnapshotStore
from ..schemas.stats import DailyActivity, FieldChangeCount, StatsResponse

logger = logging.getLogger(__name__)


class StatsService:
    """Read-only aggregates: counts, most-changed fields, daily activity."""

    def __init__(self, store: SnapshotStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def for_session(cls, db: Session, clock: Optional[Callable[[], datetime]] = None) -> "StatsService":
        return cls(SqlSnapshotStore(db), clock=clock)

    def get_stats(self, owner_id: str, days: Optional[int] = None, top: Optional[int] = None) -> StatsResponse:
        """Totals plus the top-*top* fields and per-day commit counts over the last *days* days.

        Days without commits are omitted; buckets are UTC calendar dates,
        oldest first.
        """
        owner_id = (owner_id or "").strip()
        if not owner_id:
            raise ValidationError("owner_id is required", field="owner_id")
        days = settings.stats_window_days if days is None else days
        top = settings.stats_top_fields if top is None else top
        if days < 1:
            raise ValidationError("days must be at least 1", field="days")
        if top < 1:
            raise ValidationError("top must be at least 1", field="top")

        since = ensure_utc(self._clock()) - timedelta(days=days)
        per_day = Counter(
            ensure_utc(ts).date().isoformat() for ts in self.store.version_timestamps(owner_id, since)
        )

        stats = StatsResponse(
            owner_id=owner_id,
            total_versions=self.store.count_versions(owner_id),
            total_changes=self.store.count_changes(owner_id),
            most_changed_fields=[
                FieldChangeCount(field_name=name, change_count=count)
                for name, count in self.store.top_changed_fields(owner_id, top)
            ],
            recent_activity=[
                DailyActivity(date=day, commit_count=count) for day, count in sorted(per_day.items())
            ],
            window_days=days,
        )
        logger.debug(
            "Computed stats",
            extra={"owner_id": owner_id, "total_versions": stats.total_versions, "window_days": days},
        )
        return stats
