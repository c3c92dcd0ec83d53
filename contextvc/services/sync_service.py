"""Applying integration sync results to versioned state.

Sources never write state. A source's ``fetch()`` returns a
``SyncResult``; the caller decides, through the threshold helpers here,
whether it is worth a commit, and ``apply_sync_result`` turns it into
one.
"""

import logging
import math
from numbers import Real
from typing import List, Mapping, Optional, Protocol

from ..core.config import settings
from ..core.field_types import FieldType, coerce_value, values_equal
from ..exceptions import ValidationError
from ..models import ContextVersion
from ..schemas.sync import SyncResult
from ..schemas.version import FieldUpdate
from .snapshot import State
from .version_control import VersionControlEngine

logger = logging.getLogger(__name__)

SYNC_TAG = "sync"


class SyncSource(Protocol):
    """An external system that reports business-state updates."""

    name: str

    def fetch(self) -> SyncResult:
        ...


def run_sync(source: SyncSource) -> SyncResult:
    """Run one sync; a source that raises yields a failed result instead."""
    try:
        result = source.fetch()
    except Exception as e:
        logger.warning("Sync from %s failed: %s", source.name, e, extra={"source": source.name})
        return SyncResult.failed(source.name, str(e))
    logger.info(
        "Sync from %s finished",
        result.source,
        extra={"source": result.source, "success": result.success, "changes_count": result.changes_count},
    )
    return result


def _as_number(value, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, Real) or not math.isfinite(value):
        raise ValidationError(f"{name} must be a finite number", field=name)
    return float(value)


def should_auto_commit(previous, current, threshold: Optional[float] = None) -> bool:
    """True when a numeric metric moved by at least *threshold* in either direction."""
    if threshold is None:
        threshold = settings.sync_auto_commit_threshold
    threshold = _as_number(threshold, "threshold")
    if threshold < 0:
        raise ValidationError("threshold cannot be negative", field="threshold")
    return abs(_as_number(current, "current") - _as_number(previous, "previous")) >= threshold


def significant_updates(
    current_state: State,
    updates: List[FieldUpdate],
    thresholds: Mapping[str, float],
) -> List[FieldUpdate]:
    """Drop updates that would not meaningfully change *current_state*.

    A field listed in *thresholds* is kept only if it is new or its numeric
    value moved by at least the threshold. Any other field is kept only if
    it is new or its value differs.
    """
    kept: List[FieldUpdate] = []
    for update in updates:
        existing = current_state.get(update.field_name)
        if existing is None:
            kept.append(update)
            continue
        threshold = thresholds.get(update.field_name)
        if (
            threshold is not None
            and update.field_type == FieldType.NUMBER
            and existing.field_type == FieldType.NUMBER
        ):
            if should_auto_commit(existing.field_value, update.field_value, threshold):
                kept.append(update)
            continue
        if existing.field_type != update.field_type:
            kept.append(update)
            continue
        new_value = coerce_value(update.field_type, update.field_value, update.field_name)
        if not values_equal(existing.field_value, new_value, update.field_type):
            kept.append(update)
    return kept


def apply_sync_result(
    engine: VersionControlEngine,
    owner_id: str,
    result: SyncResult,
    message: Optional[str] = None,
    author: Optional[str] = None,
    thresholds: Optional[Mapping[str, float]] = None,
) -> Optional[ContextVersion]:
    """Commit a successful sync result; returns None when nothing was committed.

    With *thresholds*, updates are first filtered against the owner's
    current state by ``significant_updates``.
    """
    if not result.success:
        logger.warning(
            "Skipping failed sync result from %s: %s",
            result.source,
            result.error,
            extra={"owner_id": owner_id, "source": result.source},
        )
        return None

    updates = list(result.updates)
    if thresholds is not None and updates:
        current = engine.get_current_optional(owner_id)
        state = engine.get_state(current.id) if current is not None else {}
        updates = significant_updates(state, updates, thresholds)

    if not updates:
        logger.info(
            "Sync from %s produced no significant changes",
            result.source,
            extra={"owner_id": owner_id, "source": result.source},
        )
        return None

    names = ", ".join(u.field_name for u in updates)
    return engine.commit(
        owner_id,
        message or f"Sync from {result.source}: {names}",
        updates,
        tags=[SYNC_TAG, result.source],
        author=author or result.source,
    )
