"""Pure snapshot operations over in-memory field maps.

Nothing here touches the database: the engine loads rows, converts them
to ``FieldState`` maps and hands them to these functions. That keeps the
commit, diff and reconstruction rules testable on plain dictionaries.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from ..core.field_types import FieldSource, FieldType, ensure_utc, values_equal


class ChangeType(str, Enum):
    """Kind of a change-log row."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class DiffType(str, Enum):
    """Outcome of comparing one field between two snapshots."""
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class FieldState:
    """One field of a snapshot, detached from any storage row."""
    field_name: str
    field_value: Any
    field_type: FieldType
    source: FieldSource
    updated_at: datetime

    @classmethod
    def from_row(cls, row: Any) -> "FieldState":
        return cls(
            field_name=row.field_name,
            field_value=row.field_value,
            field_type=FieldType(row.field_type),
            source=FieldSource(row.source),
            updated_at=ensure_utc(row.updated_at),
        )


@dataclass(frozen=True)
class PlannedChange:
    """A change-log row a commit is about to write."""
    field_name: str
    old_value: Any
    new_value: Any
    change_type: ChangeType
    source: FieldSource


@dataclass(frozen=True)
class FieldDiff:
    field_name: str
    old_value: Any
    new_value: Any
    change_type: DiffType


@dataclass(frozen=True)
class SnapshotGap:
    """Fields present in a parent but missing from its child."""
    version_id: str
    parent_id: str
    missing_fields: Tuple[str, ...]


State = Dict[str, FieldState]


def state_from_rows(rows: Iterable[Any]) -> State:
    """Build a ``field_name -> FieldState`` map from stored field rows."""
    return {row.field_name: FieldState.from_row(row) for row in rows}


def apply_updates(parent: Mapping[str, FieldState], updates: Sequence[FieldState]) -> Tuple[State, List[PlannedChange]]:
    """Compute a commit's full field set and its change-log rows.

    Every updated field takes its new value; every other parent field is
    carried over as-is (same value, type, source and ``updated_at``).
    Only updated fields produce a ``PlannedChange``: ``create`` when the
    parent did not have the field, ``update`` otherwise.
    """
    state: State = dict(parent)
    changes: List[PlannedChange] = []
    for update in updates:
        previous = parent.get(update.field_name)
        changes.append(
            PlannedChange(
                field_name=update.field_name,
                old_value=previous.field_value if previous is not None else None,
                new_value=update.field_value,
                change_type=ChangeType.UPDATE if previous is not None else ChangeType.CREATE,
                source=update.source,
            )
        )
        state[update.field_name] = update
    return state, changes


def _same_value(a: FieldState, b: FieldState) -> bool:
    field_type = a.field_type if a.field_type == b.field_type else None
    return values_equal(a.field_value, b.field_value, field_type)


def diff_states(
    from_state: Mapping[str, FieldState],
    to_state: Mapping[str, FieldState],
    include_unchanged: bool = False,
) -> List[FieldDiff]:
    """Full outer join of two snapshots keyed by field name, sorted by name."""
    diffs: List[FieldDiff] = []
    for name in sorted(set(from_state) | set(to_state)):
        old = from_state.get(name)
        new = to_state.get(name)
        if old is None:
            diffs.append(FieldDiff(name, None, new.field_value, DiffType.ADDED))
        elif new is None:
            diffs.append(FieldDiff(name, old.field_value, None, DiffType.REMOVED))
        elif not _same_value(old, new):
            diffs.append(FieldDiff(name, old.field_value, new.field_value, DiffType.MODIFIED))
        elif include_unchanged:
            diffs.append(FieldDiff(name, old.field_value, new.field_value, DiffType.UNCHANGED))
    return diffs


def _version_order_key(version: Any) -> Tuple[datetime, int, str]:
    return ensure_utc(version.created_at), getattr(version, "sequence", 0) or 0, str(version.id)


def select_version_at(versions: Iterable[Any], timestamp: datetime) -> Optional[Any]:
    """The version with the greatest ``created_at <= timestamp``, if any.

    Ties on ``created_at`` go to the higher ``sequence``, then the higher id,
    matching the store's ordering.
    """
    timestamp = ensure_utc(timestamp)
    eligible = [v for v in versions if ensure_utc(v.created_at) <= timestamp]
    if not eligible:
        return None
    return max(eligible, key=_version_order_key)


def reconstruct_fields_at(snapshots: Iterable[Tuple[Any, Mapping[str, FieldState]]], timestamp: datetime) -> State:
    """Per-field reconstruction: each field's value from the newest version <= T.

    Walks every version instead of trusting one snapshot. While every
    version is a full snapshot this returns exactly the field set of
    ``select_version_at``; a difference means a commit dropped a field.
    """
    timestamp = ensure_utc(timestamp)
    eligible = sorted(
        ((v, s) for v, s in snapshots if ensure_utc(v.created_at) <= timestamp),
        key=lambda pair: _version_order_key(pair[0]),
    )
    state: State = {}
    for _version, fields in eligible:
        state.update(fields)
    return state


def find_snapshot_gaps(snapshots: Sequence[Tuple[Any, Mapping[str, FieldState]]]) -> List[SnapshotGap]:
    """Versions missing a field their parent had (full-snapshot violations)."""
    names_by_id: Dict[str, Set[str]] = {v.id: set(fields) for v, fields in snapshots}
    gaps: List[SnapshotGap] = []
    for version, fields in snapshots:
        parent_names = names_by_id.get(version.parent_id) if version.parent_id else None
        if parent_names is None:
            continue
        missing = parent_names - set(fields)
        if missing:
            gaps.append(SnapshotGap(version.id, version.parent_id, tuple(sorted(missing))))
    return gaps
