"""Version control engine, the deep module for the business context lifecycle.

Owns the commit protocol, current-version tracking, temporal
reconstruction, diff and rollback. All storage goes through a
``SnapshotStore``; all snapshot arithmetic goes through the pure
functions in ``snapshot``.

Commit ordering: the new version row is written unflagged, then its full
field set and change rows, then the current flag is moved onto it, all in
one store transaction. A failure at any step rolls everything back, so a
version is never visible as current without its complete field set.

Concurrent commits from the same owner are not serialized here. Both
persist; whichever moves the flag last stays current, and the other one
remains in history with its change rows, leaving ``parent_id`` a DAG
rather than a chain. History is therefore "all versions by created_at".
"""

import hashlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, List, Mapping, Optional, Sequence, Union

import pydantic
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.field_types import coerce_value, ensure_utc, parse_timestamp
from ..exceptions import (
    ConsistencyError,
    NoCurrentVersionError,
    NoVersionAtTimeError,
    ValidationError,
    VersionNotFoundError,
)
from ..models import ContextChange, ContextVersion, StateField
from ..repositories.snapshot_store import SnapshotStore, SqlSnapshotStore
from ..schemas.version import FieldUpdate
from .snapshot import (
    FieldDiff,
    FieldState,
    SnapshotGap,
    State,
    apply_updates,
    diff_states,
    find_snapshot_gaps,
    reconstruct_fields_at,
    state_from_rows,
)

logger = logging.getLogger(__name__)

ROLLBACK_TAG = "rollback"
SYSTEM_AUTHOR = "system"

UpdateLike = Union[FieldUpdate, Mapping[str, Any]]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_content_hash(owner_id: str, message: str, created_at: datetime) -> str:
    """SHA-1 over owner, message and creation instant (not required to be unique)."""
    payload = f"{owner_id}{message}{ensure_utc(created_at).isoformat()}"
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


@dataclass
class VersionState:
    """A version together with its complete field set."""
    version: ContextVersion
    fields: State


@dataclass
class VersionSummary:
    """History entry: a version and the fields its own commit changed."""
    version: ContextVersion
    changed_fields: List[str]

    @property
    def change_count(self) -> int:
        return len(self.changed_fields)


@dataclass
class VersionDiff:
    version_from: str
    version_to: str
    changes: List[FieldDiff]
    computed_at: datetime


@dataclass
class IntegrityReport:
    """Single-current and full-snapshot check for one owner."""
    owner_id: str
    version_count: int
    current_version_ids: List[str] = field(default_factory=list)
    gaps: List[SnapshotGap] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return len(self.current_version_ids) <= 1 and not self.gaps


class VersionControlEngine:
    """Git-like versioning of an owner's business state.

    Every commit stores the owner's complete field set; reads never walk
    ancestors. The clock is injectable so tests can place commits at
    exact instants.
    """

    def __init__(self, store: SnapshotStore, clock: Optional[Clock] = None):
        self.store = store
        self._clock = clock or _utcnow

    @classmethod
    def for_session(cls, db: Session, clock: Optional[Clock] = None) -> "VersionControlEngine":
        return cls(SqlSnapshotStore(db), clock=clock)

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def commit(
        self,
        owner_id: str,
        message: str,
        updates: Sequence[UpdateLike],
        tags: Optional[Sequence[str]] = None,
        author: Optional[str] = None,
    ) -> ContextVersion:
        """Create a new current version from *updates* plus the carried-over parent state.

        Raises:
            ValidationError: Empty message, empty updates, duplicate field
                names, or a value that does not match its type tag.
            ConsistencyError: The owner already has more than one current version.
            StoreError: Persistence failed; nothing was written.
        """
        started = time.monotonic()
        owner_id = _require_owner(owner_id)
        message = (message or "").strip()
        if not message:
            raise ValidationError("Commit message cannot be empty", field="message")
        normalized = _normalize_updates(updates)
        tag_list = normalize_tags(tags or [])

        parent = self._find_current(owner_id)
        parent_state = self._load_state(parent.id) if parent is not None else {}
        created_at = self._next_timestamp(parent)

        incoming = [
            FieldState(
                field_name=u.field_name,
                field_value=coerce_value(u.field_type, u.field_value, u.field_name),
                field_type=u.field_type,
                source=u.source,
                updated_at=created_at,
            )
            for u in normalized
        ]
        new_state, planned = apply_updates(parent_state, incoming)

        version = ContextVersion(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            content_hash=compute_content_hash(owner_id, message, created_at),
            message=message,
            author=(author or "").strip() or SYSTEM_AUTHOR,
            tags=tag_list,
            parent_id=parent.id if parent is not None else None,
            sequence=(parent.sequence + 1) if parent is not None else 1,
            is_current=False,
            created_at=created_at,
        )

        with self.store.transaction():
            self.store.add_version(version)
            self.store.add_fields(
                StateField(
                    version_id=version.id,
                    field_name=f.field_name,
                    field_value=f.field_value,
                    field_type=f.field_type.value,
                    source=f.source.value,
                    updated_at=f.updated_at,
                )
                for f in new_state.values()
            )
            self.store.add_changes(
                ContextChange(
                    version_id=version.id,
                    field_name=c.field_name,
                    old_value=c.old_value,
                    new_value=c.new_value,
                    change_type=c.change_type.value,
                    source=c.source.value,
                    created_at=created_at,
                )
                for c in planned
            )
            self.store.mark_current(owner_id, version.id)

        logger.info(
            "Commit %s created in %dms",
            version.short_hash,
            round((time.monotonic() - started) * 1000),
            extra={
                "owner_id": owner_id,
                "version_id": version.id,
                "parent_id": version.parent_id,
                "changed_fields": len(planned),
                "total_fields": len(new_state),
            },
        )
        return version

    def _next_timestamp(self, parent: Optional[ContextVersion]) -> datetime:
        # created_at never goes backwards within an owner's lineage.
        now = ensure_utc(self._clock())
        if parent is not None:
            parent_created = ensure_utc(parent.created_at)
            if now < parent_created:
                return parent_created
        return now

    # ------------------------------------------------------------------
    # Current version
    # ------------------------------------------------------------------

    def _find_current(self, owner_id: str) -> Optional[ContextVersion]:
        rows = self.store.find_current(owner_id)
        if len(rows) > 1:
            ids = sorted(r.id for r in rows)
            logger.critical(
                "Multiple current versions observed",
                extra={"owner_id": owner_id, "version_ids": ids},
            )
            raise ConsistencyError(
                f"Owner {owner_id} has {len(rows)} current versions",
                owner_id=owner_id,
                version_ids=ids,
            )
        return rows[0] if rows else None

    def get_current(self, owner_id: str) -> ContextVersion:
        """The owner's current version. Raises NoCurrentVersionError before the first commit."""
        owner_id = _require_owner(owner_id)
        version = self._find_current(owner_id)
        if version is None:
            raise NoCurrentVersionError(owner_id)
        return version

    def get_current_optional(self, owner_id: str) -> Optional[ContextVersion]:
        return self._find_current(_require_owner(owner_id))

    def get_current_state(self, owner_id: str) -> VersionState:
        version = self.get_current(owner_id)
        return VersionState(version=version, fields=self._load_state(version.id))

    # ------------------------------------------------------------------
    # Point reads
    # ------------------------------------------------------------------

    def get_version(self, version_id: str) -> ContextVersion:
        version = self.store.get_version(version_id)
        if version is None:
            raise VersionNotFoundError(version_id)
        return version

    def _load_state(self, version_id: str) -> State:
        return state_from_rows(self.store.get_fields(version_id))

    def get_state(self, version_id: str) -> State:
        """Complete field map of one version (no ancestor walk)."""
        self.get_version(version_id)
        return self._load_state(version_id)

    def get_version_state(self, version_id: str) -> VersionState:
        version = self.get_version(version_id)
        return VersionState(version=version, fields=self._load_state(version.id))

    # ------------------------------------------------------------------
    # Temporal reads
    # ------------------------------------------------------------------

    def get_state_at(self, owner_id: str, timestamp: Union[str, datetime]) -> VersionState:
        """State as of *timestamp*: the newest version created at or before it.

        Raises:
            ValidationError: Malformed timestamp.
            NoVersionAtTimeError: The owner had not committed anything yet.
        """
        owner_id = _require_owner(owner_id)
        at = parse_timestamp(timestamp)
        version = self.store.find_version_at(owner_id, at)
        if version is None:
            raise NoVersionAtTimeError(owner_id, at.isoformat())
        return VersionState(version=version, fields=self._load_state(version.id))

    def reconstruct_state_at(self, owner_id: str, timestamp: Union[str, datetime]) -> State:
        """Per-field reconstruction across every version up to *timestamp*.

        Slower than ``get_state_at`` and only meant for cross-checking it:
        both agree whenever every version is a full snapshot.
        """
        owner_id = _require_owner(owner_id)
        at = parse_timestamp(timestamp)
        versions = self.store.list_versions(owner_id, until=at)
        if not versions:
            raise NoVersionAtTimeError(owner_id, at.isoformat())
        rows = self.store.get_fields_for_versions([v.id for v in versions])
        snapshots = [(v, state_from_rows(rows[v.id])) for v in versions]
        return reconstruct_fields_at(snapshots, at)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_history(self, owner_id: str, limit: Optional[int] = None, offset: int = 0) -> List[VersionSummary]:
        """Versions newest first, each with the fields its commit changed."""
        owner_id = _require_owner(owner_id)
        limit = _check_page(limit, offset)
        versions = self.store.list_versions(owner_id, limit=limit, offset=offset)
        changed = self.store.changed_fields_by_version([v.id for v in versions])
        return [VersionSummary(version=v, changed_fields=changed.get(v.id, [])) for v in versions]

    def search_versions(self, owner_id: str, query: str, limit: int = 20) -> List[ContextVersion]:
        """Versions whose message contains *query* (case-insensitive) or tagged exactly *query*."""
        owner_id = _require_owner(owner_id)
        query = (query or "").strip()
        if not query:
            raise ValidationError("Search query cannot be empty", field="query")
        limit = _check_page(limit, 0)
        return self.store.search_versions(owner_id, query, limit)

    def get_field_history(
        self,
        owner_id: str,
        field_name: str,
        start: Optional[Union[str, datetime]] = None,
        end: Optional[Union[str, datetime]] = None,
    ) -> List[ContextChange]:
        """Change rows for one field, newest first.

        Copied-forward fields have no change rows, so this lists actual
        writes only, including writes from commits that later lost the
        current flag to a concurrent commit.
        """
        owner_id = _require_owner(owner_id)
        if not field_name or not field_name.strip():
            raise ValidationError("field_name cannot be empty", field="field_name")
        start_at = parse_timestamp(start, field="start") if start is not None else None
        end_at = parse_timestamp(end, field="end") if end is not None else None
        if start_at and end_at and start_at > end_at:
            raise ValidationError("start must not be after end", field="start")
        return self.store.list_changes(owner_id, field_name.strip(), start_at, end_at)

    # ------------------------------------------------------------------
    # Diff & rollback
    # ------------------------------------------------------------------

    def diff(self, version_from: str, version_to: str, include_unchanged: bool = False) -> VersionDiff:
        """Field-by-field comparison of two versions (added/removed/modified[/unchanged])."""
        self.get_version(version_from)
        self.get_version(version_to)
        changes = diff_states(
            self._load_state(version_from),
            self._load_state(version_to),
            include_unchanged=include_unchanged,
        )
        return VersionDiff(
            version_from=version_from,
            version_to=version_to,
            changes=changes,
            computed_at=ensure_utc(self._clock()),
        )

    def rollback(self, owner_id: str, target_version_id: str, reason: Optional[str] = None) -> ContextVersion:
        """Author a new commit whose fields equal those of *target_version_id*.

        Every field of the target is written explicitly, so each one gets a
        change row. Intermediate versions are left untouched.
        """
        owner_id = _require_owner(owner_id)
        target = self.get_version(target_version_id)
        if target.owner_id != owner_id:
            raise VersionNotFoundError(target_version_id)
        target_state = self._load_state(target.id)

        updates = [
            FieldUpdate(
                field_name=f.field_name,
                field_value=f.field_value,
                field_type=f.field_type,
                source=f.source,
            )
            for f in target_state.values()
        ]
        message = f"Rollback to {target.short_hash}: {(reason or '').strip() or target.message}"
        version = self.commit(owner_id, message, updates, tags=[ROLLBACK_TAG], author=SYSTEM_AUTHOR)

        logger.info(
            "Rolled back %s to %s",
            owner_id,
            target.short_hash,
            extra={"owner_id": owner_id, "target_version_id": target.id, "version_id": version.id},
        )
        return version

    # ------------------------------------------------------------------
    # Tags & integrity
    # ------------------------------------------------------------------

    def tag(self, version_id: str, tags: Sequence[str]) -> ContextVersion:
        """Replace the tag set of a version. Tags are metadata: no change rows."""
        tag_list = normalize_tags(tags)
        with self.store.transaction():
            version = self.store.set_tags(version_id, tag_list)
        return version

    def verify_integrity(self, owner_id: str) -> IntegrityReport:
        """Check single-current and full-snapshot invariants for *owner_id*."""
        owner_id = _require_owner(owner_id)
        versions = self.store.list_versions(owner_id)
        rows = self.store.get_fields_for_versions([v.id for v in versions])
        snapshots = [(v, state_from_rows(rows[v.id])) for v in versions]
        report = IntegrityReport(
            owner_id=owner_id,
            version_count=len(versions),
            current_version_ids=sorted(v.id for v in versions if v.is_current),
            gaps=find_snapshot_gaps(snapshots),
        )
        if not report.ok:
            logger.error(
                "Integrity check failed",
                extra={
                    "owner_id": owner_id,
                    "current_versions": report.current_version_ids,
                    "gaps": len(report.gaps),
                },
            )
        return report


# ----------------------------------------------------------------------
# Input normalisation
# ----------------------------------------------------------------------

def _require_owner(owner_id: str) -> str:
    owner_id = (owner_id or "").strip()
    if not owner_id:
        raise ValidationError("owner_id is required", field="owner_id")
    return owner_id


def _normalize_updates(updates: Sequence[UpdateLike]) -> List[FieldUpdate]:
    if not updates:
        raise ValidationError("A commit needs at least one field update", field="updates")

    normalized: List[FieldUpdate] = []
    seen = set()
    for raw in updates:
        try:
            update = raw if isinstance(raw, FieldUpdate) else FieldUpdate.model_validate(raw)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid field update: {e.errors()[0]['msg']}", field="updates") from e
        if update.field_name in seen:
            raise ValidationError(
                f"Duplicate field in one commit: {update.field_name}", field=update.field_name
            )
        seen.add(update.field_name)
        normalized.append(update)
    return normalized


def normalize_tags(tags: Sequence[str]) -> List[str]:
    """Strip, drop blanks and de-duplicate tags, keeping first-seen order."""
    result: List[str] = []
    for tag in tags:
        if not isinstance(tag, str):
            raise ValidationError("Tags must be strings", field="tags")
        tag = tag.strip()
        if tag and tag not in result:
            result.append(tag)
    return result


def _check_page(limit: Optional[int], offset: int) -> int:
    if limit is None:
        limit = settings.history_page_size
    if limit < 1 or limit > settings.history_max_page_size:
        raise ValidationError(
            f"limit must be between 1 and {settings.history_max_page_size}", field="limit"
        )
    if offset < 0:
        raise ValidationError("offset cannot be negative", field="offset")
    return limit
