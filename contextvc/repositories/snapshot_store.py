"""Snapshot store: the engine's only view of durable storage.

``SnapshotStore`` is the contract the version control engine depends on.
``SqlSnapshotStore`` implements it on a SQLAlchemy session; any other
backend only has to provide the same primitives, in particular an atomic
``mark_current`` that flags one version and clears every sibling of the
same owner.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import ContextManager, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence, Tuple

import sqlalchemy.exc
from sqlalchemy import func

from ..exceptions import StoreError, VersionNotFoundError
from ..models import ContextChange, ContextVersion, StateField
from .base import BaseRepository

logger = logging.getLogger(__name__)

# Flag flips that lose a race against a concurrent flip (unique index on
# the current version) are re-applied this many times before giving up.
MARK_CURRENT_ATTEMPTS = 3


class SnapshotStore(Protocol):
    """Storage primitives required by the version control engine."""

    def transaction(self) -> ContextManager[None]:
        """Scope whose writes become durable together or not at all."""
        ...

    def find_current(self, owner_id: str) -> List[ContextVersion]:
        """All versions of *owner_id* flagged current (normally 0 or 1)."""
        ...

    def get_version(self, version_id: str) -> Optional[ContextVersion]:
        ...

    def get_fields(self, version_id: str) -> List[StateField]:
        ...

    def get_fields_for_versions(self, version_ids: Sequence[str]) -> Dict[str, List[StateField]]:
        ...

    def find_version_at(self, owner_id: str, timestamp: datetime) -> Optional[ContextVersion]:
        """Version with the greatest ``created_at <= timestamp``."""
        ...

    def list_versions(
        self,
        owner_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
        until: Optional[datetime] = None,
    ) -> List[ContextVersion]:
        """Versions newest first."""
        ...

    def search_versions(self, owner_id: str, query: str, limit: int) -> List[ContextVersion]:
        ...

    def add_version(self, version: ContextVersion) -> None:
        ...

    def add_fields(self, fields: Iterable[StateField]) -> None:
        ...

    def add_changes(self, changes: Iterable[ContextChange]) -> None:
        ...

    def mark_current(self, owner_id: str, version_id: str) -> None:
        """Atomically flag *version_id* current and clear its siblings."""
        ...

    def set_tags(self, version_id: str, tags: Sequence[str]) -> ContextVersion:
        ...

    def list_changes(
        self,
        owner_id: str,
        field_name: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[ContextChange]:
        """Change rows newest first."""
        ...

    def changed_fields_by_version(self, version_ids: Sequence[str]) -> Dict[str, List[str]]:
        ...

    def count_versions(self, owner_id: str) -> int:
        ...

    def count_changes(self, owner_id: str) -> int:
        ...

    def top_changed_fields(self, owner_id: str, limit: int) -> List[Tuple[str, int]]:
        ...

    def version_timestamps(self, owner_id: str, since: datetime) -> List[datetime]:
        ...


class SqlSnapshotStore(BaseRepository[ContextVersion]):
    """``SnapshotStore`` backed by a SQLAlchemy session."""

    model_class = ContextVersion
    not_found_error = VersionNotFoundError

    # --- transactions -------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        try:
            yield
            self.db.commit()
        except sqlalchemy.exc.SQLAlchemyError as e:
            self.db.rollback()
            raise StoreError("Transaction failed and was rolled back", original_error=e) from e
        except BaseException:
            self.db.rollback()
            raise

    # --- point lookups ------------------------------------------------

    def _owner_query(self, owner_id: str):
        return self.db.query(ContextVersion).filter(ContextVersion.owner_id == owner_id)

    @staticmethod
    def _newest_first(query):
        return query.order_by(
            ContextVersion.created_at.desc(),
            ContextVersion.sequence.desc(),
            ContextVersion.id.desc(),
        )

    def find_current(self, owner_id: str) -> List[ContextVersion]:
        with self._guard(f"get current version for {owner_id}"):
            return self._owner_query(owner_id).filter(ContextVersion.is_current.is_(True)).all()

    def get_version(self, version_id: str) -> Optional[ContextVersion]:
        return self.get_by_id_optional(version_id)

    def get_fields(self, version_id: str) -> List[StateField]:
        with self._guard(f"get state for version {version_id}"):
            return (
                self.db.query(StateField)
                .filter(StateField.version_id == version_id)
                .order_by(StateField.field_name)
                .all()
            )

    def get_fields_for_versions(self, version_ids: Sequence[str]) -> Dict[str, List[StateField]]:
        result: Dict[str, List[StateField]] = {vid: [] for vid in version_ids}
        if not version_ids:
            return result
        with self._guard("get state for versions"):
            rows = (
                self.db.query(StateField)
                .filter(StateField.version_id.in_(list(version_ids)))
                .order_by(StateField.version_id, StateField.field_name)
                .all()
            )
        for row in rows:
            result[row.version_id].append(row)
        return result

    # --- range scans --------------------------------------------------

    def find_version_at(self, owner_id: str, timestamp: datetime) -> Optional[ContextVersion]:
        with self._guard(f"find version at {timestamp.isoformat()}"):
            query = self._owner_query(owner_id).filter(ContextVersion.created_at <= timestamp)
            return self._newest_first(query).first()

    def list_versions(
        self,
        owner_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
        until: Optional[datetime] = None,
    ) -> List[ContextVersion]:
        with self._guard(f"get history for {owner_id}"):
            query = self._owner_query(owner_id)
            if until is not None:
                query = query.filter(ContextVersion.created_at <= until)
            query = self._newest_first(query).offset(offset)
            if limit is not None:
                query = query.limit(limit)
            return query.all()

    def search_versions(self, owner_id: str, query: str, limit: int) -> List[ContextVersion]:
        # Messages match as a case-insensitive substring, tags only exactly.
        # Both run on loaded rows: LIKE wildcards would leak through the query
        # and tag lists are JSON text whose escaping differs between backends.
        needle = query.casefold()
        matches: List[ContextVersion] = []
        with self._guard("search versions"):
            for version in self._newest_first(self._owner_query(owner_id)):
                if needle in version.message.casefold() or query in (version.tags or []):
                    matches.append(version)
                    if len(matches) >= limit:
                        break
        return matches

    def list_changes(
        self,
        owner_id: str,
        field_name: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[ContextChange]:
        with self._guard(f"get change log for {owner_id}"):
            query = (
                self.db.query(ContextChange)
                .join(ContextVersion, ContextChange.version_id == ContextVersion.id)
                .filter(ContextVersion.owner_id == owner_id)
            )
            if field_name is not None:
                query = query.filter(ContextChange.field_name == field_name)
            if start is not None:
                query = query.filter(ContextChange.created_at >= start)
            if end is not None:
                query = query.filter(ContextChange.created_at <= end)
            return query.order_by(ContextChange.created_at.desc(), ContextChange.id.desc()).all()

    def changed_fields_by_version(self, version_ids: Sequence[str]) -> Dict[str, List[str]]:
        result: Dict[str, List[str]] = {vid: [] for vid in version_ids}
        if not version_ids:
            return result
        with self._guard("summarise changes"):
            rows = (
                self.db.query(ContextChange.version_id, ContextChange.field_name)
                .filter(ContextChange.version_id.in_(list(version_ids)))
                .order_by(ContextChange.version_id, ContextChange.field_name)
                .all()
            )
        for version_id, field_name in rows:
            result[version_id].append(field_name)
        return result

    # --- writes -------------------------------------------------------

    def add_version(self, version: ContextVersion) -> None:
        with self._guard(f"create version {version.id}"):
            self.db.add(version)
            self.db.flush()

    def add_fields(self, fields: Iterable[StateField]) -> None:
        with self._guard("write state fields"):
            self.db.add_all(list(fields))
            self.db.flush()

    def add_changes(self, changes: Iterable[ContextChange]) -> None:
        with self._guard("write change log"):
            self.db.add_all(list(changes))
            self.db.flush()

    def mark_current(self, owner_id: str, version_id: str) -> None:
        """Flag *version_id* current and clear every sibling in one step.

        Both UPDATEs run inside a savepoint. If a concurrent flip for the
        same owner commits first, the unique index on the current version
        rejects ours; the savepoint is rolled back and the flip re-applied,
        now clearing the version that just won. The later flip wins.
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, MARK_CURRENT_ATTEMPTS + 1):
            try:
                with self.db.begin_nested():
                    self._owner_query(owner_id).filter(
                        ContextVersion.id != version_id,
                        ContextVersion.is_current.is_(True),
                    ).update({ContextVersion.is_current: False}, synchronize_session="fetch")
                    updated = (
                        self.db.query(ContextVersion)
                        .filter(ContextVersion.id == version_id, ContextVersion.owner_id == owner_id)
                        .update({ContextVersion.is_current: True}, synchronize_session="fetch")
                    )
                    if updated != 1:
                        raise StoreError(f"Cannot mark missing version current: {version_id}")
                return
            except sqlalchemy.exc.IntegrityError as e:
                last_error = e
                logger.warning(
                    "Concurrent current-version flip detected, retrying",
                    extra={"owner_id": owner_id, "version_id": version_id, "attempt": attempt},
                )
            except sqlalchemy.exc.SQLAlchemyError as e:
                raise StoreError(f"Failed to mark version {version_id} current", original_error=e) from e
        raise StoreError(
            f"Failed to mark version {version_id} current after {MARK_CURRENT_ATTEMPTS} attempts",
            original_error=last_error,
        )

    def set_tags(self, version_id: str, tags: Sequence[str]) -> ContextVersion:
        version = self.get_by_id(version_id)
        with self._guard(f"tag version {version_id}"):
            version.tags = list(tags)
            self.db.flush()
        return version

    # --- aggregates ---------------------------------------------------

    def count_versions(self, owner_id: str) -> int:
        with self._guard("count versions"):
            return (
                self.db.query(func.count(ContextVersion.id))
                .filter(ContextVersion.owner_id == owner_id)
                .scalar()
                or 0
            )

    def count_changes(self, owner_id: str) -> int:
        with self._guard("count changes"):
            return (
                self.db.query(func.count(ContextChange.id))
                .join(ContextVersion, ContextChange.version_id == ContextVersion.id)
                .filter(ContextVersion.owner_id == owner_id)
                .scalar()
                or 0
            )

    def top_changed_fields(self, owner_id: str, limit: int) -> List[Tuple[str, int]]:
        count_col = func.count(ContextChange.id).label("change_count")
        with self._guard("rank changed fields"):
            rows = (
                self.db.query(ContextChange.field_name, count_col)
                .join(ContextVersion, ContextChange.version_id == ContextVersion.id)
                .filter(ContextVersion.owner_id == owner_id)
                .group_by(ContextChange.field_name)
                .order_by(count_col.desc(), ContextChange.field_name)
                .limit(limit)
                .all()
            )
        return [(name, int(count)) for name, count in rows]

    def version_timestamps(self, owner_id: str, since: datetime) -> List[datetime]:
        with self._guard("load commit activity"):
            rows = (
                self.db.query(ContextVersion.created_at)
                .filter(ContextVersion.owner_id == owner_id, ContextVersion.created_at >= since)
                .order_by(ContextVersion.created_at)
                .all()
            )
        return [row[0] for row in rows]
