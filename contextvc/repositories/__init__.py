"""Data access repositories."""

from .base import BaseRepository
from .snapshot_store import SnapshotStore, SqlSnapshotStore

__all__ = [
    "BaseRepository",
    "SnapshotStore",
    "SqlSnapshotStore",
]
