"""Business logic services."""

from .version_control import VersionControlEngine
from .stats_service import StatsService

__all__ = ["VersionControlEngine", "StatsService"]
