"""Database models."""

from .version import ContextVersion
from .field import StateField
from .change import ContextChange

__all__ = ["ContextVersion", "StateField", "ContextChange"]
