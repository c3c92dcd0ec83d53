"""API routes."""

from .context import router as context_router

__all__ = ["context_router"]
