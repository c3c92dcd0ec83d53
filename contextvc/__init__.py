"""ContextVC: git-like version control for business context."""

__version__ = "1.0.0"
