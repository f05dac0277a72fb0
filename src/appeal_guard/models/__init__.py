"""SQLAlchemy models for the appeal guard service."""

from .appeal import Appeal

__all__ = ["Appeal"]
