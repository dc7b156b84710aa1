"""Storage layer for SQLite via SQLAlchemy async."""

from story_memory.storage import projects

__all__ = ["projects"]
