"""Storage layer for SQLite via SQLAlchemy async."""

from storyloom.storage import chapters, entries, lorebook, stories, world_state

__all__ = ["chapters", "entries", "lorebook", "stories", "world_state"]
