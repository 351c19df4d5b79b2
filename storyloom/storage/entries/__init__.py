"""Story entry storage."""

from storyloom.storage.entries.base import StoryEntryRecord
from storyloom.storage.entries import crud

__all__ = ["StoryEntryRecord", "crud"]
