"""Lorebook entry storage."""

from storyloom.storage.lorebook.base import LorebookEntryRecord
from storyloom.storage.lorebook import crud

__all__ = ["LorebookEntryRecord", "crud"]
