"""Chapter summary storage."""

from storyloom.storage.chapters.base import ChapterRecord
from storyloom.storage.chapters import crud

__all__ = ["ChapterRecord", "crud"]
