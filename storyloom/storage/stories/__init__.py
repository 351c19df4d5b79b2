"""Story and per-branch environment storage."""

from storyloom.storage.stories.base import BranchState, Story
from storyloom.storage.stories import crud

__all__ = ["BranchState", "Story", "crud"]
