from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def import_all_models() -> None:
    from storyloom.storage.chapters.base import ChapterRecord
    from storyloom.storage.entries.base import StoryEntryRecord
    from storyloom.storage.lorebook.base import LorebookEntryRecord
    from storyloom.storage.stories.base import BranchState, Story
    from storyloom.storage.world_state.characters import CharacterRecord
    from storyloom.storage.world_state.checkpoints import StoryCheckpoint
    from storyloom.storage.world_state.items import ItemRecord
    from storyloom.storage.world_state.locations import LocationRecord
    from storyloom.storage.world_state.overrides import BranchOverride
    from storyloom.storage.world_state.snapshots import WorldStateSnapshot
    from storyloom.storage.world_state.story_beats import StoryBeatRecord

    _ = (
        Story,
        BranchState,
        StoryEntryRecord,
        LorebookEntryRecord,
        ChapterRecord,
        CharacterRecord,
        LocationRecord,
        ItemRecord,
        StoryBeatRecord,
        BranchOverride,
        WorldStateSnapshot,
        StoryCheckpoint,
    )
