"""World-state tables: entities, branch overrides, auto-snapshots and checkpoints."""

from storyloom.storage.world_state import checkpoints, entities, overrides, snapshots
from storyloom.storage.world_state.characters import CharacterRecord
from storyloom.storage.world_state.checkpoints import StoryCheckpoint
from storyloom.storage.world_state.items import ItemRecord
from storyloom.storage.world_state.locations import LocationRecord
from storyloom.storage.world_state.overrides import BranchOverride
from storyloom.storage.world_state.snapshots import WorldStateSnapshot
from storyloom.storage.world_state.story_beats import StoryBeatRecord

__all__ = [
    "BranchOverride",
    "CharacterRecord",
    "ItemRecord",
    "LocationRecord",
    "StoryBeatRecord",
    "StoryCheckpoint",
    "WorldStateSnapshot",
    "checkpoints",
    "entities",
    "overrides",
    "snapshots",
]
