from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.domain.delta import WorldStateDelta
from storyloom.domain.models import (
    Chapter,
    Character,
    Entity,
    EntityKind,
    Item,
    Location,
    LorebookEntry,
    StoryBeat,
    StoryEntry,
    TimeTracker,
    WorldView,
)
from storyloom.storage.chapters import crud as chapters_crud
from storyloom.storage.entries import crud as entries_crud
from storyloom.storage.lorebook import crud as lorebook_crud
from storyloom.storage.stories import crud as stories_crud
from storyloom.storage.types import BranchOverrideRow, BranchStateRow, CheckpointRow, InsertResult, SnapshotRow, StoryRow
from storyloom.storage.world_state import checkpoints as checkpoints_crud
from storyloom.storage.world_state import entities as entities_crud
from storyloom.storage.world_state import overrides as overrides_crud
from storyloom.storage.world_state import snapshots as snapshots_crud


class SQLAlchemyRepo:
    def __init__(self, session: AsyncSession):
        self.session = session

    # Stories and per-branch environment

    async def create_story(self, title: str, mode: str = "adventure") -> InsertResult:
        return await stories_crud.create_story(self.session, title, mode)

    async def get_story(self, story_id: int) -> StoryRow:
        return await stories_crud.get_story(self.session, story_id)

    async def list_stories(self) -> list[StoryRow]:
        return await stories_crud.list_stories(self.session)

    async def get_branch_state(self, story_id: int, branch_id: str) -> BranchStateRow:
        return await stories_crud.get_branch_state(self.session, story_id, branch_id)

    async def get_time_tracker(self, story_id: int, branch_id: str) -> TimeTracker | None:
        state = await stories_crud.get_branch_state(self.session, story_id, branch_id)
        return state.time_tracker

    async def save_time_tracker(self, story_id: int, branch_id: str, time_tracker: TimeTracker | None) -> None:
        await stories_crud.save_time_tracker(self.session, story_id, branch_id, time_tracker)

    async def get_activation_data(self, story_id: int, branch_id: str) -> dict[str, int]:
        state = await stories_crud.get_branch_state(self.session, story_id, branch_id)
        return state.activation_data

    async def save_activation_data(self, story_id: int, branch_id: str, activation_data: dict[str, int]) -> None:
        await stories_crud.save_activation_data(self.session, story_id, branch_id, activation_data)

    # Story entries

    async def add_story_entry(self, entry: StoryEntry) -> None:
        await entries_crud.insert_entry(self.session, entry)

    async def list_story_entries(
        self,
        story_id: int,
        branch_id: str,
        *,
        from_position: int | None = None,
        with_delta_only: bool = False,
    ) -> list[StoryEntry]:
        return await entries_crud.list_entries(
            self.session,
            story_id,
            branch_id,
            from_position=from_position,
            with_delta_only=with_delta_only,
        )

    async def get_last_position(self, story_id: int, branch_id: str) -> int | None:
        return await entries_crud.get_last_position(self.session, story_id, branch_id)

    async def set_entry_delta(self, entry_id: str, delta: WorldStateDelta | None) -> None:
        await entries_crud.set_entry_delta(self.session, entry_id, delta)

    async def delete_story_entries_from(self, story_id: int, branch_id: str, position: int) -> int:
        return await entries_crud.delete_entries_from(self.session, story_id, branch_id, position)

    async def replace_story_entries(self, story_id: int, branch_id: str, entries: list[StoryEntry]) -> None:
        await entries_crud.delete_branch_entries(self.session, story_id, branch_id)
        for entry in entries:
            await entries_crud.insert_entry(self.session, entry)

    # Chapters

    async def add_chapter(self, chapter: Chapter) -> None:
        await chapters_crud.insert_chapter(self.session, chapter)

    async def list_chapters(self, story_id: int, branch_id: str) -> list[Chapter]:
        return await chapters_crud.list_chapters(self.session, story_id, branch_id)

    async def get_next_chapter_number(self, story_id: int, branch_id: str) -> int:
        return await chapters_crud.get_next_number(self.session, story_id, branch_id)

    async def delete_chapters_from(self, story_id: int, branch_id: str, position: int) -> int:
        return await chapters_crud.delete_chapters_from(self.session, story_id, branch_id, position)

    # Lorebook

    async def add_lorebook_entries(self, entries: list[LorebookEntry]) -> None:
        await lorebook_crud.insert_entries(self.session, entries)

    async def list_lorebook_entries(self, story_id: int, branch_id: str) -> list[LorebookEntry]:
        return await lorebook_crud.list_entries(self.session, story_id, branch_id)

    async def update_lorebook_entry(self, entry_id: str, changes: dict[str, Any]) -> bool:
        return await lorebook_crud.update_entry(self.session, entry_id, changes)

    async def delete_lorebook_entry(self, entry_id: str) -> bool:
        return await lorebook_crud.delete_entry(self.session, entry_id)

    async def replace_lorebook_entries(self, story_id: int, branch_id: str, entries: list[LorebookEntry]) -> None:
        await lorebook_crud.delete_branch_entries(self.session, story_id, branch_id)
        await lorebook_crud.insert_entries(self.session, [entry for entry in entries if entry.branch_id == branch_id])

    # World-state entities (generic)

    async def add_entity(self, kind: EntityKind, entity: Entity) -> None:
        await entities_crud.insert_entity(self.session, kind, entity)

    async def get_entity(self, kind: EntityKind, entity_id: str, branch_id: str) -> Entity | None:
        return await entities_crud.get_entity(self.session, kind, entity_id, branch_id)

    async def list_entities(self, kind: EntityKind, story_id: int, branch_id: str) -> list[Entity]:
        return await entities_crud.list_entities(self.session, kind, story_id, branch_id)

    async def update_entity(self, kind: EntityKind, entity_id: str, changes: dict[str, Any], branch_id: str) -> bool:
        return await entities_crud.update_entity(self.session, kind, entity_id, changes, branch_id)

    async def delete_entity(self, kind: EntityKind, entity_id: str, branch_id: str) -> bool:
        return await entities_crud.delete_entity(self.session, kind, entity_id, branch_id)

    async def set_current_location(self, story_id: int, branch_id: str, location_id: str | None) -> None:
        await entities_crud.set_current_location(self.session, story_id, branch_id, location_id)

    async def replace_entities(self, kind: EntityKind, story_id: int, branch_id: str, entities: list[Entity]) -> None:
        await entities_crud.replace_branch_entities(self.session, kind, story_id, branch_id, entities)

    async def load_world_view(self, story_id: int, branch_id: str) -> WorldView:
        return WorldView(
            characters=await self.list_characters(story_id, branch_id),
            locations=await self.list_locations(story_id, branch_id),
            items=await self.list_items(story_id, branch_id),
            story_beats=await self.list_story_beats(story_id, branch_id),
            time_tracker=await self.get_time_tracker(story_id, branch_id),
        )

    # World-state entities (typed)

    async def add_character(self, character: Character) -> None:
        await self.add_entity(EntityKind.CHARACTER, character)

    async def list_characters(self, story_id: int, branch_id: str) -> list[Character]:
        return await entities_crud.list_entities(self.session, EntityKind.CHARACTER, story_id, branch_id)

    async def update_character(self, character_id: str, changes: dict[str, Any], branch_id: str) -> bool:
        return await self.update_entity(EntityKind.CHARACTER, character_id, changes, branch_id)

    async def delete_character(self, character_id: str, branch_id: str) -> bool:
        return await self.delete_entity(EntityKind.CHARACTER, character_id, branch_id)

    async def add_location(self, location: Location) -> None:
        await self.add_entity(EntityKind.LOCATION, location)

    async def list_locations(self, story_id: int, branch_id: str) -> list[Location]:
        return await entities_crud.list_entities(self.session, EntityKind.LOCATION, story_id, branch_id)

    async def update_location(self, location_id: str, changes: dict[str, Any], branch_id: str) -> bool:
        return await self.update_entity(EntityKind.LOCATION, location_id, changes, branch_id)

    async def delete_location(self, location_id: str, branch_id: str) -> bool:
        return await self.delete_entity(EntityKind.LOCATION, location_id, branch_id)

    async def add_item(self, item: Item) -> None:
        await self.add_entity(EntityKind.ITEM, item)

    async def list_items(self, story_id: int, branch_id: str) -> list[Item]:
        return await entities_crud.list_entities(self.session, EntityKind.ITEM, story_id, branch_id)

    async def update_item(self, item_id: str, changes: dict[str, Any], branch_id: str) -> bool:
        return await self.update_entity(EntityKind.ITEM, item_id, changes, branch_id)

    async def delete_item(self, item_id: str, branch_id: str) -> bool:
        return await self.delete_entity(EntityKind.ITEM, item_id, branch_id)

    async def add_story_beat(self, beat: StoryBeat) -> None:
        await self.add_entity(EntityKind.STORY_BEAT, beat)

    async def list_story_beats(self, story_id: int, branch_id: str) -> list[StoryBeat]:
        return await entities_crud.list_entities(self.session, EntityKind.STORY_BEAT, story_id, branch_id)

    async def update_story_beat(self, beat_id: str, changes: dict[str, Any], branch_id: str) -> bool:
        return await self.update_entity(EntityKind.STORY_BEAT, beat_id, changes, branch_id)

    async def delete_story_beat(self, beat_id: str, branch_id: str) -> bool:
        return await self.delete_entity(EntityKind.STORY_BEAT, beat_id, branch_id)

    # Branch overrides

    async def list_branch_overrides(self, story_id: int, branch_id: str) -> list[BranchOverrideRow]:
        return await overrides_crud.list_overrides(self.session, story_id=story_id, branch_id=branch_id)

    async def cleanup_noop_overrides(self, story_id: int, branch_id: str) -> int:
        return await entities_crud.cleanup_noop_overrides(self.session, story_id, branch_id)

    # Auto-snapshots

    async def save_snapshot(self, story_id: int, branch_id: str, position: int, snapshot_json: str) -> None:
        await snapshots_crud.upsert_snapshot(
            self.session,
            story_id=story_id,
            branch_id=branch_id,
            position=position,
            snapshot_json=snapshot_json,
        )

    async def list_snapshots(self, story_id: int, branch_id: str) -> list[SnapshotRow]:
        return await snapshots_crud.list_snapshots(self.session, story_id=story_id, branch_id=branch_id)

    async def get_latest_snapshot_at_or_before(self, story_id: int, branch_id: str, position: int) -> SnapshotRow | None:
        return await snapshots_crud.get_latest_snapshot_at_or_before(
            self.session,
            story_id=story_id,
            branch_id=branch_id,
            position=position,
        )

    async def delete_snapshots_from(self, story_id: int, branch_id: str, position: int) -> int:
        return await snapshots_crud.delete_snapshots_from(
            self.session,
            story_id=story_id,
            branch_id=branch_id,
            position=position,
        )

    # Named checkpoints

    async def insert_checkpoint(
        self,
        *,
        story_id: int,
        branch_id: str,
        name: str,
        last_position: int,
        snapshot_json: str,
        snapshot_hash: str,
    ) -> InsertResult:
        return await checkpoints_crud.insert_checkpoint(
            self.session,
            story_id=story_id,
            branch_id=branch_id,
            name=name,
            last_position=last_position,
            snapshot_json=snapshot_json,
            snapshot_hash=snapshot_hash,
        )

    async def list_checkpoints(self, story_id: int) -> list[CheckpointRow]:
        return await checkpoints_crud.list_checkpoints(self.session, story_id=story_id)

    async def get_checkpoint(self, checkpoint_id: int) -> CheckpointRow | None:
        return await checkpoints_crud.get_checkpoint(self.session, checkpoint_id)

    async def delete_checkpoint(self, checkpoint_id: int) -> bool:
        return await checkpoints_crud.delete_checkpoint(self.session, checkpoint_id)
