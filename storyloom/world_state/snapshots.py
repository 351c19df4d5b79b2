"""Coarse whole-story snapshots: retry backups, auto-snapshots and named checkpoints."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import orjson
from loguru import logger

from storyloom.domain.delta import WorldStateDelta
from storyloom.domain.hashing import payload_hash
from storyloom.domain.models import (
    Character,
    EntityKind,
    Item,
    Location,
    LorebookEntry,
    StoryBeat,
    StoryEntry,
    TimeTracker,
    entity_from_dict,
    entity_to_dict,
)
from storyloom.events.bus import EventBus
from storyloom.events.types import CheckpointCreated, CheckpointRestored
from storyloom.storage.repo import SQLAlchemyRepo
from storyloom.storage.types import CheckpointRow

SNAPSHOT_VERSION = 1


def _entry_to_dict(entry: StoryEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "story_id": entry.story_id,
        "branch_id": entry.branch_id,
        "position": entry.position,
        "type": entry.type,
        "content": entry.content,
        "translated_content": entry.translated_content,
        "world_state_delta": entry.world_state_delta.to_dict() if entry.world_state_delta else None,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


def _entry_from_dict(data: dict[str, Any]) -> StoryEntry:
    created_at = data.get("created_at")
    delta = data.get("world_state_delta")
    return StoryEntry(
        id=str(data["id"]),
        story_id=int(data["story_id"]),
        branch_id=str(data["branch_id"]),
        position=int(data["position"]),
        type=str(data["type"]),
        content=str(data.get("content") or ""),
        translated_content=data.get("translated_content"),
        world_state_delta=WorldStateDelta.from_dict(delta) if delta else None,
        created_at=datetime.fromisoformat(created_at) if created_at else None,
    )


@dataclass
class StoryBackup:
    """Every story collection of one branch view, except chapters."""

    story_id: int
    branch_id: str
    entries: list[StoryEntry] = field(default_factory=list)
    characters: list[Character] = field(default_factory=list)
    locations: list[Location] = field(default_factory=list)
    items: list[Item] = field(default_factory=list)
    story_beats: list[StoryBeat] = field(default_factory=list)
    lorebook_entries: list[LorebookEntry] = field(default_factory=list)
    time_tracker: TimeTracker | None = None
    activation_data: dict[str, int] = field(default_factory=dict)

    @property
    def last_position(self) -> int:
        return max((entry.position for entry in self.entries), default=-1)

    def entities(self, kind: EntityKind) -> list[Any]:
        if kind == EntityKind.CHARACTER:
            return self.characters
        if kind == EntityKind.LOCATION:
            return self.locations
        if kind == EntityKind.ITEM:
            return self.items
        return self.story_beats

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "story_id": self.story_id,
            "branch_id": self.branch_id,
            "entries": [_entry_to_dict(entry) for entry in self.entries],
            "characters": [entity_to_dict(item) for item in self.characters],
            "locations": [entity_to_dict(item) for item in self.locations],
            "items": [entity_to_dict(item) for item in self.items],
            "story_beats": [entity_to_dict(item) for item in self.story_beats],
            "lorebook_entries": [entry.to_dict() for entry in self.lorebook_entries],
            "time_tracker": self.time_tracker.to_dict() if self.time_tracker else None,
            "activation_data": dict(self.activation_data),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StoryBackup":
        return cls(
            story_id=int(data["story_id"]),
            branch_id=str(data["branch_id"]),
            entries=[_entry_from_dict(item) for item in data.get("entries") or []],
            characters=[entity_from_dict(EntityKind.CHARACTER, item) for item in data.get("characters") or []],
            locations=[entity_from_dict(EntityKind.LOCATION, item) for item in data.get("locations") or []],
            items=[entity_from_dict(EntityKind.ITEM, item) for item in data.get("items") or []],
            story_beats=[entity_from_dict(EntityKind.STORY_BEAT, item) for item in data.get("story_beats") or []],
            lorebook_entries=[LorebookEntry.from_dict(item) for item in data.get("lorebook_entries") or []],
            time_tracker=TimeTracker.from_dict(data.get("time_tracker")),
            activation_data={str(key): int(value) for key, value in (data.get("activation_data") or {}).items()},
        )

    def to_json(self) -> str:
        return orjson.dumps(self.to_dict()).decode("utf-8")

    @classmethod
    def from_json(cls, text: str) -> "StoryBackup":
        return cls.from_dict(orjson.loads(text))


async def capture_story_snapshot(repo: SQLAlchemyRepo, story_id: int, branch_id: str) -> StoryBackup:
    world = await repo.load_world_view(story_id, branch_id)
    return StoryBackup(
        story_id=story_id,
        branch_id=branch_id,
        entries=await repo.list_story_entries(story_id, branch_id),
        characters=world.characters,
        locations=world.locations,
        items=world.items,
        story_beats=world.story_beats,
        lorebook_entries=await repo.list_lorebook_entries(story_id, branch_id),
        time_tracker=world.time_tracker,
        activation_data=await repo.get_activation_data(story_id, branch_id),
    )


async def restore_story_snapshot(repo: SQLAlchemyRepo, backup: StoryBackup) -> None:
    """Replace the branch view with ``backup``; runs inside the caller's transaction."""

    story_id = backup.story_id
    branch_id = backup.branch_id
    await repo.replace_story_entries(story_id, branch_id, backup.entries)
    for kind in EntityKind:
        await repo.replace_entities(kind, story_id, branch_id, backup.entities(kind))
    await repo.replace_lorebook_entries(story_id, branch_id, backup.lorebook_entries)
    await repo.save_time_tracker(story_id, branch_id, backup.time_tracker)
    await repo.save_activation_data(story_id, branch_id, backup.activation_data)
    logger.bind(story_id=story_id, branch_id=branch_id).info(
        "Restored story snapshot ({} entries)", len(backup.entries)
    )


class CheckpointError(RuntimeError):
    pass


class CheckpointService:
    def __init__(self, repo: SQLAlchemyRepo, bus: EventBus | None = None):
        self.repo = repo
        self.bus = bus

    async def create(self, story_id: int, branch_id: str, name: str) -> int:
        backup = await capture_story_snapshot(self.repo, story_id, branch_id)
        payload = backup.to_dict()
        result = await self.repo.insert_checkpoint(
            story_id=story_id,
            branch_id=branch_id,
            name=name,
            last_position=backup.last_position,
            snapshot_json=orjson.dumps(payload).decode("utf-8"),
            snapshot_hash=payload_hash(payload),
        )
        logger.bind(story_id=story_id, branch_id=branch_id).info("Created checkpoint {} '{}'", result.id, name)
        if self.bus is not None:
            self.bus.emit(CheckpointCreated(story_id=story_id, checkpoint_id=result.id, name=name))
        return result.id

    async def list(self, story_id: int) -> list[CheckpointRow]:
        return await self.repo.list_checkpoints(story_id)

    async def restore(self, checkpoint_id: int) -> StoryBackup:
        row = await self.repo.get_checkpoint(checkpoint_id)
        if row is None:
            raise CheckpointError(f"Checkpoint {checkpoint_id} not found")
        payload = orjson.loads(row.snapshot_json)
        if payload_hash(payload) != row.snapshot_hash:
            raise CheckpointError(f"Checkpoint {checkpoint_id} failed its integrity check")

        backup = StoryBackup.from_dict(payload)
        await restore_story_snapshot(self.repo, backup)
        if self.bus is not None:
            self.bus.emit(CheckpointRestored(story_id=row.story_id, checkpoint_id=checkpoint_id))
        return backup
