"""Turns a classification result into a mutation plan plus its exact undo record.

The plan is computed against an in-memory copy of the branch's world view, so
the delta is known before anything is written: every field the plan changes on
an existing entity is captured in ``previous_state`` and every entity the plan
creates is listed in ``created_entities``.
"""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from storyloom.domain.delta import CreatedEntities, EntitySnapshot, PreviousState, WorldStateDelta
from storyloom.domain.models import (
    RESTORABLE_FIELDS,
    Character,
    Entity,
    EntityKind,
    Item,
    Location,
    StoryBeat,
    TimeTracker,
    WorldView,
    entity_to_dict,
    new_id,
)
from storyloom.world_state.classifier import ClassificationResult

__all__ = ["DeltaBuilder", "EntityChange", "MutationPlan", "WorldStateDelta"]

CLASSIFIER_METADATA = {"source": "classifier"}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class EntityChange:
    kind: EntityKind
    entity_id: str
    changes: dict[str, Any]


@dataclass
class MutationPlan:
    creations: list[tuple[EntityKind, Entity]] = field(default_factory=list)
    updates: list[EntityChange] = field(default_factory=list)
    current_location_id: str | None = None
    time_tracker: TimeTracker | None = None
    time_changed: bool = False

    def is_empty(self) -> bool:
        return not self.creations and not self.updates and not self.time_changed

    def created_count(self) -> int:
        return len(self.creations)

    def updated_count(self) -> int:
        return len(self.updates)


def _find(entities: list[Any], name: str, attr: str = "name") -> Any | None:
    wanted = name.strip().lower()
    for entity in entities:
        if getattr(entity, attr).lower() == wanted:
            return entity
    return None


def _merge_unique(existing: list[str], additions: list[str]) -> list[str]:
    merged = list(existing)
    seen = {item.lower() for item in merged}
    for item in additions:
        if item.lower() not in seen:
            merged.append(item)
            seen.add(item.lower())
    return merged


class DeltaBuilder:
    def __init__(self, story_id: int, branch_id: str, *, clock: Callable[[], str] = utc_now_iso):
        self.story_id = story_id
        self.branch_id = branch_id
        self.clock = clock

    def build(self, result: ClassificationResult, world: WorldView) -> tuple[MutationPlan, WorldStateDelta]:
        working = deepcopy(world)
        originals: dict[tuple[EntityKind, str], dict[str, Any]] = {}
        for kind in EntityKind:
            for entity in world.entities(kind):
                originals[(kind, entity.id)] = entity_to_dict(entity)
        created: list[tuple[EntityKind, Entity]] = []

        updates = result.entry_updates
        for update in updates.character_updates:
            character = _find(working.characters, update.name)
            if character is None:
                continue
            changes = update.changes
            if changes.status:
                character.status = changes.status
            if changes.relationship:
                character.relationship = changes.relationship
            if changes.new_traits:
                character.traits = _merge_unique(character.traits, changes.new_traits)
            if changes.remove_traits:
                removed = {item.lower() for item in changes.remove_traits}
                character.traits = [item for item in character.traits if item.lower() not in removed]
            if changes.visual_descriptors is not None:
                character.visual_descriptors = list(changes.visual_descriptors)

        for update in updates.location_updates:
            location = _find(working.locations, update.name)
            if location is None:
                continue
            changes = update.changes
            if changes.visited is not None:
                location.visited = changes.visited
            if changes.description:
                location.description = changes.description
            elif changes.description_addition:
                addition = changes.description_addition
                location.description = f"{location.description} {addition}" if location.description else addition
            if changes.current is True:
                self._make_current(working, location)
            elif changes.current is False:
                location.current = False

        for update in updates.item_updates:
            item = _find(working.items, update.name)
            if item is None:
                continue
            changes = update.changes
            if changes.quantity is not None:
                item.quantity = changes.quantity
            if changes.equipped is not None:
                item.equipped = changes.equipped
            if changes.location:
                item.location = changes.location

        for update in updates.story_beat_updates:
            beat = _find(working.story_beats, update.title, attr="title")
            if beat is None:
                continue
            changes = update.changes
            if changes.status:
                beat.status = changes.status
                if changes.status in ("completed", "failed"):
                    beat.resolved_at = self.clock()
            if changes.description:
                beat.description = changes.description

        for new_character in updates.new_characters:
            if _find(working.characters, new_character.name) is not None:
                continue
            character = Character(
                id=new_id(),
                story_id=self.story_id,
                name=new_character.name,
                branch_id=self.branch_id,
                description=new_character.description,
                relationship=new_character.relationship,
                traits=list(new_character.traits),
                visual_descriptors=list(new_character.visual_descriptors),
                status=new_character.status,
                metadata=dict(CLASSIFIER_METADATA),
            )
            working.characters.append(character)
            created.append((EntityKind.CHARACTER, character))

        for new_location in updates.new_locations:
            if _find(working.locations, new_location.name) is not None:
                continue
            location = Location(
                id=new_id(),
                story_id=self.story_id,
                name=new_location.name,
                branch_id=self.branch_id,
                description=new_location.description,
                visited=new_location.visited,
                current=False,
                metadata=dict(CLASSIFIER_METADATA),
            )
            working.locations.append(location)
            created.append((EntityKind.LOCATION, location))
            if new_location.current:
                self._make_current(working, location, mark_visited=False)

        scene_location = result.scene.current_location_name
        if scene_location:
            location = _find(working.locations, scene_location)
            if location is not None and not location.current:
                self._make_current(working, location)

        for new_item in updates.new_items:
            if _find(working.items, new_item.name) is not None:
                continue
            item = Item(
                id=new_id(),
                story_id=self.story_id,
                name=new_item.name,
                branch_id=self.branch_id,
                description=new_item.description,
                quantity=new_item.quantity,
                equipped=new_item.equipped,
                location=new_item.location or "inventory",
                metadata=dict(CLASSIFIER_METADATA),
            )
            working.items.append(item)
            created.append((EntityKind.ITEM, item))

        for new_beat in updates.new_story_beats:
            if _find(working.story_beats, new_beat.title, attr="title") is not None:
                continue
            beat = StoryBeat(
                id=new_id(),
                story_id=self.story_id,
                title=new_beat.title,
                branch_id=self.branch_id,
                description=new_beat.description,
                type=new_beat.type,
                status=new_beat.status,
                resolved_at=self.clock() if new_beat.status in ("completed", "failed") else None,
                metadata=dict(CLASSIFIER_METADATA),
            )
            working.story_beats.append(beat)
            created.append((EntityKind.STORY_BEAT, beat))

        plan = MutationPlan(creations=created, current_location_id=working.current_location_id)
        delta = WorldStateDelta(
            created_entities=CreatedEntities(),
            previous_state=PreviousState(
                current_location_id=world.current_location_id,
                time_tracker=world.time_tracker,
            ),
        )
        for kind, entity in created:
            delta.created_entities.add(kind, entity.id)

        for kind in EntityKind:
            for entity in working.entities(kind):
                before = originals.get((kind, entity.id))
                if before is None:
                    continue
                after = entity_to_dict(entity)
                changes = {key: deepcopy(value) for key, value in after.items() if before.get(key) != value}
                if not changes:
                    continue
                plan.updates.append(EntityChange(kind=kind, entity_id=entity.id, changes=changes))
                snapshot = {name: deepcopy(before[name]) for name in RESTORABLE_FIELDS[kind]}
                delta.previous_state.snapshots_for(kind).append(EntitySnapshot(id=entity.id, values=snapshot))

        progression = result.scene.time_progression
        if progression != "none":
            plan.time_tracker = (world.time_tracker or TimeTracker()).advance(progression)
            plan.time_changed = True
        else:
            plan.time_tracker = world.time_tracker

        return plan, delta

    @staticmethod
    def _make_current(world: WorldView, target: Location, *, mark_visited: bool = True) -> None:
        for location in world.locations:
            location.current = location is target
        if mark_visited:
            target.visited = True
