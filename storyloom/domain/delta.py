from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any

from storyloom.domain.models import EntityKind, TimeTracker

_KIND_KEYS: dict[EntityKind, str] = {
    EntityKind.CHARACTER: "characters",
    EntityKind.LOCATION: "locations",
    EntityKind.ITEM: "items",
    EntityKind.STORY_BEAT: "story_beats",
}


@dataclass
class CreatedEntities:
    character_ids: list[str] = field(default_factory=list)
    location_ids: list[str] = field(default_factory=list)
    item_ids: list[str] = field(default_factory=list)
    story_beat_ids: list[str] = field(default_factory=list)

    def ids_for(self, kind: EntityKind) -> list[str]:
        if kind == EntityKind.CHARACTER:
            return self.character_ids
        if kind == EntityKind.LOCATION:
            return self.location_ids
        if kind == EntityKind.ITEM:
            return self.item_ids
        return self.story_beat_ids

    def add(self, kind: EntityKind, entity_id: str) -> None:
        ids = self.ids_for(kind)
        if entity_id not in ids:
            ids.append(entity_id)

    def total(self) -> int:
        return sum(len(self.ids_for(kind)) for kind in EntityKind)


@dataclass
class EntitySnapshot:
    id: str
    values: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, **deepcopy(self.values)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntitySnapshot":
        values = {key: deepcopy(value) for key, value in data.items() if key != "id"}
        return cls(id=str(data["id"]), values=values)


@dataclass
class PreviousState:
    characters: list[EntitySnapshot] = field(default_factory=list)
    locations: list[EntitySnapshot] = field(default_factory=list)
    items: list[EntitySnapshot] = field(default_factory=list)
    story_beats: list[EntitySnapshot] = field(default_factory=list)
    current_location_id: str | None = None
    time_tracker: TimeTracker | None = None

    def snapshots_for(self, kind: EntityKind) -> list[EntitySnapshot]:
        return getattr(self, _KIND_KEYS[kind])

    def total(self) -> int:
        return sum(len(self.snapshots_for(kind)) for kind in EntityKind)


@dataclass
class WorldStateDelta:
    """Undo record attached to one classified story entry."""

    created_entities: CreatedEntities = field(default_factory=CreatedEntities)
    previous_state: PreviousState = field(default_factory=PreviousState)

    def to_dict(self) -> dict[str, Any]:
        created = self.created_entities
        previous = self.previous_state
        payload: dict[str, Any] = {
            "created_entities": {
                "character_ids": list(created.character_ids),
                "location_ids": list(created.location_ids),
                "item_ids": list(created.item_ids),
                "story_beat_ids": list(created.story_beat_ids),
            },
            "previous_state": {
                key: [snapshot.to_dict() for snapshot in previous.snapshots_for(kind)]
                for kind, key in _KIND_KEYS.items()
            },
        }
        payload["previous_state"]["current_location_id"] = previous.current_location_id
        payload["previous_state"]["time_tracker"] = (
            previous.time_tracker.to_dict() if previous.time_tracker else None
        )
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorldStateDelta":
        created_raw = data.get("created_entities") or {}
        previous_raw = data.get("previous_state") or {}
        created = CreatedEntities(
            character_ids=[str(item) for item in created_raw.get("character_ids") or []],
            location_ids=[str(item) for item in created_raw.get("location_ids") or []],
            item_ids=[str(item) for item in created_raw.get("item_ids") or []],
            story_beat_ids=[str(item) for item in created_raw.get("story_beat_ids") or []],
        )
        previous = PreviousState(
            current_location_id=previous_raw.get("current_location_id"),
            time_tracker=TimeTracker.from_dict(previous_raw.get("time_tracker")),
        )
        for kind, key in _KIND_KEYS.items():
            snapshots = previous.snapshots_for(kind)
            for item in previous_raw.get(key) or []:
                if isinstance(item, dict) and item.get("id"):
                    snapshots.append(EntitySnapshot.from_dict(item))
        return cls(created_entities=created, previous_state=previous)
