from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Literal
import uuid

if TYPE_CHECKING:
    from storyloom.domain.delta import WorldStateDelta

MAIN_BRANCH = "main"

TimeProgression = Literal["none", "minutes", "hours", "days"]


def new_id() -> str:
    return uuid.uuid4().hex


class EntityKind(StrEnum):
    CHARACTER = "character"
    LOCATION = "location"
    ITEM = "item"
    STORY_BEAT = "story_beat"


@dataclass
class Character:
    id: str
    story_id: int
    name: str
    branch_id: str = MAIN_BRANCH
    description: str = ""
    relationship: str | None = None
    traits: list[str] = field(default_factory=list)
    visual_descriptors: list[str] = field(default_factory=list)
    status: str = "active"
    metadata: dict[str, Any] | None = None


@dataclass
class Location:
    id: str
    story_id: int
    name: str
    branch_id: str = MAIN_BRANCH
    description: str = ""
    visited: bool = False
    current: bool = False
    metadata: dict[str, Any] | None = None


@dataclass
class Item:
    id: str
    story_id: int
    name: str
    branch_id: str = MAIN_BRANCH
    description: str = ""
    quantity: int = 1
    equipped: bool = False
    location: str = "inventory"
    metadata: dict[str, Any] | None = None


@dataclass
class StoryBeat:
    id: str
    story_id: int
    title: str
    branch_id: str = MAIN_BRANCH
    description: str = ""
    type: str = "event"
    status: str = "active"
    resolved_at: str | None = None
    metadata: dict[str, Any] | None = None


Entity = Character | Location | Item | StoryBeat

ENTITY_TYPES: dict[EntityKind, type] = {
    EntityKind.CHARACTER: Character,
    EntityKind.LOCATION: Location,
    EntityKind.ITEM: Item,
    EntityKind.STORY_BEAT: StoryBeat,
}

# Fields a world-state delta must be able to put back for each kind.
RESTORABLE_FIELDS: dict[EntityKind, tuple[str, ...]] = {
    EntityKind.CHARACTER: ("status", "relationship", "traits", "visual_descriptors", "metadata"),
    EntityKind.LOCATION: ("visited", "current", "description", "metadata"),
    EntityKind.ITEM: ("quantity", "equipped", "location", "metadata"),
    EntityKind.STORY_BEAT: ("status", "description", "resolved_at", "metadata"),
}

# Identity fields never carried in branch override payloads.
IDENTITY_FIELDS = frozenset({"id", "story_id", "branch_id"})


def entity_to_dict(entity: Entity) -> dict[str, Any]:
    return asdict(entity)


def entity_from_dict(kind: EntityKind, data: dict[str, Any]) -> Entity:
    entity_type = ENTITY_TYPES[kind]
    allowed = {item.name for item in fields(entity_type)}
    return entity_type(**{key: value for key, value in data.items() if key in allowed})


def entity_payload(entity: Entity) -> dict[str, Any]:
    return {key: value for key, value in asdict(entity).items() if key not in IDENTITY_FIELDS}


def entity_label(entity: Entity) -> str:
    if isinstance(entity, StoryBeat):
        return entity.title
    return entity.name


@dataclass(frozen=True)
class TimeTracker:
    years: int = 0
    days: int = 0
    hours: int = 0
    minutes: int = 0

    def advance(self, progression: TimeProgression) -> "TimeTracker":
        if progression == "minutes":
            delta_minutes = 30
        elif progression == "hours":
            delta_minutes = 2 * 60
        elif progression == "days":
            delta_minutes = 24 * 60
        else:
            return self

        total_minutes = self.minutes + delta_minutes
        hours = self.hours + total_minutes // 60
        days = self.days + hours // 24
        years = self.years + days // 365
        return TimeTracker(years=years, days=days % 365, hours=hours % 24, minutes=total_minutes % 60)

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TimeTracker | None":
        if not data:
            return None
        return cls(
            years=int(data.get("years", 0)),
            days=int(data.get("days", 0)),
            hours=int(data.get("hours", 0)),
            minutes=int(data.get("minutes", 0)),
        )

    def describe(self) -> str:
        return f"Year {self.years + 1}, Day {self.days + 1}, {self.hours:02d}:{self.minutes:02d}"


EntryType = Literal["character", "location", "item", "faction", "concept", "event"]
InjectionMode = Literal["always", "keyword", "relevant", "never"]

ENTRY_TYPES: tuple[str, ...] = ("character", "location", "item", "faction", "concept", "event")
INJECTION_MODES: tuple[str, ...] = ("always", "keyword", "relevant", "never")


@dataclass
class InjectionPolicy:
    mode: str = "keyword"
    priority: int = 0


@dataclass
class LorebookEntry:
    id: str
    story_id: int
    name: str
    type: str = "concept"
    branch_id: str = MAIN_BRANCH
    description: str = ""
    keywords: list[str] = field(default_factory=list)
    aliases: list[str] = field(default_factory=list)
    injection: InjectionPolicy = field(default_factory=InjectionPolicy)
    mention_count: int = 0
    created_by: str = "user"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LorebookEntry":
        injection = data.get("injection") or {}
        return cls(
            id=str(data["id"]),
            story_id=int(data["story_id"]),
            name=str(data["name"]),
            type=str(data.get("type") or "concept"),
            branch_id=str(data.get("branch_id") or MAIN_BRANCH),
            description=str(data.get("description") or ""),
            keywords=list(data.get("keywords") or []),
            aliases=list(data.get("aliases") or []),
            injection=InjectionPolicy(
                mode=str(injection.get("mode") or "keyword"),
                priority=int(injection.get("priority") or 0),
            ),
            mention_count=int(data.get("mention_count") or 0),
            created_by=str(data.get("created_by") or "user"),
        )


@dataclass
class StoryEntry:
    id: str
    story_id: int
    position: int
    type: str
    content: str
    branch_id: str = MAIN_BRANCH
    translated_content: str | None = None
    world_state_delta: "WorldStateDelta | None" = None
    created_at: datetime | None = None


@dataclass
class Chapter:
    """Summary of a closed run of story entries, numbered per branch."""

    id: str
    story_id: int
    number: int
    start_position: int
    end_position: int
    summary: str
    branch_id: str = MAIN_BRANCH
    title: str | None = None
    entry_count: int = 0
    keywords: list[str] = field(default_factory=list)
    characters: list[str] = field(default_factory=list)
    locations: list[str] = field(default_factory=list)
    created_at: datetime | None = None


@dataclass
class WorldView:
    """Everything the classifier and delta builder need to see of one branch."""

    characters: list[Character] = field(default_factory=list)
    locations: list[Location] = field(default_factory=list)
    items: list[Item] = field(default_factory=list)
    story_beats: list[StoryBeat] = field(default_factory=list)
    time_tracker: TimeTracker | None = None

    def entities(self, kind: EntityKind) -> list[Any]:
        if kind == EntityKind.CHARACTER:
            return self.characters
        if kind == EntityKind.LOCATION:
            return self.locations
        if kind == EntityKind.ITEM:
            return self.items
        return self.story_beats

    @property
    def current_location(self) -> Location | None:
        for location in self.locations:
            if location.current:
                return location
        return None

    @property
    def current_location_id(self) -> str | None:
        current = self.current_location
        return current.id if current else None
