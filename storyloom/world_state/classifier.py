"""World-state classification of one narrative turn.

The LLM output is parsed leniently: unknown enum values are dropped or
defaulted and malformed list items are skipped. Any provider or parse failure
collapses to an empty result so classification never blocks a turn.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import orjson
from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from storyloom.config.schema import ClassifierConfig
from storyloom.domain.hashing import sha256_text
from storyloom.domain.models import WorldView
from storyloom.llm.json_utils import safe_load_json_dict
from storyloom.pipeline.abort import AbortSignal, run_cancellable
from storyloom.pipeline.errors import PipelineAborted
from storyloom.prompts.classifier import CLASSIFIER_PROMPT_VERSION, classifier_prompt

CHARACTER_STATUSES = ("active", "inactive", "deceased")
BEAT_STATUSES = ("pending", "active", "completed", "failed")
BEAT_TYPES = ("milestone", "quest", "revelation", "event", "plot_point")
TIME_PROGRESSIONS = ("none", "minutes", "hours", "days")


def _enum_or_none(value: Any, allowed: tuple[str, ...]) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    return normalized if normalized in allowed else None


def _str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if isinstance(value, dict):
        # Structured visual descriptors ({"hair": "..."}) flatten to "hair: ..." strings.
        return [f"{key}: {item}".strip() for key, item in value.items() if isinstance(item, str) and item.strip()]
    if isinstance(value, list):
        return [str(item).strip() for item in value if isinstance(item, (str, int, float)) and str(item).strip()]
    return []


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    return None


def _required_name(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("name must be a non-empty string")
    return value.strip()


class _LenientModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class CharacterChanges(_LenientModel):
    status: str | None = None
    relationship: str | None = None
    new_traits: list[str] = Field(default_factory=list, validation_alias=AliasChoices("new_traits", "newTraits"))
    remove_traits: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("remove_traits", "removeTraits")
    )
    visual_descriptors: list[str] | None = Field(
        default=None, validation_alias=AliasChoices("visual_descriptors", "visualDescriptors")
    )

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> str | None:
        return _enum_or_none(value, CHARACTER_STATUSES)

    @field_validator("relationship", mode="before")
    @classmethod
    def _relationship(cls, value: Any) -> str | None:
        return _optional_str(value)

    @field_validator("new_traits", "remove_traits", mode="before")
    @classmethod
    def _traits(cls, value: Any) -> list[str]:
        return _str_list(value)

    @field_validator("visual_descriptors", mode="before")
    @classmethod
    def _descriptors(cls, value: Any) -> list[str] | None:
        if value is None:
            return None
        return _str_list(value) or None


class CharacterUpdate(_LenientModel):
    name: str
    changes: CharacterChanges = Field(default_factory=CharacterChanges)

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, value: Any) -> str:
        return _required_name(value)


class LocationChanges(_LenientModel):
    visited: bool | None = None
    current: bool | None = None
    description: str | None = None
    description_addition: str | None = Field(
        default=None, validation_alias=AliasChoices("description_addition", "descriptionAddition")
    )

    @field_validator("visited", "current", mode="before")
    @classmethod
    def _flags(cls, value: Any) -> bool | None:
        return value if isinstance(value, bool) else None

    @field_validator("description", "description_addition", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str | None:
        return _optional_str(value)


class LocationUpdate(_LenientModel):
    name: str
    changes: LocationChanges = Field(default_factory=LocationChanges)

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, value: Any) -> str:
        return _required_name(value)


class ItemChanges(_LenientModel):
    quantity: int | None = None
    equipped: bool | None = None
    location: str | None = None

    @field_validator("quantity", mode="before")
    @classmethod
    def _quantity(cls, value: Any) -> int | None:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return max(0, int(value))

    @field_validator("equipped", mode="before")
    @classmethod
    def _equipped(cls, value: Any) -> bool | None:
        return value if isinstance(value, bool) else None

    @field_validator("location", mode="before")
    @classmethod
    def _location(cls, value: Any) -> str | None:
        return _optional_str(value)


class ItemUpdate(_LenientModel):
    name: str
    changes: ItemChanges = Field(default_factory=ItemChanges)

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, value: Any) -> str:
        return _required_name(value)


class StoryBeatChanges(_LenientModel):
    status: str | None = None
    description: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> str | None:
        return _enum_or_none(value, BEAT_STATUSES)

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, value: Any) -> str | None:
        return _optional_str(value)


class StoryBeatUpdate(_LenientModel):
    title: str
    changes: StoryBeatChanges = Field(default_factory=StoryBeatChanges)

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, value: Any) -> str:
        return _required_name(value)


class NewCharacter(_LenientModel):
    name: str
    description: str = ""
    relationship: str | None = None
    traits: list[str] = Field(default_factory=list)
    visual_descriptors: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("visual_descriptors", "visualDescriptors")
    )
    status: str = "active"

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, value: Any) -> str:
        return _required_name(value)

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, value: Any) -> str:
        return _optional_str(value) or ""

    @field_validator("relationship", mode="before")
    @classmethod
    def _relationship(cls, value: Any) -> str | None:
        return _optional_str(value)

    @field_validator("traits", "visual_descriptors", mode="before")
    @classmethod
    def _lists(cls, value: Any) -> list[str]:
        return _str_list(value)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> str:
        return _enum_or_none(value, CHARACTER_STATUSES) or "active"


class NewLocation(_LenientModel):
    name: str
    description: str = ""
    visited: bool = False
    current: bool = False

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, value: Any) -> str:
        return _required_name(value)

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, value: Any) -> str:
        return _optional_str(value) or ""

    @field_validator("visited", "current", mode="before")
    @classmethod
    def _flags(cls, value: Any) -> bool:
        return value if isinstance(value, bool) else False


class NewItem(_LenientModel):
    name: str
    description: str = ""
    quantity: int = 1
    location: str = "inventory"
    equipped: bool = False

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, value: Any) -> str:
        return _required_name(value)

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, value: Any) -> str:
        return _optional_str(value) or ""

    @field_validator("quantity", mode="before")
    @classmethod
    def _quantity(cls, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 1
        return max(0, int(value))

    @field_validator("location", mode="before")
    @classmethod
    def _location(cls, value: Any) -> str:
        return _optional_str(value) or "inventory"

    @field_validator("equipped", mode="before")
    @classmethod
    def _equipped(cls, value: Any) -> bool:
        return value if isinstance(value, bool) else False


class NewStoryBeat(_LenientModel):
    title: str
    description: str = ""
    type: str = "event"
    status: str = "active"

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, value: Any) -> str:
        return _required_name(value)

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, value: Any) -> str:
        return _optional_str(value) or ""

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, value: Any) -> str:
        return _enum_or_none(value, BEAT_TYPES) or "event"

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> str:
        return _enum_or_none(value, BEAT_STATUSES) or "active"


def _lenient_items(model: type[BaseModel], raw: Any) -> list[Any]:
    if not isinstance(raw, list):
        return []
    items: list[Any] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            items.append(model.model_validate(item))
        except ValidationError as exc:
            logger.bind(phase="classification").debug("Skipping malformed {} item: {}", model.__name__, exc)
    return items


_LIST_FIELDS: dict[str, tuple[type[BaseModel], str]] = {
    "character_updates": (CharacterUpdate, "characterUpdates"),
    "location_updates": (LocationUpdate, "locationUpdates"),
    "item_updates": (ItemUpdate, "itemUpdates"),
    "story_beat_updates": (StoryBeatUpdate, "storyBeatUpdates"),
    "new_characters": (NewCharacter, "newCharacters"),
    "new_locations": (NewLocation, "newLocations"),
    "new_items": (NewItem, "newItems"),
    "new_story_beats": (NewStoryBeat, "newStoryBeats"),
}


class EntryUpdates(_LenientModel):
    character_updates: list[CharacterUpdate] = Field(default_factory=list)
    location_updates: list[LocationUpdate] = Field(default_factory=list)
    item_updates: list[ItemUpdate] = Field(default_factory=list)
    story_beat_updates: list[StoryBeatUpdate] = Field(default_factory=list)
    new_characters: list[NewCharacter] = Field(default_factory=list)
    new_locations: list[NewLocation] = Field(default_factory=list)
    new_items: list[NewItem] = Field(default_factory=list)
    new_story_beats: list[NewStoryBeat] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _lenient_lists(cls, data: Any) -> dict[str, Any]:
        if not isinstance(data, dict):
            return {}
        return {
            field_name: _lenient_items(item_model, data.get(field_name, data.get(camel_name)))
            for field_name, (item_model, camel_name) in _LIST_FIELDS.items()
        }


class Scene(_LenientModel):
    current_location_name: str | None = Field(
        default=None, validation_alias=AliasChoices("current_location_name", "currentLocationName")
    )
    present_character_names: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("present_character_names", "presentCharacterNames")
    )
    time_progression: str = Field(
        default="none", validation_alias=AliasChoices("time_progression", "timeProgression")
    )

    @field_validator("current_location_name", mode="before")
    @classmethod
    def _location(cls, value: Any) -> str | None:
        return _optional_str(value)

    @field_validator("present_character_names", mode="before")
    @classmethod
    def _names(cls, value: Any) -> list[str]:
        return _str_list(value)

    @field_validator("time_progression", mode="before")
    @classmethod
    def _progression(cls, value: Any) -> str:
        return _enum_or_none(value, TIME_PROGRESSIONS) or "none"


class ClassificationResult(_LenientModel):
    entry_updates: EntryUpdates = Field(default_factory=EntryUpdates)
    scene: Scene = Field(default_factory=Scene)

    @model_validator(mode="before")
    @classmethod
    def _sections(cls, data: Any) -> dict[str, Any]:
        if not isinstance(data, dict):
            return {}
        updates = data.get("entry_updates", data.get("entryUpdates"))
        scene = data.get("scene")
        return {
            "entry_updates": updates if isinstance(updates, dict) else {},
            "scene": scene if isinstance(scene, dict) else {},
        }

    @classmethod
    def empty(cls) -> "ClassificationResult":
        return cls()

    def is_empty(self) -> bool:
        updates = self.entry_updates
        has_updates = any(getattr(updates, field_name) for field_name in _LIST_FIELDS)
        scene = self.scene
        return not has_updates and scene.current_location_name is None and scene.time_progression == "none"


def parse_classification(text: str) -> ClassificationResult:
    return ClassificationResult.model_validate(safe_load_json_dict(text))


@dataclass
class ClassificationRequest:
    narrative: str
    user_action: str
    world: WorldView
    mode: str = "adventure"


@dataclass
class ClassificationOutcome:
    result: ClassificationResult
    error: str | None = None
    usage: dict[str, int] = field(default_factory=dict)


class JsonChatClient(Protocol):
    async def complete_json_async(self, system_prompt: str, user_prompt: str, parser: Any, *, context: Any = None) -> Any: ...


def _known_entities(world: WorldView) -> str:
    payload = {
        "characters": [
            {"name": item.name, "status": item.status, "relationship": item.relationship, "traits": item.traits}
            for item in world.characters
        ],
        "locations": [{"name": item.name, "visited": item.visited, "current": item.current} for item in world.locations],
        "items": [
            {"name": item.name, "quantity": item.quantity, "equipped": item.equipped, "location": item.location}
            for item in world.items
        ],
        "story_beats": [{"title": item.title, "status": item.status, "type": item.type} for item in world.story_beats],
    }
    return orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode("utf-8")


class WorldStateClassifier:
    def __init__(self, client: JsonChatClient | None, config: ClassifierConfig):
        self.client = client
        self.config = config

    async def classify_detailed(
        self,
        request: ClassificationRequest,
        *,
        signal: AbortSignal | None = None,
    ) -> ClassificationOutcome:
        """Classify one turn; only abort propagates, every other failure yields an empty result."""

        if self.client is None:
            return ClassificationOutcome(result=ClassificationResult.empty(), error="classifier client unavailable")

        narrative = request.narrative
        if self.config.narrative_max_chars > 0:
            narrative = narrative[: self.config.narrative_max_chars]

        system, user_template = classifier_prompt(request.mode)
        user = user_template.format(
            known_entities=_known_entities(request.world),
            user_action=request.user_action,
            narrative=narrative,
        )
        context = {
            "phase": "classification",
            "input_hash": sha256_text(f"{CLASSIFIER_PROMPT_VERSION}:{user}"),
        }
        try:
            response, result = await run_cancellable(
                self.client.complete_json_async(system, user, parse_classification, context=context),
                signal,
            )
        except PipelineAborted:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.bind(**context).warning("Classification failed; using empty result: {}", exc)
            return ClassificationOutcome(result=ClassificationResult.empty(), error=str(exc) or type(exc).__name__)

        if not isinstance(result, ClassificationResult):
            return ClassificationOutcome(result=ClassificationResult.empty(), error="unexpected classifier output")
        return ClassificationOutcome(result=result, usage=dict(getattr(response, "usage", {}) or {}))

    async def classify(self, request: ClassificationRequest) -> ClassificationResult:
        try:
            outcome = await self.classify_detailed(request)
        except Exception as exc:  # noqa: BLE001
            logger.bind(phase="classification").warning("Classification aborted; using empty result: {}", exc)
            return ClassificationResult.empty()
        return outcome.result
