"""Closed set of lifecycle topics and one frozen event type per topic."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
import time
from typing import ClassVar


class EventType(StrEnum):
    USER_INPUT = "UserInput"
    CONTEXT_READY = "ContextReady"
    RESPONSE_STREAMING = "ResponseStreaming"
    SENTENCE_COMPLETE = "SentenceComplete"
    NARRATIVE_RESPONSE = "NarrativeResponse"
    CLASSIFICATION_COMPLETE = "ClassificationComplete"
    SUGGESTIONS_READY = "SuggestionsReady"
    STATE_UPDATED = "StateUpdated"
    CHAPTER_CREATED = "ChapterCreated"
    IMAGE_ANALYSIS_STARTED = "ImageAnalysisStarted"
    IMAGE_ANALYSIS_COMPLETE = "ImageAnalysisComplete"
    IMAGE_ANALYSIS_FAILED = "ImageAnalysisFailed"
    IMAGE_QUEUED = "ImageQueued"
    IMAGE_READY = "ImageReady"
    TTS_QUEUED = "TTSQueued"
    SAVE_COMPLETE = "SaveComplete"
    CHECKPOINT_CREATED = "CheckpointCreated"
    CHECKPOINT_RESTORED = "CheckpointRestored"
    STORY_LOADED = "StoryLoaded"
    STORY_CREATED = "StoryCreated"
    MODE_CHANGED = "ModeChanged"


@dataclass(frozen=True, kw_only=True)
class Event:
    type: ClassVar[EventType]
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True, kw_only=True)
class UserInput(Event):
    type: ClassVar[EventType] = EventType.USER_INPUT
    story_id: int
    content: str


@dataclass(frozen=True, kw_only=True)
class ContextReady(Event):
    type: ClassVar[EventType] = EventType.CONTEXT_READY
    story_id: int
    tier1_count: int = 0
    tier2_count: int = 0
    tier3_count: int = 0
    trimmed_count: int = 0


@dataclass(frozen=True, kw_only=True)
class ResponseStreaming(Event):
    type: ClassVar[EventType] = EventType.RESPONSE_STREAMING
    chunk: str
    accumulated_chars: int


@dataclass(frozen=True, kw_only=True)
class SentenceComplete(Event):
    type: ClassVar[EventType] = EventType.SENTENCE_COMPLETE
    sentence: str


@dataclass(frozen=True, kw_only=True)
class NarrativeResponse(Event):
    type: ClassVar[EventType] = EventType.NARRATIVE_RESPONSE
    story_id: int
    content: str


@dataclass(frozen=True, kw_only=True)
class ClassificationComplete(Event):
    type: ClassVar[EventType] = EventType.CLASSIFICATION_COMPLETE
    story_id: int
    created_count: int = 0
    updated_count: int = 0


@dataclass(frozen=True, kw_only=True)
class SuggestionsReady(Event):
    type: ClassVar[EventType] = EventType.SUGGESTIONS_READY
    story_id: int
    suggestions: tuple[str, ...] = ()


@dataclass(frozen=True, kw_only=True)
class StateUpdated(Event):
    type: ClassVar[EventType] = EventType.STATE_UPDATED
    story_id: int
    branch_id: str
    position: int


@dataclass(frozen=True, kw_only=True)
class ChapterCreated(Event):
    type: ClassVar[EventType] = EventType.CHAPTER_CREATED
    story_id: int
    chapter_number: int


@dataclass(frozen=True, kw_only=True)
class ImageAnalysisStarted(Event):
    type: ClassVar[EventType] = EventType.IMAGE_ANALYSIS_STARTED
    entry_id: str


@dataclass(frozen=True, kw_only=True)
class ImageAnalysisComplete(Event):
    type: ClassVar[EventType] = EventType.IMAGE_ANALYSIS_COMPLETE
    entry_id: str
    prompt: str


@dataclass(frozen=True, kw_only=True)
class ImageAnalysisFailed(Event):
    type: ClassVar[EventType] = EventType.IMAGE_ANALYSIS_FAILED
    entry_id: str
    error: str


@dataclass(frozen=True, kw_only=True)
class ImageQueued(Event):
    type: ClassVar[EventType] = EventType.IMAGE_QUEUED
    entry_id: str
    prompt: str


@dataclass(frozen=True, kw_only=True)
class ImageReady(Event):
    type: ClassVar[EventType] = EventType.IMAGE_READY
    entry_id: str
    url: str | None = None
    has_inline_data: bool = False


@dataclass(frozen=True, kw_only=True)
class TTSQueued(Event):
    type: ClassVar[EventType] = EventType.TTS_QUEUED
    entry_id: str


@dataclass(frozen=True, kw_only=True)
class SaveComplete(Event):
    type: ClassVar[EventType] = EventType.SAVE_COMPLETE
    story_id: int


@dataclass(frozen=True, kw_only=True)
class CheckpointCreated(Event):
    type: ClassVar[EventType] = EventType.CHECKPOINT_CREATED
    story_id: int
    checkpoint_id: int
    name: str


@dataclass(frozen=True, kw_only=True)
class CheckpointRestored(Event):
    type: ClassVar[EventType] = EventType.CHECKPOINT_RESTORED
    story_id: int
    checkpoint_id: int


@dataclass(frozen=True, kw_only=True)
class StoryLoaded(Event):
    type: ClassVar[EventType] = EventType.STORY_LOADED
    story_id: int


@dataclass(frozen=True, kw_only=True)
class StoryCreated(Event):
    type: ClassVar[EventType] = EventType.STORY_CREATED
    story_id: int
    title: str


@dataclass(frozen=True, kw_only=True)
class ModeChanged(Event):
    type: ClassVar[EventType] = EventType.MODE_CHANGED
    story_id: int
    mode: str


EVENT_CLASSES: dict[EventType, type[Event]] = {
    cls.type: cls
    for cls in (
        UserInput,
        ContextReady,
        ResponseStreaming,
        SentenceComplete,
        NarrativeResponse,
        ClassificationComplete,
        SuggestionsReady,
        StateUpdated,
        ChapterCreated,
        ImageAnalysisStarted,
        ImageAnalysisComplete,
        ImageAnalysisFailed,
        ImageQueued,
        ImageReady,
        TTSQueued,
        SaveComplete,
        CheckpointCreated,
        CheckpointRestored,
        StoryLoaded,
        StoryCreated,
        ModeChanged,
    )
}
