from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum

from storyloom.domain.models import MAIN_BRANCH
from storyloom.llm.images import ImageResult
from storyloom.pipeline.abort import AbortSignal
from storyloom.retrieval.engine import RetrievalResult
from storyloom.world_state.apply import ApplyReport
from storyloom.world_state.classifier import ClassificationResult
from storyloom.world_state.delta import MutationPlan, WorldStateDelta
from storyloom.world_state.snapshots import StoryBackup

PRE_GENERATION = "pre_generation"
RETRIEVAL = "retrieval"
NARRATIVE = "narrative"
CLASSIFICATION = "classification"
TRANSLATION = "translation"
IMAGE = "image"
POST_GENERATION = "post_generation"

PHASES: tuple[str, ...] = (
    PRE_GENERATION,
    RETRIEVAL,
    NARRATIVE,
    CLASSIFICATION,
    TRANSLATION,
    IMAGE,
    POST_GENERATION,
)

FATAL_PHASES = frozenset({PRE_GENERATION, NARRATIVE, POST_GENERATION})


class SkipReason(StrEnum):
    DISABLED = "disabled"
    NOT_CONFIGURED = "not_configured"
    INLINE_MODE = "inline_mode"
    ABORTED = "aborted"


@dataclass
class TurnInput:
    story_id: int
    user_input: str
    branch_id: str = MAIN_BRANCH
    mode: str | None = None
    signal: AbortSignal | None = None


@dataclass
class PreGenerationResult:
    backup: StoryBackup
    position: int
    user_entry_id: str
    narration_entry_id: str


@dataclass
class RetrievalPhaseResult:
    result: RetrievalResult | None = None
    skipped_reason: SkipReason | None = None
    error: str | None = None


@dataclass
class NarrativeResult:
    content: str
    attempts: int = 1
    streamed: bool = False
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class ClassificationPhaseResult:
    result: ClassificationResult | None = None
    delta: WorldStateDelta | None = None
    plan: MutationPlan | None = None
    skipped_reason: SkipReason | None = None
    error: str | None = None


@dataclass
class TranslationResult:
    translated_content: str | None = None
    skipped_reason: SkipReason | None = None
    error: str | None = None


@dataclass
class ImagePhaseResult:
    prompt: str | None = None
    task: "asyncio.Task[ImageResult | None] | None" = None
    skipped_reason: SkipReason | None = None
    error: str | None = None


@dataclass
class PostGenerationResult:
    user_entry_id: str
    narration_entry_id: str
    position: int
    snapshot_saved: bool = False
    apply_report: ApplyReport | None = None
    suggestions: list[str] = field(default_factory=list)
    suggestions_skipped_reason: SkipReason | None = None
    suggestions_error: str | None = None


@dataclass
class PipelineResult:
    pre_generation: PreGenerationResult | None = None
    retrieval: RetrievalPhaseResult | None = None
    narrative: NarrativeResult | None = None
    classification: ClassificationPhaseResult | None = None
    translation: TranslationResult | None = None
    image: ImagePhaseResult | None = None
    post_generation: PostGenerationResult | None = None
    aborted: bool = False
    abort_reason: str | None = None
    fatal_error: str | None = None
    fatal_phase: str | None = None

    @property
    def ok(self) -> bool:
        return not self.aborted and self.fatal_error is None


# Events yielded by a running turn.


@dataclass(frozen=True)
class PhaseStarted:
    phase: str


@dataclass(frozen=True)
class PhaseCompleted:
    phase: str
    skipped_reason: SkipReason | None = None


@dataclass(frozen=True)
class NarrativeChunk:
    chunk: str
    accumulated_chars: int


@dataclass(frozen=True)
class PhaseError:
    phase: str
    error: str
    fatal: bool


@dataclass(frozen=True)
class TurnAborted:
    phase: str
    reason: str | None = None


PipelineEvent = PhaseStarted | PhaseCompleted | NarrativeChunk | PhaseError | TurnAborted
