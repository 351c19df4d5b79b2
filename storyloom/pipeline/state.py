from __future__ import annotations

from typing import NotRequired, TypedDict

from storyloom.pipeline.types import (
    ClassificationPhaseResult,
    ImagePhaseResult,
    NarrativeResult,
    PostGenerationResult,
    PreGenerationResult,
    RetrievalPhaseResult,
    TranslationResult,
)


class TurnState(TypedDict):
    # Inputs
    story_id: int
    branch_id: str
    user_input: str
    mode: str

    # Phase outputs
    pre_generation: NotRequired[PreGenerationResult]
    retrieval: NotRequired[RetrievalPhaseResult]
    activation_data: NotRequired[dict[str, int]]
    narrative: NotRequired[NarrativeResult]
    classification: NotRequired[ClassificationPhaseResult]
    translation: NotRequired[TranslationResult]
    image: NotRequired[ImagePhaseResult]
    post_generation: NotRequired[PostGenerationResult]

    # Control
    aborted: NotRequired[bool]
    abort_reason: NotRequired[str | None]
    aborted_phase: NotRequired[str]
    fatal_error: NotRequired[str]
    fatal_phase: NotRequired[str]
