"""Runs one story turn through the fixed phase pipeline.

``execute`` returns an async-iterable execution that yields pipeline events as
phases run; once iteration ends the combined ``PipelineResult`` is available on
the execution. ``run`` drains an execution and returns its result.
"""

from __future__ import annotations

from typing import Any, AsyncIterator

from loguru import logger

from storyloom.pipeline.context import AppContext
from storyloom.pipeline.errors import PipelineError
from storyloom.pipeline.graph import build_turn_graph
from storyloom.pipeline.state import TurnState
from storyloom.pipeline.types import (
    CLASSIFICATION,
    IMAGE,
    RETRIEVAL,
    TRANSLATION,
    ClassificationPhaseResult,
    ImagePhaseResult,
    PipelineEvent,
    PipelineResult,
    RetrievalPhaseResult,
    SkipReason,
    TranslationResult,
    TurnInput,
)
from storyloom.storage.repo import SQLAlchemyRepo
from storyloom.world_state.snapshots import restore_story_snapshot

_OPTIONAL_PHASES: dict[str, Any] = {
    RETRIEVAL: RetrievalPhaseResult,
    CLASSIFICATION: ClassificationPhaseResult,
    TRANSLATION: TranslationResult,
    IMAGE: ImagePhaseResult,
}


def build_result(state: TurnState) -> PipelineResult:
    result = PipelineResult(
        pre_generation=state.get("pre_generation"),
        retrieval=state.get("retrieval"),
        narrative=state.get("narrative"),
        classification=state.get("classification"),
        translation=state.get("translation"),
        image=state.get("image"),
        post_generation=state.get("post_generation"),
        aborted=bool(state.get("aborted")),
        abort_reason=state.get("abort_reason"),
        fatal_error=state.get("fatal_error"),
        fatal_phase=state.get("fatal_phase"),
    )
    if result.aborted:
        for phase, result_type in _OPTIONAL_PHASES.items():
            if getattr(result, phase) is None:
                setattr(result, phase, result_type(skipped_reason=SkipReason.ABORTED))
    return result


class PipelineExecution:
    def __init__(self, ctx: AppContext, turn: TurnInput):
        self.ctx = ctx
        self.turn = turn
        self.result: PipelineResult | None = None

    def __aiter__(self) -> AsyncIterator[PipelineEvent]:
        return self._events()

    async def _events(self) -> AsyncIterator[PipelineEvent]:
        turn = self.turn
        initial: TurnState = {
            "story_id": turn.story_id,
            "branch_id": turn.branch_id,
            "user_input": turn.user_input,
            "mode": turn.mode or self.ctx.config.narrative.mode,
        }
        final_state: TurnState = initial
        graph = build_turn_graph(self.ctx, turn)
        async for mode, chunk in graph.astream(initial, stream_mode=["custom", "values"]):
            if mode == "custom":
                yield chunk
            else:
                final_state = chunk
        self.result = build_result(final_state)

        log = logger.bind(story_id=turn.story_id, branch_id=turn.branch_id)
        if self.result.fatal_error:
            log.error("Turn failed in {}: {}", self.result.fatal_phase, self.result.fatal_error)
        elif self.result.aborted:
            log.info("Turn aborted: {}", self.result.abort_reason)
        else:
            log.info("Turn completed")


class PipelineOrchestrator:
    def __init__(self, ctx: AppContext):
        self.ctx = ctx

    def execute(self, turn: TurnInput) -> PipelineExecution:
        return PipelineExecution(self.ctx, turn)

    async def run(self, turn: TurnInput) -> PipelineResult:
        execution = self.execute(turn)
        async for _ in execution:
            pass
        if execution.result is None:
            raise PipelineError("Turn ended without a result")
        return execution.result

    async def restore_backup(self, result: PipelineResult) -> bool:
        """Put the story back to the state captured before the turn started."""

        if result.pre_generation is None:
            return False
        backup = result.pre_generation.backup
        image = result.image
        if image is not None and image.task is not None and not image.task.done():
            image.task.cancel()
        async with self.ctx.db.transaction() as session:
            await restore_story_snapshot(SQLAlchemyRepo(session), backup)
        logger.bind(story_id=backup.story_id, branch_id=backup.branch_id).info("Restored pre-generation backup")
        return True
