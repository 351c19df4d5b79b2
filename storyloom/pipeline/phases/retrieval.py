from __future__ import annotations

from typing import Any

from loguru import logger

from storyloom.domain.models import WorldView
from storyloom.events.types import ContextReady
from storyloom.pipeline.context import AppContext
from storyloom.pipeline.errors import PipelineAborted
from storyloom.pipeline.state import TurnState
from storyloom.pipeline.types import RetrievalPhaseResult, SkipReason, TurnInput
from storyloom.retrieval.activation import ActivationTracker
from storyloom.retrieval.engine import EntryRetrievalEngine
from storyloom.retrieval.selector import LLMRelevanceSelector


async def run(state: TurnState, *, ctx: AppContext, turn: TurnInput, writer: Any = None) -> dict:
    config = ctx.config.retrieval
    if not config.enabled:
        return {"retrieval": RetrievalPhaseResult(skipped_reason=SkipReason.DISABLED)}

    pre = state["pre_generation"]
    backup = pre.backup
    tracker = ActivationTracker(
        window=config.stickiness_window,
        data=backup.activation_data,
        current_position=pre.position,
    )
    world = WorldView(
        characters=backup.characters,
        locations=backup.locations,
        items=backup.items,
        story_beats=backup.story_beats,
        time_tracker=backup.time_tracker,
    )
    selector = LLMRelevanceSelector(ctx.retrieval_client) if ctx.retrieval_client is not None else None
    engine = EntryRetrievalEngine(config, selector=selector)

    try:
        result = await engine.retrieve(
            backup.lorebook_entries,
            turn.user_input,
            backup.entries,
            tracker=tracker,
            world=world,
            story_id=turn.story_id,
            signal=turn.signal,
        )
    except PipelineAborted:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.bind(phase="retrieval", story_id=turn.story_id).warning("Retrieval failed; continuing without lore: {}", exc)
        return {"retrieval": RetrievalPhaseResult(error=str(exc) or type(exc).__name__)}

    ctx.bus.emit(
        ContextReady(
            story_id=turn.story_id,
            tier1_count=len(result.tier1),
            tier2_count=len(result.tier2),
            tier3_count=len(result.tier3),
            trimmed_count=len(result.trimmed),
        )
    )
    return {"retrieval": RetrievalPhaseResult(result=result), "activation_data": tracker.to_dict()}
