from __future__ import annotations

from typing import Any

from loguru import logger

from storyloom.events.types import ClassificationComplete
from storyloom.pipeline.context import AppContext
from storyloom.pipeline.errors import PipelineAborted
from storyloom.pipeline.state import TurnState
from storyloom.pipeline.types import ClassificationPhaseResult, SkipReason, TurnInput
from storyloom.storage.repo import SQLAlchemyRepo
from storyloom.world_state.classifier import ClassificationRequest, WorldStateClassifier
from storyloom.world_state.delta import DeltaBuilder


async def run(state: TurnState, *, ctx: AppContext, turn: TurnInput, writer: Any = None) -> dict:
    if not ctx.config.classifier.enabled:
        return {"classification": ClassificationPhaseResult(skipped_reason=SkipReason.DISABLED)}
    if ctx.classifier_client is None:
        return {"classification": ClassificationPhaseResult(skipped_reason=SkipReason.NOT_CONFIGURED)}

    log = logger.bind(phase="classification", story_id=turn.story_id, branch_id=turn.branch_id)
    narrative = state["narrative"].content
    try:
        async with ctx.db.transaction() as session:
            world = await SQLAlchemyRepo(session).load_world_view(turn.story_id, turn.branch_id)

        classifier = WorldStateClassifier(ctx.classifier_client, ctx.config.classifier)
        outcome = await classifier.classify_detailed(
            ClassificationRequest(narrative=narrative, user_action=turn.user_input, world=world, mode=state["mode"]),
            signal=turn.signal,
        )
        if outcome.error is not None:
            return {"classification": ClassificationPhaseResult(result=outcome.result, error=outcome.error)}

        # Applied by post-generation in the same transaction as the narration entry.
        plan, delta = DeltaBuilder(turn.story_id, turn.branch_id).build(outcome.result, world)
    except PipelineAborted:
        raise
    except Exception as exc:  # noqa: BLE001
        log.warning("Classification phase failed; world state unchanged: {}", exc)
        return {"classification": ClassificationPhaseResult(error=str(exc) or type(exc).__name__)}

    ctx.bus.emit(
        ClassificationComplete(
            story_id=turn.story_id,
            created_count=plan.created_count(),
            updated_count=plan.updated_count(),
        )
    )
    return {"classification": ClassificationPhaseResult(result=outcome.result, delta=delta, plan=plan)}
