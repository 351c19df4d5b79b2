from __future__ import annotations

from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator

from storyloom.domain.hashing import sha256_text
from storyloom.domain.models import StoryEntry
from storyloom.events.types import SaveComplete, StateUpdated, SuggestionsReady
from storyloom.llm.json_utils import safe_load_json_dict
from storyloom.pipeline.abort import run_cancellable
from storyloom.pipeline.context import AppContext
from storyloom.pipeline.errors import PersistenceError, PipelineAborted
from storyloom.pipeline.state import TurnState
from storyloom.pipeline.types import PostGenerationResult, SkipReason, TurnInput
from storyloom.prompts.suggestions import SUGGESTIONS_PROMPT_VERSION, suggestions_prompt
from storyloom.storage.repo import SQLAlchemyRepo
from storyloom.world_state.apply import ApplyReport, ClassificationApplier
from storyloom.world_state.snapshots import capture_story_snapshot


class SuggestionsOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    suggestions: list[str] = Field(default_factory=list)

    @field_validator("suggestions", mode="before")
    @classmethod
    def _strings_only(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(item).strip() for item in value if isinstance(item, str) and item.strip()]


def parse_suggestions(text: str) -> SuggestionsOutput:
    return SuggestionsOutput.model_validate(safe_load_json_dict(text))


async def _persist(state: TurnState, ctx: AppContext, turn: TurnInput) -> tuple[bool, ApplyReport | None]:
    pre = state["pre_generation"]
    classification = state.get("classification")
    translation = state.get("translation")
    narration_position = pre.position + 1
    plan = classification.plan if classification is not None else None
    report: ApplyReport | None = None

    # World-state mutation and the entry carrying its delta commit or roll back together.
    async with ctx.db.transaction() as session:
        repo = SQLAlchemyRepo(session)
        if plan is not None:
            report = await ClassificationApplier(repo).apply_plan(plan, story_id=turn.story_id, branch_id=turn.branch_id)
        await repo.add_story_entry(
            StoryEntry(
                id=pre.user_entry_id,
                story_id=turn.story_id,
                branch_id=turn.branch_id,
                position=pre.position,
                type="user_action",
                content=turn.user_input,
            )
        )
        await repo.add_story_entry(
            StoryEntry(
                id=pre.narration_entry_id,
                story_id=turn.story_id,
                branch_id=turn.branch_id,
                position=narration_position,
                type="narration",
                content=state["narrative"].content,
                translated_content=translation.translated_content if translation is not None else None,
                world_state_delta=classification.delta if classification is not None else None,
            )
        )
        if "activation_data" in state:
            await repo.save_activation_data(turn.story_id, turn.branch_id, state["activation_data"])

        interval = ctx.config.snapshots.interval
        if interval > 0 and narration_position % interval == 0:
            snapshot = await capture_story_snapshot(repo, turn.story_id, turn.branch_id)
            await repo.save_snapshot(turn.story_id, turn.branch_id, narration_position, snapshot.to_json())
            return True, report
    return False, report


async def _suggest(state: TurnState, ctx: AppContext, turn: TurnInput) -> tuple[list[str], SkipReason | None, str | None]:
    config = ctx.config.suggestions
    if not config.enabled:
        return [], SkipReason.DISABLED, None
    if ctx.suggestions_client is None:
        return [], SkipReason.NOT_CONFIGURED, None

    system, user_template = suggestions_prompt(config.count)
    user = user_template.format(narrative=state["narrative"].content)
    context = {"phase": "suggestions", "input_hash": sha256_text(f"{SUGGESTIONS_PROMPT_VERSION}:{user}")}
    try:
        _, parsed = await run_cancellable(
            ctx.suggestions_client.complete_json_async(system, user, parse_suggestions, context=context),
            turn.signal,
        )
    except PipelineAborted:
        return [], SkipReason.ABORTED, None
    except Exception as exc:  # noqa: BLE001
        logger.bind(phase="post_generation", story_id=turn.story_id).warning("Suggestions failed: {}", exc)
        return [], None, str(exc) or type(exc).__name__

    suggestions = parsed.suggestions[: config.count]
    ctx.bus.emit(SuggestionsReady(story_id=turn.story_id, suggestions=tuple(suggestions)))
    return suggestions, None, None


async def run(state: TurnState, *, ctx: AppContext, turn: TurnInput, writer: Any = None) -> dict:
    pre = state["pre_generation"]
    narration_position = pre.position + 1
    try:
        snapshot_saved, report = await _persist(state, ctx, turn)
    except Exception as exc:
        raise PersistenceError(f"Failed to persist turn: {exc}") from exc

    logger.bind(phase="post_generation", story_id=turn.story_id, branch_id=turn.branch_id, position=narration_position).info(
        "Persisted turn entries snapshot={}",
        snapshot_saved,
    )
    ctx.bus.emit(SaveComplete(story_id=turn.story_id))

    suggestions, skipped, error = await _suggest(state, ctx, turn)
    ctx.bus.emit(StateUpdated(story_id=turn.story_id, branch_id=turn.branch_id, position=narration_position))
    return {
        "post_generation": PostGenerationResult(
            user_entry_id=pre.user_entry_id,
            narration_entry_id=pre.narration_entry_id,
            position=narration_position,
            snapshot_saved=snapshot_saved,
            apply_report=report,
            suggestions=suggestions,
            suggestions_skipped_reason=skipped,
            suggestions_error=error,
        )
    }
