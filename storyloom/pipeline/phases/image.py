from __future__ import annotations

from typing import Any

from loguru import logger

from storyloom.events.types import ImageAnalysisComplete, ImageAnalysisFailed, ImageAnalysisStarted, ImageQueued, ImageReady
from storyloom.llm.images import ImageResult, OpenAIImageClient
from storyloom.pipeline.context import AppContext
from storyloom.pipeline.state import TurnState
from storyloom.pipeline.types import ImagePhaseResult, SkipReason, TurnInput
from storyloom.prompts.image import image_prompt
from storyloom.storage.repo import SQLAlchemyRepo


async def _generate(ctx: AppContext, client: OpenAIImageClient, entry_id: str, prompt: str) -> ImageResult | None:
    try:
        image = await client.generate(prompt)
    except Exception as exc:  # noqa: BLE001
        logger.bind(phase="image").warning("Image generation failed entry={}: {}", entry_id, exc)
        ctx.bus.emit(ImageAnalysisFailed(entry_id=entry_id, error=str(exc) or type(exc).__name__))
        return None
    ctx.bus.emit(ImageReady(entry_id=entry_id, url=image.url, has_inline_data=image.b64_json is not None))
    return image


async def run(state: TurnState, *, ctx: AppContext, turn: TurnInput, writer: Any = None) -> dict:
    """Queue scene illustration in the background; the turn never waits for it."""

    config = ctx.config.image
    if not config.enabled:
        return {"image": ImagePhaseResult(skipped_reason=SkipReason.DISABLED)}
    if config.mode == "inline":
        return {"image": ImagePhaseResult(skipped_reason=SkipReason.INLINE_MODE)}
    if ctx.image_client is None:
        return {"image": ImagePhaseResult(skipped_reason=SkipReason.NOT_CONFIGURED)}

    entry_id = state["pre_generation"].narration_entry_id
    ctx.bus.emit(ImageAnalysisStarted(entry_id=entry_id))
    try:
        async with ctx.db.transaction() as session:
            world = await SQLAlchemyRepo(session).load_world_view(turn.story_id, turn.branch_id)
        classification = state.get("classification")
        present = (
            classification.result.scene.present_character_names
            if classification is not None and classification.result is not None
            else []
        )
        location = world.current_location
        prompt = image_prompt(
            state["narrative"].content,
            location.name if location else None,
            list(present),
            config.prompt_max_chars,
        )
    except Exception as exc:  # noqa: BLE001
        logger.bind(phase="image", story_id=turn.story_id).warning("Image prompt preparation failed: {}", exc)
        ctx.bus.emit(ImageAnalysisFailed(entry_id=entry_id, error=str(exc) or type(exc).__name__))
        return {"image": ImagePhaseResult(error=str(exc) or type(exc).__name__)}

    ctx.bus.emit(ImageAnalysisComplete(entry_id=entry_id, prompt=prompt))
    ctx.bus.emit(ImageQueued(entry_id=entry_id, prompt=prompt))
    task = ctx.spawn(_generate(ctx, ctx.image_client, entry_id, prompt), name=f"image-{entry_id}")
    return {"image": ImagePhaseResult(prompt=prompt, task=task)}
