from __future__ import annotations

from typing import Any

from loguru import logger

from storyloom.domain.hashing import sha256_text
from storyloom.pipeline.abort import run_cancellable
from storyloom.pipeline.context import AppContext
from storyloom.pipeline.errors import PipelineAborted
from storyloom.pipeline.state import TurnState
from storyloom.pipeline.types import SkipReason, TranslationResult, TurnInput
from storyloom.prompts.translation import TRANSLATION_PROMPT_VERSION, translation_prompt


async def run(state: TurnState, *, ctx: AppContext, turn: TurnInput, writer: Any = None) -> dict:
    config = ctx.config.translation
    if not config.enabled:
        return {"translation": TranslationResult(skipped_reason=SkipReason.DISABLED)}
    if not ctx.config.llm.has_chat_route("translation") or ctx.translation_client is None:
        return {"translation": TranslationResult(skipped_reason=SkipReason.NOT_CONFIGURED)}

    system, user_template = translation_prompt(config.target_language)
    user = user_template.format(text=state["narrative"].content)
    context = {"phase": "translation", "input_hash": sha256_text(f"{TRANSLATION_PROMPT_VERSION}:{user}")}
    try:
        response = await run_cancellable(ctx.translation_client.complete_async(system, user, context=context), turn.signal)
    except PipelineAborted:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.bind(phase="translation", story_id=turn.story_id).warning("Translation failed: {}", exc)
        return {"translation": TranslationResult(error=str(exc) or type(exc).__name__)}
    return {"translation": TranslationResult(translated_content=response.text.strip())}
