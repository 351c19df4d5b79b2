from __future__ import annotations

import re
from typing import Any

from loguru import logger

from storyloom.domain.hashing import sha256_text
from storyloom.domain.models import StoryEntry
from storyloom.events.types import NarrativeResponse, ResponseStreaming, SentenceComplete
from storyloom.pipeline.abort import run_cancellable
from storyloom.pipeline.context import AppContext
from storyloom.pipeline.errors import NarrativeError
from storyloom.pipeline.state import TurnState
from storyloom.pipeline.types import NarrativeChunk, NarrativeResult, TurnInput
from storyloom.prompts.narrative import NARRATIVE_PROMPT_VERSION, narrative_prompt
from storyloom.world_state.snapshots import StoryBackup

_SENTENCE_END = re.compile(r"[.!?…]+[\"')\]”’]*(?=\s)")


def split_sentences(buffer: str) -> tuple[list[str], str]:
    """Split complete sentences off ``buffer``; return them and the unfinished tail."""

    sentences: list[str] = []
    start = 0
    for match in _SENTENCE_END.finditer(buffer):
        sentence = buffer[start : match.end()].strip()
        if sentence:
            sentences.append(sentence)
        start = match.end()
    return sentences, buffer[start:]


def describe_world(backup: StoryBackup) -> str:
    lines = ["[WORLD STATE]"]
    if backup.time_tracker is not None:
        lines.append(f"Time: {backup.time_tracker.describe()}")
    current = next((item for item in backup.locations if item.current), None)
    if current is not None:
        lines.append(f"Location: {current.name}" + (f" - {current.description}" if current.description else ""))
    active = [item for item in backup.characters if item.status == "active"]
    if active:
        lines.append("Characters: " + ", ".join(item.name for item in active))
    inventory = [item for item in backup.items if item.location == "inventory"]
    if inventory:
        lines.append("Inventory: " + ", ".join(f"{item.name} x{item.quantity}" for item in inventory))
    beats = [item for item in backup.story_beats if item.status in ("active", "pending")]
    if beats:
        lines.append("Open threads: " + "; ".join(item.title for item in beats))
    return "\n".join(lines)


def _recent_story(entries: list[StoryEntry], window: int) -> str:
    recent = entries[-window:] if window > 0 else []
    parts = []
    for entry in recent:
        prefix = "> " if entry.type == "user_action" else ""
        parts.append(f"{prefix}{entry.content}")
    return "\n\n".join(parts)


async def _stream_attempt(ctx: AppContext, turn: TurnInput, system: str, user: str, context: dict, writer: Any) -> str:
    accumulated = ""
    pending = ""
    stream = ctx.narrative_client.stream_async(system, user, context=context)
    try:
        while True:
            chunk = await run_cancellable(anext(stream, None), turn.signal)
            if chunk is None:
                break
            accumulated += chunk
            if writer is not None:
                writer(NarrativeChunk(chunk=chunk, accumulated_chars=len(accumulated)))
            ctx.bus.emit(ResponseStreaming(chunk=chunk, accumulated_chars=len(accumulated)))
            sentences, pending = split_sentences(pending + chunk)
            for sentence in sentences:
                ctx.bus.emit(SentenceComplete(sentence=sentence))
    finally:
        await stream.aclose()
    if pending.strip():
        ctx.bus.emit(SentenceComplete(sentence=pending.strip()))
    return accumulated


async def run(state: TurnState, *, ctx: AppContext, turn: TurnInput, writer: Any = None) -> dict:
    config = ctx.config.narrative
    pre = state["pre_generation"]
    retrieval = state.get("retrieval")
    lore = retrieval.result.context_block if retrieval is not None and retrieval.result is not None else ""

    system, user_template = narrative_prompt(state["mode"])
    user = user_template.format(
        world_state=describe_world(pre.backup),
        lorebook_context=lore,
        recent_story=_recent_story(pre.backup.entries, config.recent_entries_window),
        user_input=turn.user_input,
    )
    input_hash = sha256_text(f"{NARRATIVE_PROMPT_VERSION}:{user}")
    log = logger.bind(phase="narrative", story_id=turn.story_id, position=pre.position, input_hash=input_hash[:12])

    usage: dict[str, int] = {}
    for attempt in range(1, config.max_empty_attempts + 1):
        context = {"phase": "narrative", "input_hash": input_hash, "attempt": f"{attempt}/{config.max_empty_attempts}"}
        if config.streaming:
            content = await _stream_attempt(ctx, turn, system, user, context, writer)
        else:
            response = await run_cancellable(ctx.narrative_client.complete_async(system, user, context=context), turn.signal)
            content = response.text
            usage = dict(response.usage)
            if writer is not None and content:
                writer(NarrativeChunk(chunk=content, accumulated_chars=len(content)))

        content = content.strip()
        if content:
            ctx.bus.emit(NarrativeResponse(story_id=turn.story_id, content=content))
            log.info("Narrative generated chars={} attempt={}", len(content), attempt)
            return {
                "narrative": NarrativeResult(content=content, attempts=attempt, streamed=config.streaming, usage=usage)
            }
        log.warning("Empty narrative response attempt={}/{}", attempt, config.max_empty_attempts)

    raise NarrativeError(f"Narrative response empty after {config.max_empty_attempts} attempts")
