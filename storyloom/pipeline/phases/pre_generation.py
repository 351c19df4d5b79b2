from __future__ import annotations

from typing import Any

from loguru import logger

from storyloom.domain.models import new_id
from storyloom.events.types import UserInput
from storyloom.pipeline.context import AppContext
from storyloom.pipeline.state import TurnState
from storyloom.pipeline.types import PreGenerationResult, TurnInput
from storyloom.storage.repo import SQLAlchemyRepo
from storyloom.world_state.snapshots import capture_story_snapshot


async def run(state: TurnState, *, ctx: AppContext, turn: TurnInput, writer: Any = None) -> dict:
    """Capture the retry backup and reserve this turn's entry positions."""

    async with ctx.db.transaction() as session:
        backup = await capture_story_snapshot(SQLAlchemyRepo(session), turn.story_id, turn.branch_id)

    position = backup.last_position + 1
    logger.bind(phase="pre_generation", story_id=turn.story_id, branch_id=turn.branch_id, position=position).debug(
        "Captured backup entries={} characters={} lorebook={}",
        len(backup.entries),
        len(backup.characters),
        len(backup.lorebook_entries),
    )
    ctx.bus.emit(UserInput(story_id=turn.story_id, content=turn.user_input))
    return {
        "pre_generation": PreGenerationResult(
            backup=backup,
            position=position,
            user_entry_id=new_id(),
            narration_entry_id=new_id(),
        )
    }
