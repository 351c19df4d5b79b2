from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.domain.models import TimeTracker
from storyloom.storage.stories.base import BranchState, Story
from storyloom.storage.types import BranchStateRow, InsertResult, StoryRow


async def create_story(session: AsyncSession, title: str, mode: str = "adventure") -> InsertResult:
    result = await session.execute(Story.__table__.insert().values(title=title, mode=mode))
    return InsertResult(id=int(result.inserted_primary_key[0]), inserted=True)


async def get_story(session: AsyncSession, story_id: int) -> StoryRow:
    result = await session.execute(
        select(Story.id, Story.title, Story.mode, Story.created_at).where(Story.id == story_id)
    )
    row = result.first()
    if row is None:
        raise ValueError(f"Story not found: {story_id}")
    return StoryRow(id=int(row[0]), title=str(row[1]), mode=str(row[2]), created_at=row[3])


async def list_stories(session: AsyncSession) -> list[StoryRow]:
    result = await session.execute(select(Story.id, Story.title, Story.mode, Story.created_at).order_by(Story.id))
    return [StoryRow(id=int(row[0]), title=str(row[1]), mode=str(row[2]), created_at=row[3]) for row in result.all()]


async def get_branch_state(session: AsyncSession, story_id: int, branch_id: str) -> BranchStateRow:
    result = await session.execute(
        select(BranchState.time_tracker, BranchState.activation_data).where(
            BranchState.story_id == story_id,
            BranchState.branch_id == branch_id,
        )
    )
    row = result.first()
    if row is None:
        return BranchStateRow(story_id=story_id, branch_id=branch_id)
    activation = {str(key): int(value) for key, value in (row[1] or {}).items()}
    return BranchStateRow(
        story_id=story_id,
        branch_id=branch_id,
        time_tracker=TimeTracker.from_dict(row[0]),
        activation_data=activation,
    )


async def save_time_tracker(
    session: AsyncSession,
    story_id: int,
    branch_id: str,
    time_tracker: TimeTracker | None,
) -> None:
    payload = time_tracker.to_dict() if time_tracker else None
    stmt = (
        sqlite_insert(BranchState)
        .values(story_id=story_id, branch_id=branch_id, time_tracker=payload, activation_data={})
        .on_conflict_do_update(
            index_elements=[BranchState.story_id, BranchState.branch_id],
            set_={"time_tracker": payload},
        )
    )
    await session.execute(stmt)


async def save_activation_data(
    session: AsyncSession,
    story_id: int,
    branch_id: str,
    activation_data: dict[str, int],
) -> None:
    payload = {str(key): int(value) for key, value in activation_data.items()}
    stmt = (
        sqlite_insert(BranchState)
        .values(story_id=story_id, branch_id=branch_id, time_tracker=None, activation_data=payload)
        .on_conflict_do_update(
            index_elements=[BranchState.story_id, BranchState.branch_id],
            set_={"activation_data": payload},
        )
    )
    await session.execute(stmt)
