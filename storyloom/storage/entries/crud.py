from __future__ import annotations

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.domain.delta import WorldStateDelta
from storyloom.domain.models import StoryEntry
from storyloom.storage.entries.base import StoryEntryRecord

_COLUMNS = (
    StoryEntryRecord.id,
    StoryEntryRecord.story_id,
    StoryEntryRecord.branch_id,
    StoryEntryRecord.position,
    StoryEntryRecord.type,
    StoryEntryRecord.content,
    StoryEntryRecord.translated_content,
    StoryEntryRecord.world_state_delta,
    StoryEntryRecord.created_at,
)


def _to_entry(row: tuple) -> StoryEntry:
    delta_payload = row[7]
    return StoryEntry(
        id=str(row[0]),
        story_id=int(row[1]),
        branch_id=str(row[2]),
        position=int(row[3]),
        type=str(row[4]),
        content=str(row[5]),
        translated_content=row[6],
        world_state_delta=WorldStateDelta.from_dict(delta_payload) if delta_payload else None,
        created_at=row[8],
    )


async def insert_entry(session: AsyncSession, entry: StoryEntry) -> None:
    await session.execute(
        StoryEntryRecord.__table__.insert().values(
            id=entry.id,
            story_id=entry.story_id,
            branch_id=entry.branch_id,
            position=entry.position,
            type=entry.type,
            content=entry.content,
            translated_content=entry.translated_content,
            world_state_delta=entry.world_state_delta.to_dict() if entry.world_state_delta else None,
        )
    )


async def list_entries(
    session: AsyncSession,
    story_id: int,
    branch_id: str,
    *,
    from_position: int | None = None,
    with_delta_only: bool = False,
) -> list[StoryEntry]:
    stmt = select(*_COLUMNS).where(
        StoryEntryRecord.story_id == story_id,
        StoryEntryRecord.branch_id == branch_id,
    )
    if from_position is not None:
        stmt = stmt.where(StoryEntryRecord.position >= from_position)
    if with_delta_only:
        stmt = stmt.where(StoryEntryRecord.world_state_delta.is_not(None))
    result = await session.execute(stmt.order_by(StoryEntryRecord.position))
    return [_to_entry(tuple(row)) for row in result.all()]


async def get_last_position(session: AsyncSession, story_id: int, branch_id: str) -> int | None:
    result = await session.execute(
        select(func.max(StoryEntryRecord.position)).where(
            StoryEntryRecord.story_id == story_id,
            StoryEntryRecord.branch_id == branch_id,
        )
    )
    value = result.scalar_one_or_none()
    return int(value) if value is not None else None


async def set_entry_delta(session: AsyncSession, entry_id: str, delta: WorldStateDelta | None) -> None:
    await session.execute(
        update(StoryEntryRecord)
        .where(StoryEntryRecord.id == entry_id)
        .values(world_state_delta=delta.to_dict() if delta else None)
    )


async def delete_entries_from(session: AsyncSession, story_id: int, branch_id: str, position: int) -> int:
    result = await session.execute(
        delete(StoryEntryRecord).where(
            StoryEntryRecord.story_id == story_id,
            StoryEntryRecord.branch_id == branch_id,
            StoryEntryRecord.position >= position,
        )
    )
    return int(result.rowcount or 0)


async def delete_branch_entries(session: AsyncSession, story_id: int, branch_id: str) -> None:
    await session.execute(
        delete(StoryEntryRecord).where(
            StoryEntryRecord.story_id == story_id,
            StoryEntryRecord.branch_id == branch_id,
        )
    )
