from __future__ import annotations

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.domain.models import Chapter
from storyloom.storage.chapters.base import ChapterRecord

_COLUMNS = (
    ChapterRecord.id,
    ChapterRecord.story_id,
    ChapterRecord.branch_id,
    ChapterRecord.number,
    ChapterRecord.title,
    ChapterRecord.start_position,
    ChapterRecord.end_position,
    ChapterRecord.entry_count,
    ChapterRecord.summary,
    ChapterRecord.keywords,
    ChapterRecord.characters,
    ChapterRecord.locations,
    ChapterRecord.created_at,
)


def _to_chapter(row: tuple) -> Chapter:
    return Chapter(
        id=str(row[0]),
        story_id=int(row[1]),
        branch_id=str(row[2]),
        number=int(row[3]),
        title=row[4],
        start_position=int(row[5]),
        end_position=int(row[6]),
        entry_count=int(row[7]),
        summary=str(row[8] or ""),
        keywords=list(row[9] or []),
        characters=list(row[10] or []),
        locations=list(row[11] or []),
        created_at=row[12],
    )


async def insert_chapter(session: AsyncSession, chapter: Chapter) -> None:
    await session.execute(
        ChapterRecord.__table__.insert().values(
            id=chapter.id,
            story_id=chapter.story_id,
            branch_id=chapter.branch_id,
            number=chapter.number,
            title=chapter.title,
            start_position=chapter.start_position,
            end_position=chapter.end_position,
            entry_count=chapter.entry_count,
            summary=chapter.summary,
            keywords=list(chapter.keywords),
            characters=list(chapter.characters),
            locations=list(chapter.locations),
        )
    )


async def list_chapters(session: AsyncSession, story_id: int, branch_id: str) -> list[Chapter]:
    result = await session.execute(
        select(*_COLUMNS)
        .where(ChapterRecord.story_id == story_id, ChapterRecord.branch_id == branch_id)
        .order_by(ChapterRecord.number)
    )
    return [_to_chapter(tuple(row)) for row in result.all()]


async def get_next_number(session: AsyncSession, story_id: int, branch_id: str) -> int:
    result = await session.execute(
        select(func.max(ChapterRecord.number)).where(
            ChapterRecord.story_id == story_id,
            ChapterRecord.branch_id == branch_id,
        )
    )
    return int(result.scalar_one_or_none() or 0) + 1


async def delete_chapters_from(session: AsyncSession, story_id: int, branch_id: str, position: int) -> int:
    """Delete chapters that cover any position at or after ``position``."""

    result = await session.execute(
        delete(ChapterRecord).where(
            ChapterRecord.story_id == story_id,
            ChapterRecord.branch_id == branch_id,
            ChapterRecord.end_position >= position,
        )
    )
    return int(result.rowcount or 0)
