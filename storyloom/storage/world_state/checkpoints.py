from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, delete, select, text as sa_text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from storyloom.storage.base import Base
from storyloom.storage.types import CheckpointRow, InsertResult


class StoryCheckpoint(Base):
    __tablename__ = "story_checkpoints"
    __table_args__ = (
        Index("idx_story_checkpoints_story_id", "story_id"),
        Index("idx_story_checkpoints_story_branch", "story_id", "branch_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    story_id: Mapped[int] = mapped_column(ForeignKey("stories.id", ondelete="CASCADE"), nullable=False)
    branch_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    last_position: Mapped[int] = mapped_column(Integer, nullable=False, default=-1)
    snapshot_json: Mapped[str] = mapped_column(Text, nullable=False)
    snapshot_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=sa_text("CURRENT_TIMESTAMP"), nullable=False
    )


_COLUMNS = (
    StoryCheckpoint.id,
    StoryCheckpoint.story_id,
    StoryCheckpoint.branch_id,
    StoryCheckpoint.name,
    StoryCheckpoint.last_position,
    StoryCheckpoint.snapshot_json,
    StoryCheckpoint.snapshot_hash,
    StoryCheckpoint.created_at,
)


def _to_row(row: tuple) -> CheckpointRow:
    return CheckpointRow(
        id=int(row[0]),
        story_id=int(row[1]),
        branch_id=str(row[2]),
        name=str(row[3]),
        last_position=int(row[4]),
        snapshot_json=str(row[5]),
        snapshot_hash=str(row[6]),
        created_at=row[7],
    )


async def insert_checkpoint(
    session: AsyncSession,
    *,
    story_id: int,
    branch_id: str,
    name: str,
    last_position: int,
    snapshot_json: str,
    snapshot_hash: str,
) -> InsertResult:
    result = await session.execute(
        StoryCheckpoint.__table__.insert().values(
            story_id=story_id,
            branch_id=branch_id,
            name=name,
            last_position=last_position,
            snapshot_json=snapshot_json,
            snapshot_hash=snapshot_hash,
        )
    )
    return InsertResult(id=int(result.inserted_primary_key[0]), inserted=True)


async def list_checkpoints(session: AsyncSession, *, story_id: int) -> list[CheckpointRow]:
    result = await session.execute(
        select(*_COLUMNS)
        .where(StoryCheckpoint.story_id == story_id)
        .order_by(StoryCheckpoint.created_at, StoryCheckpoint.id)
    )
    return [_to_row(tuple(row)) for row in result.all()]


async def get_checkpoint(session: AsyncSession, checkpoint_id: int) -> CheckpointRow | None:
    result = await session.execute(select(*_COLUMNS).where(StoryCheckpoint.id == checkpoint_id))
    row = result.first()
    return _to_row(tuple(row)) if row else None


async def delete_checkpoint(session: AsyncSession, checkpoint_id: int) -> bool:
    result = await session.execute(delete(StoryCheckpoint).where(StoryCheckpoint.id == checkpoint_id))
    return bool(result.rowcount)
