from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, delete, select, text as sa_text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from storyloom.storage.base import Base
from storyloom.storage.types import SnapshotRow


class WorldStateSnapshot(Base):
    """Coarse auto-snapshot of a branch, taken every N positions."""

    __tablename__ = "world_state_snapshots"
    __table_args__ = (
        UniqueConstraint("story_id", "branch_id", "position", name="uq_world_state_snapshots_identity"),
        Index("idx_world_state_snapshots_story_branch", "story_id", "branch_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    story_id: Mapped[int] = mapped_column(ForeignKey("stories.id", ondelete="CASCADE"), nullable=False)
    branch_id: Mapped[str] = mapped_column(String(64), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    snapshot_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=sa_text("CURRENT_TIMESTAMP"), nullable=False
    )


_COLUMNS = (
    WorldStateSnapshot.id,
    WorldStateSnapshot.story_id,
    WorldStateSnapshot.branch_id,
    WorldStateSnapshot.position,
    WorldStateSnapshot.snapshot_json,
    WorldStateSnapshot.created_at,
)


def _to_row(row: tuple) -> SnapshotRow:
    return SnapshotRow(
        id=int(row[0]),
        story_id=int(row[1]),
        branch_id=str(row[2]),
        position=int(row[3]),
        snapshot_json=str(row[4]),
        created_at=row[5],
    )


async def upsert_snapshot(
    session: AsyncSession,
    *,
    story_id: int,
    branch_id: str,
    position: int,
    snapshot_json: str,
) -> None:
    stmt = (
        sqlite_insert(WorldStateSnapshot)
        .values(story_id=story_id, branch_id=branch_id, position=position, snapshot_json=snapshot_json)
        .on_conflict_do_update(
            index_elements=[WorldStateSnapshot.story_id, WorldStateSnapshot.branch_id, WorldStateSnapshot.position],
            set_={"snapshot_json": snapshot_json, "created_at": sa_text("CURRENT_TIMESTAMP")},
        )
    )
    await session.execute(stmt)


async def list_snapshots(session: AsyncSession, *, story_id: int, branch_id: str) -> list[SnapshotRow]:
    result = await session.execute(
        select(*_COLUMNS)
        .where(WorldStateSnapshot.story_id == story_id, WorldStateSnapshot.branch_id == branch_id)
        .order_by(WorldStateSnapshot.position)
    )
    return [_to_row(tuple(row)) for row in result.all()]


async def get_latest_snapshot_at_or_before(
    session: AsyncSession,
    *,
    story_id: int,
    branch_id: str,
    position: int,
) -> SnapshotRow | None:
    result = await session.execute(
        select(*_COLUMNS)
        .where(
            WorldStateSnapshot.story_id == story_id,
            WorldStateSnapshot.branch_id == branch_id,
            WorldStateSnapshot.position <= position,
        )
        .order_by(WorldStateSnapshot.position.desc())
        .limit(1)
    )
    row = result.first()
    return _to_row(tuple(row)) if row else None


async def delete_snapshots_from(session: AsyncSession, *, story_id: int, branch_id: str, position: int) -> int:
    result = await session.execute(
        delete(WorldStateSnapshot).where(
            WorldStateSnapshot.story_id == story_id,
            WorldStateSnapshot.branch_id == branch_id,
            WorldStateSnapshot.position >= position,
        )
    )
    return int(result.rowcount or 0)
