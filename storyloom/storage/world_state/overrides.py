from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, delete, select, text as sa_text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from storyloom.storage.base import Base
from storyloom.storage.types import BranchOverrideRow


class BranchOverride(Base):
    """Copy-on-write view of a trunk entity as seen from one branch."""

    __tablename__ = "branch_overrides"
    __table_args__ = (
        UniqueConstraint("story_id", "branch_id", "kind", "entity_id", name="uq_branch_overrides_identity"),
        Index("idx_branch_overrides_story_branch", "story_id", "branch_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    story_id: Mapped[int] = mapped_column(ForeignKey("stories.id", ondelete="CASCADE"), nullable=False)
    branch_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=sa_text("CURRENT_TIMESTAMP"),
        onupdate=sa_text("CURRENT_TIMESTAMP"),
        nullable=False,
    )


def _to_row(row: tuple) -> BranchOverrideRow:
    return BranchOverrideRow(
        id=int(row[0]),
        story_id=int(row[1]),
        branch_id=str(row[2]),
        kind=str(row[3]),
        entity_id=str(row[4]),
        payload=dict(row[5] or {}),
        deleted=bool(row[6]),
    )


_COLUMNS = (
    BranchOverride.id,
    BranchOverride.story_id,
    BranchOverride.branch_id,
    BranchOverride.kind,
    BranchOverride.entity_id,
    BranchOverride.payload,
    BranchOverride.deleted,
)


async def list_overrides(
    session: AsyncSession,
    *,
    story_id: int,
    branch_id: str,
    kind: str | None = None,
) -> list[BranchOverrideRow]:
    stmt = select(*_COLUMNS).where(BranchOverride.story_id == story_id, BranchOverride.branch_id == branch_id)
    if kind is not None:
        stmt = stmt.where(BranchOverride.kind == kind)
    result = await session.execute(stmt.order_by(BranchOverride.id))
    return [_to_row(tuple(row)) for row in result.all()]


async def get_override(
    session: AsyncSession,
    *,
    story_id: int,
    branch_id: str,
    kind: str,
    entity_id: str,
) -> BranchOverrideRow | None:
    result = await session.execute(
        select(*_COLUMNS).where(
            BranchOverride.story_id == story_id,
            BranchOverride.branch_id == branch_id,
            BranchOverride.kind == kind,
            BranchOverride.entity_id == entity_id,
        )
    )
    row = result.first()
    return _to_row(tuple(row)) if row else None


async def upsert_override(
    session: AsyncSession,
    *,
    story_id: int,
    branch_id: str,
    kind: str,
    entity_id: str,
    payload: dict[str, Any],
    deleted: bool = False,
) -> None:
    stmt = (
        sqlite_insert(BranchOverride)
        .values(
            story_id=story_id,
            branch_id=branch_id,
            kind=kind,
            entity_id=entity_id,
            payload=payload,
            deleted=deleted,
        )
        .on_conflict_do_update(
            index_elements=[
                BranchOverride.story_id,
                BranchOverride.branch_id,
                BranchOverride.kind,
                BranchOverride.entity_id,
            ],
            set_={"payload": payload, "deleted": deleted, "updated_at": sa_text("CURRENT_TIMESTAMP")},
        )
    )
    await session.execute(stmt)


async def delete_overrides_by_id(session: AsyncSession, override_ids: list[int]) -> int:
    if not override_ids:
        return 0
    result = await session.execute(delete(BranchOverride).where(BranchOverride.id.in_(override_ids)))
    return int(result.rowcount or 0)


async def delete_overrides_for_entity(session: AsyncSession, *, kind: str, entity_id: str) -> None:
    await session.execute(
        delete(BranchOverride).where(BranchOverride.kind == kind, BranchOverride.entity_id == entity_id)
    )


async def delete_branch_overrides(session: AsyncSession, *, story_id: int, branch_id: str, kind: str) -> None:
    await session.execute(
        delete(BranchOverride).where(
            BranchOverride.story_id == story_id,
            BranchOverride.branch_id == branch_id,
            BranchOverride.kind == kind,
        )
    )
