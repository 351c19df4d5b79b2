from __future__ import annotations

from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.domain.models import MAIN_BRANCH, InjectionPolicy, LorebookEntry
from storyloom.storage.lorebook.base import LorebookEntryRecord

_COLUMNS = (
    LorebookEntryRecord.id,
    LorebookEntryRecord.story_id,
    LorebookEntryRecord.branch_id,
    LorebookEntryRecord.name,
    LorebookEntryRecord.type,
    LorebookEntryRecord.description,
    LorebookEntryRecord.keywords,
    LorebookEntryRecord.aliases,
    LorebookEntryRecord.injection_mode,
    LorebookEntryRecord.injection_priority,
    LorebookEntryRecord.mention_count,
    LorebookEntryRecord.created_by,
)


def _to_entry(row: tuple) -> LorebookEntry:
    return LorebookEntry(
        id=str(row[0]),
        story_id=int(row[1]),
        branch_id=str(row[2]),
        name=str(row[3]),
        type=str(row[4]),
        description=str(row[5] or ""),
        keywords=list(row[6] or []),
        aliases=list(row[7] or []),
        injection=InjectionPolicy(mode=str(row[8]), priority=int(row[9])),
        mention_count=int(row[10]),
        created_by=str(row[11]),
    )


def _to_values(entry: LorebookEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "story_id": entry.story_id,
        "branch_id": entry.branch_id,
        "name": entry.name,
        "type": entry.type,
        "description": entry.description,
        "keywords": list(entry.keywords),
        "aliases": list(entry.aliases),
        "injection_mode": entry.injection.mode,
        "injection_priority": entry.injection.priority,
        "mention_count": entry.mention_count,
        "created_by": entry.created_by,
    }


async def insert_entries(session: AsyncSession, entries: list[LorebookEntry]) -> None:
    if not entries:
        return
    # seq keeps the caller's order stable; retrieval tie-breaks depend on it.
    max_seq = await session.execute(select(func.max(LorebookEntryRecord.seq)))
    next_seq = int(max_seq.scalar_one_or_none() or 0) + 1
    values = []
    for offset, entry in enumerate(entries):
        row = _to_values(entry)
        row["seq"] = next_seq + offset
        values.append(row)
    await session.execute(LorebookEntryRecord.__table__.insert(), values)


async def list_entries(session: AsyncSession, story_id: int, branch_id: str) -> list[LorebookEntry]:
    branches = {MAIN_BRANCH, branch_id}
    result = await session.execute(
        select(*_COLUMNS)
        .where(LorebookEntryRecord.story_id == story_id, LorebookEntryRecord.branch_id.in_(branches))
        .order_by(LorebookEntryRecord.seq, LorebookEntryRecord.id)
    )
    return [_to_entry(tuple(row)) for row in result.all()]


async def update_entry(session: AsyncSession, entry_id: str, changes: dict[str, Any]) -> bool:
    values = dict(changes)
    injection = values.pop("injection", None)
    if isinstance(injection, InjectionPolicy):
        values["injection_mode"] = injection.mode
        values["injection_priority"] = injection.priority
    values.pop("id", None)
    values.pop("story_id", None)
    if not values:
        return False
    result = await session.execute(
        update(LorebookEntryRecord).where(LorebookEntryRecord.id == entry_id).values(**values)
    )
    return bool(result.rowcount)


async def delete_entry(session: AsyncSession, entry_id: str) -> bool:
    result = await session.execute(delete(LorebookEntryRecord).where(LorebookEntryRecord.id == entry_id))
    return bool(result.rowcount)


async def delete_branch_entries(session: AsyncSession, story_id: int, branch_id: str) -> None:
    await session.execute(
        delete(LorebookEntryRecord).where(
            LorebookEntryRecord.story_id == story_id,
            LorebookEntryRecord.branch_id == branch_id,
        )
    )
