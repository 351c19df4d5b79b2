"""Branch-aware CRUD shared by the four world-state entity tables.

Rows live either on the trunk branch or on one named branch. A branch sees
trunk rows plus its own rows; writes from a branch to a trunk row go to a
copy-on-write override instead of the row itself, and deletes become
tombstone overrides.
"""

from __future__ import annotations

from copy import deepcopy
from dataclasses import fields, replace
from typing import Any

from sqlalchemy import Table, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storyloom.domain.models import (
    ENTITY_TYPES,
    IDENTITY_FIELDS,
    MAIN_BRANCH,
    Entity,
    EntityKind,
    entity_from_dict,
    entity_payload,
    entity_to_dict,
)
from storyloom.storage.world_state import overrides as overrides_crud
from storyloom.storage.world_state.characters import CharacterRecord
from storyloom.storage.world_state.items import ItemRecord
from storyloom.storage.world_state.locations import LocationRecord
from storyloom.storage.world_state.story_beats import StoryBeatRecord

_RECORDS = {
    EntityKind.CHARACTER: CharacterRecord,
    EntityKind.LOCATION: LocationRecord,
    EntityKind.ITEM: ItemRecord,
    EntityKind.STORY_BEAT: StoryBeatRecord,
}

_ENTITY_FIELDS: dict[EntityKind, tuple[str, ...]] = {
    kind: tuple(item.name for item in fields(entity_type)) for kind, entity_type in ENTITY_TYPES.items()
}


def _table(kind: EntityKind) -> Table:
    return _RECORDS[kind].__table__


def _column_name(field_name: str) -> str:
    # "metadata" is reserved on declarative classes.
    return "meta" if field_name == "metadata" else field_name


def _row_to_entity(kind: EntityKind, mapping: Any) -> Entity:
    data = {name: deepcopy(mapping[_column_name(name)]) for name in _ENTITY_FIELDS[kind]}
    return entity_from_dict(kind, data)


def _to_columns(kind: EntityKind, values: dict[str, Any]) -> dict[str, Any]:
    allowed = _ENTITY_FIELDS[kind]
    return {_column_name(key): deepcopy(value) for key, value in values.items() if key in allowed}


def _clean_changes(kind: EntityKind, changes: dict[str, Any]) -> dict[str, Any]:
    allowed = _ENTITY_FIELDS[kind]
    return {key: deepcopy(value) for key, value in changes.items() if key in allowed and key not in IDENTITY_FIELDS}


def _apply_payload(kind: EntityKind, entity: Entity, payload: dict[str, Any]) -> Entity:
    data = entity_to_dict(entity)
    data.update(_clean_changes(kind, payload))
    return entity_from_dict(kind, data)


async def insert_entity(session: AsyncSession, kind: EntityKind, entity: Entity) -> None:
    await session.execute(_table(kind).insert().values(**_to_columns(kind, entity_to_dict(entity))))


async def get_entity_row(session: AsyncSession, kind: EntityKind, entity_id: str) -> Entity | None:
    """Raw stored row, ignoring branch overrides."""
    table = _table(kind)
    result = await session.execute(select(table).where(table.c.id == entity_id))
    row = result.first()
    return _row_to_entity(kind, row._mapping) if row else None


async def list_entities(session: AsyncSession, kind: EntityKind, story_id: int, branch_id: str) -> list[Entity]:
    table = _table(kind)
    result = await session.execute(
        select(table)
        .where(table.c.story_id == story_id, table.c.branch_id.in_({MAIN_BRANCH, branch_id}))
        .order_by(table.c.created_at, table.c.id)
    )
    entities = [_row_to_entity(kind, row._mapping) for row in result.all()]
    if branch_id == MAIN_BRANCH:
        return entities

    overrides = {
        row.entity_id: row
        for row in await overrides_crud.list_overrides(
            session, story_id=story_id, branch_id=branch_id, kind=kind.value
        )
    }
    view: list[Entity] = []
    for entity in entities:
        override = overrides.get(entity.id)
        if override is None or entity.branch_id != MAIN_BRANCH:
            view.append(entity)
            continue
        if override.deleted:
            continue
        view.append(_apply_payload(kind, entity, override.payload))
    return view


async def get_entity(session: AsyncSession, kind: EntityKind, entity_id: str, branch_id: str) -> Entity | None:
    row = await get_entity_row(session, kind, entity_id)
    if row is None:
        return None
    if row.branch_id == branch_id:
        return row
    if row.branch_id != MAIN_BRANCH:
        return None
    override = await overrides_crud.get_override(
        session,
        story_id=row.story_id,
        branch_id=branch_id,
        kind=kind.value,
        entity_id=entity_id,
    )
    if override is None:
        return row
    if override.deleted:
        return None
    return _apply_payload(kind, row, override.payload)


async def update_entity(
    session: AsyncSession,
    kind: EntityKind,
    entity_id: str,
    changes: dict[str, Any],
    branch_id: str,
) -> bool:
    row = await get_entity_row(session, kind, entity_id)
    if row is None:
        return False
    clean = _clean_changes(kind, changes)
    if not clean:
        return True

    if row.branch_id == branch_id:
        table = _table(kind)
        await session.execute(update(table).where(table.c.id == entity_id).values(**_to_columns(kind, clean)))
        return True
    if row.branch_id != MAIN_BRANCH:
        return False

    existing = await overrides_crud.get_override(
        session,
        story_id=row.story_id,
        branch_id=branch_id,
        kind=kind.value,
        entity_id=entity_id,
    )
    if existing is not None and existing.deleted:
        return False
    payload = dict(existing.payload) if existing else entity_payload(row)
    payload.update(clean)
    await overrides_crud.upsert_override(
        session,
        story_id=row.story_id,
        branch_id=branch_id,
        kind=kind.value,
        entity_id=entity_id,
        payload=payload,
    )
    return True


async def delete_entity(session: AsyncSession, kind: EntityKind, entity_id: str, branch_id: str) -> bool:
    row = await get_entity_row(session, kind, entity_id)
    if row is None:
        return False

    if row.branch_id == branch_id:
        table = _table(kind)
        await session.execute(delete(table).where(table.c.id == entity_id))
        await overrides_crud.delete_overrides_for_entity(session, kind=kind.value, entity_id=entity_id)
        return True
    if row.branch_id != MAIN_BRANCH:
        return False

    await overrides_crud.upsert_override(
        session,
        story_id=row.story_id,
        branch_id=branch_id,
        kind=kind.value,
        entity_id=entity_id,
        payload={},
        deleted=True,
    )
    return True


async def set_current_location(
    session: AsyncSession,
    story_id: int,
    branch_id: str,
    location_id: str | None,
) -> None:
    for location in await list_entities(session, EntityKind.LOCATION, story_id, branch_id):
        should_be_current = location.id == location_id
        if location.current != should_be_current:
            await update_entity(session, EntityKind.LOCATION, location.id, {"current": should_be_current}, branch_id)


async def cleanup_noop_overrides(session: AsyncSession, story_id: int, branch_id: str) -> int:
    """Delete overrides that match their trunk row again (or whose row is gone)."""
    noop_ids: list[int] = []
    for override in await overrides_crud.list_overrides(session, story_id=story_id, branch_id=branch_id):
        row = await get_entity_row(session, EntityKind(override.kind), override.entity_id)
        if row is None:
            noop_ids.append(override.id)
            continue
        if override.deleted:
            continue
        if entity_payload(row) == override.payload:
            noop_ids.append(override.id)
    return await overrides_crud.delete_overrides_by_id(session, noop_ids)


async def replace_branch_entities(
    session: AsyncSession,
    kind: EntityKind,
    story_id: int,
    branch_id: str,
    entities: list[Entity],
) -> None:
    table = _table(kind)
    await session.execute(delete(table).where(table.c.story_id == story_id, table.c.branch_id == branch_id))

    if branch_id == MAIN_BRANCH:
        for entity in entities:
            await insert_entity(session, kind, replace(entity, branch_id=MAIN_BRANCH))
        return

    await overrides_crud.delete_branch_overrides(session, story_id=story_id, branch_id=branch_id, kind=kind.value)
    trunk_result = await session.execute(
        select(table).where(table.c.story_id == story_id, table.c.branch_id == MAIN_BRANCH)
    )
    trunk = {str(row._mapping["id"]): _row_to_entity(kind, row._mapping) for row in trunk_result.all()}

    wanted: set[str] = set()
    for entity in entities:
        wanted.add(entity.id)
        base = trunk.get(entity.id)
        if base is None:
            await insert_entity(session, kind, replace(entity, branch_id=branch_id))
            continue
        payload = entity_payload(entity)
        if payload != entity_payload(base):
            await overrides_crud.upsert_override(
                session,
                story_id=story_id,
                branch_id=branch_id,
                kind=kind.value,
                entity_id=entity.id,
                payload=payload,
            )

    for trunk_id in trunk:
        if trunk_id not in wanted:
            await overrides_crud.upsert_override(
                session,
                story_id=story_id,
                branch_id=branch_id,
                kind=kind.value,
                entity_id=trunk_id,
                payload={},
                deleted=True,
            )
