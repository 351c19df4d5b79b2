from __future__ import annotations

import asyncio
from pathlib import Path

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from storyloom.domain.models import Character, EntityKind, Item, Location, StoryBeat
from storyloom.storage.base import Base, import_all_models
from storyloom.storage.repo import SQLAlchemyRepo

BRANCH = "alt-1"


async def _build_test_db(tmp_path: Path):
    db_path = tmp_path / "branch_overrides_test.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path.as_posix()}", future=True)
    import_all_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine


async def _seed(repo: SQLAlchemyRepo) -> int:
    story_id = (await repo.create_story("Branches")).id
    await repo.add_character(Character(id="c-mara", story_id=story_id, name="Mara", traits=["wary"]))
    await repo.add_item(Item(id="i-rope", story_id=story_id, name="Rope"))
    await repo.add_location(Location(id="l-gate", story_id=story_id, name="Gate", current=True))
    await repo.add_location(Location(id="l-harbor", story_id=story_id, name="Harbor"))
    return story_id


def test_branch_writes_never_touch_trunk_rows(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await _build_test_db(tmp_path)
        session_maker = async_sessionmaker(engine, expire_on_commit=False)
        try:
            async with session_maker() as session:
                repo = SQLAlchemyRepo(session)
                story_id = await _seed(repo)

                assert await repo.update_character("c-mara", {"status": "deceased", "id": "hijack"}, BRANCH)
                assert await repo.delete_item("i-rope", BRANCH)
                await repo.add_character(Character(id="c-bo", story_id=story_id, name="Bo", branch_id=BRANCH))

                trunk = await repo.load_world_view(story_id, "main")
                branch = await repo.load_world_view(story_id, BRANCH)

                assert [(c.id, c.status) for c in trunk.characters] == [("c-mara", "active")]
                assert [item.id for item in trunk.items] == ["i-rope"]
                assert sorted((c.id, c.status) for c in branch.characters) == [("c-bo", "active"), ("c-mara", "deceased")]
                assert branch.items == []

                mara = await repo.get_entity(EntityKind.CHARACTER, "c-mara", BRANCH)
                assert mara is not None and mara.status == "deceased" and mara.traits == ["wary"]
                assert await repo.get_entity(EntityKind.ITEM, "i-rope", BRANCH) is None
                assert await repo.get_entity(EntityKind.CHARACTER, "c-bo", "main") is None

                # A tombstoned entity cannot be updated; unknown ids report missing.
                assert not await repo.update_item("i-rope", {"quantity": 3}, BRANCH)
                assert not await repo.update_character("c-nobody", {"status": "active"}, BRANCH)
                assert not await repo.delete_character("c-nobody", BRANCH)

                overrides = await repo.list_branch_overrides(story_id, BRANCH)
                assert sorted((row.entity_id, row.deleted) for row in overrides) == [("c-mara", False), ("i-rope", True)]
        finally:
            await engine.dispose()

    asyncio.run(_run())


def test_branch_current_location_and_noop_cleanup(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await _build_test_db(tmp_path)
        session_maker = async_sessionmaker(engine, expire_on_commit=False)
        try:
            async with session_maker() as session:
                repo = SQLAlchemyRepo(session)
                story_id = await _seed(repo)

                await repo.set_current_location(story_id, BRANCH, "l-harbor")
                assert (await repo.load_world_view(story_id, BRANCH)).current_location_id == "l-harbor"
                assert (await repo.load_world_view(story_id, "main")).current_location_id == "l-gate"

                await repo.set_current_location(story_id, BRANCH, None)
                assert (await repo.load_world_view(story_id, BRANCH)).current_location_id is None

                # Putting the trunk values back turns both overrides into no-ops.
                await repo.update_location("l-gate", {"current": True}, BRANCH)
                await repo.update_character("c-mara", {"status": "inactive"}, BRANCH)
                await repo.update_character("c-mara", {"status": "active"}, BRANCH)

                assert await repo.cleanup_noop_overrides(story_id, BRANCH) == 3
                assert await repo.list_branch_overrides(story_id, BRANCH) == []
                assert (await repo.load_world_view(story_id, BRANCH)).current_location_id == "l-gate"
        finally:
            await engine.dispose()

    asyncio.run(_run())


def test_deleting_branch_owned_entity_removes_the_row(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await _build_test_db(tmp_path)
        session_maker = async_sessionmaker(engine, expire_on_commit=False)
        try:
            async with session_maker() as session:
                repo = SQLAlchemyRepo(session)
                story_id = await _seed(repo)
                await repo.add_item(Item(id="i-lamp", story_id=story_id, name="Lamp", branch_id=BRANCH))

                assert await repo.update_item("i-lamp", {"equipped": True}, BRANCH)
                assert (await repo.get_entity(EntityKind.ITEM, "i-lamp", BRANCH)).equipped is True
                assert await repo.delete_item("i-lamp", BRANCH)
                assert not await repo.delete_item("i-lamp", BRANCH)
                assert await repo.list_branch_overrides(story_id, BRANCH) == []
        finally:
            await engine.dispose()

    asyncio.run(_run())


def test_typed_wrappers_on_branch_for_beats_and_locations(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await _build_test_db(tmp_path)
        session_maker = async_sessionmaker(engine, expire_on_commit=False)
        try:
            async with session_maker() as session:
                repo = SQLAlchemyRepo(session)
                story_id = await _seed(repo)
                await repo.add_story_beat(StoryBeat(id="b-key", story_id=story_id, title="Find the key", type="quest"))

                assert await repo.update_story_beat("b-key", {"status": "completed", "resolved_at": "2"}, BRANCH)
                assert await repo.delete_location("l-harbor", BRANCH)

                branch = await repo.load_world_view(story_id, BRANCH)
                trunk = await repo.load_world_view(story_id, "main")
                assert [(beat.status, beat.resolved_at) for beat in branch.story_beats] == [("completed", "2")]
                assert [(beat.status, beat.resolved_at) for beat in trunk.story_beats] == [("active", None)]
                assert [location.id for location in branch.locations] == ["l-gate"]
                assert sorted(location.id for location in trunk.locations) == ["l-gate", "l-harbor"]

                assert await repo.delete_story_beat("b-key", "main")
                assert await repo.list_story_beats(story_id, "main") == []
        finally:
            await engine.dispose()

    asyncio.run(_run())
