from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from storyloom.domain.models import Character, Item, Location, LorebookEntry, StoryEntry, TimeTracker
from storyloom.events.bus import EventBus
from storyloom.events.types import CheckpointCreated, CheckpointRestored, EventType
from storyloom.storage.base import Base, import_all_models
from storyloom.storage.repo import SQLAlchemyRepo
from storyloom.storage.world_state.checkpoints import StoryCheckpoint
from storyloom.world_state.snapshots import CheckpointError, CheckpointService, StoryBackup, capture_story_snapshot


async def _build_test_db(tmp_path: Path):
    db_path = tmp_path / "world_state_checkpoints_test.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path.as_posix()}", future=True)
    import_all_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine


async def _seed_story(repo: SQLAlchemyRepo) -> int:
    story = await repo.create_story("The Salt Road")
    story_id = story.id
    await repo.add_character(Character(id="c-mara", story_id=story_id, name="Mara", traits=["wary"]))
    await repo.add_location(Location(id="l-gate", story_id=story_id, name="North Gate", visited=True, current=True))
    await repo.add_item(Item(id="i-key", story_id=story_id, name="Brass Key"))
    await repo.add_story_entry(StoryEntry(id="e0", story_id=story_id, position=0, type="user_action", content="I knock."))
    await repo.add_story_entry(
        StoryEntry(id="e1", story_id=story_id, position=1, type="narration", content="The gate opens.")
    )
    await repo.add_lorebook_entries([LorebookEntry(id="lb-1", story_id=story_id, name="Salt Guild", type="faction")])
    await repo.save_time_tracker(story_id, "main", TimeTracker(days=1, hours=8))
    await repo.save_activation_data(story_id, "main", {"lb-1": 1})
    return story_id


def test_checkpoint_restore_clears_and_rebuilds_story(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await _build_test_db(tmp_path)
        session_maker = async_sessionmaker(engine, expire_on_commit=False)
        bus = EventBus()

        try:
            async with session_maker() as session:
                repo = SQLAlchemyRepo(session)
                story_id = await _seed_story(repo)
                service = CheckpointService(repo, bus=bus)

                checkpoint_id = await service.create(story_id, "main", "before the storm")

                # Mutate every collection after the checkpoint.
                await repo.update_character("c-mara", {"status": "deceased", "traits": []}, "main")
                await repo.delete_item("i-key", "main")
                await repo.add_location(Location(id="l-cave", story_id=story_id, name="Cave"))
                await repo.set_current_location(story_id, "main", "l-cave")
                await repo.add_story_entry(
                    StoryEntry(id="e2", story_id=story_id, position=2, type="user_action", content="I run.")
                )
                await repo.delete_lorebook_entry("lb-1")
                await repo.save_time_tracker(story_id, "main", TimeTracker(days=9))
                await repo.save_activation_data(story_id, "main", {})

                backup = await service.restore(checkpoint_id)
                assert backup.last_position == 1

                world = await repo.load_world_view(story_id, "main")
                assert [(c.name, c.status, c.traits) for c in world.characters] == [("Mara", "active", ["wary"])]
                assert [item.name for item in world.items] == ["Brass Key"]
                assert [location.id for location in world.locations] == ["l-gate"]
                assert world.current_location_id == "l-gate"
                assert world.time_tracker == TimeTracker(days=1, hours=8)

                entries = await repo.list_story_entries(story_id, "main")
                assert [entry.id for entry in entries] == ["e0", "e1"]
                assert [entry.name for entry in await repo.list_lorebook_entries(story_id, "main")] == ["Salt Guild"]
                assert await repo.get_activation_data(story_id, "main") == {"lb-1": 1}

                checkpoints = await service.list(story_id)
                assert [(row.name, row.last_position) for row in checkpoints] == [("before the storm", 1)]
                await session.commit()
        finally:
            await engine.dispose()

        created = bus.get_events_by_type(EventType.CHECKPOINT_CREATED)
        assert isinstance(created[0], CheckpointCreated)
        assert created[0].name == "before the storm"
        assert isinstance(bus.get_events_by_type(EventType.CHECKPOINT_RESTORED)[0], CheckpointRestored)

    asyncio.run(_run())


def test_checkpoint_restore_rejects_tampered_payload(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await _build_test_db(tmp_path)
        session_maker = async_sessionmaker(engine, expire_on_commit=False)

        try:
            async with session_maker() as session:
                repo = SQLAlchemyRepo(session)
                story_id = await _seed_story(repo)
                service = CheckpointService(repo)
                checkpoint_id = await service.create(story_id, "main", "cp")

                await session.execute(
                    update(StoryCheckpoint)
                    .where(StoryCheckpoint.id == checkpoint_id)
                    .values(snapshot_hash="0" * 64)
                )

                with pytest.raises(CheckpointError, match="integrity"):
                    await service.restore(checkpoint_id)
                with pytest.raises(CheckpointError, match="not found"):
                    await service.restore(checkpoint_id + 100)
        finally:
            await engine.dispose()

    asyncio.run(_run())


def test_story_backup_json_preserves_collections(tmp_path: Path) -> None:
    async def _run() -> StoryBackup:
        engine = await _build_test_db(tmp_path)
        session_maker = async_sessionmaker(engine, expire_on_commit=False)
        try:
            async with session_maker() as session:
                repo = SQLAlchemyRepo(session)
                story_id = await _seed_story(repo)
                return await capture_story_snapshot(repo, story_id, "main")
        finally:
            await engine.dispose()

    backup = asyncio.run(_run())
    restored = StoryBackup.from_json(backup.to_json())

    assert restored.characters == backup.characters
    assert restored.lorebook_entries == backup.lorebook_entries
    assert [entry.content for entry in restored.entries] == ["I knock.", "The gate opens."]
    assert restored.time_tracker == TimeTracker(days=1, hours=8)
