from __future__ import annotations

import asyncio
from pathlib import Path
import random
from typing import Any

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from storyloom.domain.delta import WorldStateDelta
from storyloom.domain.models import (
    Character,
    EntityKind,
    Item,
    Location,
    StoryBeat,
    StoryEntry,
    TimeTracker,
    WorldView,
    entity_label,
    entity_to_dict,
)
from storyloom.storage.base import Base, import_all_models
from storyloom.storage.repo import SQLAlchemyRepo
from storyloom.world_state.apply import ClassificationApplier
from storyloom.world_state.classifier import ClassificationResult
from storyloom.world_state.delta import DeltaBuilder
from storyloom.world_state.rollback import RollbackEngine

FIXED_CLOCK = "2026-01-01T00:00:00+00:00"


async def _build_test_db(tmp_path: Path):
    db_path = tmp_path / "world_state_delta_test.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path.as_posix()}", future=True)
    import_all_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine


def _world() -> WorldView:
    return WorldView(
        characters=[Character(id="c-mara", story_id=1, name="Mara", traits=["wary", "quick"])],
        locations=[
            Location(id="l-gate", story_id=1, name="North Gate", visited=True, current=True),
            Location(id="l-harbor", story_id=1, name="Harbor", description="Wet stones."),
        ],
        items=[Item(id="i-rope", story_id=1, name="Rope")],
        story_beats=[StoryBeat(id="b-key", story_id=1, title="Find the key")],
        time_tracker=TimeTracker(hours=23, minutes=45),
    )


def _builder() -> DeltaBuilder:
    return DeltaBuilder(1, "main", clock=lambda: FIXED_CLOCK)


def test_build_records_previous_state_for_every_change() -> None:
    world = _world()
    result = ClassificationResult.model_validate(
        {
            "entry_updates": {
                "character_updates": [
                    {"name": "mara", "changes": {"status": "inactive", "new_traits": ["Wary", "tired"], "remove_traits": ["quick"]}},
                    {"name": "Nobody", "changes": {"status": "deceased"}},
                ],
                "location_updates": [{"name": "Harbor", "changes": {"description_addition": "Gulls cry."}}],
                "item_updates": [{"name": "Rope", "changes": {"quantity": 0, "equipped": True}}],
                "story_beat_updates": [{"title": "find the key", "changes": {"status": "completed"}}],
            },
            "scene": {"current_location_name": "Harbor", "time_progression": "minutes"},
        }
    )

    plan, delta = _builder().build(result, world)

    changes = {(change.kind, change.entity_id): change.changes for change in plan.updates}
    assert changes[(EntityKind.CHARACTER, "c-mara")] == {"status": "inactive", "traits": ["wary", "tired"]}
    assert changes[(EntityKind.LOCATION, "l-harbor")] == {
        "description": "Wet stones. Gulls cry.",
        "visited": True,
        "current": True,
    }
    assert changes[(EntityKind.LOCATION, "l-gate")] == {"current": False}
    assert changes[(EntityKind.ITEM, "i-rope")] == {"quantity": 0, "equipped": True}
    assert changes[(EntityKind.STORY_BEAT, "b-key")] == {"status": "completed", "resolved_at": FIXED_CLOCK}
    assert plan.current_location_id == "l-harbor"
    assert plan.time_changed is True
    assert plan.time_tracker == TimeTracker(days=1, hours=0, minutes=15)

    previous = delta.previous_state
    assert previous.current_location_id == "l-gate"
    assert previous.time_tracker == TimeTracker(hours=23, minutes=45)
    assert previous.total() == len(plan.updates)
    mara = previous.snapshots_for(EntityKind.CHARACTER)[0]
    assert mara.values["traits"] == ["wary", "quick"]
    assert mara.values["status"] == "active"
    assert delta.created_entities.total() == 0

    # The input world is never mutated.
    assert world.characters[0].status == "active"
    assert world.current_location_id == "l-gate"


def test_build_creates_new_entities_once_and_skips_known_names() -> None:
    result = ClassificationResult.model_validate(
        {
            "entry_updates": {
                "new_characters": [{"name": "Bo", "status": "bogus"}, {"name": "MARA"}, {"name": "bo"}],
                "new_locations": [{"name": "Cave", "current": True}],
                "new_items": [{"name": "Lamp", "equipped": True, "location": ""}],
                "new_story_beats": [{"title": "Escape", "status": "failed"}],
            },
        }
    )

    plan, delta = _builder().build(result, _world())

    created = {kind: [entity_label(entity) for k, entity in plan.creations if k == kind] for kind in EntityKind}
    assert created[EntityKind.CHARACTER] == ["Bo"]
    assert created[EntityKind.LOCATION] == ["Cave"]
    assert created[EntityKind.ITEM] == ["Lamp"]
    assert created[EntityKind.STORY_BEAT] == ["Escape"]

    by_kind = {kind: entity for kind, entity in plan.creations}
    assert by_kind[EntityKind.CHARACTER].status == "active"
    assert by_kind[EntityKind.CHARACTER].metadata == {"source": "classifier"}
    assert by_kind[EntityKind.LOCATION].current is True
    assert by_kind[EntityKind.LOCATION].visited is False
    assert by_kind[EntityKind.ITEM].equipped is True
    assert by_kind[EntityKind.ITEM].location == "inventory"
    assert by_kind[EntityKind.STORY_BEAT].resolved_at == FIXED_CLOCK

    assert plan.current_location_id == by_kind[EntityKind.LOCATION].id
    assert [change.entity_id for change in plan.updates] == ["l-gate"]
    assert delta.created_entities.total() == 4
    assert plan.time_changed is False
    assert plan.time_tracker == TimeTracker(hours=23, minutes=45)


def test_delta_serialization_is_stable() -> None:
    result = ClassificationResult.model_validate(
        {"entry_updates": {"item_updates": [{"name": "Rope", "changes": {"location": "harbor"}}]}}
    )
    _, delta = _builder().build(result, _world())

    restored = WorldStateDelta.from_dict(delta.to_dict())

    assert restored == delta


def test_apply_plan_writes_changes_and_reports_failures(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await _build_test_db(tmp_path)
        session_maker = async_sessionmaker(engine, expire_on_commit=False)
        try:
            async with session_maker() as session:
                repo = SQLAlchemyRepo(session)
                story_id = (await repo.create_story("Apply")).id
                world = _world()
                for kind in EntityKind:
                    for entity in world.entities(kind):
                        entity.story_id = story_id
                        await repo.add_entity(kind, entity)
                await repo.save_time_tracker(story_id, "main", world.time_tracker)

                result = ClassificationResult.model_validate(
                    {
                        "entry_updates": {
                            "character_updates": [{"name": "Mara", "changes": {"status": "deceased"}}],
                            "new_items": [{"name": "Lamp"}],
                        },
                        "scene": {"current_location_name": "Harbor", "time_progression": "days"},
                    }
                )
                applier = ClassificationApplier(repo)
                delta, report = await applier.apply_result(
                    result, story_id=story_id, branch_id="main", builder=DeltaBuilder(story_id, "main")
                )

                assert report.ok
                assert report.created == 1
                assert report.updated == 3
                assert report.time_advanced is True
                view = await repo.load_world_view(story_id, "main")
                assert view.characters[0].status == "deceased"
                assert view.current_location_id == "l-harbor"
                assert sorted(item.name for item in view.items) == ["Lamp", "Rope"]
                assert view.time_tracker == TimeTracker(days=1, hours=23, minutes=45)
                assert delta.created_entities.item_ids

                # Updating an entity that vanished counts as a failure, not an exception.
                await repo.delete_character("c-mara", "main")
                plan, _ = DeltaBuilder(story_id, "main").build(
                    ClassificationResult.model_validate(
                        {"entry_updates": {"character_updates": [{"name": "Mara", "changes": {"status": "active"}}]}}
                    ),
                    view,
                )
                report = await applier.apply_plan(plan, story_id=story_id, branch_id="main")
                assert not report.ok
                assert report.failures == ["update character c-mara: not found"]
        finally:
            await engine.dispose()

    asyncio.run(_run())


_CHARACTER_NAMES = ["Mara", "Bo", "Ilse", "Tam"]
_LOCATION_NAMES = ["North Gate", "Harbor", "Cave", "Tower"]
_ITEM_NAMES = ["Rope", "Key", "Lamp"]
_BEAT_TITLES = ["Find the key", "Escape", "Warn the guild"]


def _random_result(rng: random.Random) -> dict[str, Any]:
    def _some(names: list[str]) -> list[str]:
        return rng.sample(names, rng.randint(0, 2))

    return {
        "entry_updates": {
            "character_updates": [
                {
                    "name": name,
                    "changes": {
                        "status": rng.choice(["active", "inactive", "deceased", None]),
                        "relationship": rng.choice(["ally", "rival", None]),
                        "new_traits": _some(["bold", "tired", "wary"]),
                        "remove_traits": _some(["wary", "quick"]),
                    },
                }
                for name in _some(_CHARACTER_NAMES)
            ],
            "location_updates": [
                {
                    "name": name,
                    "changes": {
                        "visited": rng.choice([True, False, None]),
                        "current": rng.choice([True, None]),
                        "description_addition": rng.choice(["Smoke rises.", None]),
                    },
                }
                for name in _some(_LOCATION_NAMES)
            ],
            "item_updates": [
                {"name": name, "changes": {"quantity": rng.randint(0, 3), "equipped": rng.choice([True, False])}}
                for name in _some(_ITEM_NAMES)
            ],
            "story_beat_updates": [
                {"title": title, "changes": {"status": rng.choice(["completed", "failed", "pending"])}}
                for title in _some(_BEAT_TITLES)
            ],
            "new_characters": [{"name": name} for name in _some(_CHARACTER_NAMES)],
            "new_locations": [{"name": name, "current": rng.random() < 0.3} for name in _some(_LOCATION_NAMES)],
            "new_items": [{"name": name} for name in _some(_ITEM_NAMES)],
            "new_story_beats": [{"title": title} for title in _some(_BEAT_TITLES)],
        },
        "scene": {
            "current_location_name": rng.choice(_LOCATION_NAMES + [None]),
            "time_progression": rng.choice(["none", "minutes", "hours", "days"]),
        },
    }


async def _world_state(repo: SQLAlchemyRepo, story_id: int) -> dict[str, Any]:
    view = await repo.load_world_view(story_id, "main")
    return {
        kind.value: sorted((entity_to_dict(entity) for entity in view.entities(kind)), key=lambda item: item["id"])
        for kind in EntityKind
    } | {"time": view.time_tracker, "current": view.current_location_id}


def test_random_turns_roll_back_to_the_exact_starting_world(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await _build_test_db(tmp_path)
        session_maker = async_sessionmaker(engine, expire_on_commit=False)
        rng = random.Random(1234)
        try:
            async with session_maker() as session:
                repo = SQLAlchemyRepo(session)
                story_id = (await repo.create_story("Random")).id
                world = _world()
                for kind in EntityKind:
                    for entity in world.entities(kind):
                        entity.story_id = story_id
                        await repo.add_entity(kind, entity)
                await repo.save_time_tracker(story_id, "main", world.time_tracker)
                start = await _world_state(repo, story_id)

                applier = ClassificationApplier(repo)
                checkpoints: list[dict[str, Any]] = []
                for position in range(12):
                    checkpoints.append(await _world_state(repo, story_id))
                    result = ClassificationResult.model_validate(_random_result(rng))
                    delta, report = await applier.apply_result(result, story_id=story_id, branch_id="main")
                    assert report.ok, report.failures
                    await repo.add_story_entry(
                        StoryEntry(
                            id=f"e{position}",
                            story_id=story_id,
                            position=position,
                            type="narration",
                            content=f"turn {position}",
                            world_state_delta=delta,
                        )
                    )

                summary = await RollbackEngine(repo).rollback(story_id, "main", 6)
                assert summary.ok, summary.errors
                assert await _world_state(repo, story_id) == checkpoints[6]

                summary = await RollbackEngine(repo).rollback(story_id, "main", 0)
                assert summary.ok, summary.errors
                assert await _world_state(repo, story_id) == start
        finally:
            await engine.dispose()

    asyncio.run(_run())
