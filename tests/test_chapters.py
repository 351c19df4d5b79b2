from __future__ import annotations

import asyncio
from pathlib import Path

import orjson
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from storyloom.chapters.service import ChapterService, parse_chapter_summary
from storyloom.config.schema import ChaptersConfig
from storyloom.domain.models import StoryEntry
from storyloom.events.bus import EventBus
from storyloom.events.types import ChapterCreated, EventType
from storyloom.llm.factory import LLMResponse
from storyloom.storage.base import Base, import_all_models
from storyloom.storage.repo import SQLAlchemyRepo
from storyloom.world_state.rollback import delete_entries_from
from storyloom.world_state.snapshots import capture_story_snapshot, restore_story_snapshot


async def _build_test_db(tmp_path: Path):
    db_path = tmp_path / "chapters_test.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path.as_posix()}", future=True)
    import_all_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine


class _SummaryClient:
    """Answers with canned summaries and keeps every user prompt."""

    def __init__(self, summaries: list[dict] | None = None, error: Exception | None = None) -> None:
        self.summaries = list(summaries or [])
        self.error = error
        self.prompts: list[str] = []

    async def complete_json_async(self, system_prompt, user_prompt, parser, *, context=None):
        self.prompts.append(user_prompt)
        if self.error is not None:
            raise self.error
        text = orjson.dumps(self.summaries.pop(0)).decode("utf-8")
        return LLMResponse(text=text), parser(text)


async def _seed(repo: SQLAlchemyRepo, count: int) -> int:
    story_id = (await repo.create_story("Chapters")).id
    for position in range(count):
        await repo.add_story_entry(
            StoryEntry(
                id=f"e{position}",
                story_id=story_id,
                position=position,
                type="user_action" if position % 2 == 0 else "narration",
                content=f"beat {position}",
            )
        )
    return story_id


def test_parse_chapter_summary_requires_summary_text() -> None:
    parsed = parse_chapter_summary(
        '```json\n{"title": " ", "summary": " Bo rows out. ", "keywords": ["ferry", 3, ""], "characters": "Bo"}\n```'
    )

    assert parsed.title is None
    assert parsed.summary == "Bo rows out."
    assert parsed.keywords == ["ferry"]
    assert parsed.characters == []

    with pytest.raises(ValueError):
        parse_chapter_summary('{"title": "Empty", "summary": ""}')


def test_create_chapters_in_sequence(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await _build_test_db(tmp_path)
        session_maker = async_sessionmaker(engine, expire_on_commit=False)
        bus = EventBus()
        client = _SummaryClient(
            [
                {"title": "Arrival", "summary": "The ferry docks.", "keywords": ["ferry"], "characters": ["Bo"]},
                {"title": "Storm", "summary": "Rain floods the pier.", "locations": ["Pier"]},
            ]
        )
        service = ChapterService(client, bus, ChaptersConfig(previous_chapters=1))
        try:
            async with session_maker() as session:
                repo = SQLAlchemyRepo(session)
                story_id = await _seed(repo, 6)

                first = await service.create_chapter(repo, story_id, "main", 0, 3)
                second = await service.create_chapter(repo, story_id, "main", 4, 10)

                assert (first.number, first.start_position, first.end_position, first.entry_count) == (1, 0, 3, 4)
                assert first.title == "Arrival" and first.characters == ["Bo"]
                assert (second.number, second.start_position, second.end_position, second.entry_count) == (2, 4, 5, 2)

                assert "[narration]: beat 3" in client.prompts[0]
                assert "beat 4" not in client.prompts[0]
                assert "Previous chapters" not in client.prompts[0]
                assert "Chapter 1: The ferry docks." in client.prompts[1]

                stored = await repo.list_chapters(story_id, "main")
                assert [(chapter.number, chapter.summary) for chapter in stored] == [
                    (1, "The ferry docks."),
                    (2, "Rain floods the pier."),
                ]
                assert stored[1].locations == ["Pier"]
                assert await repo.list_chapters(story_id, "side") == []
        finally:
            await engine.dispose()

        events = bus.get_events_by_type(EventType.CHAPTER_CREATED)
        assert all(isinstance(event, ChapterCreated) for event in events)
        assert [(event.story_id, event.chapter_number) for event in events] == [(story_id, 1), (story_id, 2)]

    asyncio.run(_run())


def test_create_chapter_rejects_bad_ranges_and_writes_nothing_on_failure(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await _build_test_db(tmp_path)
        session_maker = async_sessionmaker(engine, expire_on_commit=False)
        bus = EventBus()
        try:
            async with session_maker() as session:
                repo = SQLAlchemyRepo(session)
                story_id = await _seed(repo, 4)
                ok = ChapterService(_SummaryClient([{"summary": "First."}]), bus, ChaptersConfig())
                await ok.create_chapter(repo, story_id, "main", 0, 1)

                with pytest.raises(ValueError, match="overlaps chapter 1"):
                    await ok.create_chapter(repo, story_id, "main", 1, 3)
                with pytest.raises(ValueError, match="invalid chapter range"):
                    await ok.create_chapter(repo, story_id, "main", 3, 2)
                with pytest.raises(ValueError, match="no story entries"):
                    await ok.create_chapter(repo, story_id, "main", 10, 12)

                failing = ChapterService(
                    _SummaryClient(error=RuntimeError("LLM call failed after retries")), bus, ChaptersConfig()
                )
                with pytest.raises(RuntimeError):
                    await failing.create_chapter(repo, story_id, "main", 2, 3)

                assert [chapter.number for chapter in await repo.list_chapters(story_id, "main")] == [1]
                assert len(bus.get_events_by_type(EventType.CHAPTER_CREATED)) == 1
        finally:
            await engine.dispose()

    asyncio.run(_run())


def test_chapters_survive_backup_restore_but_not_entry_deletion(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await _build_test_db(tmp_path)
        session_maker = async_sessionmaker(engine, expire_on_commit=False)
        service = ChapterService(_SummaryClient([{"summary": "One."}, {"summary": "Two."}]), EventBus(), ChaptersConfig())
        try:
            async with session_maker() as session:
                repo = SQLAlchemyRepo(session)
                story_id = await _seed(repo, 6)
                backup = await capture_story_snapshot(repo, story_id, "main")

                await service.create_chapter(repo, story_id, "main", 0, 2)
                await service.create_chapter(repo, story_id, "main", 3, 5)

                await restore_story_snapshot(repo, backup)
                assert [chapter.number for chapter in await repo.list_chapters(story_id, "main")] == [1, 2]

                _, deleted = await delete_entries_from(repo, story_id, "main", 4)
                assert deleted == 2
                assert [chapter.number for chapter in await repo.list_chapters(story_id, "main")] == [1]
                assert await repo.get_next_chapter_number(story_id, "main") == 2
        finally:
            await engine.dispose()

    asyncio.run(_run())
