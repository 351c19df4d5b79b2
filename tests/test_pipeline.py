from __future__ import annotations

import asyncio
from pathlib import Path

import orjson
import pytest

from storyloom.config.schema import (
    AppConfigRoot,
    ImageConfig,
    NarrativeConfig,
    SnapshotConfig,
    SuggestionsConfig,
    TranslationConfig,
)
from storyloom.events.bus import EventBus
from storyloom.events.types import EventType
from storyloom.llm.factory import LLMResponse
from storyloom.llm.images import ImageResult
from storyloom.pipeline.abort import AbortSignal
from storyloom.pipeline.context import AppContext
from storyloom.pipeline.errors import PipelineError
from storyloom.pipeline.orchestrator import PipelineOrchestrator
from storyloom.pipeline.types import (
    CLASSIFICATION,
    IMAGE,
    NARRATIVE,
    PHASES,
    POST_GENERATION,
    PRE_GENERATION,
    TRANSLATION,
    NarrativeChunk,
    PhaseCompleted,
    PhaseError,
    PhaseStarted,
    SkipReason,
    TurnAborted,
    TurnInput,
)
from storyloom.storage.db import DatabaseService
from storyloom.storage.repo import SQLAlchemyRepo
from storyloom.world_state.rollback import RollbackEngine

_CLASSIFICATION = orjson.dumps(
    {
        "entry_updates": {"new_characters": [{"name": "Bo", "description": "A ferryman."}]},
        "scene": {"present_character_names": ["Bo"], "time_progression": "minutes"},
    }
).decode("utf-8")


class _FakeChatClient:
    """Replays canned texts; streaming splits each text on spaces."""

    def __init__(self, texts: list[str] | None = None, json_text: str = "{}", error: Exception | None = None) -> None:
        self.texts = list(texts or [])
        self.json_text = json_text
        self.error = error
        self.calls = 0
        self.on_chunk = None

    def _next_text(self) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.texts.pop(0) if self.texts else ""

    async def complete_async(self, system_prompt, user_prompt, *, context=None):
        return LLMResponse(text=self._next_text(), usage={"total_tokens": 9})

    async def complete_json_async(self, system_prompt, user_prompt, parser, *, context=None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return LLMResponse(text=self.json_text), parser(self.json_text)

    async def stream_async(self, system_prompt, user_prompt, *, context=None):
        text = self._next_text()
        for word in text.split(" "):
            if self.on_chunk is not None:
                self.on_chunk()
            await asyncio.sleep(0)
            yield word + " "


class _FakeImageClient:
    def __init__(self) -> None:
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> ImageResult:
        self.prompts.append(prompt)
        return ImageResult(url="https://images.example/scene.png")


async def _build_context(tmp_path: Path, config: AppConfigRoot | None = None, **clients) -> tuple[AppContext, int]:
    db = DatabaseService(f"sqlite+aiosqlite:///{(tmp_path / 'pipeline_test.db').as_posix()}")
    await db.init_models()
    async with db.transaction() as session:
        story_id = (await SQLAlchemyRepo(session).create_story("Harbor Nights")).id
    clients.setdefault("narrative_client", _FakeChatClient(texts=["The tide turns. Bo waves from the ferry."]))
    clients.setdefault("classifier_client", _FakeChatClient(json_text=_CLASSIFICATION))
    ctx = AppContext(config=config or AppConfigRoot(), db=db, bus=EventBus(history_size=200), **clients)
    return ctx, story_id


async def _collect(ctx: AppContext, turn: TurnInput):
    execution = PipelineOrchestrator(ctx).execute(turn)
    events = [event async for event in execution]
    return execution.result, events


def test_successful_turn_streams_and_persists(tmp_path: Path) -> None:
    async def _run() -> None:
        config = AppConfigRoot(snapshots=SnapshotConfig(interval=1))
        ctx, story_id = await _build_context(tmp_path, config)
        try:
            result, events = await _collect(ctx, TurnInput(story_id=story_id, user_input="I hail the ferry."))

            assert result.ok
            started = [event.phase for event in events if isinstance(event, PhaseStarted)]
            assert started == list(PHASES)
            chunks = [event for event in events if isinstance(event, NarrativeChunk)]
            assert "".join(chunk.chunk for chunk in chunks).strip() == "The tide turns. Bo waves from the ferry."
            assert chunks[-1].accumulated_chars == len("".join(chunk.chunk for chunk in chunks))

            assert result.narrative.streamed
            assert result.narrative.content == "The tide turns. Bo waves from the ferry."
            assert result.classification.plan.created_count() == 1
            assert result.post_generation.apply_report.created == 1
            assert result.translation.skipped_reason == SkipReason.DISABLED
            assert result.image.skipped_reason == SkipReason.DISABLED
            assert result.post_generation.position == 1
            assert result.post_generation.snapshot_saved
            assert result.post_generation.suggestions_skipped_reason == SkipReason.DISABLED

            async with ctx.db.transaction() as session:
                repo = SQLAlchemyRepo(session)
                entries = await repo.list_story_entries(story_id, "main")
                world = await repo.load_world_view(story_id, "main")
                snapshots = await repo.list_snapshots(story_id, "main")

            assert [(entry.position, entry.type) for entry in entries] == [(0, "user_action"), (1, "narration")]
            assert entries[1].world_state_delta is not None
            assert [character.name for character in world.characters] == ["Bo"]
            assert [row.position for row in snapshots] == [1]

            sentences = [event.sentence for event in ctx.bus.get_events_by_type(EventType.SENTENCE_COMPLETE)]
            assert sentences == ["The tide turns.", "Bo waves from the ferry."]
            assert len(ctx.bus.get_events_by_type(EventType.SAVE_COMPLETE)) == 1
            assert len(ctx.bus.get_events_by_type(EventType.STATE_UPDATED)) == 1

            second, _ = await _collect(ctx, TurnInput(story_id=story_id, user_input="I board."))
            assert second.pre_generation.position == 2
            assert second.post_generation.position == 3
        finally:
            await ctx.db.dispose()

    asyncio.run(_run())


def test_empty_narrative_is_retried(tmp_path: Path) -> None:
    async def _run() -> None:
        config = AppConfigRoot(narrative=NarrativeConfig(streaming=False, max_empty_attempts=3))
        narrative = _FakeChatClient(texts=["", "   ", "Fog rolls in."])
        ctx, story_id = await _build_context(tmp_path, config, narrative_client=narrative)
        try:
            result = await PipelineOrchestrator(ctx).run(TurnInput(story_id=story_id, user_input="Wait."))

            assert result.ok
            assert result.narrative.attempts == 3
            assert result.narrative.usage == {"total_tokens": 9}
            assert narrative.calls == 3
        finally:
            await ctx.db.dispose()

    asyncio.run(_run())


def test_fatal_narrative_failure_stops_the_turn(tmp_path: Path) -> None:
    async def _run() -> None:
        config = AppConfigRoot(narrative=NarrativeConfig(streaming=False, max_empty_attempts=2))
        narrative = _FakeChatClient(texts=["", ""])
        ctx, story_id = await _build_context(tmp_path, config, narrative_client=narrative)
        orchestrator = PipelineOrchestrator(ctx)
        try:
            execution = orchestrator.execute(TurnInput(story_id=story_id, user_input="Speak."))
            events = [event async for event in execution]
            result = execution.result

            assert not result.ok
            assert result.fatal_phase == NARRATIVE
            assert result.fatal_error == "Narrative response empty after 2 attempts"
            assert PhaseError(phase=NARRATIVE, error=result.fatal_error, fatal=True) in events
            assert [event.phase for event in events if isinstance(event, PhaseStarted)] == [
                PRE_GENERATION,
                "retrieval",
                NARRATIVE,
            ]
            assert result.classification is None and result.post_generation is None

            assert await orchestrator.restore_backup(result)
            async with ctx.db.transaction() as session:
                assert await SQLAlchemyRepo(session).list_story_entries(story_id, "main") == []
        finally:
            await ctx.db.dispose()

    asyncio.run(_run())


def test_classification_failure_is_not_fatal(tmp_path: Path) -> None:
    async def _run() -> None:
        classifier = _FakeChatClient(error=RuntimeError("LLM call failed after retries"))
        ctx, story_id = await _build_context(tmp_path, classifier_client=classifier)
        try:
            result, events = await _collect(ctx, TurnInput(story_id=story_id, user_input="Look around."))

            assert result.ok
            assert result.classification.error == "LLM call failed after retries"
            assert result.classification.delta is None
            assert PhaseError(phase=CLASSIFICATION, error="LLM call failed after retries", fatal=False) in events
            assert PhaseCompleted(phase=POST_GENERATION) in events

            async with ctx.db.transaction() as session:
                repo = SQLAlchemyRepo(session)
                entries = await repo.list_story_entries(story_id, "main")
                world = await repo.load_world_view(story_id, "main")
            assert entries[-1].world_state_delta is None
            assert world.characters == []
        finally:
            await ctx.db.dispose()

    asyncio.run(_run())


def test_optional_phase_skip_reasons(tmp_path: Path) -> None:
    async def _run() -> None:
        config = AppConfigRoot(
            translation=TranslationConfig(enabled=True),
            image=ImageConfig(enabled=True, mode="inline"),
            suggestions=SuggestionsConfig(enabled=True),
        )
        ctx, story_id = await _build_context(tmp_path, config)
        try:
            result, events = await _collect(ctx, TurnInput(story_id=story_id, user_input="Rest."))

            assert result.translation.skipped_reason == SkipReason.NOT_CONFIGURED
            assert result.image.skipped_reason == SkipReason.INLINE_MODE
            assert result.post_generation.suggestions_skipped_reason == SkipReason.NOT_CONFIGURED
            assert PhaseCompleted(phase=IMAGE, skipped_reason=SkipReason.INLINE_MODE) in events

            config.image.mode = "analyzed"
            again = await PipelineOrchestrator(ctx).run(TurnInput(story_id=story_id, user_input="Rest more."))
            assert again.image.skipped_reason == SkipReason.NOT_CONFIGURED
        finally:
            await ctx.db.dispose()

    asyncio.run(_run())


def test_translation_suggestions_and_background_image(tmp_path: Path) -> None:
    async def _run() -> None:
        config = AppConfigRoot(
            translation=TranslationConfig(enabled=True, target_language="fr"),
            image=ImageConfig(enabled=True),
            suggestions=SuggestionsConfig(enabled=True, count=2),
        )
        config.llm.routes.translation_chat = "classifier_default"
        image_client = _FakeImageClient()
        ctx, story_id = await _build_context(
            tmp_path,
            config,
            translation_client=_FakeChatClient(texts=["  La marée tourne.  "]),
            suggestions_client=_FakeChatClient(json_text='{"suggestions": ["Row", "Swim", "Wait"]}'),
            image_client=image_client,
        )
        try:
            result = await PipelineOrchestrator(ctx).run(TurnInput(story_id=story_id, user_input="Go."))

            assert result.translation.translated_content == "La marée tourne."
            assert result.post_generation.suggestions == ["Row", "Swim"]
            assert result.image.task is not None

            await ctx.wait_background()

            assert (await result.image.task) == ImageResult(url="https://images.example/scene.png")
            assert "Bo" in image_client.prompts[0]
            ready = ctx.bus.get_events_by_type(EventType.IMAGE_READY)
            assert [event.entry_id for event in ready] == [result.post_generation.narration_entry_id]

            async with ctx.db.transaction() as session:
                entries = await SQLAlchemyRepo(session).list_story_entries(story_id, "main")
            assert entries[-1].translated_content == "La marée tourne."
        finally:
            await ctx.db.dispose()

    asyncio.run(_run())


def test_abort_before_start_skips_every_phase(tmp_path: Path) -> None:
    async def _run() -> None:
        ctx, story_id = await _build_context(tmp_path)
        signal = AbortSignal()
        signal.abort("user cancelled")
        try:
            result, events = await _collect(ctx, TurnInput(story_id=story_id, user_input="Go.", signal=signal))

            assert events == [TurnAborted(phase=PRE_GENERATION, reason="user cancelled")]
            assert result.aborted and not result.ok
            assert result.abort_reason == "user cancelled"
            assert result.pre_generation is None
            assert result.retrieval.skipped_reason == SkipReason.ABORTED
            assert result.classification.skipped_reason == SkipReason.ABORTED
            assert result.translation.skipped_reason == SkipReason.ABORTED
            assert result.image.skipped_reason == SkipReason.ABORTED
        finally:
            await ctx.db.dispose()

    asyncio.run(_run())


def test_abort_during_streaming_stops_before_persisting(tmp_path: Path) -> None:
    async def _run() -> None:
        signal = AbortSignal()
        narrative = _FakeChatClient(texts=["one two three four"])
        narrative.on_chunk = lambda: signal.abort("stop")
        ctx, story_id = await _build_context(tmp_path, narrative_client=narrative)
        try:
            result, events = await _collect(ctx, TurnInput(story_id=story_id, user_input="Go.", signal=signal))

            assert result.aborted
            assert events[-1] == TurnAborted(phase=NARRATIVE, reason="stop")
            assert result.narrative is None and result.post_generation is None
            async with ctx.db.transaction() as session:
                assert await SQLAlchemyRepo(session).list_story_entries(story_id, "main") == []
        finally:
            await ctx.db.dispose()

    asyncio.run(_run())


def test_abort_after_classification_leaves_world_untouched(tmp_path: Path) -> None:
    async def _run() -> None:
        signal = AbortSignal()

        class _StoppingTranslator(_FakeChatClient):
            async def complete_async(self, system_prompt, user_prompt, *, context=None):
                signal.abort("user stop")
                return await super().complete_async(system_prompt, user_prompt, context=context)

        config = AppConfigRoot(translation=TranslationConfig(enabled=True, target_language="fr"))
        config.llm.routes.translation_chat = "classifier_default"
        ctx, story_id = await _build_context(
            tmp_path,
            config,
            translation_client=_StoppingTranslator(texts=["La marée tourne."]),
        )
        try:
            async with ctx.db.transaction() as session:
                before = await SQLAlchemyRepo(session).load_world_view(story_id, "main")

            result, events = await _collect(ctx, TurnInput(story_id=story_id, user_input="Go.", signal=signal))

            assert result.aborted
            assert result.classification.delta is not None
            assert isinstance(events[-1], TurnAborted) and events[-1].reason == "user stop"
            assert events[-1].phase in (TRANSLATION, IMAGE)
            assert result.post_generation is None

            async with ctx.db.transaction() as session:
                repo = SQLAlchemyRepo(session)
                assert await repo.list_story_entries(story_id, "main") == []
                world = await repo.load_world_view(story_id, "main")
                summary = await RollbackEngine(repo).rollback(story_id, "main", 0)
            assert world.characters == []
            assert world.time_tracker == before.time_tracker
            assert summary.entries_considered == 0
        finally:
            await ctx.db.dispose()

    asyncio.run(_run())


def test_failed_persistence_discards_world_changes(tmp_path: Path, monkeypatch) -> None:
    async def _run() -> None:
        ctx, story_id = await _build_context(tmp_path)
        original_add = SQLAlchemyRepo.add_story_entry

        async def _failing_add(self, entry):
            if entry.type == "narration":
                raise RuntimeError("disk full")
            return await original_add(self, entry)

        monkeypatch.setattr(SQLAlchemyRepo, "add_story_entry", _failing_add)
        try:
            result, events = await _collect(ctx, TurnInput(story_id=story_id, user_input="Go."))

            assert result.fatal_phase == POST_GENERATION
            assert result.fatal_error == "Failed to persist turn: disk full"
            assert PhaseError(phase=POST_GENERATION, error=result.fatal_error, fatal=True) in events

            async with ctx.db.transaction() as session:
                repo = SQLAlchemyRepo(session)
                assert await repo.list_story_entries(story_id, "main") == []
                world = await repo.load_world_view(story_id, "main")
            assert world.characters == []
        finally:
            await ctx.db.dispose()

    asyncio.run(_run())


def test_run_raises_when_execution_produces_no_result(monkeypatch) -> None:
    class _EmptyExecution:
        result = None

        def __aiter__(self):
            return self

        async def __anext__(self):
            raise StopAsyncIteration

    monkeypatch.setattr(PipelineOrchestrator, "execute", lambda self, turn: _EmptyExecution())

    with pytest.raises(PipelineError, match="Turn ended without a result"):
        asyncio.run(PipelineOrchestrator(None).run(TurnInput(story_id=1, user_input="Go.")))
