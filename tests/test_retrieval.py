from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, Sequence

import pytest

from storyloom.config.schema import RetrievalConfig
from storyloom.domain.models import Character, InjectionPolicy, Item, Location, LorebookEntry, StoryEntry, WorldView
from storyloom.retrieval.activation import ActivationTracker
from storyloom.retrieval.engine import CONTEXT_HEADER, EntryRetrievalEngine, text_matches, truncate_words
from storyloom.retrieval.selector import LLMRelevanceSelector


def _entry(entry_id: str, name: str, mode: str, *, priority: int = 0, entry_type: str = "concept", **kwargs: Any) -> LorebookEntry:
    return LorebookEntry(
        id=entry_id,
        story_id=1,
        name=name,
        type=entry_type,
        injection=InjectionPolicy(mode=mode, priority=priority),
        **kwargs,
    )


class _FakeSelector:
    def __init__(self, picks: list[str] | None = None, error: Exception | None = None) -> None:
        self.picks = picks or []
        self.error = error
        self.seen: list[str] = []

    async def select(self, candidates: Sequence[LorebookEntry], user_input: str, recent_content: str) -> list[LorebookEntry]:
        self.seen = [entry.id for entry in candidates]
        if self.error is not None:
            raise self.error
        return [entry for entry in candidates if entry.id in self.picks]


def test_activation_stickiness_boundaries() -> None:
    tracker = ActivationTracker(window=10)
    tracker.record_activation("lb-1", 5)

    tracker.set_position(14)
    assert tracker.is_sticky("lb-1")
    assert tracker.turns_left("lb-1") == 0

    tracker.set_position(15)
    assert not tracker.is_sticky("lb-1")
    assert tracker.prune() == []
    assert "lb-1" in tracker

    tracker.set_position(16)
    assert tracker.prune() == ["lb-1"]
    assert tracker.get_last_activation("lb-1") is None


def test_activation_ignores_live_entries_and_round_trips() -> None:
    tracker = ActivationTracker(window=3, data={"lb-2": 1}, current_position=2)
    tracker.record_activation("live-char-abc")
    tracker.record_activation("lb-3")

    assert "live-char-abc" not in tracker
    assert tracker.to_dict() == {"lb-2": 1, "lb-3": 2}
    assert tracker.turns_left("lb-2") == 1

    with pytest.raises(ValueError):
        ActivationTracker(window=0)


def test_text_matching_and_truncation() -> None:
    assert text_matches("Guild", "the salt guild gathers")
    assert not text_matches("x", "x marks the spot", min_length=2)
    assert truncate_words("one two three four", 2) == "one two [...]"
    assert truncate_words("one two", 0) == "one two"


def test_retrieve_builds_three_tiers() -> None:
    entries = [
        _entry("lb-always", "The Old Law", "always", entry_type="concept", description="No blades in the market."),
        _entry("lb-guild", "Salt Guild", "keyword", entry_type="faction", description="Merchants of the coast."),
        _entry("lb-idle", "Iron Tower", "keyword", description="A distant ruin."),
        _entry("lb-relevant", "The Drowned King", "relevant", entry_type="character", description="A myth."),
        _entry("lb-never", "Salt Secret", "never", keywords=["salt"]),
    ]
    world = WorldView(
        characters=[Character(id="c1", story_id=1, name="Mara", description="A scout.", relationship="ally")],
        locations=[Location(id="l1", story_id=1, name="Harbor", description="Wet stones.", current=True)],
        items=[Item(id="i1", story_id=1, name="Rope", quantity=2, equipped=True)],
    )
    selector = _FakeSelector(picks=["lb-relevant"])
    engine = EntryRetrievalEngine(RetrievalConfig(), selector=selector)
    tracker = ActivationTracker(window=10, current_position=4)

    result = asyncio.run(
        engine.retrieve(entries, "I ask about the Salt Guild", [], tracker=tracker, world=world, story_id=1)
    )

    assert [item.entry.id for item in result.tier1] == ["live-loc-l1", "live-char-c1", "lb-always", "live-item-i1"]
    assert [item.entry.id for item in result.tier2] == ["lb-guild"]
    assert result.tier2[0].match_reason == "matched: Salt Guild"
    assert [item.entry.id for item in result.tier3] == ["lb-relevant"]
    assert selector.seen == ["lb-relevant"]
    assert "lb-never" not in {item.entry.id for item in result.all}

    assert tracker.to_dict() == {"lb-guild": 4, "lb-relevant": 4}
    assert result.context_block.startswith(CONTEXT_HEADER)
    assert "• Characters:" in result.context_block
    assert "  - Mara: A scout. [ally]" in result.context_block
    assert "  - Rope: (x2) [equipped]" in result.context_block
    assert result.trimmed == []


def test_sticky_entries_stay_in_their_tier_without_refresh() -> None:
    entries = [
        _entry("lb-guild", "Salt Guild", "keyword"),
        _entry("lb-king", "The Drowned King", "relevant"),
    ]
    selector = _FakeSelector(picks=[])
    engine = EntryRetrievalEngine(RetrievalConfig(stickiness_window=10), selector=selector)
    tracker = ActivationTracker(window=10, data={"lb-guild": 3, "lb-king": 3}, current_position=5)

    result = asyncio.run(engine.retrieve(entries, "I walk on", [], tracker=tracker))

    assert [item.entry.id for item in result.tier2] == ["lb-guild"]
    assert result.tier2[0].match_reason == "sticky (7 turns left)"
    assert [item.entry.id for item in result.tier3] == ["lb-king"]
    assert selector.seen == []
    assert tracker.to_dict() == {"lb-guild": 3, "lb-king": 3}


def test_equal_priorities_keep_input_order_and_higher_priority_leads() -> None:
    entries = [
        _entry("a", "Alder", "keyword", priority=0),
        _entry("b", "Birch", "keyword", priority=5),
        _entry("c", "Cedar", "keyword", priority=0),
    ]
    engine = EntryRetrievalEngine(RetrievalConfig(llm_selection_enabled=False))

    result = asyncio.run(engine.retrieve(entries, "alder birch cedar", []))

    assert [item.entry.id for item in result.tier2] == ["b", "a", "c"]


def test_recent_entries_window_feeds_keyword_search() -> None:
    entries = [_entry("lb-guild", "Salt Guild", "keyword")]
    recent = [
        StoryEntry(id="e0", story_id=1, position=0, type="narration", content="The Salt Guild watches."),
        StoryEntry(id="e1", story_id=1, position=1, type="narration", content="Rain falls."),
    ]

    narrow = EntryRetrievalEngine(RetrievalConfig(recent_entries_window=1, llm_selection_enabled=False))
    wide = EntryRetrievalEngine(RetrievalConfig(recent_entries_window=2, llm_selection_enabled=False))

    assert asyncio.run(narrow.retrieve(entries, "wait", recent)).tier2 == []
    assert [item.entry.id for item in asyncio.run(wide.retrieve(entries, "wait", recent)).tier2] == ["lb-guild"]


def test_selector_failure_leaves_tier3_empty() -> None:
    entries = [_entry("lb-king", "The Drowned King", "relevant")]
    engine = EntryRetrievalEngine(RetrievalConfig(), selector=_FakeSelector(error=RuntimeError("provider down")))

    result = asyncio.run(engine.retrieve(entries, "hello", []))

    assert result.tier3 == []


def test_max_tier3_caps_fresh_picks() -> None:
    entries = [_entry(f"lb-{idx}", f"Myth {idx}", "relevant") for idx in range(4)]
    selector = _FakeSelector(picks=[entry.id for entry in entries])
    engine = EntryRetrievalEngine(RetrievalConfig(max_tier3_entries=2), selector=selector)

    result = asyncio.run(engine.retrieve(entries, "hello", []))

    assert [item.entry.id for item in result.tier3] == ["lb-0", "lb-1"]


def test_context_block_trims_everything_after_first_overflow() -> None:
    entries = [
        _entry("first", "Mara", "always", entry_type="character", description="A scout."),
        _entry("long", "Chronicle", "always", entry_type="character", description="word " * 60),
        _entry("short", "Bo", "always", entry_type="character", description="ok."),
    ]
    engine = EntryRetrievalEngine(RetrievalConfig(context_token_budget=40, llm_selection_enabled=False))

    result = asyncio.run(engine.retrieve(entries, "", []))

    assert "Mara" in result.context_block
    assert "Chronicle" not in result.context_block
    assert [item.entry.id for item in result.trimmed] == ["long", "short"]


def test_unknown_entry_types_render_under_lore() -> None:
    entries = [_entry("odd", "Tide Song", "always", entry_type="ritual", description="Sung at dusk.")]
    engine = EntryRetrievalEngine(RetrievalConfig(llm_selection_enabled=False))

    result = asyncio.run(engine.retrieve(entries, "", []))

    assert "• Lore:\n  - Tide Song: Sung at dusk." in result.context_block


def test_llm_selector_accepts_ids_and_indices() -> None:
    class _Client:
        async def complete_json_async(self, system_prompt, user_prompt, parser, *, context=None):
            assert "id=lb-b" in user_prompt
            return SimpleNamespace(text=""), parser('{"selected_ids": ["lb-b", 0, "missing"]}')

    candidates = [_entry("lb-a", "Alder", "relevant"), _entry("lb-b", "Birch", "relevant")]

    chosen = asyncio.run(LLMRelevanceSelector(_Client()).select(candidates, "look", ""))

    assert [entry.id for entry in chosen] == ["lb-a", "lb-b"]
