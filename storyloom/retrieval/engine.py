"""Three-tier lorebook retrieval.

Tier 1 holds always-injected entries and live world entities, tier 2 keyword
matches, tier 3 entries picked by the LLM relevance selector. Entries picked
into tier 2 or 3 stay there for a few turns via the activation tracker.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import math
import re
from typing import Sequence

from loguru import logger

from storyloom.config.schema import RetrievalConfig
from storyloom.domain.models import InjectionPolicy, LorebookEntry, StoryEntry, WorldView
from storyloom.pipeline.abort import AbortSignal, run_cancellable
from storyloom.pipeline.errors import PipelineAborted
from storyloom.retrieval.activation import ActivationTracker
from storyloom.retrieval.selector import LLMRelevanceSelector

CONTEXT_HEADER = (
    "[LOREBOOK CONTEXT]\n"
    "(CANONICAL - All information below is established lore. Do not contradict these facts.)"
)

_GROUP_TITLES: tuple[tuple[str, str], ...] = (
    ("character", "Characters"),
    ("location", "Locations"),
    ("item", "Items"),
    ("faction", "Factions"),
    ("concept", "Lore"),
    ("event", "Events"),
)
_KNOWN_GROUPS = frozenset(name for name, _ in _GROUP_TITLES)

ALWAYS_PRIORITY = 90
KEYWORD_BASE_PRIORITY = 70
RELEVANT_BASE_PRIORITY = 50
LIVE_LOCATION_PRIORITY = 100
LIVE_CHARACTER_PRIORITY = 95
LIVE_ITEM_PRIORITY = 80


@dataclass
class RetrievedEntry:
    entry: LorebookEntry
    tier: int
    priority: int
    match_reason: str


@dataclass
class RetrievalResult:
    tier1: list[RetrievedEntry] = field(default_factory=list)
    tier2: list[RetrievedEntry] = field(default_factory=list)
    tier3: list[RetrievedEntry] = field(default_factory=list)
    context_block: str = ""
    trimmed: list[RetrievedEntry] = field(default_factory=list)

    @property
    def all(self) -> list[RetrievedEntry]:
        return [*self.tier1, *self.tier2, *self.tier3]


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def text_matches(term: str, search_content: str, min_length: int = 2) -> bool:
    normalized = term.lower().strip()
    if len(normalized) < min_length:
        return False
    if normalized in search_content:
        return True
    return re.search(rf"\b{re.escape(normalized)}\b", search_content) is not None


def truncate_words(text: str, max_words: int) -> str:
    if max_words <= 0:
        return text
    words = text.strip().split()
    if len(words) <= max_words:
        return text
    return " ".join(words[:max_words]) + " [...]"


def _by_priority(items: list[RetrievedEntry]) -> list[RetrievedEntry]:
    # sorted() is stable: equal priorities keep input order.
    return sorted(items, key=lambda item: item.priority, reverse=True)


def live_state_entries(world: WorldView, story_id: int) -> list[RetrievedEntry]:
    result: list[RetrievedEntry] = []
    for character in world.characters:
        if character.status != "active":
            continue
        description = character.description or ""
        if character.relationship:
            description = f"{description} [{character.relationship}]".strip()
        entry = LorebookEntry(
            id=f"live-char-{character.id}",
            story_id=story_id,
            name=character.name,
            type="character",
            branch_id=character.branch_id,
            description=description,
            injection=InjectionPolicy(mode="always", priority=LIVE_CHARACTER_PRIORITY),
            created_by="classifier",
        )
        result.append(RetrievedEntry(entry, 1, LIVE_CHARACTER_PRIORITY, "active character"))

    for location in world.locations:
        if not location.current:
            continue
        entry = LorebookEntry(
            id=f"live-loc-{location.id}",
            story_id=story_id,
            name=location.name,
            type="location",
            branch_id=location.branch_id,
            description=location.description or "",
            injection=InjectionPolicy(mode="always", priority=LIVE_LOCATION_PRIORITY),
            created_by="classifier",
        )
        result.append(RetrievedEntry(entry, 1, LIVE_LOCATION_PRIORITY, "current location"))

    for item in world.items:
        if item.location != "inventory":
            continue
        description = item.description or ""
        if item.quantity > 1:
            description += f" (x{item.quantity})"
        if item.equipped:
            description += " [equipped]"
        entry = LorebookEntry(
            id=f"live-item-{item.id}",
            story_id=story_id,
            name=item.name,
            type="item",
            branch_id=item.branch_id,
            description=description.strip(),
            injection=InjectionPolicy(mode="always", priority=LIVE_ITEM_PRIORITY),
            created_by="classifier",
        )
        result.append(RetrievedEntry(entry, 1, LIVE_ITEM_PRIORITY, "in inventory"))
    return result


class EntryRetrievalEngine:
    def __init__(self, config: RetrievalConfig, selector: LLMRelevanceSelector | None = None):
        self.config = config
        self.selector = selector

    async def retrieve(
        self,
        entries: Sequence[LorebookEntry],
        user_input: str,
        recent_entries: Sequence[StoryEntry],
        *,
        tracker: ActivationTracker | None = None,
        world: WorldView | None = None,
        story_id: int = 0,
        signal: AbortSignal | None = None,
    ) -> RetrievalResult:
        position = tracker.current_position if tracker else len(recent_entries)
        log = logger.bind(phase="retrieval", position=position)

        window = self.config.recent_entries_window
        recent = list(recent_entries)[-window:] if window > 0 else []
        recent_content = " ".join(item.content for item in recent)
        search_content = f"{user_input} {recent_content}".lower()

        tier1: list[RetrievedEntry] = []
        if self.config.include_live_state and world is not None:
            tier1.extend(live_state_entries(world, story_id))
        for entry in entries:
            if entry.injection.mode == "always":
                tier1.append(RetrievedEntry(entry, 1, ALWAYS_PRIORITY, "always inject"))

        taken = {item.entry.id for item in tier1}
        candidates = [entry for entry in entries if entry.id not in taken and entry.injection.mode != "never"]

        tier2: list[RetrievedEntry] = []
        fresh: list[str] = []
        for entry in candidates:
            if entry.injection.mode != "keyword":
                continue
            priority = KEYWORD_BASE_PRIORITY + entry.injection.priority
            matched = self._matched_terms(entry, search_content)
            if matched:
                tier2.append(RetrievedEntry(entry, 2, priority, f"matched: {', '.join(matched)}"))
                fresh.append(entry.id)
            elif tracker is not None and tracker.is_sticky(entry.id):
                tier2.append(RetrievedEntry(entry, 2, priority, _sticky_reason(tracker, entry.id)))
        taken.update(item.entry.id for item in tier2)

        tier3: list[RetrievedEntry] = []
        remaining: list[LorebookEntry] = []
        for entry in candidates:
            if entry.id in taken or entry.injection.mode != "relevant":
                continue
            if tracker is not None and tracker.is_sticky(entry.id):
                priority = RELEVANT_BASE_PRIORITY + entry.injection.priority
                tier3.append(RetrievedEntry(entry, 3, priority, _sticky_reason(tracker, entry.id)))
            else:
                remaining.append(entry)

        if remaining and self.config.llm_selection_enabled and self.selector is not None:
            selected = await self._select(remaining, user_input, recent, signal)
            if self.config.max_tier3_entries > 0:
                selected = selected[: self.config.max_tier3_entries]
            for entry in selected:
                tier3.append(RetrievedEntry(entry, 3, RELEVANT_BASE_PRIORITY + entry.injection.priority, "LLM selected"))
                fresh.append(entry.id)

        if tracker is not None:
            for entry_id in fresh:
                tracker.record_activation(entry_id, position)
            tracker.prune()

        result = RetrievalResult(tier1=_by_priority(tier1), tier2=_by_priority(tier2), tier3=_by_priority(tier3))
        result.context_block, result.trimmed = self.build_context_block(result)
        log.info(
            "Retrieval tiers t1={} t2={} t3={} trimmed={}",
            len(result.tier1),
            len(result.tier2),
            len(result.tier3),
            len(result.trimmed),
        )
        return result

    def _matched_terms(self, entry: LorebookEntry, search_content: str) -> list[str]:
        matched: list[str] = []
        for term in [entry.name, *entry.aliases, *entry.keywords]:
            if term and term not in matched and text_matches(term, search_content, self.config.min_term_length):
                matched.append(term)
        return matched

    async def _select(
        self,
        remaining: list[LorebookEntry],
        user_input: str,
        recent: list[StoryEntry],
        signal: AbortSignal | None,
    ) -> list[LorebookEntry]:
        recent_content = "\n\n".join(item.content for item in recent)
        try:
            return await run_cancellable(self.selector.select(remaining, user_input, recent_content), signal)
        except PipelineAborted:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.bind(phase="retrieval").warning("Tier 3 LLM selection failed: {}", exc)
            return []

    def build_context_block(self, result: RetrievalResult) -> tuple[str, list[RetrievedEntry]]:
        ordered = result.all
        if not ordered:
            return "", []

        budget = self.config.context_token_budget
        used = estimate_tokens(CONTEXT_HEADER)
        seen_groups: set[str] = set()
        included: list[tuple[RetrievedEntry, str]] = []
        trimmed: list[RetrievedEntry] = []
        for retrieved in ordered:
            if trimmed:
                trimmed.append(retrieved)
                continue
            entry = retrieved.entry
            group = _group_of(entry.type)
            line = f"  - {entry.name}: {truncate_words(entry.description, self.config.max_words_per_entry)}"
            cost = estimate_tokens(line + "\n")
            if group not in seen_groups:
                cost += estimate_tokens("\n\n• Characters:")
            if used + cost > budget:
                trimmed.append(retrieved)
                continue
            used += cost
            seen_groups.add(group)
            included.append((retrieved, line))

        if not included:
            return "", trimmed

        parts = [CONTEXT_HEADER]
        for entry_type, title in _GROUP_TITLES:
            lines = [line for retrieved, line in included if _group_of(retrieved.entry.type) == entry_type]
            if lines:
                parts.append(f"\n\n• {title}:")
                parts.extend(f"\n{line}" for line in lines)
        return "".join(parts), trimmed


def _group_of(entry_type: str) -> str:
    return entry_type if entry_type in _KNOWN_GROUPS else "concept"


def _sticky_reason(tracker: ActivationTracker, entry_id: str) -> str:
    return f"sticky ({tracker.turns_left(entry_id)} turns left)"
