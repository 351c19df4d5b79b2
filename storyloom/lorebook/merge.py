from __future__ import annotations

from loguru import logger

from storyloom.domain.models import InjectionPolicy, LorebookEntry, new_id
from storyloom.storage.repo import SQLAlchemyRepo

# Stronger modes win when sources disagree.
_MODE_STRENGTH = {"never": 0, "relevant": 1, "keyword": 2, "always": 3}


def _union(groups: list[list[str]]) -> list[str]:
    merged: list[str] = []
    seen: set[str] = set()
    for group in groups:
        for value in group:
            key = value.strip().lower()
            if key and key not in seen:
                seen.add(key)
                merged.append(value.strip())
    return merged


def merge_entries(entries: list[LorebookEntry], *, name: str | None = None, entry_id: str | None = None) -> LorebookEntry:
    """Fold several entries into one, keeping the union of their fields."""

    if not entries:
        raise ValueError("merge_entries needs at least one entry")
    base = entries[0]
    merged_name = name or base.name

    descriptions: list[str] = []
    for entry in entries:
        text = entry.description.strip()
        if text and text not in descriptions:
            descriptions.append(text)

    other_names = [entry.name for entry in entries if entry.name.strip().lower() != merged_name.strip().lower()]
    mode = max((entry.injection.mode for entry in entries), key=lambda item: _MODE_STRENGTH.get(item, 0))

    return LorebookEntry(
        id=entry_id or new_id(),
        story_id=base.story_id,
        name=merged_name,
        type=base.type,
        branch_id=base.branch_id,
        description="\n\n".join(descriptions),
        keywords=_union([entry.keywords for entry in entries]),
        aliases=_union([entry.aliases for entry in entries] + [other_names]),
        injection=InjectionPolicy(mode=mode, priority=max(entry.injection.priority for entry in entries)),
        mention_count=sum(entry.mention_count for entry in entries),
        created_by=base.created_by,
    )


async def merge_lorebook_entries(
    repo: SQLAlchemyRepo,
    story_id: int,
    branch_id: str,
    entry_ids: list[str],
    *,
    name: str | None = None,
) -> LorebookEntry:
    by_id = {entry.id: entry for entry in await repo.list_lorebook_entries(story_id, branch_id)}
    missing = [entry_id for entry_id in entry_ids if entry_id not in by_id]
    if missing:
        raise KeyError(f"Unknown lorebook entries: {', '.join(missing)}")

    merged = merge_entries([by_id[entry_id] for entry_id in entry_ids], name=name)
    for entry_id in entry_ids:
        await repo.delete_lorebook_entry(entry_id)
    await repo.add_lorebook_entries([merged])
    logger.bind(story_id=story_id, branch_id=branch_id).info(
        "Merged {} lorebook entries into '{}'", len(entry_ids), merged.name
    )
    return merged
