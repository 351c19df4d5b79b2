from __future__ import annotations

from typing import Any, Protocol, Sequence

from loguru import logger

from storyloom.domain.hashing import sha256_text
from storyloom.domain.models import LorebookEntry
from storyloom.llm.json_utils import safe_load_json_dict
from storyloom.prompts.retrieval import ENTRY_SELECTION_PROMPT_VERSION, entry_selection_prompt


class JsonChatClient(Protocol):
    async def complete_json_async(self, system_prompt: str, user_prompt: str, parser: Any, *, context: Any = None) -> Any: ...


def _parse_selection(text: str) -> list[str]:
    payload = safe_load_json_dict(text)
    raw = payload.get("selected_ids", payload.get("selectedIds"))
    if not isinstance(raw, list):
        raise ValueError("selected_ids must be a list")
    return [str(item).strip() for item in raw if isinstance(item, (str, int)) and str(item).strip()]


def format_entry_summaries(entries: Sequence[LorebookEntry]) -> str:
    lines = []
    for idx, entry in enumerate(entries):
        description = entry.description[:100] if entry.description else ""
        suffix = f": {description}" if description else ""
        lines.append(f"{idx}. [{entry.type}] {entry.name} (id={entry.id}){suffix}")
    return "\n".join(lines)


class LLMRelevanceSelector:
    """Asks the retrieval route which remaining entries matter for this turn."""

    def __init__(self, client: JsonChatClient):
        self.client = client

    async def select(
        self,
        candidates: Sequence[LorebookEntry],
        user_input: str,
        recent_content: str,
    ) -> list[LorebookEntry]:
        if not candidates:
            return []

        system, user_template = entry_selection_prompt()
        user = user_template.format(
            recent_content=recent_content,
            user_input=user_input,
            entry_summaries=format_entry_summaries(candidates),
        )
        context = {
            "phase": "retrieval",
            "input_hash": sha256_text(f"{ENTRY_SELECTION_PROMPT_VERSION}:{user}"),
        }
        _, selected = await self.client.complete_json_async(system, user, _parse_selection, context=context)

        # Providers return either entry ids or list indices.
        selected_set = set(selected)
        chosen = [
            entry
            for idx, entry in enumerate(candidates)
            if entry.id in selected_set or str(idx) in selected_set
        ]
        logger.bind(phase="retrieval").debug("LLM selected {} of {} candidates", len(chosen), len(candidates))
        return chosen
