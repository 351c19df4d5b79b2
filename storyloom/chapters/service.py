"""Chapter summaries over closed ranges of story entries."""

from __future__ import annotations

from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator

from storyloom.config.schema import ChaptersConfig
from storyloom.domain.hashing import sha256_text
from storyloom.domain.models import Chapter, StoryEntry, new_id
from storyloom.events.bus import EventBus
from storyloom.events.types import ChapterCreated
from storyloom.llm.json_utils import safe_load_json_dict
from storyloom.pipeline.abort import AbortSignal, run_cancellable
from storyloom.prompts.chapters import CHAPTER_SUMMARY_PROMPT_VERSION, chapter_summary_prompt
from storyloom.storage.repo import SQLAlchemyRepo


class ChapterSummary(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str | None = None
    summary: str
    keywords: list[str] = Field(default_factory=list)
    characters: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)

    @field_validator("summary", mode="before")
    @classmethod
    def _non_empty_summary(cls, value: Any) -> str:
        text = str(value or "").strip()
        if not text:
            raise ValueError("chapter summary is empty")
        return text

    @field_validator("title", mode="before")
    @classmethod
    def _optional_title(cls, value: Any) -> str | None:
        text = str(value or "").strip()
        return text or None

    @field_validator("keywords", "characters", "locations", mode="before")
    @classmethod
    def _strings(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def parse_chapter_summary(text: str) -> ChapterSummary:
    return ChapterSummary.model_validate(safe_load_json_dict(text))


class ChapterService:
    def __init__(self, client: Any, bus: EventBus, config: ChaptersConfig):
        self.client = client
        self.bus = bus
        self.config = config

    def _render_entries(self, entries: list[StoryEntry]) -> str:
        limit = self.config.entry_max_chars
        return "\n\n".join(f"[{entry.type}]: {entry.content[:limit]}" for entry in entries)

    def _render_previous(self, chapters: list[Chapter]) -> str:
        keep = self.config.previous_chapters
        if keep == 0 or not chapters:
            return ""
        lines = [f"Chapter {chapter.number}: {chapter.summary}" for chapter in chapters[-keep:]]
        return "Previous chapters:\n" + "\n\n".join(lines) + "\n\n"

    async def create_chapter(
        self,
        repo: SQLAlchemyRepo,
        story_id: int,
        branch_id: str,
        start_position: int,
        end_position: int,
        *,
        signal: AbortSignal | None = None,
    ) -> Chapter:
        """Summarize entries ``start_position..end_position`` (inclusive) into the next chapter.

        The range must not overlap an existing chapter on the branch. LLM and parse
        failures propagate; nothing is written unless the summary succeeds.
        """

        if start_position > end_position:
            raise ValueError(f"invalid chapter range {start_position}..{end_position}")

        existing = await repo.list_chapters(story_id, branch_id)
        for chapter in existing:
            if chapter.start_position <= end_position and start_position <= chapter.end_position:
                raise ValueError(f"range {start_position}..{end_position} overlaps chapter {chapter.number}")

        entries = [
            entry
            for entry in await repo.list_story_entries(story_id, branch_id, from_position=start_position)
            if entry.position <= end_position
        ]
        if not entries:
            raise ValueError(f"no story entries between positions {start_position} and {end_position}")

        system, user_template = chapter_summary_prompt()
        user = user_template.format(previous=self._render_previous(existing), entries=self._render_entries(entries))
        context = {
            "phase": "chapters",
            "input_hash": sha256_text(f"{CHAPTER_SUMMARY_PROMPT_VERSION}:{user}"),
        }
        _, parsed = await run_cancellable(
            self.client.complete_json_async(system, user, parse_chapter_summary, context=context),
            signal,
        )

        chapter = Chapter(
            id=new_id(),
            story_id=story_id,
            branch_id=branch_id,
            number=await repo.get_next_chapter_number(story_id, branch_id),
            title=parsed.title,
            start_position=entries[0].position,
            end_position=entries[-1].position,
            entry_count=len(entries),
            summary=parsed.summary,
            keywords=parsed.keywords,
            characters=parsed.characters,
            locations=parsed.locations,
        )
        await repo.add_chapter(chapter)

        logger.bind(phase="chapters", story_id=story_id, branch_id=branch_id).info(
            "Created chapter {} covering positions {}..{}",
            chapter.number,
            chapter.start_position,
            chapter.end_position,
        )
        self.bus.emit(ChapterCreated(story_id=story_id, chapter_number=chapter.number))
        return chapter
