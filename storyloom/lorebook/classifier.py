"""Batch type classification for imported lorebook entries."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any, Callable

import orjson
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator

from storyloom.config.schema import LorebookConfig
from storyloom.domain.hashing import sha256_text
from storyloom.domain.models import ENTRY_TYPES, LorebookEntry
from storyloom.llm.json_utils import safe_load_json_dict
from storyloom.pipeline.abort import AbortSignal, run_cancellable
from storyloom.pipeline.errors import PipelineAborted
from storyloom.prompts.lorebook import LOREBOOK_CLASSIFY_PROMPT_VERSION, lorebook_classify_prompt

ProgressCallback = Callable[[int, int], None]

MAX_KEYWORDS_IN_PROMPT = 10


class EntryClassification(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int
    type: str

    @field_validator("type", mode="before")
    @classmethod
    def _known_type(cls, value: Any) -> str:
        normalized = str(value or "").strip().lower()
        if normalized not in ENTRY_TYPES:
            raise ValueError(f"unknown entry type: {value!r}")
        return normalized


class BatchClassification(BaseModel):
    model_config = ConfigDict(extra="ignore")

    classifications: list[EntryClassification] = Field(default_factory=list)

    @field_validator("classifications", mode="before")
    @classmethod
    def _skip_invalid(cls, value: Any) -> list[Any]:
        if not isinstance(value, list):
            return []
        valid: list[EntryClassification] = []
        for item in value:
            try:
                valid.append(EntryClassification.model_validate(item))
            except ValueError:
                continue
        return valid


def parse_batch_classification(text: str) -> BatchClassification:
    return BatchClassification.model_validate(safe_load_json_dict(text))


class LorebookClassifier:
    def __init__(self, client: Any, config: LorebookConfig):
        self.client = client
        self.config = config

    def _render_batch(self, batch: list[LorebookEntry]) -> str:
        payload = [
            {
                "index": index,
                "name": entry.name,
                "content": entry.description[: self.config.description_max_chars],
                "keywords": entry.keywords[:MAX_KEYWORDS_IN_PROMPT],
            }
            for index, entry in enumerate(batch)
        ]
        return orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode("utf-8")

    async def _classify_batch(
        self, start: int, batch: list[LorebookEntry], signal: AbortSignal | None = None
    ) -> list[EntryClassification] | None:
        system, user_template = lorebook_classify_prompt()
        user = user_template.format(entries=self._render_batch(batch))
        context = {
            "phase": "lorebook",
            "input_hash": sha256_text(f"{LOREBOOK_CLASSIFY_PROMPT_VERSION}:{user}"),
        }
        try:
            _, parsed = await run_cancellable(
                self.client.complete_json_async(system, user, parse_batch_classification, context=context),
                signal,
            )
        except PipelineAborted:
            return None
        except Exception as exc:  # noqa: BLE001
            logger.bind(phase="lorebook").warning("Failed to classify batch starting at {}: {}", start, exc)
            return []
        return parsed.classifications

    async def classify_entries(
        self,
        entries: list[LorebookEntry],
        *,
        on_progress: ProgressCallback | None = None,
        signal: AbortSignal | None = None,
    ) -> list[LorebookEntry]:
        """Return copies of ``entries`` with LLM-assigned types.

        Batches run concurrently in groups of ``max_concurrent``; a failed batch keeps
        the existing types. When ``signal`` is aborted, in-flight batches are cancelled and
        remaining groups are not started.
        """

        if not entries:
            return []

        batch_size = self.config.batch_size
        max_concurrent = self.config.max_concurrent
        result = list(entries)
        starts = list(range(0, len(entries), batch_size))
        classified = 0
        log = logger.bind(phase="lorebook")

        for group_start in range(0, len(starts), max_concurrent):
            if signal is not None and signal.aborted:
                log.info("Lorebook classification aborted after {} of {} entries", classified, len(entries))
                break
            group = starts[group_start : group_start + max_concurrent]
            outcomes = await asyncio.gather(
                *(self._classify_batch(start, entries[start : start + batch_size], signal) for start in group)
            )
            for start, classifications in zip(group, outcomes):
                if classifications is None:
                    continue
                batch_len = len(entries[start : start + batch_size])
                for item in classifications:
                    if 0 <= item.index < batch_len:
                        result[start + item.index] = replace(result[start + item.index], type=item.type)
                classified += batch_len
                if on_progress is not None:
                    on_progress(classified, len(entries))
                log.debug("Classified batch at {}: {} of {}", start, classified, len(entries))

        return result
