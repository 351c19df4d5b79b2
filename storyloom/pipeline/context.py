from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Coroutine

from loguru import logger

from storyloom.config.schema import AppConfigRoot
from storyloom.events.bus import EventBus
from storyloom.llm.factory import OpenAIChatClient
from storyloom.llm.images import OpenAIImageClient
from storyloom.storage.db import DatabaseService


@dataclass
class AppContext:
    """Everything one running story needs: config, storage, LLM clients and the event bus."""

    config: AppConfigRoot
    db: DatabaseService
    bus: EventBus
    narrative_client: Any
    classifier_client: Any = None
    retrieval_client: Any = None
    translation_client: Any = None
    suggestions_client: Any = None
    lorebook_client: Any = None
    chapters_client: Any = None
    image_client: OpenAIImageClient | None = None
    background_tasks: set[asyncio.Task[Any]] = field(default_factory=set)

    @classmethod
    def from_config(cls, config: AppConfigRoot, db: DatabaseService) -> "AppContext":
        llm = config.llm
        return cls(
            config=config,
            db=db,
            bus=EventBus(history_size=config.events.history_size),
            narrative_client=OpenAIChatClient(config, route="narrative"),
            classifier_client=OpenAIChatClient(config, route="classifier"),
            retrieval_client=OpenAIChatClient(config, route="retrieval"),
            translation_client=OpenAIChatClient(config, route="translation") if llm.has_chat_route("translation") else None,
            suggestions_client=OpenAIChatClient(config, route="suggestions"),
            lorebook_client=OpenAIChatClient(config, route="lorebook"),
            chapters_client=OpenAIChatClient(config, route="chapters"),
            image_client=OpenAIImageClient.from_config(config),
        )

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self.background_tasks.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self.background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).warning("Background task {} failed", task.get_name())

    async def wait_background(self) -> None:
        if self.background_tasks:
            await asyncio.gather(*list(self.background_tasks), return_exceptions=True)
        await self.bus.drain()
