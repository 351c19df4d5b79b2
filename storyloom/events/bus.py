from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from functools import partial
import inspect
from typing import Any, Awaitable, Callable

from loguru import logger

from storyloom.events.types import Event, EventType

Handler = Callable[[Event], Any]


class EventBus:
    """In-process pub/sub with a bounded history of recent events.

    Handlers run synchronously inside ``emit``. A handler returning an awaitable
    is scheduled on the running loop; its failure is logged from a done-callback.
    No handler failure ever reaches the emitter or sibling handlers.
    """

    def __init__(self, history_size: int = 100):
        self._handlers: dict[EventType, list[Handler]] = defaultdict(list)
        self._history: deque[Event] = deque(maxlen=max(1, history_size))
        self._pending: set[asyncio.Future[Any]] = set()

    def subscribe(self, topic: EventType, handler: Handler) -> Callable[[], None]:
        self._handlers[topic].append(handler)

        def _unsubscribe() -> None:
            handlers = self._handlers.get(topic)
            if handlers and handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def emit(self, event: Event) -> None:
        self._history.append(event)
        for handler in list(self._handlers.get(event.type, ())):
            try:
                result = handler(event)
            except Exception:  # noqa: BLE001
                logger.bind(event_type=str(event.type)).exception("Event handler failed handler={}", _name(handler))
                continue
            if inspect.isawaitable(result):
                self._schedule(event, handler, result)

    def _schedule(self, event: Event, handler: Handler, awaitable: Awaitable[Any]) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.bind(event_type=str(event.type)).warning(
                "Dropping async event handler outside a running loop handler={}", _name(handler)
            )
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = asyncio.ensure_future(awaitable)
        self._pending.add(task)
        task.add_done_callback(partial(self._on_handler_done, event, handler))

    def _on_handler_done(self, event: Event, handler: Handler, task: asyncio.Future[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.bind(event_type=str(event.type)).opt(exception=exc).error(
                "Async event handler failed handler={}", _name(handler)
            )

    async def drain(self) -> None:
        """Wait until every scheduled async handler has finished."""
        while True:
            pending = [task for task in self._pending if not task.done()]
            if not pending:
                break
            await asyncio.wait(pending)
        # Let done-callbacks run.
        await asyncio.sleep(0)

    def get_recent_events(self, count: int = 10) -> list[Event]:
        if count <= 0:
            return []
        return list(self._history)[-count:]

    def get_events_by_type(self, topic: EventType) -> list[Event]:
        return [event for event in self._history if event.type == topic]

    def clear(self) -> None:
        self._history.clear()

    def listener_count(self, topic: EventType | None = None) -> int:
        if topic is not None:
            return len(self._handlers.get(topic, ()))
        return sum(len(handlers) for handlers in self._handlers.values())


def _name(handler: Handler) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)
