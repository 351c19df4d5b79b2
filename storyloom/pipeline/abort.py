from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from storyloom.pipeline.errors import PipelineAborted

T = TypeVar("T")


class AbortSignal:
    """Cooperative cancellation flag shared by every phase of one turn."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def abort(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self._reason = reason or "aborted"
        self._event.set()

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise PipelineAborted(self._reason)

    async def wait(self) -> None:
        await self._event.wait()


async def run_cancellable(awaitable: Awaitable[T], signal: AbortSignal | None) -> T:
    """Await ``awaitable`` unless ``signal`` fires first, in which case it is cancelled."""

    if signal is None:
        return await awaitable
    signal.raise_if_aborted()

    work = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        watcher.cancel()

    if work in done:
        return work.result()

    work.cancel()
    # Collect the cancelled task so its outcome is never left unretrieved.
    await asyncio.gather(work, return_exceptions=True)
    raise PipelineAborted(signal.reason)
