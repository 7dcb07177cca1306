"""Ordered output channel with an explicit terminal event.

The orchestrator pushes output chunks as the tool produces them; a
consumer iterates until the StreamFinished event arrives, so "no more
events" is never confused with "still running".
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from rdev.adapters.events import OutputChunk, StreamFinished
from rdev.engine.models import ExecutionResult

logger = logging.getLogger(__name__)


class OutputStream:
    """Async queue bridging orchestrator callbacks to a stream consumer."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[OutputChunk | StreamFinished] = asyncio.Queue()
        self._finished: StreamFinished | None = None

    async def emit(self, chunk: OutputChunk) -> None:
        """Callback to pass as ``on_output``."""
        if self._finished is not None:
            logger.debug("OutputStream already finished, dropping chunk")
            return
        await self._queue.put(chunk)

    def finish(
        self,
        result: ExecutionResult | None = None,
        error: BaseException | None = None,
    ) -> None:
        """Close the stream with its terminal event. Idempotent."""
        if self._finished is not None:
            return
        self._finished = StreamFinished(result=result, error=error)
        self._queue.put_nowait(self._finished)

    async def consume(self) -> AsyncIterator[OutputChunk | StreamFinished]:
        """Yield chunks in order, ending with the StreamFinished event."""
        while True:
            item = await self._queue.get()
            yield item
            if isinstance(item, StreamFinished):
                return

    def __aiter__(self) -> AsyncIterator[OutputChunk | StreamFinished]:
        return self.consume()
