# app/utils/stream_tee.py
"""
Fan a single async byte source out to several independent readers.

A pump task drains the source once and pushes every chunk into one
unbounded queue per branch. A slow reader only grows its own queue, so it
never holds back the others, and a reader that stops early (client
disconnect) does not stop the pump.
"""

import asyncio
import logging
from typing import AsyncIterator, Optional

logger = logging.getLogger(__name__)

_END = object()


class StreamTee:
    def __init__(self, source: AsyncIterator[bytes], branches: int = 2) -> None:
        if branches < 1:
            raise ValueError("StreamTee needs at least one branch")
        self._source = source
        self._queues: list[asyncio.Queue] = [asyncio.Queue() for _ in range(branches)]
        self._pump_task: Optional[asyncio.Task] = None
        self.error: Optional[BaseException] = None

    def start(self) -> "StreamTee":
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump())
        return self

    @property
    def finished(self) -> bool:
        return self._pump_task is not None and self._pump_task.done()

    async def wait_closed(self) -> None:
        if self._pump_task is not None:
            await self._pump_task

    async def _pump(self) -> None:
        try:
            async for chunk in self._source:
                for queue in self._queues:
                    queue.put_nowait(chunk)
        except Exception as exc:
            # Readers see a truncated stream; the cause is kept for whoever asks.
            self.error = exc
            logger.warning(f"Upstream stream failed mid-transfer: {exc}", exc_info=True)
        finally:
            for queue in self._queues:
                queue.put_nowait(_END)
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:
                    logger.warning("Failed to close upstream stream", exc_info=True)

    async def branch(self, index: int) -> AsyncIterator[bytes]:
        queue = self._queues[index]
        while True:
            item = await queue.get()
            if item is _END:
                return
            yield item


def tee_stream(source: AsyncIterator[bytes], branches: int = 2) -> tuple[StreamTee, list[AsyncIterator[bytes]]]:
    """
    Start a StreamTee over `source` and return it with its branch iterators.

    Must be called from inside a running event loop.
    """
    tee = StreamTee(source, branches=branches).start()
    return tee, [tee.branch(i) for i in range(branches)]
