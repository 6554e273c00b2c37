"""
Bounded broadcast channel between the archive producer and its consumers.

The producer runs in a worker thread and writes compressed bytes through a
file-like interface; each consumer is an async iterator on the event loop.
Every chunk is delivered to every consumer in order. Back-pressure is per
consumer: the producer blocks while any consumer's buffer is full.

Invariants:
    - All consumers see the same byte sequence
    - A consumer failure aborts the whole fan-out; the producer's next
      write raises ArchiveError and every other consumer raises too
    - Both consumers must be driven to completion for the run to succeed
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

from ..errors import ArchiveError

logger = logging.getLogger(__name__)

_EOF = object()
_ABORT = object()


class StreamFanout:
    """One writer, N async readers over bounded queues.

    Must be constructed inside the running event loop.

    Example:
        >>> fanout = StreamFanout(consumers=2)
        >>> digest_task = asyncio.create_task(digest.consume(fanout.reader(0)))
        >>> upload_task = asyncio.create_task(store.upload_stream(key, fanout.reader(1)))
        >>> await producer.stream(source_dir, fanout)
    """

    def __init__(self, consumers: int, max_chunks: int = 8) -> None:
        if consumers < 1:
            raise ValueError("StreamFanout needs at least one consumer")
        if max_chunks < 2:
            raise ValueError("StreamFanout needs max_chunks >= 2")
        self._loop = asyncio.get_running_loop()
        self._queues: list[asyncio.Queue] = [
            asyncio.Queue(maxsize=max_chunks) for _ in range(consumers)
        ]
        self._error: Optional[BaseException] = None
        self._closed = False
        self.bytes_written = 0

    @property
    def consumers(self) -> int:
        return len(self._queues)

    @property
    def aborted(self) -> bool:
        return self._error is not None

    @property
    def error(self) -> Optional[BaseException]:
        """The failure that first aborted the fan-out, if any."""
        return self._error

    async def _broadcast(self, item: object) -> None:
        for queue in self._queues:
            if self._error is not None:
                raise ArchiveError(f"Stream aborted: {self._error}")
            await queue.put(item)

    # Producer side (worker thread)

    def write(self, data: bytes) -> int:
        """Deliver a chunk to every consumer, blocking on back-pressure."""
        if not data:
            return 0
        if self._closed:
            raise ArchiveError("Write to closed stream")
        chunk = bytes(data)
        asyncio.run_coroutine_threadsafe(self._broadcast(chunk), self._loop).result()
        self.bytes_written += len(chunk)
        return len(chunk)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        """Signal end of stream to every consumer."""
        if self._closed:
            return
        self._closed = True
        asyncio.run_coroutine_threadsafe(self._broadcast(_EOF), self._loop).result()

    # Loop side

    def abort(self, error: BaseException) -> None:
        """Abort the fan-out; must be called on the event loop thread."""
        if self._error is not None:
            return
        self._error = error
        logger.warning(f"Stream fan-out aborted: {error}")
        for queue in self._queues:
            while not queue.empty():
                queue.get_nowait()
            queue.put_nowait(_ABORT)

    async def guard(self, awaitable):
        """Await a consumer, aborting the fan-out if it fails."""
        try:
            return await awaitable
        except BaseException as e:
            self.abort(e)
            raise

    async def reader(self, index: int) -> AsyncIterator[bytes]:
        """Iterate the chunks delivered to consumer `index`.

        Raises:
            ArchiveError: If the fan-out was aborted
        """
        queue = self._queues[index]
        while True:
            item = await queue.get()
            if item is _EOF:
                return
            if item is _ABORT:
                raise ArchiveError(f"Stream aborted: {self._error}")
            yield item
