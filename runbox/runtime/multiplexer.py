"""Merge several process output pipes into one ordered chunk stream.

One reader task per stream forwards `Chunk`s into a single one-slot queue, so
a reader blocks until the consumer has taken the previous chunk. When the
consumer falls behind, the pipes fill up and the child blocks on write.

Every reader emits exactly one end marker after EOF. The merged stream ends
only after an end marker from every stream has been seen, regardless of which
pipe closes first.

Ordering: chunks of one stream keep their order. Across streams the order is
whatever the OS and the scheduler produce.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator


logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024


@dataclass(frozen=True)
class Chunk:
    data: bytes
    is_end: bool = False


class OutputMultiplexer:
    """Async context manager merging `asyncio.StreamReader`s.

    Example:
        async with OutputMultiplexer(proc.stdout, proc.stderr) as mux:
            async for data in mux:
                send(data)
    """

    def __init__(self, *streams: asyncio.StreamReader, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        if not streams:
            raise ValueError("OutputMultiplexer needs at least one stream")
        self._streams = streams
        self._chunk_size = chunk_size
        self._queue: asyncio.Queue[Chunk] = asyncio.Queue(maxsize=1)
        self._readers: list[asyncio.Task[None]] = []
        self._ends_seen = 0

    @property
    def closed(self) -> bool:
        return self._ends_seen >= len(self._streams)

    async def __aenter__(self) -> "OutputMultiplexer":
        self._readers = [
            asyncio.create_task(self._read_stream(stream), name=f"mux-reader-{i}")
            for i, stream in enumerate(self._streams)
        ]
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Cancel readers that are still running and wait for them."""
        pending = [t for t in self._readers if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _read_stream(self, stream: asyncio.StreamReader) -> None:
        try:
            while True:
                # read() returns at most chunk_size bytes, sized to what was
                # actually read; b"" means EOF.
                data = await stream.read(self._chunk_size)
                if not data:
                    break
                await self._queue.put(Chunk(data))
        except (ConnectionError, OSError) as e:
            logger.warning(f"Output pipe read failed: {e}")
        await self._queue.put(Chunk(b"", is_end=True))

    async def read(self) -> bytes | None:
        """Return the next chunk of output, or None once every stream ended."""
        while not self.closed:
            chunk = await self._queue.get()
            if chunk.is_end:
                self._ends_seen += 1
                continue
            return chunk.data
        return None

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iter()

    async def _iter(self) -> AsyncIterator[bytes]:
        while True:
            data = await self.read()
            if data is None:
                return
            yield data
