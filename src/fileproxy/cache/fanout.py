"""Split one byte stream into a primary consumer and bounded side branches."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import AsyncIterable, AsyncIterator, Optional

from ..common.errors import FileProxyError


class BranchAborted(FileProxyError):
    """A side branch stopped receiving data before the source completed."""


class BranchOverflow(BranchAborted):
    """A side branch fell too far behind the primary consumer."""


class Branch:
    """Async iterator fed by :class:`FanOut` without ever blocking the feeder.

    Holds at most ``max_chunks`` undelivered chunks. Overflowing the buffer
    aborts the branch: its consumer gets :class:`BranchOverflow` and any
    buffered data is dropped.
    """

    def __init__(self, max_chunks: int) -> None:
        self._max_chunks = max(1, max_chunks)
        self._chunks: deque[bytes] = deque()
        self._ready = asyncio.Event()
        self._closed = False
        self._error: Optional[BaseException] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, chunk: bytes) -> None:
        if self._closed:
            return
        if len(self._chunks) >= self._max_chunks:
            self.abort(BranchOverflow(f"Branch exceeded {self._max_chunks} buffered chunks"))
            return
        self._chunks.append(chunk)
        self._ready.set()

    def finish(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._ready.set()

    def abort(self, error: BaseException) -> None:
        if self._closed and (self._error is not None or not self._chunks):
            return
        self._chunks.clear()
        self._error = error
        self._closed = True
        self._ready.set()

    def __aiter__(self) -> "Branch":
        return self

    async def __anext__(self) -> bytes:
        while True:
            if self._error is not None:
                raise self._error
            if self._chunks:
                return self._chunks.popleft()
            if self._closed:
                raise StopAsyncIteration
            self._ready.clear()
            await self._ready.wait()


class FanOut:
    """Reads ``source`` at the pace of the primary consumer.

    Every chunk is offered to each branch before it is handed to the primary
    consumer, so branches see the same bytes in the same order. Branches are
    finished only when the source is exhausted cleanly; a source error, an
    early close of the primary iterator or :meth:`aclose` aborts them.
    """

    def __init__(self, source: AsyncIterable[bytes], max_buffered_chunks: int) -> None:
        self._source = source
        self._max_buffered_chunks = max_buffered_chunks
        self._branches: list[Branch] = []
        self._started = False
        self._completed = False

    def branch(self) -> Branch:
        if self._started:
            raise RuntimeError("Branches must be attached before the primary stream starts")
        branch = Branch(self._max_buffered_chunks)
        self._branches.append(branch)
        return branch

    async def primary(self) -> AsyncIterator[bytes]:
        self._started = True
        try:
            async for chunk in self._source:
                for branch in self._branches:
                    branch.feed(chunk)
                yield chunk
            self._completed = True
            for branch in self._branches:
                branch.finish()
        finally:
            if not self._completed:
                self._abort_branches("Source stream ended before completion")

    async def aclose(self) -> None:
        if not self._completed:
            self._abort_branches("Primary stream closed before completion")
        closer = getattr(self._source, "aclose", None)
        if closer is not None:
            await closer()

    def _abort_branches(self, reason: str) -> None:
        for branch in self._branches:
            branch.abort(BranchAborted(reason))
