"""Storage keys and lazily produced byte content."""

from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable, Optional

from .errors import ContentConsumed, IncompleteContent, InvalidKey


_FORBIDDEN_SEGMENTS = {"", ".", ".."}


@dataclass(frozen=True)
class Key:
    """Ordered path segments identifying one artifact.

    The same key addresses an entry in the byte store and the cached copy of
    a remote artifact, so segments that could escape a storage root or alias
    another key are rejected up front.
    """

    parts: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.parts:
            raise InvalidKey("Key must contain at least one segment")
        for part in self.parts:
            if part in _FORBIDDEN_SEGMENTS or "/" in part or "\x00" in part:
                raise InvalidKey(f"Invalid key segment {part!r}")

    @classmethod
    def from_path(cls, path: str) -> "Key":
        """Build a key from a URL path, dropping a single leading slash."""
        if path.startswith("/"):
            path = path[1:]
        return cls(tuple(path.split("/")))

    @classmethod
    def of(cls, *parts: str) -> "Key":
        return cls(tuple(parts))

    def string(self) -> str:
        return "/".join(self.parts)

    def parent(self) -> Optional["Key"]:
        if len(self.parts) == 1:
            return None
        return Key(self.parts[:-1])

    def child(self, *parts: str) -> "Key":
        return Key(self.parts + tuple(parts))

    def __str__(self) -> str:
        return self.string()


class Content:
    """A one-shot stream of byte chunks with an optional declared size.

    Iterating twice raises :class:`ContentConsumed`. When ``size`` is known the
    stream is checked against it and :class:`IncompleteContent` is raised if
    the producer ends early or overruns, so a truncated transfer is never
    mistaken for a complete one.
    """

    def __init__(
        self,
        chunks: AsyncIterable[bytes],
        size: Optional[int] = None,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self._chunks = chunks
        self.size = size
        self._on_close = on_close
        self._consumed = False
        self._closed = False

    @classmethod
    def from_bytes(cls, data: bytes) -> "Content":
        return cls(_single_chunk(data), size=len(data))

    @classmethod
    def from_chunks(cls, chunks: Iterable[bytes], size: Optional[int] = None) -> "Content":
        return cls(_iter_chunks(list(chunks)), size=size)

    @classmethod
    def empty(cls) -> "Content":
        return cls.from_bytes(b"")

    @property
    def consumed(self) -> bool:
        return self._consumed

    def __aiter__(self) -> AsyncIterator[bytes]:
        if self._consumed:
            raise ContentConsumed("Content has already been consumed")
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        received = 0
        try:
            async for chunk in self._chunks:
                if not chunk:
                    continue
                received += len(chunk)
                if self.size is not None and received > self.size:
                    raise IncompleteContent(self.size, received)
                yield bytes(chunk)
            if self.size is not None and received != self.size:
                raise IncompleteContent(self.size, received)
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        closer = getattr(self._chunks, "aclose", None)
        if closer is not None:
            await closer()
        if self._on_close is not None:
            await self._on_close()

    async def read_all(self) -> bytes:
        buffer = bytearray()
        async for chunk in self:
            buffer.extend(chunk)
        return bytes(buffer)


async def _single_chunk(data: bytes) -> AsyncIterator[bytes]:
    if data:
        yield data


async def _iter_chunks(chunks: list[bytes]) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk
