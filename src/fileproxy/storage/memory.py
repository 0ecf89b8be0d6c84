"""In-memory byte store, used for tests and throwaway proxies."""

from __future__ import annotations

from typing import AsyncIterable

from ..common.content import Content, Key
from ..common.errors import KeyNotFound
from .base import ByteStore


class InMemoryByteStore(ByteStore):
    name = "memory"

    def __init__(self, initial: dict[str, bytes] | None = None) -> None:
        self._data: dict[Key, bytes] = {}
        for path, value in (initial or {}).items():
            self._data[Key.from_path(path)] = value

    async def exists(self, key: Key) -> bool:
        return key in self._data

    async def read(self, key: Key) -> Content:
        try:
            value = self._data[key]
        except KeyError as exc:
            raise KeyNotFound(key) from exc
        return Content.from_bytes(value)

    async def write(self, key: Key, chunks: AsyncIterable[bytes]) -> int:
        buffer = bytearray()
        async for chunk in chunks:
            buffer.extend(chunk)
        self._data[key] = bytes(buffer)
        return len(buffer)

    async def delete(self, key: Key) -> None:
        try:
            del self._data[key]
        except KeyError as exc:
            raise KeyNotFound(key) from exc

    def keys(self) -> list[Key]:
        return sorted(self._data, key=Key.string)

    def status(self) -> dict[str, object]:
        return {"backend": self.name, "entries": len(self._data)}
