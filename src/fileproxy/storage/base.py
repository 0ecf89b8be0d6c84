"""Byte store interface shared by the storage backends."""

from __future__ import annotations

import abc
from typing import AsyncIterable

from ..common.content import Content, Key


class ByteStore(abc.ABC):
    """Key to byte-stream mapping.

    ``write`` replaces the whole value and must be atomic for readers: a
    concurrent ``read`` sees either the previous value or the new one, never a
    partial file. If the chunk iterator raises, nothing is committed and the
    error propagates to the caller.
    """

    name = "abstract"

    @abc.abstractmethod
    async def exists(self, key: Key) -> bool:
        ...

    @abc.abstractmethod
    async def read(self, key: Key) -> Content:
        """Open the stored value; raises ``KeyNotFound`` when absent."""

    @abc.abstractmethod
    async def write(self, key: Key, chunks: AsyncIterable[bytes]) -> int:
        """Store ``chunks`` under ``key`` and return the number of bytes written."""

    @abc.abstractmethod
    async def delete(self, key: Key) -> None:
        """Remove the value; raises ``KeyNotFound`` when absent."""

    def status(self) -> dict[str, object]:
        return {"backend": self.name}
