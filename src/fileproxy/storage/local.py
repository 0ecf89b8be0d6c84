"""Filesystem-backed byte store."""

from __future__ import annotations

import asyncio
import os
import tempfile
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, BinaryIO

import structlog

from ..common.content import Content, Key
from ..common.errors import InvalidKey, KeyNotFound, StoreError
from .base import ByteStore


LOGGER = structlog.get_logger("fileproxy.storage.local")


def resolve_key_path(root: Path, key: Key) -> Path:
    base = root.resolve()
    resolved = base.joinpath(*key.parts).resolve(strict=False)
    if resolved == base or not resolved.is_relative_to(base):
        raise InvalidKey(f"Key {key} escapes the storage root")
    return resolved


def _open_sized(path: Path) -> tuple[BinaryIO, int]:
    handle = path.open("rb")
    try:
        return handle, os.fstat(handle.fileno()).st_size
    except BaseException:
        handle.close()
        raise


class LocalByteStore(ByteStore):
    """Stores each key as a file below ``root``.

    Values are written to a temporary file next to the destination and
    published with ``os.replace``, so readers holding the old file keep
    reading it and new readers only ever see complete files.
    """

    name = "local"

    def __init__(self, root: Path, chunk_size: int = 64 * 1024) -> None:
        self._root = Path(root)
        self._chunk_size = chunk_size

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: Key) -> Path:
        return resolve_key_path(self._root, key)

    async def exists(self, key: Key) -> bool:
        path = self._path(key)
        try:
            return await asyncio.to_thread(path.is_file)
        except OSError as exc:
            raise StoreError(f"Failed to stat {key}") from exc

    async def read(self, key: Key) -> Content:
        path = self._path(key)
        try:
            handle, size = await asyncio.to_thread(_open_sized, path)
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as exc:
            raise KeyNotFound(key) from exc
        except OSError as exc:
            raise StoreError(f"Failed to open {key}") from exc

        async def close() -> None:
            await asyncio.to_thread(handle.close)

        return Content(self._read_chunks(key, handle), size=size, on_close=close)

    async def _read_chunks(self, key: Key, handle: BinaryIO) -> AsyncIterator[bytes]:
        while True:
            try:
                chunk = await asyncio.to_thread(handle.read, self._chunk_size)
            except OSError as exc:
                raise StoreError(f"Failed to read {key}") from exc
            if not chunk:
                return
            yield chunk

    async def write(self, key: Key, chunks: AsyncIterable[bytes]) -> int:
        path = self._path(key)
        try:
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
            fd, temp_name = await asyncio.to_thread(
                tempfile.mkstemp, prefix=f".{path.name}.", suffix=".part", dir=path.parent
            )
        except OSError as exc:
            raise StoreError(f"Failed to prepare {key} for writing") from exc

        temp_path = Path(temp_name)
        written = 0
        try:
            with os.fdopen(fd, "wb") as handle:
                async for chunk in chunks:
                    await asyncio.to_thread(handle.write, chunk)
                    written += len(chunk)
            await asyncio.to_thread(os.replace, temp_path, path)
        except OSError as exc:
            temp_path.unlink(missing_ok=True)
            raise StoreError(f"Failed to write {key}") from exc
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise
        LOGGER.debug("store_write", key=key.string(), bytes=written)
        return written

    async def delete(self, key: Key) -> None:
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink)
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as exc:
            raise KeyNotFound(key) from exc
        except OSError as exc:
            raise StoreError(f"Failed to delete {key}") from exc
        root = self._root.resolve()
        parent = path.parent
        while parent != root and parent.exists():
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent

    def status(self) -> dict[str, object]:
        self._root.mkdir(parents=True, exist_ok=True)
        return {
            "backend": self.name,
            "storage_path": str(self._root),
            "writable": os.access(self._root, os.W_OK),
        }
