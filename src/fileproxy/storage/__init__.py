"""Byte store backends.

Every backend implements :class:`ByteStore`; :func:`build_store` picks one
from the service settings.
"""

from __future__ import annotations

from ..common.settings import ProxySettings
from .base import ByteStore
from .local import LocalByteStore
from .memory import InMemoryByteStore


def build_store(settings: ProxySettings) -> ByteStore:
    if settings.storage_backend == "s3":
        if not settings.s3_bucket or not settings.s3_endpoint_url:
            raise RuntimeError("S3 configuration incomplete for byte store")
        from .s3 import S3ByteStore

        return S3ByteStore(settings)
    if settings.storage_backend == "memory":
        return InMemoryByteStore()
    return LocalByteStore(settings.storage_path, chunk_size=settings.read_chunk_size)


__all__ = ["ByteStore", "InMemoryByteStore", "LocalByteStore", "build_store"]
