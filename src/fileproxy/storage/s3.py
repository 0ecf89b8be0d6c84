"""S3-compatible byte store with retries and a circuit breaker."""

from __future__ import annotations

import asyncio
import tempfile
import time
from typing import AsyncIterable, AsyncIterator, Callable, Optional

import boto3
import structlog
from botocore.exceptions import ClientError

from ..common.content import Content, Key
from ..common.errors import KeyNotFound, StoreError
from ..common.settings import ProxySettings
from .base import ByteStore


LOGGER = structlog.get_logger("fileproxy.storage.s3")

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
# Bodies larger than this are spooled to disk before upload.
_SPOOL_MAX_BYTES = 8 * 1024 * 1024


class CircuitBreaker:
    def __init__(self, failure_threshold: int, reset_timeout: float):
        self._failure_threshold = max(1, failure_threshold)
        self._reset_timeout = max(0.0, reset_timeout)
        self._failure_count = 0
        self._opened_at: float | None = None

    def _maybe_reset(self) -> None:
        if self._opened_at is None:
            return
        if time.monotonic() - self._opened_at >= self._reset_timeout:
            self._opened_at = None
            self._failure_count = 0

    def allow_request(self) -> bool:
        self._maybe_reset()
        return self._opened_at is None

    def record_success(self) -> None:
        self._failure_count = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._failure_count >= self._failure_threshold:
            self._opened_at = time.monotonic()

    @property
    def is_open(self) -> bool:
        self._maybe_reset()
        return self._opened_at is not None


def _is_not_found(exc: BaseException) -> bool:
    if isinstance(exc, ClientError):
        response = getattr(exc, "response", None) or {}
        return response.get("Error", {}).get("Code", "") in _NOT_FOUND_CODES
    return False


class S3ByteStore(ByteStore):
    """Keeps each key as one object in a bucket.

    A single ``put_object`` call publishes the value, which S3 makes visible
    atomically. The request body is spooled locally first so the upload can be
    retried without re-reading the source stream.
    """

    name = "s3"

    def __init__(self, settings: ProxySettings):
        self._settings = settings
        session = boto3.session.Session()
        client_args: dict[str, Optional[str]] = {
            "endpoint_url": settings.s3_endpoint_url,
            "region_name": settings.s3_region,
        }
        self._client = session.client("s3", **{k: v for k, v in client_args.items() if v})
        self._bucket = settings.s3_bucket
        self._chunk_size = settings.read_chunk_size
        self._max_retries = max(0, settings.s3_max_retries)
        self._retry_base = max(0.0, settings.s3_retry_base_seconds)
        self._retry_max = max(self._retry_base, settings.s3_retry_max_seconds)
        self._breaker = CircuitBreaker(
            failure_threshold=settings.s3_circuit_breaker_failures,
            reset_timeout=settings.s3_circuit_breaker_reset_seconds,
        )

    def _is_missing(self, exc: BaseException) -> bool:
        no_such_key = getattr(getattr(self._client, "exceptions", None), "NoSuchKey", None)
        if isinstance(no_such_key, type) and isinstance(exc, no_such_key):
            return True
        return _is_not_found(exc)

    async def exists(self, key: Key) -> bool:
        try:
            await self._call_with_retry(self._client.head_object, Bucket=self._bucket, Key=key.string())
        except KeyNotFound:
            return False
        return True

    async def read(self, key: Key) -> Content:
        response = await self._call_with_retry(self._client.get_object, Bucket=self._bucket, Key=key.string())
        body = response["Body"]
        length = response.get("ContentLength")

        async def close() -> None:
            closer = getattr(body, "close", None)
            if closer is not None:
                await asyncio.to_thread(closer)

        return Content(
            self._read_chunks(key, body),
            size=int(length) if length is not None else None,
            on_close=close,
        )

    async def _read_chunks(self, key: Key, body) -> AsyncIterator[bytes]:
        while True:
            try:
                chunk = await asyncio.to_thread(body.read, self._chunk_size)
            except Exception as exc:  # noqa: BLE001 - botocore raises several transport errors here
                raise StoreError(f"Failed to read {key} from S3") from exc
            if not chunk:
                return
            yield chunk

    async def write(self, key: Key, chunks: AsyncIterable[bytes]) -> int:
        with tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_BYTES) as spool:
            written = 0
            async for chunk in chunks:
                await asyncio.to_thread(spool.write, chunk)
                written += len(chunk)

            def upload(**kwargs) -> object:
                spool.seek(0)
                return self._client.put_object(Body=spool, **kwargs)

            await self._call_with_retry(upload, Bucket=self._bucket, Key=key.string())
        LOGGER.debug("store_write", key=key.string(), bytes=written)
        return written

    async def delete(self, key: Key) -> None:
        if not await self.exists(key):
            raise KeyNotFound(key)
        await self._call_with_retry(self._client.delete_object, Bucket=self._bucket, Key=key.string())

    def status(self) -> dict[str, object]:
        return {
            "backend": self.name,
            "bucket": self._bucket,
            "endpoint": self._settings.s3_endpoint_url,
            "circuit_open": self._breaker.is_open,
        }

    async def _call_with_retry(self, func: Callable[..., object], **kwargs) -> object:
        if not self._breaker.allow_request():
            raise StoreError("S3 store temporarily unavailable")

        attempt = 0
        while True:
            try:
                result = await asyncio.to_thread(func, **kwargs)
                self._breaker.record_success()
                return result
            except Exception as exc:  # noqa: BLE001
                if self._is_missing(exc):
                    self._breaker.record_success()
                    raise KeyNotFound(kwargs.get("Key")) from exc
                attempt += 1
                if attempt > self._max_retries:
                    self._breaker.record_failure()
                    LOGGER.warning("s3_call_failed", operation=getattr(func, "__name__", "call"), attempts=attempt)
                    raise StoreError("S3 store temporarily unavailable") from exc
                delay = min(self._retry_base * (2 ** (attempt - 1)), self._retry_max)
                if delay:
                    await asyncio.sleep(delay)
