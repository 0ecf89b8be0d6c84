"""Remote-first cache coordination with write-through and stale fallback."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Literal, Mapping, Optional

import structlog
from opentelemetry import trace

from ..common.content import Content, Key
from ..common.errors import KeyNotFound
from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge
from ..common.observability import artifact_span
from ..remote.outcome import FetchError, FetchNotFound, FetchOutcome, FetchSuccess
from ..storage.base import ByteStore
from .fanout import Branch, BranchAborted, FanOut


LOGGER = structlog.get_logger("fileproxy.cache")
TRACER = trace.get_tracer("fileproxy.cache")

LOAD_COUNTER = GLOBAL_REGISTRY.register(
    Counter(
        "fileproxy_proxy_loads_total",
        "Proxy loads by where the artifact came from (none when absent everywhere)",
        labels=("source",),
        initial=[{"source": source} for source in ("remote", "cache", "none")],
    )
)
REMOTE_OUTCOME_COUNTER = GLOBAL_REGISTRY.register(
    Counter(
        "fileproxy_remote_fetches_total",
        "Origin fetches by outcome",
        labels=("outcome",),
        initial=[{"outcome": outcome} for outcome in ("success", "not_found", "error")],
    )
)
CACHE_WRITE_COUNTER = GLOBAL_REGISTRY.register(
    Counter(
        "fileproxy_cache_writes_total",
        "Write-through cache writes by result",
        labels=("result",),
        initial=[{"result": result} for result in ("stored", "abandoned", "failed")],
    )
)
CACHE_BYTES_WRITTEN_COUNTER = GLOBAL_REGISTRY.register(
    Counter("fileproxy_cache_bytes_written_total", "Bytes written to the cache")
)
PENDING_WRITES_GAUGE = GLOBAL_REGISTRY.register(Gauge("fileproxy_cache_pending_writes", "Cache writes in flight"))


Fetch = Callable[[], Awaitable[FetchOutcome]]


@dataclass(frozen=True)
class LoadResult:
    content: Content
    headers: Mapping[str, str] = field(default_factory=dict)
    source: Literal["remote", "cache"] = "remote"


class CacheCoordinator:
    """Serves artifacts from the origin, keeping the store as a write-through fallback.

    Every :meth:`load` calls the origin first. A successful body is streamed
    to the caller while a background task copies the same chunks into the
    store; the copy is best-effort and is dropped if it falls behind by more
    than ``max_buffered_chunks`` chunks, if the store rejects it, or if the
    transfer does not complete. When the origin misses or fails, the stored
    copy is returned instead, without origin headers.

    Concurrent loads of one key are not coalesced: each performs its own
    origin request and its own store write, and the store's atomic replace
    decides which write is visible last.

    With ``store=None`` the coordinator only passes origin responses through
    and reports every origin failure as absent.
    """

    def __init__(self, store: Optional[ByteStore], *, max_buffered_chunks: int = 256) -> None:
        self._store = store
        self._max_buffered_chunks = max_buffered_chunks
        self._pending: set[asyncio.Task] = set()

    @property
    def store(self) -> Optional[ByteStore]:
        return self._store

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    async def load(self, key: Key, fetch: Fetch) -> Optional[LoadResult]:
        with artifact_span(TRACER, "cache.load", key, cache_enabled=self._store is not None) as span:
            try:
                outcome = await fetch()
            except Exception as exc:  # noqa: BLE001 - a misbehaving fetcher counts as an origin failure
                outcome = FetchError(exc)

            if isinstance(outcome, FetchSuccess):
                REMOTE_OUTCOME_COUNTER.inc(outcome="success")
                self._record(span, "remote")
                content = self._write_through(key, outcome.content)
                return LoadResult(content=content, headers=dict(outcome.headers), source="remote")

            if isinstance(outcome, FetchError):
                REMOTE_OUTCOME_COUNTER.inc(outcome="error")
                LOGGER.warning("remote_fetch_error", error=repr(outcome.cause))
            elif isinstance(outcome, FetchNotFound):
                REMOTE_OUTCOME_COUNTER.inc(outcome="not_found")
                LOGGER.debug("remote_not_found")

            cached = await self._read_cached(key)
            if cached is None:
                self._record(span, "none")
                LOGGER.info("artifact_not_found")
                return None
            self._record(span, "cache")
            LOGGER.info("cache_fallback_hit", bytes=cached.size)
            return LoadResult(content=cached, headers={}, source="cache")

    @staticmethod
    def _record(span, source: str) -> None:
        LOAD_COUNTER.inc(source=source)
        span.set_attribute("fileproxy.source", source)

    async def drain(self) -> None:
        """Wait until every background cache write has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _read_cached(self, key: Key) -> Optional[Content]:
        if self._store is None:
            return None
        try:
            if not await self._store.exists(key):
                return None
            return await self._store.read(key)
        except KeyNotFound:
            # Removed between the existence check and the read.
            return None

    def _write_through(self, key: Key, content: Content) -> Content:
        if self._store is None:
            return content
        fanout = FanOut(content, self._max_buffered_chunks)
        branch = fanout.branch()
        task = asyncio.create_task(self._populate(key, branch))
        self._pending.add(task)
        PENDING_WRITES_GAUGE.set(float(len(self._pending)))
        task.add_done_callback(self._write_finished)
        return Content(fanout.primary(), size=content.size, on_close=fanout.aclose)

    def _write_finished(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        PENDING_WRITES_GAUGE.set(float(len(self._pending)))

    async def _populate(self, key: Key, branch: Branch) -> None:
        assert self._store is not None
        try:
            written = await self._store.write(key, branch)
        except BranchAborted as exc:
            CACHE_WRITE_COUNTER.inc(result="abandoned")
            LOGGER.info("cache_write_abandoned", key=key.string(), reason=str(exc))
        except Exception as exc:  # noqa: BLE001 - cache population never fails the request
            branch.abort(BranchAborted("Byte store rejected the write"))
            CACHE_WRITE_COUNTER.inc(result="failed")
            LOGGER.warning("cache_write_failed", key=key.string(), error=repr(exc))
        else:
            CACHE_WRITE_COUNTER.inc(result="stored")
            CACHE_BYTES_WRITTEN_COUNTER.inc(written)
            LOGGER.info("cache_write", key=key.string(), bytes=written)
