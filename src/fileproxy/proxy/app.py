"""HTTP service exposing the caching proxy and direct file access."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from opentelemetry import trace

from ..cache.coordinator import CacheCoordinator, LoadResult
from ..common.content import Content, Key
from ..common.errors import InvalidKey, KeyNotFound, StoreError
from ..common.http_security import require_metrics_access, require_upload_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import (
    REQUEST_ID_HEADER,
    artifact_span,
    configure_logging,
    configure_tracing,
    instrument_app,
    request_context,
    request_id_from,
)
from ..common.settings import ProxySettings
from ..remote.fetcher import RemoteFetcher
from ..storage import ByteStore, build_store


DEFAULT_CONTENT_TYPE = "application/octet-stream"

REQUEST_COUNTER = GLOBAL_REGISTRY.register(
    Counter("fileproxy_requests_total", "Artifact requests by route and method", labels=("route", "method"))
)
BYTES_SERVED_COUNTER = GLOBAL_REGISTRY.register(
    Counter(
        "fileproxy_bytes_served_total",
        "Artifact bytes sent to clients",
        labels=("route",),
        initial=[{"route": "proxy"}, {"route": "files"}],
    )
)
BYTES_STORED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("fileproxy_bytes_uploaded_total", "Artifact bytes stored through the file endpoint")
)
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "fileproxy_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0],
        description="Time to first response byte",
    )
)
TRACER = trace.get_tracer("fileproxy.proxy")


class ProxyState:
    def __init__(
        self,
        settings: ProxySettings,
        store: ByteStore,
        coordinator: CacheCoordinator,
        fetcher: Optional[RemoteFetcher],
    ):
        self.settings = settings
        self.store = store
        self.coordinator = coordinator
        self.fetcher = fetcher
        self.logger = structlog.get_logger("fileproxy.proxy").bind(backend=store.name)

    def upload_token(self) -> Optional[str]:
        token = self.settings.upload_token
        return token.get_secret_value() if token else None

    def metrics_token(self) -> Optional[str]:
        token = self.settings.metrics_token
        return token.get_secret_value() if token else None


def get_state(request: Request) -> ProxyState:
    return request.app.state.proxy_state  # type: ignore[attr-defined]


def request_key(key: str) -> Key:
    return Key.from_path(key)


def require_writer(request: Request, state: ProxyState = Depends(get_state)) -> None:
    require_upload_access(request, state.upload_token())


async def _metered(content: Content, route: str) -> AsyncIterator[bytes]:
    try:
        async for chunk in content:
            BYTES_SERVED_COUNTER.inc(len(chunk), route=route)
            yield chunk
    finally:
        await content.aclose()


async def _limited(stream: AsyncIterator[bytes], limit: int) -> AsyncIterator[bytes]:
    received = 0
    async for chunk in stream:
        received += len(chunk)
        if received > limit:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"Artifact exceeds max size: {limit} bytes",
            )
        yield chunk


def response_headers(result: LoadResult) -> dict[str, str]:
    headers = {name.lower(): value for name, value in result.headers.items()}
    headers.setdefault("content-type", DEFAULT_CONTENT_TYPE)
    if result.content.size is not None:
        headers["content-length"] = str(result.content.size)
    else:
        headers.pop("content-length", None)
    return headers


def _stream(content: Content, headers: dict[str, str], route: str) -> StreamingResponse:
    return StreamingResponse(_metered(content, route), status_code=status.HTTP_200_OK, headers=headers)


def create_app(
    settings: Optional[ProxySettings] = None,
    *,
    store: Optional[ByteStore] = None,
    remote_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Build the service.

    ``store`` and ``remote_client`` override what ``settings`` would build;
    tests use them to run against in-memory storage and mocked origins.
    """
    settings = settings or ProxySettings()
    configure_logging("fileproxy", settings.log_level)
    configure_tracing(settings)
    store = store or build_store(settings)
    fetcher = RemoteFetcher.from_settings(settings, client=remote_client) if settings.remote_url else None
    coordinator = CacheCoordinator(
        store if settings.proxy_cache_enabled else None,
        max_buffered_chunks=settings.cache_write_buffer_chunks,
    )
    state = ProxyState(settings, store, coordinator, fetcher)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        state.logger.info(
            "proxy_started",
            remote_url=fetcher.base_url if fetcher else None,
            cache_enabled=settings.proxy_cache_enabled,
        )
        try:
            yield
        finally:
            await coordinator.drain()
            if fetcher is not None:
                await fetcher.aclose()
            state.logger.info("proxy_stopped")

    app = FastAPI(lifespan=lifespan)
    instrument_app(app)
    app.state.proxy_state = state

    @app.exception_handler(InvalidKey)
    async def invalid_key_handler(_request: Request, exc: InvalidKey) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=status.HTTP_400_BAD_REQUEST)

    @app.exception_handler(KeyNotFound)
    async def missing_key_handler(_request: Request, _exc: KeyNotFound) -> Response:
        return Response(status_code=status.HTTP_404_NOT_FOUND)

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
        state.logger.error("store_error", path=request.url.path, error=repr(exc))
        return JSONResponse({"detail": "Storage failure"}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    @app.middleware("http")
    async def record_request(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        request_id = request_id_from(request.headers.get(REQUEST_ID_HEADER))
        with request_context(request_id, request.method, request.url.path):
            start = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception:
                duration = time.perf_counter() - start
                REQUEST_LATENCY_HISTOGRAM.observe(duration)
                state.logger.exception("http_request_error", duration_ms=round(duration * 1000, 2))
                raise

            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            response.headers[REQUEST_ID_HEADER] = request_id
            log_kwargs = {"status": response.status_code, "duration_ms": round(duration * 1000, 2)}
            if response.status_code >= 500:
                state.logger.error("http_request", **log_kwargs)
            elif duration >= 1.0:
                state.logger.warning("http_request", **log_kwargs)
            else:
                state.logger.info("http_request", **log_kwargs)
            return response

    @app.get("/files/{key:path}")
    async def get_file(key: Key = Depends(request_key), state: ProxyState = Depends(get_state)) -> Response:
        REQUEST_COUNTER.inc(route="files", method="GET")
        with artifact_span(TRACER, "files.get", key, backend=state.store.name) as span:
            content = await state.store.read(key)
            headers = {"content-type": DEFAULT_CONTENT_TYPE}
            if content.size is not None:
                headers["content-length"] = str(content.size)
                span.set_attribute("fileproxy.bytes", content.size)
            return _stream(content, headers, route="files")

    @app.head("/files/{key:path}")
    async def head_file(key: Key = Depends(request_key), state: ProxyState = Depends(get_state)) -> Response:
        REQUEST_COUNTER.inc(route="files", method="HEAD")
        with artifact_span(TRACER, "files.head", key, backend=state.store.name):
            content = await state.store.read(key)
            await content.aclose()
        response = Response(status_code=status.HTTP_200_OK, media_type=DEFAULT_CONTENT_TYPE)
        if content.size is not None:
            response.headers["Content-Length"] = str(content.size)
        return response

    @app.api_route(
        "/files/{key:path}",
        methods=["PUT", "POST"],
        status_code=status.HTTP_201_CREATED,
        dependencies=[Depends(require_writer)],
    )
    async def put_file(
        request: Request,
        key: Key = Depends(request_key),
        state: ProxyState = Depends(get_state),
    ) -> Response:
        limit = state.settings.max_artifact_bytes
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > limit:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"Artifact exceeds max size: {limit} bytes",
            )
        REQUEST_COUNTER.inc(route="files", method=request.method)
        with artifact_span(TRACER, "files.put", key, backend=state.store.name) as span:
            written = await state.store.write(key, _limited(request.stream(), limit))
            BYTES_STORED_COUNTER.inc(written)
            span.set_attribute("fileproxy.bytes_written", written)
            state.logger.info("file_stored", bytes=written)
            return Response(status_code=status.HTTP_201_CREATED)

    @app.delete(
        "/files/{key:path}",
        status_code=status.HTTP_204_NO_CONTENT,
        dependencies=[Depends(require_writer)],
    )
    async def delete_file(key: Key = Depends(request_key), state: ProxyState = Depends(get_state)) -> Response:
        REQUEST_COUNTER.inc(route="files", method="DELETE")
        with artifact_span(TRACER, "files.delete", key, backend=state.store.name):
            await state.store.delete(key)
            state.logger.info("file_deleted")
            return Response(status_code=status.HTTP_204_NO_CONTENT)

    if fetcher is not None:

        @app.get("/proxy/{key:path}")
        async def proxy_get(key: Key = Depends(request_key), state: ProxyState = Depends(get_state)) -> Response:
            REQUEST_COUNTER.inc(route="proxy", method="GET")
            with artifact_span(TRACER, "proxy.get", key, remote_url=fetcher.url_for(key)) as span:
                result = await state.coordinator.load(key, lambda: fetcher.fetch(key))
                if result is None:
                    span.set_attribute("fileproxy.found", False)
                    return Response(status_code=status.HTTP_404_NOT_FOUND)
                span.set_attribute("fileproxy.found", True)
                span.set_attribute("fileproxy.source", result.source)
                return _stream(result.content, response_headers(result), route="proxy")

    @app.get("/status")
    async def service_status(state: ProxyState = Depends(get_state)) -> JSONResponse:
        with TRACER.start_as_current_span("proxy.status"):
            payload = dict(state.store.status())
            payload.update(
                {
                    "remote_url": state.fetcher.base_url if state.fetcher else None,
                    "cache_enabled": state.coordinator.store is not None,
                    "pending_cache_writes": state.coordinator.pending_writes,
                }
            )
            return JSONResponse(payload)

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, state: ProxyState = Depends(get_state)) -> PlainTextResponse:
        require_metrics_access(request, state.metrics_token())
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check(state: ProxyState = Depends(get_state)) -> dict:
        """Readiness and liveness check."""
        health: dict = {"status": "healthy", "checks": {}}
        try:
            store_status = state.store.status()
            health["checks"]["backend"] = store_status.get("backend", "unknown")
            if "writable" in store_status:
                health["checks"]["writable"] = store_status["writable"]
                if not store_status["writable"]:
                    health["status"] = "unhealthy"
        except Exception as exc:  # noqa: BLE001 - reported in the health payload
            health["checks"]["backend"] = f"error: {exc}"
            health["status"] = "unhealthy"

        if health["status"] != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        return health

    return app
