from __future__ import annotations

import httpx
import pytest

from fileproxy.common.content import Key
from fileproxy.common.errors import RemoteStreamError
from fileproxy.proxy.app import create_app
from fileproxy.storage import InMemoryByteStore
from tests.utils.origin import BrokenStream


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://proxy.test")


async def _stored(store: InMemoryByteStore, path: str) -> bytes:
    return await (await store.read(Key.from_path(path))).read_all()


@pytest.mark.anyio
async def test_proxy_fetches_from_origin_server_and_caches(settings_factory) -> None:
    origin_store = InMemoryByteStore({"foo/any": b"xyz098"})
    origin_app = create_app(settings_factory(remote_url=None, storage_backend="memory"), store=origin_store)
    remote_client = httpx.AsyncClient(transport=httpx.ASGITransport(app=origin_app))

    cache = InMemoryByteStore()
    app = create_app(
        settings_factory(remote_url="http://origin.test/files/foo", storage_backend="memory"),
        store=cache,
        remote_client=remote_client,
    )
    async with _client(app) as client:
        response = await client.get("/proxy/any")
        assert response.status_code == 200
        assert response.content == b"xyz098"
        assert response.headers["content-type"] == "application/octet-stream"

    await app.state.proxy_state.coordinator.drain()
    assert await _stored(cache, "any") == b"xyz098"
    await remote_client.aclose()


@pytest.mark.anyio
async def test_proxy_serves_cached_copy_when_origin_unreachable(settings_factory, origin) -> None:
    origin.unreachable = True
    cache = InMemoryByteStore({"abc": b"abc123"})
    app = create_app(settings_factory(storage_backend="memory"), store=cache, remote_client=origin.client())

    async with _client(app) as client:
        response = await client.get("/proxy/abc")

    assert response.status_code == 200
    assert response.content == b"abc123"
    assert response.headers["content-length"] == "6"
    assert response.headers["content-type"] == "application/octet-stream"


@pytest.mark.anyio
async def test_proxy_serves_cached_copy_on_origin_server_error(settings_factory, origin) -> None:
    origin.statuses["abc"] = 503
    cache = InMemoryByteStore({"abc": b"abc123"})
    app = create_app(settings_factory(storage_backend="memory"), store=cache, remote_client=origin.client())

    async with _client(app) as client:
        response = await client.get("/proxy/abc")

    assert response.status_code == 200
    assert response.content == b"abc123"


@pytest.mark.anyio
async def test_proxy_returns_404_when_absent_everywhere(settings_factory, origin) -> None:
    app = create_app(settings_factory(storage_backend="memory"), store=InMemoryByteStore(), remote_client=origin.client())

    async with _client(app) as client:
        response = await client.get("/proxy/missing.bin")

    assert response.status_code == 404
    assert response.content == b""


@pytest.mark.anyio
async def test_proxy_forwards_origin_headers_without_hop_by_hop(settings_factory, origin) -> None:
    origin.serve(
        "pkg/app.tar.gz",
        b"tarball",
        headers={"Content-Type": "application/gzip", "ETag": '"v1"', "Keep-Alive": "timeout=5"},
    )
    app = create_app(settings_factory(storage_backend="memory"), store=InMemoryByteStore(), remote_client=origin.client())

    async with _client(app) as client:
        response = await client.get("/proxy/pkg/app.tar.gz")

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/gzip"
    assert response.headers["etag"] == '"v1"'
    assert "keep-alive" not in response.headers


@pytest.mark.anyio
async def test_proxy_prefers_origin_over_stale_cache(settings_factory, origin) -> None:
    origin.serve("abc", b"fresh")
    cache = InMemoryByteStore({"abc": b"stale"})
    app = create_app(settings_factory(storage_backend="memory"), store=cache, remote_client=origin.client())

    async with _client(app) as client:
        response = await client.get("/proxy/abc")

    assert response.content == b"fresh"
    await app.state.proxy_state.coordinator.drain()
    assert await _stored(cache, "abc") == b"fresh"


@pytest.mark.anyio
async def test_proxy_encodes_key_segments_for_origin(settings_factory, origin) -> None:
    origin.serve("dir/file name.txt", b"spaced")
    app = create_app(settings_factory(storage_backend="memory"), store=InMemoryByteStore(), remote_client=origin.client())

    async with _client(app) as client:
        response = await client.get("/proxy/dir/file%20name.txt")

    assert response.status_code == 200
    assert response.content == b"spaced"
    assert origin.requests[0].url.raw_path == b"/repo/dir/file%20name.txt"


@pytest.mark.anyio
async def test_proxy_does_not_forward_client_headers_or_query(settings_factory, origin) -> None:
    origin.serve("abc", b"data")
    app = create_app(settings_factory(storage_backend="memory"), store=InMemoryByteStore(), remote_client=origin.client())

    async with _client(app) as client:
        await client.get("/proxy/abc?version=2", headers={"X-Client": "secret"})

    request = origin.requests[0]
    assert "x-client" not in request.headers
    assert request.url.query == b""


@pytest.mark.anyio
async def test_pass_through_mode_does_not_cache(settings_factory, origin) -> None:
    origin.serve("abc", b"data")
    cache = InMemoryByteStore()
    app = create_app(
        settings_factory(storage_backend="memory", proxy_cache_enabled=False),
        store=cache,
        remote_client=origin.client(),
    )

    async with _client(app) as client:
        assert (await client.get("/proxy/abc")).content == b"data"
        origin.unreachable = True
        assert (await client.get("/proxy/abc")).status_code == 404

    assert cache.keys() == []


@pytest.mark.anyio
async def test_proxy_only_accepts_get(settings_factory, origin) -> None:
    app = create_app(settings_factory(storage_backend="memory"), store=InMemoryByteStore(), remote_client=origin.client())

    async with _client(app) as client:
        response = await client.put("/proxy/any", content=b"nope")

    assert response.status_code == 405


@pytest.mark.anyio
async def test_proxy_route_absent_without_remote(settings_factory) -> None:
    app = create_app(settings_factory(remote_url=None, storage_backend="memory"), store=InMemoryByteStore())

    async with _client(app) as client:
        response = await client.get("/proxy/any")

    assert response.status_code == 404
    assert response.json() == {"detail": "Not Found"}


@pytest.mark.anyio
@pytest.mark.parametrize("path", ["/proxy/a//b", "/proxy/a%00b", "/files/a//b"])
async def test_invalid_keys_are_rejected(settings_factory, origin, path: str) -> None:
    app = create_app(settings_factory(storage_backend="memory"), store=InMemoryByteStore(), remote_client=origin.client())

    async with _client(app) as client:
        response = await client.get(path)

    assert response.status_code == 400
    assert origin.requests == []


@pytest.mark.anyio
async def test_files_crud_roundtrip(settings_factory) -> None:
    store = InMemoryByteStore()
    app = create_app(settings_factory(remote_url=None, storage_backend="memory"), store=store)

    async with _client(app) as client:
        created = await client.put("/files/releases/v1/app.bin", content=b"binary-data")
        assert created.status_code == 201

        fetched = await client.get("/files/releases/v1/app.bin")
        assert fetched.status_code == 200
        assert fetched.content == b"binary-data"
        assert fetched.headers["content-type"] == "application/octet-stream"
        assert fetched.headers["content-length"] == "11"

        head = await client.head("/files/releases/v1/app.bin")
        assert head.status_code == 200
        assert head.headers["content-length"] == "11"

        replaced = await client.post("/files/releases/v1/app.bin", content=b"v2")
        assert replaced.status_code == 201
        assert (await client.get("/files/releases/v1/app.bin")).content == b"v2"

        deleted = await client.delete("/files/releases/v1/app.bin")
        assert deleted.status_code == 204

        assert (await client.get("/files/releases/v1/app.bin")).status_code == 404
        assert (await client.head("/files/releases/v1/app.bin")).status_code == 404
        assert (await client.delete("/files/releases/v1/app.bin")).status_code == 404

    assert store.keys() == []


@pytest.mark.anyio
async def test_files_written_locally_are_served_by_proxy_fallback(settings_factory, origin, tmp_path) -> None:
    app = create_app(settings_factory(storage_path=tmp_path / "cache"), remote_client=origin.client())

    async with _client(app) as client:
        assert (await client.put("/files/local/only.txt", content=b"uploaded")).status_code == 201
        response = await client.get("/proxy/local/only.txt")

    assert response.status_code == 200
    assert response.content == b"uploaded"
    assert (tmp_path / "cache" / "local" / "only.txt").read_bytes() == b"uploaded"


@pytest.mark.anyio
async def test_upload_larger_than_limit_is_rejected(settings_factory) -> None:
    store = InMemoryByteStore()
    app = create_app(settings_factory(remote_url=None, storage_backend="memory", max_artifact_bytes=4), store=store)

    async def chunks():
        yield b"abc"
        yield b"def"

    async with _client(app) as client:
        declared = await client.put("/files/big.bin", content=b"too large")
        streamed = await client.put("/files/big.bin", content=chunks())

    assert declared.status_code == 413
    assert streamed.status_code == 413
    assert store.keys() == []


@pytest.mark.anyio
async def test_upload_token_guards_mutations(settings_factory) -> None:
    store = InMemoryByteStore({"keep.bin": b"keep"})
    app = create_app(
        settings_factory(remote_url=None, storage_backend="memory", upload_token="s3cret"),
        store=store,
    )

    async with _client(app) as client:
        denied = await client.put("/files/new.bin", content=b"x")
        assert denied.status_code == 401
        assert denied.headers["www-authenticate"] == "Bearer"
        assert (await client.delete("/files/keep.bin")).status_code == 401
        assert (await client.get("/files/keep.bin")).content == b"keep"

        allowed = await client.put("/files/new.bin", content=b"x", headers={"Authorization": "Bearer s3cret"})
        assert allowed.status_code == 201

    assert await _stored(store, "new.bin") == b"x"


@pytest.mark.anyio
async def test_metrics_require_token_when_configured(settings_factory) -> None:
    app = create_app(
        settings_factory(remote_url=None, storage_backend="memory", metrics_token="scrape"),
        store=InMemoryByteStore(),
    )

    async with _client(app) as client:
        assert (await client.get("/metrics")).status_code == 401
        response = await client.get("/metrics", headers={"Authorization": "Bearer scrape"})

    assert response.status_code == 200
    assert "fileproxy_requests_total" in response.text
    assert "fileproxy_cache_writes_total" in response.text


@pytest.mark.anyio
async def test_metrics_allowed_from_loopback_without_token(settings_factory) -> None:
    app = create_app(settings_factory(remote_url=None, storage_backend="memory"), store=InMemoryByteStore())

    async with _client(app) as client:
        response = await client.get("/metrics")

    assert response.status_code == 200
    assert "# TYPE fileproxy_request_latency_seconds histogram" in response.text


@pytest.mark.anyio
async def test_health_and_status(settings_factory, origin) -> None:
    app = create_app(
        settings_factory(storage_backend="memory"),
        store=InMemoryByteStore({"a": b"1"}),
        remote_client=origin.client(),
    )

    async with _client(app) as client:
        health = await client.get("/healthz")
        status_payload = (await client.get("/status")).json()

    assert health.status_code == 200
    assert health.json()["status"] == "healthy"
    assert status_payload["backend"] == "memory"
    assert status_payload["entries"] == 1
    assert status_payload["remote_url"] == "http://origin.test/repo"
    assert status_payload["cache_enabled"] is True
    assert status_payload["pending_cache_writes"] == 0


def test_lifespan_and_metrics_guard_with_test_client(settings_factory, origin):
    from fastapi.testclient import TestClient

    origin.serve("abc", b"data")
    store = InMemoryByteStore()
    app = create_app(settings_factory(storage_backend="memory"), store=store, remote_client=origin.client())

    with TestClient(app) as client:
        assert client.get("/healthz").status_code == 200
        assert client.get("/proxy/abc").content == b"data"
        # TestClient reports a non-IP client host
        assert client.get("/metrics").status_code == 403

    assert store.keys() == [Key.of("abc")]


@pytest.mark.anyio
async def test_proxy_zero_length_body_is_served_and_cached(settings_factory, origin) -> None:
    origin.serve("empty.bin", b"", {"content-length": "0"})
    cache = InMemoryByteStore()
    app = create_app(settings_factory(storage_backend="memory"), store=cache, remote_client=origin.client())

    async with _client(app) as client:
        response = await client.get("/proxy/empty.bin")

    assert response.status_code == 200
    assert response.headers["content-length"] == "0"
    assert response.content == b""
    await app.state.proxy_state.coordinator.drain()
    assert await cache.exists(Key.of("empty.bin"))
    assert await _stored(cache, "empty.bin") == b""


@pytest.mark.anyio
async def test_proxy_origin_failure_mid_body_errors_and_caches_nothing(settings_factory, origin) -> None:
    origin.streams["broken.bin"] = BrokenStream([b"abc"])
    cache = InMemoryByteStore()
    app = create_app(settings_factory(storage_backend="memory"), store=cache, remote_client=origin.client())

    async with _client(app) as client:
        with pytest.raises(RemoteStreamError):
            await client.get("/proxy/broken.bin")

    await app.state.proxy_state.coordinator.drain()
    assert not await cache.exists(Key.of("broken.bin"))


@pytest.mark.anyio
async def test_request_id_is_echoed_and_loads_are_labelled_by_source(settings_factory, origin) -> None:
    origin.serve("abc", b"fresh")
    app = create_app(
        settings_factory(storage_backend="memory", metrics_token="scrape"),
        store=InMemoryByteStore({"stale.bin": b"old"}),
        remote_client=origin.client(),
    )

    async with _client(app) as client:
        fresh = await client.get("/proxy/abc", headers={"X-Request-ID": "ci-build-7"})
        stale = await client.get("/proxy/stale.bin")
        metrics = await client.get("/metrics", headers={"Authorization": "Bearer scrape"})

    assert fresh.headers["x-request-id"] == "ci-build-7"
    assert len(stale.headers["x-request-id"]) == 32
    assert 'fileproxy_proxy_loads_total{source="remote"}' in metrics.text
    assert 'fileproxy_proxy_loads_total{source="cache"}' in metrics.text
    assert 'fileproxy_requests_total{route="proxy",method="GET"}' in metrics.text
    assert 'fileproxy_cache_writes_total{result="stored"}' in metrics.text
