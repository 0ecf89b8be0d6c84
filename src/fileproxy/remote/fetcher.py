"""Streaming HTTP client for the origin behind the proxy."""

from __future__ import annotations

from typing import AsyncIterator, Optional
from urllib.parse import quote

import httpx
import structlog

from ..common.content import Content, Key
from ..common.errors import RemoteStatusError, RemoteStreamError
from ..common.settings import ProxySettings
from .auth import ANONYMOUS, Authenticator, authenticator_from_settings
from .outcome import FetchError, FetchNotFound, FetchOutcome, FetchSuccess


LOGGER = structlog.get_logger("fileproxy.remote")

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)


class RemoteFetcher:
    """Issues one GET per key against ``base_url`` and returns a :data:`FetchOutcome`.

    Bodies are never buffered: a successful outcome carries a :class:`Content`
    that reads from the open response and closes it once consumed. Nothing from
    the inbound request is forwarded; only the authenticator's headers are
    added. Redirects are not followed and count as errors.
    """

    def __init__(
        self,
        base_url: str,
        *,
        authenticator: Authenticator = ANONYMOUS,
        client: Optional[httpx.AsyncClient] = None,
        timeout: httpx.Timeout | float = 30.0,
        verify: bool = True,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._authenticator = authenticator
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, verify=verify, follow_redirects=False)

    @classmethod
    def from_settings(cls, settings: ProxySettings, client: Optional[httpx.AsyncClient] = None) -> "RemoteFetcher":
        if not settings.remote_url:
            raise RuntimeError("remote_url is not configured")
        timeout = httpx.Timeout(settings.remote_read_timeout, connect=settings.remote_connect_timeout)
        return cls(
            settings.remote_url,
            authenticator=authenticator_from_settings(settings),
            client=client,
            timeout=timeout,
            verify=settings.remote_verify_tls,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def url_for(self, key: Key) -> str:
        return self._base_url + "/" + "/".join(quote(part, safe="") for part in key.parts)

    async def fetch(self, key: Key) -> FetchOutcome:
        url = self.url_for(key)
        try:
            request = self._client.build_request("GET", url, headers=self._authenticator.headers())
            response = await self._client.send(request, stream=True, follow_redirects=False)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            LOGGER.warning("remote_fetch_failed", url=url, error=repr(exc))
            return FetchError(exc)

        if response.status_code == httpx.codes.NOT_FOUND:
            await response.aclose()
            LOGGER.info("remote_not_found", url=url)
            return FetchNotFound()
        if not response.is_success:
            await response.aclose()
            LOGGER.warning("remote_unexpected_status", url=url, status=response.status_code)
            return FetchError(RemoteStatusError(url, response.status_code))

        encoded = response.headers.get("content-encoding", "identity").lower() != "identity"
        size = None
        if not encoded:
            size = _content_length(response.headers.get("content-length"))
        headers = {
            name: value
            for name, value in response.headers.items()
            if name.lower() not in HOP_BY_HOP_HEADERS
            and not (encoded and name.lower() in {"content-encoding", "content-length"})
        }
        content = Content(_stream_body(url, response), size=size, on_close=response.aclose)
        return FetchSuccess(content=content, headers=headers)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _content_length(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        length = int(value)
    except ValueError:
        return None
    return length if length >= 0 else None


async def _stream_body(url: str, response: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    except httpx.HTTPError as exc:
        raise RemoteStreamError(f"Origin stream for {url} failed: {exc!r}") from exc
