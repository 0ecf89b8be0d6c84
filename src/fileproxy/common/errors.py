"""Exception hierarchy shared by the proxy services."""

from __future__ import annotations


class FileProxyError(Exception):
    """Base class for all errors raised by fileproxy."""


class InvalidKey(FileProxyError, ValueError):
    """A request path cannot be turned into a storage key."""


class ContentError(FileProxyError):
    pass


class ContentConsumed(ContentError):
    """Content streams can only be iterated once."""


class IncompleteContent(ContentError):
    """The stream produced a different number of bytes than it announced."""

    def __init__(self, expected: int, received: int) -> None:
        super().__init__(f"Expected {expected} bytes, received {received}")
        self.expected = expected
        self.received = received


class StoreError(FileProxyError):
    """The byte store failed to complete an operation."""


class KeyNotFound(StoreError, KeyError):
    def __init__(self, key: object) -> None:
        super().__init__(str(key))
        self.key = key

    def __str__(self) -> str:
        return f"No value stored for key {self.key}"


class RemoteError(FileProxyError):
    pass


class RemoteStatusError(RemoteError):
    """The origin answered with a status that is neither success nor 404."""

    def __init__(self, url: str, status_code: int) -> None:
        super().__init__(f"Origin returned {status_code} for {url}")
        self.url = url
        self.status_code = status_code


class RemoteStreamError(RemoteError):
    """The origin connection failed after the response headers were received."""
