"""Origin access for the caching proxy."""

from .auth import ANONYMOUS, Authenticator, BasicAuthenticator, BearerAuthenticator, authenticator_from_settings
from .fetcher import RemoteFetcher
from .outcome import FetchError, FetchNotFound, FetchOutcome, FetchSuccess

__all__ = [
    "ANONYMOUS",
    "Authenticator",
    "BasicAuthenticator",
    "BearerAuthenticator",
    "FetchError",
    "FetchNotFound",
    "FetchOutcome",
    "FetchSuccess",
    "RemoteFetcher",
    "authenticator_from_settings",
]
