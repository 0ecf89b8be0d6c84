"""Credential strategies applied to outbound origin requests."""

from __future__ import annotations

import base64
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..common.settings import ProxySettings


class Authenticator:
    """Produces the headers that authorize one request to the origin."""

    def headers(self) -> dict[str, str]:
        return {}


class BasicAuthenticator(Authenticator):
    def __init__(self, username: str, password: str) -> None:
        self._username = username
        self._password = password

    def headers(self) -> dict[str, str]:
        raw = f"{self._username}:{self._password}".encode("utf-8")
        return {"Authorization": f"Basic {base64.b64encode(raw).decode('ascii')}"}


class BearerAuthenticator(Authenticator):
    def __init__(self, token: str) -> None:
        self._token = token

    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}


ANONYMOUS = Authenticator()


def authenticator_from_settings(settings: "ProxySettings") -> Authenticator:
    if settings.remote_token is not None:
        return BearerAuthenticator(settings.remote_token.get_secret_value())
    if settings.remote_username is not None and settings.remote_password is not None:
        return BasicAuthenticator(settings.remote_username, settings.remote_password.get_secret_value())
    return ANONYMOUS
