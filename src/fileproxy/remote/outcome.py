"""Result types for a single origin fetch."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Union

from ..common.content import Content


@dataclass(frozen=True)
class FetchSuccess:
    content: Content
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class FetchNotFound:
    """The origin affirmatively reported that the artifact does not exist."""


@dataclass(frozen=True)
class FetchError:
    """The origin could not be reached or answered with an unexpected status."""

    cause: BaseException


FetchOutcome = Union[FetchSuccess, FetchNotFound, FetchError]
