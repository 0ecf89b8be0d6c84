from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from fileproxy.common.settings import ProxySettings
from tests.utils.origin import ORIGIN_URL, FakeOrigin


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def origin() -> FakeOrigin:
    return FakeOrigin()


@pytest.fixture
def settings_factory(tmp_path: Path) -> Callable[..., ProxySettings]:
    def _build(**overrides) -> ProxySettings:
        values = {
            "storage_path": tmp_path / "storage",
            "remote_url": ORIGIN_URL,
            "log_level": "WARNING",
            "otel_sampler_ratio": 1.0,
        }
        values.update(overrides)
        return ProxySettings(**values)

    return _build
