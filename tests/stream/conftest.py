"""Shared fixtures for stream tests."""

from __future__ import annotations

import pytest

from nodepulse.models.config import StreamOptions
from tests.stream._fakes import CountingCredential, FakeConnector


@pytest.fixture()
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture()
def credentials() -> CountingCredential:
    return CountingCredential()


@pytest.fixture()
def options() -> StreamOptions:
    return StreamOptions(
        reconnect_delay=0.02,
        reconnect_delay_overrides={"ethernet": 0.03, "wifi": 0.03},
        first_data_timeout=0,
    )
