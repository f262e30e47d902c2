"""Tests for StreamRegistry: monitoring switch, session tracking, shared slot."""

from __future__ import annotations

import asyncio

import pytest
from websockets.exceptions import ConnectionClosedError

from nodepulse.stream.endpoint import EndpointKey
from nodepulse.stream.registry import StreamRegistry
from nodepulse.stream.session import ConnectionState
from tests.stream._fakes import settle

HOST = "h:1"


def _key(topic: str, node: str = "n1") -> EndpointKey:
    return EndpointKey(HOST, topic, node)


@pytest.fixture()
def registry(connector, credentials, options) -> StreamRegistry:
    return StreamRegistry(
        host=HOST, credentials=credentials, options=options, connector=connector
    )


class TestMonitoringSwitch:
    @pytest.mark.asyncio
    async def test_disable_closes_everything(self, registry, connector) -> None:
        sessions = [registry.open_session(_key(t)) for t in ("cpu", "memory", "disk")]
        mux = registry.get_or_create()
        mux.subscribe("cpu")
        mux.connect("n1")
        await settle()
        assert registry.open_session_count == 4

        # One session drops and is waiting on a retry.
        connector.sockets[0].drop(ConnectionClosedError(None, None))
        await settle()
        assert registry.pending_retry_count == 1

        registry.set_monitoring_enabled(False)
        await settle()

        assert registry.open_session_count == 0
        assert registry.pending_retry_count == 0
        assert registry.multiplexer is None
        assert all(s.state is ConnectionState.CLOSED for s in sessions)

        await asyncio.sleep(0.05)
        assert len(connector.urls) == 4

    @pytest.mark.asyncio
    async def test_reenable_reconnects_nothing(self, registry, connector) -> None:
        registry.open_session(_key("cpu"))
        await settle()
        registry.set_monitoring_enabled(False)
        registry.set_monitoring_enabled(True)
        await asyncio.sleep(0.05)

        assert len(connector.urls) == 1
        assert registry.open_session_count == 0

    @pytest.mark.asyncio
    async def test_open_while_disabled_is_noop(self, registry, connector) -> None:
        registry.set_monitoring_enabled(False)
        session = registry.open_session(_key("cpu"))
        registry.get_or_create().connect("n1")
        await settle()

        assert session.state is ConnectionState.IDLE
        assert connector.urls == []

    def test_switch_accessors(self, registry) -> None:
        assert registry.is_monitoring_enabled()
        registry.set_monitoring_enabled(False)
        assert not registry.monitoring_enabled
        registry.set_monitoring_enabled(False)
        assert not registry.is_monitoring_enabled()


class TestSessions:
    @pytest.mark.asyncio
    async def test_new_session_waits_for_previous_teardown(self, registry, connector) -> None:
        first = registry.open_session(_key("cpu"))
        await settle()
        first.close()
        assert first.state is ConnectionState.CLOSING

        second = registry.open_session(_key("cpu"))
        await settle()

        assert connector.previous_closed == [True, True]
        assert first.state is ConnectionState.CLOSED
        assert second.is_open
        await registry.aclose()

    @pytest.mark.asyncio
    async def test_closed_sessions_pruned(self, registry) -> None:
        first = registry.open_session(_key("cpu"))
        await settle()
        await first.aclose()

        registry.create_session(_key("memory"))

        assert first not in registry.sessions
        assert len(registry.sessions) == 1

    @pytest.mark.asyncio
    async def test_shared_policy(self, registry) -> None:
        a = registry.create_session(_key("cpu"))
        b = registry.create_session(_key("memory"))
        assert a._policy is b._policy is registry.policy
        assert a.state is ConnectionState.IDLE

    @pytest.mark.asyncio
    async def test_aclose(self, registry, connector) -> None:
        registry.open_session(_key("cpu"))
        registry.open_session(_key("wifi"))
        await settle()

        await registry.aclose()

        assert registry.open_session_count == 0
        assert all(s.closed for s in connector.sockets)


class TestSharedSlot:
    def test_get_or_create_reuses_instance(self, registry) -> None:
        assert registry.multiplexer is None
        mux = registry.get_or_create()
        assert registry.get_or_create() is mux

    @pytest.mark.asyncio
    async def test_reset_instance(self, registry, connector) -> None:
        mux = registry.get_or_create()
        sub = mux.subscribe("cpu")
        mux.connect("n1")
        await settle()

        registry.reset_instance()
        await settle()

        assert registry.multiplexer is None
        assert not sub.active
        assert connector.last.closed
        assert registry.get_or_create() is not mux
