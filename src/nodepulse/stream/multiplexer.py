"""Shared sidebar stream: one socket, many per-resource consumers.

The ``minigraphs`` topic carries CPU, memory, every disk and every network
interface in one frame. :class:`StreamMultiplexer` owns the single session
for that topic and demultiplexes each aggregate frame into the resources
its subscribers asked for. Each ``(kind, resource_id)`` pair gets its own
:class:`~nodepulse.stream.buffer.StreamBuffer`.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from nodepulse._internal.async_utils import call_safely
from nodepulse.stream.buffer import DEFAULT_CAPACITY, StreamBuffer
from nodepulse.stream.codec import AggregateRecord, MetricsRecord
from nodepulse.stream.endpoint import EndpointKey
from nodepulse.stream.fanout import SubscriberFanout, Subscription
from nodepulse.stream.session import ConnectionState

if TYPE_CHECKING:
    from collections.abc import Callable

    from nodepulse.stream.buffer import MetricSample
    from nodepulse.stream.lifecycle import ComponentScope
    from nodepulse.stream.session import ConnectionSession

logger = logging.getLogger(__name__)

SIDEBAR_TOPIC = "minigraphs"

# Subscription kind -> canonical resource kind.
RESOURCE_KINDS: dict[str, str] = {
    "cpu": "cpu",
    "memory": "memory",
    "disk": "disk",
    "network": "network",
    "ethernet": "network",
    "wifi": "network",
}


def _is_active(record: MetricsRecord) -> bool:
    return record.fields.get("download_kbps", 0.0) > 0 or record.fields.get("upload_kbps", 0.0) > 0


def select_network(record: AggregateRecord, resource_id: str) -> MetricsRecord | None:
    """Pick the network interface a subscriber asked for.

    A numeric *resource_id* selects by position; if that interface is idle
    (no traffic either way) the first interface with traffic is used
    instead. Otherwise the id is matched against the interface name, and
    the first interface is the last resort.
    """
    networks = record.with_prefix("network")
    if not networks:
        return None
    try:
        index = int(resource_id)
    except ValueError:
        index = None
    if index is not None and 0 <= index < len(networks):
        chosen = networks[index]
        if not _is_active(chosen):
            chosen = next((n for n in networks if _is_active(n)), chosen)
        return chosen
    for net in networks:
        name = net.aux.get("interface")
        if isinstance(name, str) and name and (name == resource_id or resource_id in name):
            return net
    return networks[0]


def select_resource(
    record: AggregateRecord, kind: str, resource_id: str = "0"
) -> MetricsRecord | None:
    """Return the part of *record* that feeds ``(kind, resource_id)``."""
    kind = RESOURCE_KINDS.get(kind, kind)
    if kind in ("cpu", "memory"):
        return record.get(kind)
    if kind == "disk":
        return record.get(f"disk:{resource_id}")
    if kind == "network":
        return select_network(record, resource_id)
    return None


class StreamMultiplexer:
    """Owns the shared sidebar session and fans its frames out by resource."""

    def __init__(
        self,
        session_factory: Callable[..., ConnectionSession],
        *,
        host: str,
        monitoring_enabled: Callable[[], bool] | None = None,
        capacity: int = DEFAULT_CAPACITY,
    ) -> None:
        self._session_factory = session_factory
        self._host = host
        self._monitoring_enabled = monitoring_enabled or (lambda: True)
        self._session: ConnectionSession | None = None
        self._session_sub: Subscription | None = None
        self._fanout = SubscriberFanout()
        self._buffers: dict[tuple[str, str], StreamBuffer] = {}
        self._capacity = capacity

    # -- state ----------------------------------------------------------------

    @property
    def session(self) -> ConnectionSession | None:
        return self._session

    @property
    def node_id(self) -> str | None:
        return self._session.endpoint.node_id if self._session is not None else None

    @property
    def connected(self) -> bool:
        return self._session is not None and self._session.is_open

    @property
    def subscriber_count(self) -> int:
        return self._fanout.count

    def buffer(self, kind: str, resource_id: str = "0") -> StreamBuffer:
        """The buffer fed by ``(kind, resource_id)`` selections."""
        key = (RESOURCE_KINDS.get(kind, kind), resource_id)
        buf = self._buffers.get(key)
        if buf is None:
            buf = StreamBuffer(self._capacity)
            self._buffers[key] = buf
        return buf

    def _owner_mounted(self) -> bool:
        return not self._fanout.has_subscribers() or self._fanout.any_owner_mounted()

    # -- connection -----------------------------------------------------------

    def connect(self, node_id: str) -> None:
        """Connect the shared session to *node_id* (no-op if already there)."""
        if not self._monitoring_enabled():
            logger.info("Monitoring disabled — ignoring connect(%s)", node_id)
            return
        session = self._session
        if (
            session is not None
            and session.endpoint.node_id == node_id
            and session.state in (ConnectionState.CONNECTING, ConnectionState.OPEN)
        ):
            logger.debug("Already connected to node %s", node_id)
            return
        if session is not None and session.endpoint.node_id == node_id:
            # Same node, socket dropped: reuse the session and keep history.
            session.open()
            return

        if session is not None:
            # Switching nodes: buffers already handed out stay valid but start over.
            for buf in self._buffers.values():
                buf.reset()
        self._teardown_session()
        endpoint = sidebar_endpoint(self._host, node_id)
        session = self._session_factory(
            endpoint, owner_check=self._owner_mounted, release_when_unused=False
        )
        self._session = session
        self._session_sub = session.subscribe(
            on_record=self._on_record,
            on_connection_change=self._fanout.connection_changed,
            on_error=self._fanout.error,
        )
        logger.info("Multiplexer connecting to node %s", node_id)
        session.open()

    def _teardown_session(self) -> None:
        session, self._session = self._session, None
        sub, self._session_sub = self._session_sub, None
        if session is None:
            return
        session.close(intentional=True)
        if sub is not None:
            sub.release()

    def close(self) -> None:
        """Close the shared session intentionally; subscriptions stay attached."""
        self._teardown_session()

    def reset(self) -> None:
        """Close the session and detach every subscriber callback."""
        self._teardown_session()
        self._fanout.clear()
        self._buffers.clear()

    async def wait_closed(self) -> None:
        if self._session is not None:
            await self._session.wait_closed()

    # -- subscriptions --------------------------------------------------------

    def subscribe(
        self,
        kind: str,
        resource_id: str = "0",
        *,
        on_data: Callable[[MetricSample, MetricsRecord], None] | None = None,
        on_connection_change: Callable[[bool], None] | None = None,
        on_error: Callable[[str], None] | None = None,
        scope: ComponentScope | None = None,
    ) -> Subscription:
        """Register interest in one resource of the sidebar stream.

        Raises:
            ValueError: If *kind* is not a sidebar resource kind.
        """
        if kind not in RESOURCE_KINDS:
            known = ", ".join(sorted(RESOURCE_KINDS))
            raise ValueError(f"Unknown resource kind {kind!r} (expected one of: {known})")
        sub = Subscription(
            topic=RESOURCE_KINDS[kind],
            resource_id=str(resource_id),
            on_data=on_data,
            on_connection_change=on_connection_change,
            on_error=on_error,
            scope=scope,
        )
        sub._on_release = self._release_subscription
        self._fanout.add(sub)
        return sub

    def release(self, sub: Subscription) -> None:
        sub.release()

    def _release_subscription(self, sub: Subscription) -> None:
        self._fanout.remove(sub)
        if not self._fanout.has_subscribers() and self._session is not None:
            logger.debug("Last sidebar subscriber released — closing shared session")
            self._teardown_session()

    # -- dispatch -------------------------------------------------------------

    def _on_record(self, record: MetricsRecord | AggregateRecord) -> None:
        if not isinstance(record, AggregateRecord):
            logger.debug("Ignoring non-aggregate record on the sidebar stream")
            return
        samples: dict[tuple[str, str], tuple[MetricSample, MetricsRecord] | None] = {}
        for sub in self._fanout:
            key = (sub.topic or "", sub.resource_id)
            if key not in samples:
                part = select_resource(record, *key)
                if part is None:
                    logger.debug("No %s:%s resource in frame", *key)
                    samples[key] = None
                else:
                    samples[key] = (self.buffer(*key).append(part.value, part.sample_aux()), part)
            selected = samples[key]
            if selected is not None and sub.on_data is not None and sub.active:
                call_safely(sub.on_data, *selected, logger=logger, what="data")


def sidebar_endpoint(host: str, node_id: str) -> EndpointKey:
    """The endpoint the multiplexer opens for *node_id*."""
    return EndpointKey(host, SIDEBAR_TOPIC, node_id)
