"""Process-wide stream registry: the monitoring switch and the shared slot.

There is no module-level singleton. One :class:`StreamRegistry` is created
per process (the CLI builds one per invocation, tests build their own) and
injected into whatever opens streams. It owns:

* the global monitoring switch,
* the shared :class:`ReconnectPolicy`,
* every session it has created, so they can all be torn down at once,
* the lazily-created :class:`StreamMultiplexer` slot.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from nodepulse.models.config import StreamOptions
from nodepulse.stream.codec import MetricCodec
from nodepulse.stream.multiplexer import StreamMultiplexer
from nodepulse.stream.reconnect import ReconnectPolicy
from nodepulse.stream.session import ConnectionSession, ConnectionState

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from nodepulse.auth.token_store import CredentialProvider
    from nodepulse.stream.endpoint import EndpointKey
    from nodepulse.stream.session import MessageSocket

logger = logging.getLogger(__name__)

_LIVE_STATES = (ConnectionState.CONNECTING, ConnectionState.OPEN)


class StreamRegistry:
    """Creates, tracks and collectively tears down stream sessions."""

    def __init__(
        self,
        *,
        host: str,
        credentials: CredentialProvider,
        options: StreamOptions | None = None,
        connector: Callable[[str], Awaitable[MessageSocket]] | None = None,
        codec: MetricCodec | None = None,
    ) -> None:
        self._host = host
        self._credentials = credentials
        self._options = options or StreamOptions()
        self._connector = connector
        self._codec = codec or MetricCodec()
        self._monitoring_enabled = True
        self._policy = ReconnectPolicy(self._options, monitoring_enabled=self.is_monitoring_enabled)
        self._sessions: list[ConnectionSession] = []
        self._multiplexer: StreamMultiplexer | None = None

    @property
    def host(self) -> str:
        return self._host

    # -- switch ---------------------------------------------------------------

    def is_monitoring_enabled(self) -> bool:
        return self._monitoring_enabled

    @property
    def monitoring_enabled(self) -> bool:
        return self._monitoring_enabled

    def set_monitoring_enabled(self, enabled: bool) -> None:
        """Flip the process-wide switch.

        Disabling closes every tracked session, cancels every pending retry
        and resets the multiplexer slot. Re-enabling reconnects nothing; a
        fresh ``connect()``/``open()`` call is required.
        """
        if enabled == self._monitoring_enabled:
            return
        self._monitoring_enabled = enabled
        logger.info("Monitoring %s", "enabled" if enabled else "disabled")
        if enabled:
            return
        self.reset_instance()
        for session in list(self._sessions):
            session.close(intentional=True)
        cancelled = self._policy.cancel_all()
        if cancelled:
            logger.debug("Cancelled %d pending retr%s", cancelled, "y" if cancelled == 1 else "ies")

    # -- accounting -----------------------------------------------------------

    @property
    def policy(self) -> ReconnectPolicy:
        return self._policy

    @property
    def sessions(self) -> list[ConnectionSession]:
        return list(self._sessions)

    @property
    def open_session_count(self) -> int:
        """Sessions currently connecting or connected."""
        return sum(1 for s in self._sessions if s.state in _LIVE_STATES)

    @property
    def pending_retry_count(self) -> int:
        return self._policy.pending_count

    # -- sessions -------------------------------------------------------------

    def create_session(self, endpoint: EndpointKey, **kwargs: Any) -> ConnectionSession:
        """Build and track a session without opening it.

        If an earlier session for the same endpoint is still tearing down,
        the new one waits for that teardown before connecting.
        """
        self._prune()
        closing = [
            s for s in self._sessions
            if s.endpoint == endpoint and s.state is ConnectionState.CLOSING
        ]

        async def wait_for_previous() -> None:
            await asyncio.gather(*(s.wait_closed() for s in closing))

        session = ConnectionSession(
            endpoint,
            credentials=self._credentials,
            options=self._options,
            policy=self._policy,
            codec=self._codec,
            connector=self._connector,
            monitoring_enabled=self.is_monitoring_enabled,
            wait_for=wait_for_previous if closing else None,
            **kwargs,
        )
        self._sessions.append(session)
        return session

    def open_session(self, endpoint: EndpointKey, **kwargs: Any) -> ConnectionSession:
        """Create a private (non-multiplexed) session for *endpoint* and open it."""
        session = self.create_session(endpoint, **kwargs)
        session.open()
        return session

    def _prune(self) -> None:
        # Forget sessions that are fully closed and not waiting on a retry.
        keep = []
        for session in self._sessions:
            idle = session.state in (ConnectionState.CLOSED, ConnectionState.IDLE)
            if idle and session.intentional_close and not self._policy.is_pending(session):
                self._policy.forget(session)
                continue
            keep.append(session)
        self._sessions = keep

    # -- shared slot ----------------------------------------------------------

    def get_or_create(self) -> StreamMultiplexer:
        """Return the multiplexer, creating it on first use."""
        if self._multiplexer is None:
            self._multiplexer = StreamMultiplexer(
                self.create_session,
                host=self._host,
                monitoring_enabled=self.is_monitoring_enabled,
                capacity=self._options.buffer_capacity,
            )
        return self._multiplexer

    @property
    def multiplexer(self) -> StreamMultiplexer | None:
        return self._multiplexer

    def reset_instance(self) -> None:
        """Tear down the multiplexer's session, detach its callbacks, clear the slot."""
        multiplexer, self._multiplexer = self._multiplexer, None
        if multiplexer is not None:
            logger.debug("Resetting stream multiplexer")
            multiplexer.reset()

    # -- shutdown -------------------------------------------------------------

    def close_all(self) -> None:
        """Intentionally close every session and the multiplexer."""
        self.reset_instance()
        for session in list(self._sessions):
            session.close(intentional=True)
        self._policy.cancel_all()

    async def aclose(self) -> None:
        self.close_all()
        await asyncio.gather(*(s.wait_closed() for s in self._sessions))
