"""One physical telemetry socket to one endpoint, as an explicit state machine.

States::

    IDLE → CONNECTING → OPEN → CLOSING → CLOSED
                  ↑                         │
                  └──── open() / retry ─────┘

plus an orthogonal ``errored`` flag.

:meth:`ConnectionSession.open` is synchronous: it moves to ``CONNECTING`` and
spawns a reader task that connects, then drives the four socket handlers
(:meth:`handle_open`, :meth:`handle_message`, :meth:`handle_error`,
:meth:`handle_close`). Every handler first checks the liveness flag, and the
reader task carries a generation token, so once :meth:`close` has run no
late socket event can change state or schedule a reconnect.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from nodepulse.api.errors import CREDENTIAL_MISSING_MESSAGE
from nodepulse.models.config import StreamOptions
from nodepulse.stream.buffer import StreamBuffer
from nodepulse.stream.codec import (
    AggregateRecord,
    DecodeError,
    MetricCodec,
    MetricsRecord,
    Ping,
    ServerError,
)
from nodepulse.stream.fanout import SubscriberFanout, Subscription

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from nodepulse.auth.token_store import CredentialProvider
    from nodepulse.stream.endpoint import EndpointKey
    from nodepulse.stream.lifecycle import ComponentScope
    from nodepulse.stream.reconnect import ReconnectPolicy

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006
POLICY_VIOLATION = 1008

_PONG = json.dumps({"type": "pong"})


class ConnectionState(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class CloseKind(StrEnum):
    CLEAN = "clean"
    ABNORMAL = "abnormal"
    AUTH = "auth"


def classify_close(code: int | None, was_clean: bool) -> tuple[CloseKind, str]:
    """Map a close event to a kind and a user-visible message."""
    if code == POLICY_VIOLATION:
        return (
            CloseKind.AUTH,
            "Authentication failed: the server rejected the credential (code 1008).",
        )
    if not was_clean or code in (None, ABNORMAL_CLOSURE):
        shown = code or ABNORMAL_CLOSURE
        return CloseKind.ABNORMAL, f"Connection lost unexpectedly (code {shown})."
    return CloseKind.CLEAN, f"Connection closed by the server (code {code})."


class MessageSocket(Protocol):
    """The subset of a websockets client connection the session uses."""

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...

    async def send(self, message: str) -> None: ...

    async def close(self, code: int = ..., reason: str = ...) -> None: ...


async def websocket_connector(url: str) -> MessageSocket:
    """Default connector: the ``websockets`` asyncio client."""
    import websockets.asyncio.client as ws_client

    socket: MessageSocket = await ws_client.connect(url, open_timeout=10)
    return socket


@dataclass(slots=True)
class ConnectionStats:
    """Connection health counters."""

    frames_received: int = 0
    decode_errors: int = 0
    pongs_sent: int = 0
    reconnect_count: int = 0
    last_message_ts: float = 0.0
    created_at: float = field(default_factory=time.monotonic)


class ConnectionSession:
    """Owns one socket to one :class:`EndpointKey` and its stream buffers."""

    def __init__(
        self,
        endpoint: EndpointKey,
        *,
        credentials: CredentialProvider,
        options: StreamOptions | None = None,
        policy: ReconnectPolicy | None = None,
        codec: MetricCodec | None = None,
        connector: Callable[[str], Awaitable[MessageSocket]] | None = None,
        monitoring_enabled: Callable[[], bool] | None = None,
        owner_check: Callable[[], bool] | None = None,
        wait_for: Callable[[], Awaitable[None]] | None = None,
        release_when_unused: bool = True,
    ) -> None:
        self._endpoint = endpoint
        self._category = endpoint.category
        self._credentials = credentials
        self._options = options or StreamOptions()
        self._policy = policy
        self._codec = codec or MetricCodec()
        self._connector = connector or websocket_connector
        self._monitoring_enabled = monitoring_enabled or (lambda: True)
        self._owner_check = owner_check
        self._wait_for = wait_for
        self._release_when_unused = release_when_unused

        self._state = ConnectionState.IDLE
        self._errored = False
        self._error_message: str | None = None
        self._reconnect_pending = False
        self._retry_delay: float | None = None
        self._intentional_close = False
        self._live = False
        self._generation = 0
        self._received_data = False
        self._last_close: tuple[int | None, bool, CloseKind] | None = None

        self._ws: MessageSocket | None = None
        self._reader: asyncio.Task[None] | None = None
        self._teardown: asyncio.Task[None] | None = None
        self._watchdog: asyncio.TimerHandle | None = None

        self._fanout = SubscriberFanout()
        self._buffers: dict[str, StreamBuffer] = {}
        self._last: dict[str, MetricsRecord] = {}
        self.stats = ConnectionStats()

    # -- properties -----------------------------------------------------------

    @property
    def endpoint(self) -> EndpointKey:
        return self._endpoint

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def errored(self) -> bool:
        return self._errored

    @property
    def error_message(self) -> str | None:
        return self._error_message

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def reconnect_attempt_pending(self) -> bool:
        return self._reconnect_pending

    @property
    def intentional_close(self) -> bool:
        return self._intentional_close

    @property
    def last_close(self) -> tuple[int | None, bool, CloseKind] | None:
        """``(code, was_clean, kind)`` of the most recent socket close."""
        return self._last_close

    @property
    def owner_mounted(self) -> bool:
        """Whether whoever owns this session still wants it reconnected."""
        if self._owner_check is not None:
            return self._owner_check()
        return not self._fanout.has_subscribers() or self._fanout.any_owner_mounted()

    @property
    def subscriber_count(self) -> int:
        return self._fanout.count

    @property
    def status_text(self) -> str:
        """Human-readable connection state for a status line."""
        if self._reconnect_pending and self._retry_delay is not None:
            return f"reconnecting in {self._retry_delay:.0f}s"
        state = self._state
        if state is ConnectionState.CONNECTING:
            return "connecting"
        if state is ConnectionState.OPEN:
            return f"error: {self._error_message}" if self._error_message else "connected"
        if state is ConnectionState.IDLE:
            return f"error: {self._error_message}" if self._error_message else "idle"
        return f"disconnected: {self._error_message}" if self._error_message else "disconnected"

    # -- buffers --------------------------------------------------------------

    def buffer(self, key: str | None = None) -> StreamBuffer:
        """The buffer for stream *key* (default: the session's own category)."""
        key = key or self._category.value
        buf = self._buffers.get(key)
        if buf is None:
            buf = StreamBuffer(self._options.buffer_capacity)
            self._buffers[key] = buf
        return buf

    @property
    def buffers(self) -> dict[str, StreamBuffer]:
        return dict(self._buffers)

    def reset_buffers(self) -> None:
        """Clear every buffer and rewind its logical clock."""
        for buf in self._buffers.values():
            buf.reset()
        self._last.clear()

    # -- subscriptions --------------------------------------------------------

    def subscribe(
        self,
        *,
        on_data: Callable[..., None] | None = None,
        on_record: Callable[[MetricsRecord | AggregateRecord], None] | None = None,
        on_connection_change: Callable[[bool], None] | None = None,
        on_error: Callable[[str], None] | None = None,
        on_decode_error: Callable[[DecodeError], None] | None = None,
        key: str | None = None,
        scope: ComponentScope | None = None,
    ) -> Subscription:
        """Register callbacks; the returned subscription must be released."""
        sub = Subscription(
            key=key,
            on_data=on_data,
            on_record=on_record,
            on_connection_change=on_connection_change,
            on_error=on_error,
            on_decode_error=on_decode_error,
            scope=scope,
        )
        sub._on_release = self._release_subscription
        self._fanout.add(sub)
        return sub

    def _release_subscription(self, sub: Subscription) -> None:
        self._fanout.remove(sub)
        if self._release_when_unused and not self._fanout.has_subscribers():
            logger.debug("Last subscription released — closing %s", self._endpoint)
            self.close(intentional=True)

    def detach_all(self) -> None:
        """Drop every subscription without triggering release-driven close."""
        self._fanout.clear()

    # -- caller intent --------------------------------------------------------

    def open(self, endpoint: EndpointKey | None = None, credential: str | None = None) -> None:
        """Start connecting (non-blocking). No-op while already connecting/open.

        Without *credential* one is fetched from the credential provider;
        if none is available the session stays where it is, the error
        callbacks fire and no socket is created.
        """
        if endpoint is not None and endpoint != self._endpoint:
            if self._live:
                self.close(intentional=True)
            self._endpoint = endpoint
            self._category = endpoint.category
            self.reset_buffers()
        elif self._live and self._state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            logger.debug("Already %s to %s — open() ignored", self._state.value, self._endpoint)
            return

        token = credential if credential is not None else self._credentials.get_credential()
        if not token:
            self._error_message = CREDENTIAL_MISSING_MESSAGE
            logger.error("Cannot open %s: no credential available", self._endpoint)
            self._fanout.error(CREDENTIAL_MISSING_MESSAGE)
            return
        if not self._monitoring_enabled():
            logger.info("Monitoring disabled — not opening %s", self._endpoint)
            return

        if self._policy is not None:
            self._policy.cancel(self)
        self._intentional_close = False
        self._received_data = False
        self._error_message = None
        self._generation += 1
        self._live = True
        self._state = ConnectionState.CONNECTING

        url = self._endpoint.url(
            token, scheme=self._options.scheme, path_prefix=self._options.path_prefix
        )
        logger.info(
            "Connecting %s (%s)",
            self._endpoint,
            self._endpoint.redacted_url(
                scheme=self._options.scheme, path_prefix=self._options.path_prefix
            ),
        )
        loop = asyncio.get_running_loop()
        self._reader = loop.create_task(
            self._run(self._generation, url), name=f"nodepulse-session:{self._endpoint}"
        )

    def restart(self, credential: str | None = None) -> None:
        """Explicit stream restart: close, clear history, reconnect."""
        self.close(intentional=True)
        self.reset_buffers()
        self.open(credential=credential)

    def close(self, intentional: bool = True) -> None:
        """Tear the socket down. Idempotent.

        Handlers are detached (liveness dropped, generation bumped) before the
        underlying socket is closed, so the close event it produces cannot
        trigger a reconnect.
        """
        if intentional:
            self._intentional_close = True
        if self._policy is not None:
            self._policy.cancel(self)
        self._disarm_watchdog()

        self._live = False
        self._generation += 1
        reader, self._reader = self._reader, None
        ws, self._ws = self._ws, None

        if reader is None and ws is None:
            if self._state is not ConnectionState.IDLE:
                self._state = ConnectionState.CLOSED
            return

        self._state = ConnectionState.CLOSING
        current = asyncio.current_task() if _has_running_loop() else None
        if reader is current:
            # Closing from inside our own reader (a callback released the last
            # subscription); the loop exits on the generation check.
            reader = None
        elif reader is not None and not reader.done():
            reader.cancel()

        if not _has_running_loop():
            self._state = ConnectionState.CLOSED
            return
        self._teardown = asyncio.get_running_loop().create_task(
            self._teardown_socket(reader, ws), name=f"nodepulse-teardown:{self._endpoint}"
        )
        logger.info("Closing %s (intentional=%s)", self._endpoint, intentional)

    async def wait_closed(self) -> None:
        """Wait until any in-flight teardown has finished."""
        teardown = self._teardown
        if teardown is not None and teardown is not asyncio.current_task():
            await asyncio.wait([teardown])

    async def aclose(self) -> None:
        self.close(intentional=True)
        await self.wait_closed()

    async def _teardown_socket(
        self, reader: asyncio.Task[None] | None, ws: MessageSocket | None
    ) -> None:
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close(NORMAL_CLOSURE, "Client requested disconnection")
        if reader is not None:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await reader
        if self._state is ConnectionState.CLOSING:
            self._state = ConnectionState.CLOSED

    # -- retry bookkeeping (driven by ReconnectPolicy) -----------------------

    def mark_retry_pending(self, delay: float) -> None:
        self._reconnect_pending = True
        self._retry_delay = delay

    def clear_retry_pending(self) -> None:
        self._reconnect_pending = False
        self._retry_delay = None

    def retries_exhausted(self, attempts: int) -> None:
        message = f"Gave up reconnecting after {attempts} attempt(s)."
        self._error_message = message
        self._fanout.error(message)

    # -- socket driver --------------------------------------------------------

    def _is_current(self, generation: int) -> bool:
        return self._live and generation == self._generation

    async def _run(self, generation: int, url: str) -> None:
        teardown = self._teardown
        if teardown is not None and not teardown.done():
            await asyncio.wait([teardown])
        if self._wait_for is not None:
            waiter, self._wait_for = self._wait_for, None
            await waiter()
        if not self._is_current(generation):
            return

        try:
            ws = await self._connector(url)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._is_current(generation):
                self.handle_error(exc)
                self.handle_close(ABNORMAL_CLOSURE, False)
            return

        if not self._is_current(generation):
            # close() ran while the handshake was in flight.
            with contextlib.suppress(Exception):
                await ws.close(NORMAL_CLOSURE, "Client requested disconnection")
            return

        self._ws = ws
        self.handle_open()
        code, was_clean = await self._read(generation, ws)
        if self._is_current(generation):
            self.handle_close(code, was_clean)

    async def _read(self, generation: int, ws: MessageSocket) -> tuple[int | None, bool]:
        try:
            async for frame in ws:
                if not self._is_current(generation):
                    return NORMAL_CLOSURE, True
                try:
                    await self.handle_message(frame)
                except Exception:
                    logger.warning("Error handling frame on %s", self._endpoint, exc_info=True)
        except ConnectionClosedOK as exc:
            return (exc.rcvd.code if exc.rcvd is not None else NORMAL_CLOSURE), True
        except ConnectionClosed as exc:
            return (exc.rcvd.code if exc.rcvd is not None else ABNORMAL_CLOSURE), False
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._is_current(generation):
                self.handle_error(exc)
            return ABNORMAL_CLOSURE, False
        code = getattr(ws, "close_code", None)
        return (code if code is not None else NORMAL_CLOSURE), True

    # -- socket handlers ------------------------------------------------------

    def handle_open(self) -> None:
        if not self._live:
            return
        self._state = ConnectionState.OPEN
        self._errored = False
        if self._policy is not None:
            self._policy.reset_attempts(self)
        self._arm_watchdog()
        logger.info("Stream connected: %s", self._endpoint)
        self._fanout.connection_changed(True)

    async def handle_message(self, frame: str | bytes | dict[str, Any]) -> None:
        if not self._live:
            return
        self.stats.frames_received += 1
        self.stats.last_message_ts = time.monotonic()

        result = self._codec.decode(self._category, frame, self._last)
        if isinstance(result, DecodeError):
            self.stats.decode_errors += 1
            logger.warning("Discarding frame on %s: %s", self._endpoint, result.reason)
            self._fanout.decode_error(result)
            return
        if isinstance(result, Ping):
            await self._send_pong()
            return
        if isinstance(result, ServerError):
            logger.warning("Server error on %s: %s", self._endpoint, result.message)
            self._error_message = result.message
            self._fanout.error(result.message)
            return
        self._on_metrics(result)

    def handle_error(self, exc: BaseException | str | None = None) -> None:
        if not self._live:
            return
        self._errored = True
        detail = f": {exc}" if exc else ""
        message = f"Connection error on {self._endpoint.topic} stream{detail}"
        self._error_message = message
        logger.warning("Socket error on %s%s", self._endpoint, detail)
        self._fanout.error(message)

    def handle_close(self, code: int | None, was_clean: bool) -> None:
        if not self._live:
            return
        self._live = False
        self._state = ConnectionState.CLOSED
        self._ws = None
        self._reader = None
        self._disarm_watchdog()

        kind, message = classify_close(code, was_clean)
        self._last_close = (code, was_clean, kind)
        self._error_message = message
        logger.info("Stream closed: %s (code=%s, clean=%s)", self._endpoint, code, was_clean)
        self._fanout.connection_changed(False)
        self._fanout.error(message)

        if (
            not self._intentional_close
            and self._monitoring_enabled()
            and self._policy is not None
        ):
            self._policy.schedule_retry(self, kind.value)

    # -- internals ------------------------------------------------------------

    async def _send_pong(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.send(_PONG)
            self.stats.pongs_sent += 1
        except Exception:
            logger.warning("Failed to answer ping on %s", self._endpoint, exc_info=True)

    def _on_metrics(self, record: MetricsRecord | AggregateRecord) -> None:
        self._received_data = True
        self._disarm_watchdog()
        if self._error_message and not self._errored:
            self._error_message = None
        for part in record.parts():
            self._last[part.key] = part
            buf = self.buffer(part.key)
            for value, aux in part.samples():
                self._fanout.data(buf.append(value, aux), part)
        self._fanout.record(record)

    def _arm_watchdog(self) -> None:
        timeout = self._options.first_data_timeout
        if timeout <= 0 or self._received_data:
            return
        self._disarm_watchdog()
        self._watchdog = asyncio.get_running_loop().call_later(
            timeout, self._on_watchdog, self._generation, timeout
        )

    def _disarm_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    def _on_watchdog(self, generation: int, timeout: float) -> None:
        self._watchdog = None
        if not self._is_current(generation) or self._received_data:
            return
        message = f"No data received from the {self._endpoint.topic} stream within {timeout:.0f}s."
        self._error_message = message
        logger.warning("%s", message)
        self._fanout.error(message)


def _has_running_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
