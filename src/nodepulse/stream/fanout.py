"""Subscriptions and the fan-out dispatcher that feeds them.

One inbound frame is delivered to every active subscription, each
error-isolated: a consumer callback that raises is logged and the remaining
subscribers still receive the event.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from nodepulse._internal.async_utils import call_safely

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from nodepulse.stream.buffer import MetricSample
    from nodepulse.stream.codec import AggregateRecord, DecodeError, MetricsRecord
    from nodepulse.stream.lifecycle import ComponentScope

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Subscription:
    """A consumer's interest in a stream plus its callbacks.

    The consumer that creates a subscription owns it and must
    :meth:`release` it. After release no callback fires again.
    """

    topic: str | None = None
    """Multiplexer resource kind (``cpu``, ``memory``, ``disk``, ``network``)."""
    resource_id: str = "0"
    key: str | None = None
    """Only deliver records for this stream key (``None`` = all keys)."""
    on_data: Callable[[MetricSample, MetricsRecord], None] | None = None
    on_record: Callable[[MetricsRecord | AggregateRecord], None] | None = None
    on_connection_change: Callable[[bool], None] | None = None
    on_error: Callable[[str], None] | None = None
    on_decode_error: Callable[[DecodeError], None] | None = None
    scope: ComponentScope | None = None
    active: bool = True
    _on_release: Callable[[Subscription], None] | None = field(default=None, repr=False)

    @property
    def owner_mounted(self) -> bool:
        """``True`` unless the owning component scope has unmounted."""
        return self.scope is None or self.scope.mounted

    def release(self) -> None:
        """Detach from the session or multiplexer. Safe to call repeatedly."""
        if not self.active:
            return
        self.active = False
        callback, self._on_release = self._on_release, None
        if callback is not None:
            callback(self)


class SubscriberFanout:
    """Fan-out dispatcher: delivers stream events to all active subscriptions."""

    def __init__(self) -> None:
        self._subs: list[Subscription] = []

    def add(self, sub: Subscription) -> None:
        """Register *sub* (no-op if already registered)."""
        if sub not in self._subs:
            self._subs.append(sub)

    def remove(self, sub: Subscription) -> bool:
        """Unregister *sub*; return ``True`` if it was registered."""
        try:
            self._subs.remove(sub)
        except ValueError:
            return False
        return True

    def clear(self) -> None:
        """Detach every subscription without invoking their release hooks."""
        for sub in self._subs:
            sub.active = False
            sub._on_release = None
        self._subs.clear()

    @property
    def count(self) -> int:
        """Number of registered subscriptions."""
        return len(self._subs)

    def has_subscribers(self) -> bool:
        return bool(self._subs)

    def any_owner_mounted(self) -> bool:
        """``True`` if at least one subscription's owner is still mounted."""
        return any(sub.active and sub.owner_mounted for sub in self._subs)

    def __iter__(self) -> Iterator[Subscription]:
        # Snapshot: callbacks may release subscriptions while we iterate.
        return iter([s for s in self._subs if s.active])

    # -- dispatch -----------------------------------------------------------

    def connection_changed(self, connected: bool) -> None:
        for sub in self:
            if sub.on_connection_change is not None and sub.active:
                call_safely(sub.on_connection_change, connected, logger=logger, what="connection")

    def error(self, message: str) -> None:
        for sub in self:
            if sub.on_error is not None and sub.active:
                call_safely(sub.on_error, message, logger=logger, what="error")

    def data(self, sample: MetricSample, record: MetricsRecord) -> None:
        for sub in self:
            if sub.on_data is None or (sub.key is not None and sub.key != record.key):
                continue
            if sub.active:
                call_safely(sub.on_data, sample, record, logger=logger, what="data")

    def record(self, record: MetricsRecord | AggregateRecord) -> None:
        for sub in self:
            if sub.on_record is not None and sub.active:
                call_safely(sub.on_record, record, logger=logger, what="record")

    def decode_error(self, error: DecodeError) -> None:
        for sub in self:
            if sub.on_decode_error is not None and sub.active:
                call_safely(sub.on_decode_error, error, logger=logger, what="decode error")
