"""Fixed-delay reconnection scheduling for dropped stream sessions.

At most one retry is pending per session. The retry conditions are checked
both when the retry is requested and again when the timer fires, because
monitoring may be switched off or the owning component may unmount during
the delay.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from nodepulse.models.config import StreamOptions

if TYPE_CHECKING:
    from collections.abc import Callable

    from nodepulse.stream.session import ConnectionSession

logger = logging.getLogger(__name__)


class ReconnectPolicy:
    """Schedules ``session.open()`` a fixed delay after an unintended close.

    There is no backoff growth. ``StreamOptions.max_reconnect_attempts`` caps
    consecutive failed attempts; the default ``0`` retries until stopped.
    """

    def __init__(
        self,
        options: StreamOptions | None = None,
        *,
        monitoring_enabled: Callable[[], bool] | None = None,
    ) -> None:
        self._options = options or StreamOptions()
        self._monitoring_enabled = monitoring_enabled or (lambda: True)
        self._pending: dict[ConnectionSession, asyncio.TimerHandle] = {}
        self._attempts: dict[ConnectionSession, int] = {}

    @property
    def pending_count(self) -> int:
        """Number of sessions with a retry timer armed."""
        return len(self._pending)

    def is_pending(self, session: ConnectionSession) -> bool:
        return session in self._pending

    def attempts(self, session: ConnectionSession) -> int:
        """Consecutive retries scheduled since *session* last opened."""
        return self._attempts.get(session, 0)

    def _blocked_reason(self, session: ConnectionSession) -> str | None:
        if session.intentional_close:
            return "close was intentional"
        if not self._monitoring_enabled():
            return "monitoring is disabled"
        if not session.owner_mounted:
            return "owning component unmounted"
        return None

    def schedule_retry(self, session: ConnectionSession, reason: str) -> None:
        """Arm a retry for *session* unless one is pending or retrying is not allowed."""
        blocked = self._blocked_reason(session)
        if blocked is not None:
            logger.debug("Not reconnecting %s: %s", session.endpoint, blocked)
            return
        if session in self._pending:
            logger.debug("Retry already pending for %s — ignoring", session.endpoint)
            return

        attempt = self._attempts.get(session, 0) + 1
        cap = self._options.max_reconnect_attempts
        if cap and attempt > cap:
            logger.warning(
                "Giving up on %s after %d reconnection attempt(s)", session.endpoint, cap
            )
            session.retries_exhausted(cap)
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop — cannot retry %s", session.endpoint)
            return

        delay = self._options.delay_for(session.endpoint.topic)
        self._attempts[session] = attempt
        self._pending[session] = loop.call_later(delay, self._fire, session)
        session.mark_retry_pending(delay)
        logger.info(
            "Stream %s dropped (%s) — reconnection attempt %d in %.1fs",
            session.endpoint,
            reason,
            attempt,
            delay,
        )

    def _fire(self, session: ConnectionSession) -> None:
        self._pending.pop(session, None)
        session.clear_retry_pending()
        blocked = self._blocked_reason(session)
        if blocked is not None:
            logger.info("Dropping scheduled retry for %s: %s", session.endpoint, blocked)
            return
        logger.info("Reconnecting %s", session.endpoint)
        session.stats.reconnect_count += 1
        # open() fetches a fresh credential; it may have rotated since the drop.
        session.open()

    def cancel(self, session: ConnectionSession) -> bool:
        """Disarm the pending retry for *session*; return ``True`` if one existed."""
        handle = self._pending.pop(session, None)
        if handle is None:
            return False
        handle.cancel()
        session.clear_retry_pending()
        return True

    def cancel_all(self) -> int:
        """Disarm every pending retry and return how many were cancelled."""
        sessions = list(self._pending)
        for session in sessions:
            self.cancel(session)
        return len(sessions)

    def reset_attempts(self, session: ConnectionSession) -> None:
        """Forget the attempt count (called once a connection opens)."""
        self._attempts.pop(session, None)

    def forget(self, session: ConnectionSession) -> None:
        """Drop all bookkeeping for a session that is being discarded."""
        self.cancel(session)
        self._attempts.pop(session, None)
