"""Tie stream teardown to the lifetime of the components that own them.

Three triggers end a component's streams: the component unmounting, the
user navigating to a route the component does not live on, and the whole
process going away. Each bound component registers one idempotent close
function that runs on whichever trigger arrives first.
"""

from __future__ import annotations

import contextlib
import logging
import signal
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from nodepulse._internal.async_utils import call_safely

if TYPE_CHECKING:
    import asyncio
    from collections.abc import AsyncIterator, Callable, Iterable

logger = logging.getLogger(__name__)

DEFAULT_ROUTES: tuple[str, ...] = ("/performance", "/container")


class Trigger(StrEnum):
    UNMOUNT = "unmount"
    NAVIGATE = "navigate"
    UNLOAD = "unload"


@dataclass(eq=False)
class ComponentScope:
    """Stand-in for a UI component that owns one or more streams."""

    name: str
    routes: tuple[str, ...] = DEFAULT_ROUTES
    mounted: bool = True
    _hooks: dict[Trigger, Callable[[], None]] = field(default_factory=dict, repr=False)

    def keeps_route(self, path: str) -> bool:
        """Whether the component stays mounted on *path*."""
        return any(path == r or path.startswith(r.rstrip("/") + "/") for r in self.routes)


class LifecycleCoordinator:
    """Dispatches unmount/navigation/unload events to bound scopes."""

    def __init__(self) -> None:
        self._scopes: list[ComponentScope] = []

    @property
    def scopes(self) -> list[ComponentScope]:
        return list(self._scopes)

    def bind(self, scope: ComponentScope, close_fn: Callable[[], None]) -> None:
        """Register *close_fn* for every trigger. Re-binding a scope is a no-op."""
        if scope._hooks:
            logger.debug("Scope %s already bound", scope.name)
            return
        done = False

        def close_once() -> None:
            nonlocal done
            if done:
                return
            done = True
            close_fn()

        for trigger in Trigger:
            scope._hooks[trigger] = close_once
        self._scopes.append(scope)

    def unbind(self, scope: ComponentScope) -> None:
        """Deregister all three hooks for *scope*."""
        scope._hooks.clear()
        with contextlib.suppress(ValueError):
            self._scopes.remove(scope)

    def _fire(self, scope: ComponentScope, trigger: Trigger) -> None:
        hook = scope._hooks.get(trigger)
        scope.mounted = False
        self.unbind(scope)
        if hook is not None:
            logger.debug("Tearing down %s on %s", scope.name, trigger.value)
            call_safely(hook, logger=logger, what=f"{trigger.value} hook")

    def notify_unmount(self, scope: ComponentScope) -> None:
        self._fire(scope, Trigger.UNMOUNT)

    def notify_navigation(self, path: str) -> int:
        """Tear down every scope that does not live on *path*; return how many."""
        leaving = [s for s in self._scopes if not s.keeps_route(path)]
        for scope in leaving:
            self._fire(scope, Trigger.NAVIGATE)
        return len(leaving)

    def notify_unload(self) -> int:
        """Tear down every bound scope."""
        scopes = list(self._scopes)
        for scope in scopes:
            self._fire(scope, Trigger.UNLOAD)
        return len(scopes)

    @contextlib.asynccontextmanager
    async def mounted(
        self, name: str, routes: Iterable[str] = DEFAULT_ROUTES
    ) -> AsyncIterator[ComponentScope]:
        """Yield a mounted scope that is unmounted when the block exits."""
        scope = ComponentScope(name=name, routes=tuple(routes))
        try:
            yield scope
        finally:
            if scope.mounted:
                self.notify_unmount(scope)

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        """Map SIGINT/SIGTERM to :meth:`notify_unload` (best effort)."""
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.notify_unload)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no add_signal_handler.
                logger.debug("Cannot install handler for %s", sig.name)
