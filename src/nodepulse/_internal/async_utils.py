"""Asyncio utilities."""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine


def run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run an async coroutine from synchronous code (Click command bodies)."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        import concurrent.futures

        with concurrent.futures.ThreadPoolExecutor() as pool:
            return pool.submit(asyncio.run, coro).result()
    else:
        return asyncio.run(coro)


def call_safely(callback: Any, *args: Any, logger: Any, what: str) -> None:
    """Invoke a synchronous consumer callback, logging instead of raising.

    Consumer callbacks run on the socket's reader task; an exception escaping
    one of them must never tear the connection down.
    """
    try:
        callback(*args)
    except Exception:
        logger.warning("%s callback %r failed", what, callback, exc_info=True)
