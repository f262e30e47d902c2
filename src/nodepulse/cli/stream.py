"""CLI commands for live metric streams (watch, sidebar) and disk enumeration."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

import click

from nodepulse._internal.async_utils import run_async
from nodepulse.api.errors import ApiError
from nodepulse.cli._client import build_registry, get_metadata_client
from nodepulse.cli._options import global_options
from nodepulse.stream.codec import TOPIC_CATEGORIES
from nodepulse.stream.endpoint import EndpointKey
from nodepulse.stream.lifecycle import LifecycleCoordinator

if TYPE_CHECKING:
    from collections.abc import Callable

    from rich.live import Live

    from nodepulse.cli.main import AppContext
    from nodepulse.output.formatter import OutputFormatter
    from nodepulse.stream.buffer import MetricSample, StreamBuffer
    from nodepulse.stream.codec import MetricsRecord
    from nodepulse.stream.fanout import Subscription

logger = logging.getLogger(__name__)


async def _wait(done: asyncio.Event, duration: float | None) -> None:
    if duration:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(done.wait(), timeout=duration)
    else:
        await done.wait()


def _row_key(kind: str, resource_id: str) -> str:
    return f"{kind}:{resource_id}" if kind in ("disk", "network") else kind


def _show_status(formatter: OutputFormatter, text: str) -> None:
    if formatter.format == "rich":
        formatter.rich.status(text)


# ---------------------------------------------------------------------------
# watch
# ---------------------------------------------------------------------------


@click.command("watch")
@click.argument("topic", type=click.Choice(sorted(TOPIC_CATEGORIES)))
@click.option("--node", "node_id", required=True, help="Node ID to monitor")
@click.option("--count", type=int, default=0, help="Stop after N samples (0 = until interrupted)")
@click.option("--duration", type=float, default=None, help="Stop after S seconds")
@global_options
def watch_cmd(
    app_ctx: AppContext,
    topic: str,
    node_id: str,
    count: int,
    duration: float | None,
) -> None:
    """Stream one metric TOPIC from a node over its own connection."""
    run_async(_cmd_watch(app_ctx, topic, node_id, count, duration))


async def _cmd_watch(
    app_ctx: AppContext,
    topic: str,
    node_id: str,
    count: int,
    duration: float | None,
) -> None:
    formatter = app_ctx.formatter
    registry = build_registry(app_ctx)
    coordinator = LifecycleCoordinator()
    coordinator.install_signal_handlers(asyncio.get_running_loop())
    done = asyncio.Event()
    received = 0

    try:
        async with coordinator.mounted(f"watch:{topic}") as scope:
            session = registry.create_session(EndpointKey(registry.host, topic, node_id))

            def on_data(sample: MetricSample, record: MetricsRecord) -> None:
                nonlocal received
                if count and received >= count:
                    return
                received += 1
                formatter.output_sample(
                    record.key,
                    sample,
                    session.buffer(record.key),
                    command="watch",
                    node_id=node_id,
                )
                if count and received >= count:
                    done.set()

            sub = session.subscribe(
                on_data=on_data,
                on_connection_change=lambda _connected: _show_status(
                    formatter, session.status_text
                ),
                on_error=lambda _message: _show_status(formatter, session.status_text),
                scope=scope,
            )

            def teardown() -> None:
                sub.release()
                done.set()

            coordinator.bind(scope, teardown)
            session.open()
            await _wait(done, duration)
    finally:
        await registry.aclose()

    logger.debug("watch finished after %d sample(s)", received)


# ---------------------------------------------------------------------------
# sidebar
# ---------------------------------------------------------------------------


@click.command("sidebar")
@click.option("--node", "node_id", required=True, help="Node ID to monitor")
@click.option("--disk", "disk_ids", multiple=True, help="Disk id to show (default: discover)")
@click.option(
    "--interface",
    "interfaces",
    multiple=True,
    help="Network interface index or name (default: 0)",
)
@click.option("--count", type=int, default=0, help="Stop after N frames (0 = until interrupted)")
@click.option("--duration", type=float, default=None, help="Stop after S seconds")
@global_options
def sidebar_cmd(
    app_ctx: AppContext,
    node_id: str,
    disk_ids: tuple[str, ...],
    interfaces: tuple[str, ...],
    count: int,
    duration: float | None,
) -> None:
    """Show CPU, memory, disks and network from the shared sidebar stream."""
    run_async(_cmd_sidebar(app_ctx, node_id, disk_ids, interfaces, count, duration))


async def _discover_disks(app_ctx: AppContext, node_id: str) -> list[str]:
    try:
        disk_list = await get_metadata_client(app_ctx).list_disks(node_id)
    except ApiError as exc:
        logger.warning("Disk discovery failed, showing disk 0 only: %s", exc)
        return ["0"]
    return [str(d.id) for d in disk_list.disks] or ["0"]


async def _cmd_sidebar(
    app_ctx: AppContext,
    node_id: str,
    disk_ids: tuple[str, ...],
    interfaces: tuple[str, ...],
    count: int,
    duration: float | None,
) -> None:
    formatter = app_ctx.formatter
    registry = build_registry(app_ctx)
    disks = list(disk_ids) or await _discover_disks(app_ctx, node_id)
    resources: list[tuple[str, str]] = [
        ("cpu", "0"),
        ("memory", "0"),
        *(("disk", d) for d in disks),
        *(("network", i) for i in interfaces or ("0",)),
    ]

    coordinator = LifecycleCoordinator()
    coordinator.install_signal_handlers(asyncio.get_running_loop())
    multiplexer = registry.get_or_create()
    done = asyncio.Event()
    emitted: dict[str, int] = {}
    live: Live | None = None
    title = f"Node {node_id}"

    def rows() -> list[tuple[str, StreamBuffer]]:
        return [
            (_row_key(kind, rid), multiplexer.buffer(kind, rid)) for kind, rid in resources
        ]

    def make_on_data(kind: str, rid: str) -> Callable[[MetricSample, MetricsRecord], None]:
        def on_data(sample: MetricSample, record: MetricsRecord) -> None:
            key = _row_key(kind, rid)
            # Every resource shows at most --count samples; cpu paces the frames.
            if count and emitted.get(key, 0) >= count:
                return
            emitted[key] = emitted.get(key, 0) + 1
            if formatter.format == "json":
                formatter.output_sample(
                    key, sample, multiplexer.buffer(kind, rid), command="sidebar", node_id=node_id
                )
            if live is not None:
                live.update(formatter.rich.sidebar_table(rows(), title=title))
            if kind == "cpu" and count and emitted[key] >= count:
                done.set()

        return on_data

    try:
        async with coordinator.mounted("sidebar") as scope:
            subs: list[Subscription] = [
                multiplexer.subscribe(
                    kind,
                    rid,
                    on_data=make_on_data(kind, rid),
                    on_error=lambda message: logger.warning("%s", message),
                    scope=scope,
                )
                for kind, rid in resources
            ]

            def teardown() -> None:
                for sub in subs:
                    sub.release()
                done.set()

            coordinator.bind(scope, teardown)
            multiplexer.connect(node_id)

            if formatter.format == "rich":
                from rich.live import Live

                with Live(
                    formatter.rich.sidebar_table(rows(), title=title),
                    console=formatter.console,
                    refresh_per_second=4,
                ) as live:
                    await _wait(done, duration)
            else:
                await _wait(done, duration)
    finally:
        await registry.aclose()


# ---------------------------------------------------------------------------
# disks
# ---------------------------------------------------------------------------


@click.command("disks")
@click.option("--node", "node_id", required=True, help="Node ID to query")
@global_options
def disks_cmd(app_ctx: AppContext, node_id: str) -> None:
    """List the disks attached to a node (REST metadata)."""
    run_async(_cmd_disks(app_ctx, node_id))


async def _cmd_disks(app_ctx: AppContext, node_id: str) -> None:
    formatter = app_ctx.formatter
    disk_list = await get_metadata_client(app_ctx).list_disks(node_id)

    if formatter.format == "json":
        formatter.output(disk_list.disks, command="disks")
    else:
        formatter.rich.disk_list(disk_list.disks, node_id=node_id)
