from __future__ import annotations

from typing import TYPE_CHECKING

from rich.table import Table

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from rich.console import Console

    from nodepulse.models.metadata import DiskInfo
    from nodepulse.stream.buffer import MetricSample, StreamBuffer

_BLOCKS = "▁▂▃▄▅▆▇█"

# Stream kind -> (label, unit)
_UNITS: dict[str, tuple[str, str]] = {
    "cpu": ("CPU", "%"),
    "memory": ("Memory", "%"),
    "disk": ("Disk", "%"),
    "network": ("Network", " kbps"),
}


def sparkline(values: Iterable[float], *, width: int | None = None) -> str:
    """Render *values* as a one-line block-character chart.

    The scale runs from ``0`` (or the minimum, if negative) to the maximum,
    so a flat zero series renders as a row of the lowest block.
    """
    vals = list(values)
    if width is not None and len(vals) > width:
        vals = vals[-width:]
    if not vals:
        return ""
    lo = min(0.0, min(vals))
    hi = max(vals)
    span = hi - lo
    if span <= 0:
        return _BLOCKS[0] * len(vals)
    top = len(_BLOCKS) - 1
    return "".join(_BLOCKS[round((v - lo) / span * top)] for v in vals)


def _kind(key: str) -> str:
    return key.split(":", 1)[0]


def format_value(key: str, value: float) -> str:
    unit = _UNITS.get(_kind(key), ("", ""))[1]
    return f"{value:.1f}{unit}"


def describe(key: str, aux: Mapping[str, str | float]) -> str:
    """Short human label for a stream key (``disk:1`` -> ``Disk sda``)."""
    kind = _kind(key)
    label = _UNITS.get(kind, (key, ""))[0]
    if kind == "disk":
        name = aux.get("name") or aux.get("device")
        return f"{label} {name}" if name else key
    if kind == "network":
        name = aux.get("interface") or aux.get("name")
        return f"{label} {name}" if name else key
    return label


class RichOutput:
    """Rich-based terminal output helpers for *nodepulse*."""

    def __init__(self, console: Console) -> None:
        self._con = console

    # ------------------------------------------------------------------
    # Streaming samples
    # ------------------------------------------------------------------

    def sample(self, key: str, sample: MetricSample, buffer: StreamBuffer) -> None:
        """Print one sample: label, current value and the buffer's sparkline."""
        label = describe(key, sample.aux)
        spark = sparkline(buffer.values())
        self._con.print(
            f"[dim]#{sample.timestamp_logical:<4}[/dim] [bold]{label:<18}[/bold] "
            f"{format_value(key, sample.value):>12}  [cyan]{spark}[/cyan]",
            highlight=False,
        )

    def sidebar_table(self, rows: Iterable[tuple[str, StreamBuffer]], *, title: str) -> Table:
        """Build a table of every sidebar resource with its history."""
        table = Table(title=title)
        table.add_column("Resource", style="bold")
        table.add_column("Now", justify="right")
        table.add_column("History", style="cyan")
        table.add_column("Detail", style="dim")

        for key, buf in rows:
            latest = buf.latest
            if latest is None:
                table.add_row(key, "-", "", "")
                continue
            table.add_row(
                describe(key, latest.aux),
                format_value(key, latest.value),
                sparkline(buf.values(), width=30),
                _detail(key, latest.aux),
            )

        return table

    def sidebar(self, rows: Iterable[tuple[str, StreamBuffer]], *, title: str) -> None:
        """Print the sidebar table once."""
        self._con.print(self.sidebar_table(rows, title=title))

    # ------------------------------------------------------------------
    # Disk list
    # ------------------------------------------------------------------

    def disk_list(self, disks: list[DiskInfo], *, node_id: str) -> None:
        """Print a table of disks reported by the metadata endpoint."""
        table = Table(title=f"Disks on {node_id}")
        table.add_column("ID", justify="right", style="cyan")
        table.add_column("Name")
        table.add_column("Device")
        table.add_column("Model")
        table.add_column("Type")

        for d in disks:
            table.add_row(str(d.id), d.name or "", d.device or "", d.model or "", d.type or "")

        self._con.print(table)

    # ------------------------------------------------------------------
    # Status helpers
    # ------------------------------------------------------------------

    def status(self, text: str) -> None:
        """Print a connection status line, coloured by state."""
        if text.startswith(("error", "disconnected")):
            style = "red"
        elif text == "connected":
            style = "green"
        else:
            style = "yellow"
        self._con.print(f"[{style}]● {text}[/{style}]")

    def command_result(self, success: bool, message: str = "") -> None:
        """Print a coloured OK / FAILED indicator."""
        text = "[green]OK[/green]" if success else "[red]FAILED[/red]"
        if message:
            text += f"  {message}"
        self._con.print(text)

    def error(self, message: str) -> None:
        """Print a bold red error line."""
        self._con.print(f"[bold red]Error:[/bold red] {message}")

    def info(self, message: str) -> None:
        """Print an informational message (plain)."""
        self._con.print(message)


def _detail(key: str, aux: Mapping[str, str | float]) -> str:
    kind = _kind(key)
    if kind == "memory" and "total_gb" in aux:
        return f"{aux.get('used_gb', 0)}/{aux['total_gb']} GB"
    if kind == "network":
        rx = aux.get("download_kbps", 0.0)
        tx = aux.get("upload_kbps", 0.0)
        return f"↓{float(rx):.1f} ↑{float(tx):.1f}"
    if kind == "cpu":
        return str(aux.get("model", ""))
    if kind == "disk":
        return str(aux.get("type", ""))
    return ""
