"""CLI entry-point: Click command group and dispatch."""

from __future__ import annotations

import dataclasses
import logging

import click

from nodepulse.api.errors import ApiError, ConfigError, CredentialMissingError
from nodepulse.output.formatter import OutputFormatter

# ---------------------------------------------------------------------------
# Application context (stored in ctx.obj)
# ---------------------------------------------------------------------------


@dataclasses.dataclass
class AppContext:
    """Shared state passed to every Click command via ``@click.pass_obj``."""

    host: str | None
    profile: str
    output_format: str | None
    quiet: bool
    verbose: bool
    _formatter: OutputFormatter | None = dataclasses.field(default=None, repr=False)

    @property
    def formatter(self) -> OutputFormatter:
        if self._formatter is None:
            force = "quiet" if self.quiet else self.output_format
            self._formatter = OutputFormatter(force_format=force)
        return self._formatter


def configure_logging(verbose: bool) -> None:
    """Route library logging through Rich on stderr.

    ``--verbose`` shows DEBUG from nodepulse; otherwise only warnings reach
    the terminal. Noisy transport loggers stay at WARNING either way.
    """
    from rich.console import Console
    from rich.logging import RichHandler

    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)
    handler = RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=verbose)
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    root.addHandler(handler)
    root.setLevel(logging.WARNING)
    logging.getLogger("nodepulse").setLevel(logging.DEBUG if verbose else logging.WARNING)
    for name in ("httpx", "httpcore", "websockets"):
        logging.getLogger(name).setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Root Click group
# ---------------------------------------------------------------------------


@click.group()
@click.option("--host", default=None, envvar="NODEPULSE_HOST", help="Telemetry host[:port]")
@click.option("--profile", default="default", help="Credential profile name")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["rich", "json", "quiet"]),
    default=None,
    help="Output format (default: auto-detect)",
)
@click.option("--quiet", is_flag=True, default=False, help="Suppress normal output")
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose logging")
@click.pass_context
def cli(
    ctx: click.Context,
    host: str | None,
    profile: str,
    output_format: str | None,
    quiet: bool,
    verbose: bool,
) -> None:
    """Stream live node metrics from a monitoring dashboard backend."""
    ctx.ensure_object(dict)
    ctx.obj = AppContext(
        host=host,
        profile=profile,
        output_format=output_format,
        quiet=quiet,
        verbose=verbose,
    )
    configure_logging(verbose)


# ---------------------------------------------------------------------------
# Register subcommand groups (lazy imports keep startup fast)
# ---------------------------------------------------------------------------


def _register_commands() -> None:
    """Import and attach all subcommands to the root CLI."""
    from nodepulse.cli.auth import auth_group
    from nodepulse.cli.stream import disks_cmd, sidebar_cmd, watch_cmd

    cli.add_command(auth_group)
    cli.add_command(disks_cmd)
    cli.add_command(sidebar_cmd)
    cli.add_command(watch_cmd)


_register_commands()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """Parse arguments and dispatch to the appropriate command handler."""
    try:
        cli(args=argv, standalone_mode=False)
    except click.exceptions.Exit as exc:
        raise SystemExit(exc.exit_code) from None
    except click.exceptions.Abort:
        raise SystemExit(1) from None
    except click.exceptions.ClickException as exc:
        exc.show()
        raise SystemExit(exc.exit_code) from None
    except KeyboardInterrupt:
        raise SystemExit(130) from None
    except SystemExit:
        raise
    except Exception as exc:
        app_ctx = _extract_app_ctx()
        formatter = app_ctx.formatter if app_ctx else OutputFormatter()
        cmd_name = _get_command_name()

        if _handle_known_error(exc, formatter, cmd_name):
            raise SystemExit(1) from exc

        formatter.output_error(
            code=type(exc).__name__,
            message=str(exc),
            command=cmd_name,
        )
        raise SystemExit(1) from exc


# ---------------------------------------------------------------------------
# Helpers for error handling
# ---------------------------------------------------------------------------


def _extract_app_ctx() -> AppContext | None:
    """Try to extract AppContext from the current Click context."""
    ctx = click.get_current_context(silent=True)
    while ctx is not None:
        if isinstance(ctx.obj, AppContext):
            return ctx.obj
        ctx = ctx.parent
    return None


def _get_command_name() -> str:
    """Reconstruct a dotted command name from the Click context chain."""
    ctx = click.get_current_context(silent=True)
    parts: list[str] = []
    while ctx is not None:
        if ctx.info_name and ctx.info_name != "cli":
            parts.append(ctx.info_name)
        ctx = ctx.parent
    return ".".join(reversed(parts)) or "unknown"


def _handle_known_error(
    exc: Exception,
    formatter: OutputFormatter,
    cmd_name: str,
) -> bool:
    """Handle well-known errors with friendly output.

    Returns ``True`` if the error was handled and the caller should exit.
    """
    if isinstance(exc, CredentialMissingError):
        _handle_missing_credential(exc, formatter, cmd_name)
        return True
    if isinstance(exc, ApiError):
        code = "api_error" if exc.status_code is None else f"http_{exc.status_code}"
        formatter.output_error(code=code, message=str(exc), command=cmd_name)
        return True
    if isinstance(exc, ConfigError):
        formatter.output_error(code="config_error", message=str(exc), command=cmd_name)
        return True
    return False


def _handle_missing_credential(
    exc: CredentialMissingError,
    formatter: OutputFormatter,
    cmd_name: str,
) -> None:
    """Show a friendly missing-token error with next steps."""
    message = str(exc)
    hint = "Run 'nodepulse auth set-token' or set NODEPULSE_ACCESS_TOKEN."

    if formatter.format == "json":
        formatter.output_error(
            code="credential_missing",
            message=f"{message} {hint}",
            command=cmd_name,
        )
        return

    formatter.rich.error(message)
    formatter.rich.info("")
    formatter.rich.info("Next steps:")
    formatter.rich.info("  [cyan]nodepulse auth set-token[/cyan]")
    formatter.rich.info("  [dim]or export NODEPULSE_ACCESS_TOKEN=...[/dim]")
