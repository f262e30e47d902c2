"""CLI commands for the stored dashboard access token (set-token, clear, status)."""

from __future__ import annotations

from typing import TYPE_CHECKING

import click

from nodepulse.auth.token_store import TokenStore
from nodepulse.cli._client import get_settings
from nodepulse.cli._options import global_options

if TYPE_CHECKING:
    from nodepulse.cli.main import AppContext

auth_group = click.Group("auth", help="Access token management")


@auth_group.command("set-token")
@click.option(
    "--token",
    prompt="Access token",
    hide_input=True,
    help="Dashboard access token (prompted when omitted)",
)
@global_options
def set_token_cmd(app_ctx: AppContext, token: str) -> None:
    """Store the access token in the OS keyring."""
    formatter = app_ctx.formatter
    token = token.strip()
    if not token:
        raise click.BadParameter("token must not be empty", param_hint="--token")

    settings = get_settings(app_ctx)
    TokenStore(settings.profile).save(token, host=settings.host)

    if formatter.format == "json":
        formatter.output({"stored": True, "profile": settings.profile}, command="auth.set-token")
    else:
        formatter.rich.command_result(True, f"Token stored for profile '{settings.profile}'.")


@auth_group.command("clear")
@global_options
def clear_cmd(app_ctx: AppContext) -> None:
    """Remove the stored access token."""
    formatter = app_ctx.formatter
    settings = get_settings(app_ctx)
    TokenStore(settings.profile).clear()

    if formatter.format == "json":
        formatter.output({"cleared": True, "profile": settings.profile}, command="auth.clear")
    else:
        formatter.rich.info(f"Cleared stored token for profile '{settings.profile}'.")


@auth_group.command("status")
@global_options
def status_cmd(app_ctx: AppContext) -> None:
    """Show where the access token will come from."""
    formatter = app_ctx.formatter
    settings = get_settings(app_ctx)
    store = TokenStore(settings.profile)

    if settings.access_token:
        source = "environment"
    elif store.has_token:
        source = "keyring"
    else:
        source = None
    meta = store.metadata or {}

    if formatter.format == "json":
        formatter.output(
            {
                "authenticated": source is not None,
                "source": source,
                "profile": settings.profile,
                "host": meta.get("host") or settings.host,
            },
            command="auth.status",
        )
        return

    if source is None:
        formatter.rich.info("[yellow]Not authenticated.[/yellow]")
        formatter.rich.info("Run [cyan]nodepulse auth set-token[/cyan] to store a token.")
        return
    formatter.rich.info(f"Token source: [green]{source}[/green]")
    formatter.rich.info(f"Profile:      {settings.profile}")
    formatter.rich.info(f"Host:         {meta.get('host') or settings.host}")
