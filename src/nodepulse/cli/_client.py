"""Shared helpers for building settings, credentials and stream registries."""

from __future__ import annotations

from typing import TYPE_CHECKING

from nodepulse.api.errors import ConfigError, CredentialMissingError
from nodepulse.api.metadata import MetadataClient
from nodepulse.auth.token_store import resolve_credentials
from nodepulse.models.config import AppSettings
from nodepulse.stream.registry import StreamRegistry

if TYPE_CHECKING:
    from nodepulse.auth.token_store import CredentialProvider
    from nodepulse.cli.main import AppContext


def get_settings(app_ctx: AppContext) -> AppSettings:
    """Load settings from env/.env, applying CLI overrides."""
    settings = AppSettings()
    overrides: dict[str, str] = {}
    if app_ctx.host:
        overrides["host"] = app_ctx.host
    if app_ctx.profile and app_ctx.profile != "default":
        overrides["profile"] = app_ctx.profile
    if overrides:
        settings = settings.model_copy(update=overrides)
    if not settings.host.strip():
        raise ConfigError("No dashboard host configured. Use --host or set NODEPULSE_HOST.")
    if settings.scheme not in ("ws", "wss"):
        raise ConfigError(f"Unsupported stream scheme {settings.scheme!r} (expected ws or wss).")
    return settings


def require_credentials(settings: AppSettings) -> CredentialProvider:
    """Return the credential chain, failing early when it is empty."""
    credentials = resolve_credentials(settings)
    if not credentials.get_credential():
        raise CredentialMissingError()
    return credentials


def build_registry(app_ctx: AppContext) -> StreamRegistry:
    """Create the per-invocation stream registry."""
    settings = get_settings(app_ctx)
    return StreamRegistry(
        host=settings.host,
        credentials=require_credentials(settings),
        options=settings.stream_options(),
    )


def get_metadata_client(app_ctx: AppContext) -> MetadataClient:
    settings = get_settings(app_ctx)
    return MetadataClient(
        settings.rest_base_url(),
        require_credentials(settings),
        path_prefix=settings.path_prefix,
    )
