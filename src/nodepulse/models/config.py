from __future__ import annotations

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StreamOptions(BaseModel):
    """Tuning knobs consumed by the streaming core.

    Built from :class:`AppSettings` by the CLI; tests construct it directly.
    """

    scheme: str = "ws"
    path_prefix: str = "performance"
    buffer_capacity: int = Field(default=60, ge=1)
    reconnect_delay: float = Field(default=3.0, ge=0)
    reconnect_delay_overrides: dict[str, float] = Field(
        default_factory=lambda: {"ethernet": 5.0, "wifi": 5.0}
    )
    """Per-topic fixed retry delay in seconds (topics not listed use ``reconnect_delay``)."""
    max_reconnect_attempts: int = Field(default=0, ge=0)
    """``0`` means retry until explicitly stopped."""
    first_data_timeout: float = Field(default=10.0, ge=0)
    """Seconds after opening before a silent stream is reported. ``0`` disables."""

    def delay_for(self, topic: str) -> float:
        """Return the fixed retry delay for *topic*."""
        return self.reconnect_delay_overrides.get(topic, self.reconnect_delay)


class AppSettings(BaseSettings):
    """Application-wide settings populated from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="NODEPULSE_",
        extra="ignore",
    )

    host: str = "127.0.0.1:8000"
    scheme: str = "ws"
    path_prefix: str = "performance"
    api_base_url: str | None = None
    access_token: str | None = None
    profile: str = "default"
    output_format: str | None = None
    buffer_capacity: int = 60
    reconnect_delay: float = 3.0
    reconnect_delay_overrides: dict[str, float] = Field(
        default_factory=lambda: {"ethernet": 5.0, "wifi": 5.0}
    )
    max_reconnect_attempts: int = 0
    first_data_timeout: float = 10.0

    def stream_options(self) -> StreamOptions:
        """Project the streaming-related settings onto :class:`StreamOptions`."""
        return StreamOptions(
            scheme=self.scheme,
            path_prefix=self.path_prefix,
            buffer_capacity=self.buffer_capacity,
            reconnect_delay=self.reconnect_delay,
            reconnect_delay_overrides=dict(self.reconnect_delay_overrides),
            max_reconnect_attempts=self.max_reconnect_attempts,
            first_data_timeout=self.first_data_timeout,
        )

    def rest_base_url(self) -> str:
        """Base URL of the REST metadata API (derived from *host* when unset)."""
        if self.api_base_url:
            return self.api_base_url.rstrip("/")
        http_scheme = "https" if self.scheme == "wss" else "http"
        return f"{http_scheme}://{self.host}"
