"""Credential providers: keyring-backed token persistence and static tokens.

The streaming core treats the bearer credential as an opaque string and
asks for it again before every (re)connect, since it may have rotated.
"""

from __future__ import annotations

import contextlib
import json
from typing import TYPE_CHECKING, Any, Protocol

import keyring
from keyring.errors import PasswordDeleteError

if TYPE_CHECKING:
    from nodepulse.models.config import AppSettings

SERVICE_NAME = "nodepulse"


class CredentialProvider(Protocol):
    """Anything that can hand out the current bearer credential."""

    def get_credential(self) -> str | None: ...


class StaticCredential:
    """A fixed credential, e.g. from ``NODEPULSE_ACCESS_TOKEN``."""

    def __init__(self, token: str | None) -> None:
        self._token = token

    def get_credential(self) -> str | None:
        return self._token or None


class TokenStore:
    """Read / write the dashboard access token via the OS keyring."""

    def __init__(self, profile: str = "default") -> None:
        self._profile = profile

    # -- key helpers ---------------------------------------------------------

    def _key(self, name: str) -> str:
        return f"{self._profile}/{name}"

    # -- properties ----------------------------------------------------------

    @property
    def access_token(self) -> str | None:
        """Return the stored access token, or *None*."""
        return keyring.get_password(SERVICE_NAME, self._key("access_token"))

    @property
    def has_token(self) -> bool:
        """Return *True* if an access token is stored."""
        return self.access_token is not None

    @property
    def metadata(self) -> dict[str, Any] | None:
        """Return the parsed metadata dict, or *None*."""
        raw = keyring.get_password(SERVICE_NAME, self._key("metadata"))
        if raw is None:
            return None
        result: dict[str, Any] = json.loads(raw)
        return result

    def get_credential(self) -> str | None:
        """Return the current access token (credential-provider protocol)."""
        return self.access_token

    # -- mutators ------------------------------------------------------------

    def save(self, access_token: str, *, host: str | None = None) -> None:
        """Persist the access token and a small metadata record."""
        keyring.set_password(SERVICE_NAME, self._key("access_token"), access_token)
        meta = json.dumps({"host": host})
        keyring.set_password(SERVICE_NAME, self._key("metadata"), meta)

    def clear(self) -> None:
        """Delete all stored credentials, ignoring missing entries."""
        for name in ("access_token", "metadata"):
            with contextlib.suppress(PasswordDeleteError):
                keyring.delete_password(SERVICE_NAME, self._key(name))


class ChainedCredentials:
    """Try several providers in order; the first non-empty credential wins."""

    def __init__(self, *providers: CredentialProvider) -> None:
        self._providers = providers

    def get_credential(self) -> str | None:
        for provider in self._providers:
            token = provider.get_credential()
            if token:
                return token
        return None


def resolve_credentials(settings: AppSettings) -> CredentialProvider:
    """Environment token first, then the keyring for the active profile."""
    return ChainedCredentials(
        StaticCredential(settings.access_token),
        TokenStore(settings.profile),
    )
