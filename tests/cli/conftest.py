"""Shared fixtures for CLI execution tests."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest


@pytest.fixture(autouse=True)
def keyring_backend(monkeypatch: pytest.MonkeyPatch, tmp_path: object):
    """Keep CLI tests away from the real OS keyring and any local .env file."""
    monkeypatch.chdir(tmp_path)  # type: ignore[arg-type]
    for name in ("NODEPULSE_ACCESS_TOKEN", "NODEPULSE_HOST", "NODEPULSE_SCHEME"):
        monkeypatch.delenv(name, raising=False)
    backend = MagicMock()
    backend.get_password.return_value = None
    with patch("nodepulse.auth.token_store.keyring", backend):
        yield backend


@pytest.fixture()
def cli_env(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set environment variables so commands run without stored credentials."""
    env = {
        "NODEPULSE_ACCESS_TOKEN": "test-token-123",
        "NODEPULSE_HOST": "127.0.0.1:8000",
        "NODEPULSE_FIRST_DATA_TIMEOUT": "0",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env
