"""Exception hierarchy for nodepulse.

Inside the streaming core, failures are delivered to error callbacks as
strings and never raised across the socket boundary. These exceptions are
used at the edges: configuration, credential lookup, the REST metadata
client and the CLI.
"""

from __future__ import annotations

CREDENTIAL_MISSING_MESSAGE = "Authentication token not found. Please log in again."


class NodePulseError(Exception):
    """Base class for all nodepulse errors."""


class ConfigError(NodePulseError):
    """Invalid or incomplete configuration."""


class CredentialMissingError(NodePulseError):
    """No bearer credential is available for a request or handshake."""

    def __init__(self, message: str = CREDENTIAL_MISSING_MESSAGE) -> None:
        super().__init__(message)


class ApiError(NodePulseError):
    """The REST metadata endpoint returned an error response."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
