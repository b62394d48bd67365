"""Errors raised while relaying a turn to the remote agent."""

from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """Base exception for failures talking to the remote agent service."""

    pass


class ConfigurationError(RelayError):
    """Raised when the remote credentials are not configured."""

    pass


class AuthError(RelayError):
    """Raised when a bearer token cannot be acquired."""

    pass


class RemoteAPIError(RelayError):
    """Raised when the remote API returns a non-success response."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class RunFailedError(RemoteAPIError):
    """Raised when a run ends in a failed, cancelled or expired state."""

    def __init__(self, message: str, status: Optional[str] = None):
        super().__init__(message)
        self.status = status


class RunTimeoutError(RelayError, TimeoutError):
    """Raised when a run is still in progress after the poll deadline."""

    pass
