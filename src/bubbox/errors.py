"""Application-level exception types for Bubbox."""

from __future__ import annotations


class BubboxError(Exception):
    """Base exception for Bubbox."""


class ConfigurationError(BubboxError):
    """Raised when settings or an envelope are inconsistent."""


class LaunchError(BubboxError):
    """Raised when a sandboxed worker could not be created or started."""

    def __init__(self, message: str, *, instance: str | None = None) -> None:
        super().__init__(message)
        self.instance = instance


class BackendError(BubboxError):
    """Raised when the agent backend rejects or fails a request."""


class SessionNotFoundError(BackendError):
    """Raised when a backend session id is unknown to the backend."""


class ProtocolError(BubboxError):
    """Raised for malformed envelopes, frames, or mailbox records."""
