"""Error taxonomy for the music voice service."""

from __future__ import annotations


class MusicServiceError(Exception):
    """Base exception for music service failures."""


class TransportDisconnect(MusicServiceError):
    """Voice transport dropped; ``recoverable`` tells whether a rejoin is allowed."""

    def __init__(
        self, message: str, *, close_code: int | None = None, recoverable: bool = True
    ) -> None:
        super().__init__(message)
        self.close_code = close_code
        self.recoverable = recoverable


class ReadinessTimeout(MusicServiceError):
    """Voice transport did not reach Ready within the allowed time."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Voice connection not ready within {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class PipelineFailure(MusicServiceError):
    """Extraction or transcoding failed; no resource was produced."""

    def __init__(self, message: str, *, stage: str, locator: str) -> None:
        super().__init__(message)
        self.stage = stage
        self.locator = locator


class SynchronizationTimeout(MusicServiceError):
    """No session was created before a pending command's deadline."""


class ChannelResolutionError(MusicServiceError):
    """A channel id could not be resolved to a usable channel."""


class SessionLimitError(MusicServiceError):
    """Creating another session would exceed the configured limit."""
