"""Error types raised by the media worker bridge."""

from __future__ import annotations

from typing import Optional


class MediaWorkerError(Exception):
    """Base class for all media worker errors."""


class ChannelClosedError(MediaWorkerError):
    """Raised when the engine channel is closed or the engine went away."""


class ProtocolError(MediaWorkerError):
    """Raised for malformed frames or unknown message shapes on the channel."""


class InvalidResponseError(MediaWorkerError):
    """Raised when a well-formed response carries unusable content.

    Only the call that received the response fails; the channel stays open.
    """


class EngineSpawnError(MediaWorkerError):
    """Raised when the engine subprocess cannot be started."""


class InvalidStateError(MediaWorkerError):
    """Raised when an operation is not allowed in the current local state."""


class UnknownTransceiverError(InvalidStateError):
    """Raised when a transceiver reference does not match any known ``mid``."""


class CallTimeoutError(MediaWorkerError):
    """Raised when a request gets no response within its timeout.

    The engine is not told about the timeout and may still complete the
    request, so the remote outcome is unknown.
    """

    method: str
    request_id: int
    timeout: float

    def __init__(self, method: str, request_id: int, timeout: float) -> None:
        self.method = method
        self.request_id = request_id
        self.timeout = timeout
        super().__init__(f"Request {method!r} (id={request_id}) timed out after {timeout:g}s")


class RemoteError(MediaWorkerError):
    """Raised when the engine explicitly rejects a request."""

    method: str
    reason: str
    detail: Optional[str]

    def __init__(self, method: str, reason: str, detail: Optional[str] = None) -> None:
        """Initialize a remote rejection.

        :param method: Request method that was rejected.
        :param reason: Short machine-readable reason reported by the engine.
        :param detail: Optional human-readable detail.
        """
        self.method = method
        self.reason = reason
        self.detail = detail
        formatted = f"Engine rejected {method!r}: {reason}"
        if detail:
            formatted += f" ({detail})"
        super().__init__(formatted)


class UnsupportedSourceError(RemoteError):
    """Raised when a media source origin kind is not recognized."""
