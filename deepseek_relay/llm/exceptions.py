"""
Error taxonomy for the streaming relay.

Each failure mode of one streaming attempt has its own exception type so the
session and the host can apply different recovery:
- Config/initialisation errors abort before any network I/O
- HTTP and transport errors abort before any partial output exists
- Parse errors are recovered locally (one event is skipped)
- Cancellation is a clean exit, never reported as a failure
"""

from __future__ import annotations


class LLMError(Exception):
    """Base relay error with request context."""

    def __init__(
        self,
        message: str,
        provider: str = "deepseek",
        model: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code
        self.response_data = response_data or {}


class ConfigError(LLMError):
    """Missing or blank credential / endpoint."""
    pass


class NotInitializedError(LLMError):
    """Transport used before its HTTP client was created."""
    pass


class HttpError(LLMError):
    """Remote endpoint answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str, **kwargs):
        super().__init__(
            f"API request failed ({status_code}): {body}",
            status_code=status_code,
            **kwargs,
        )
        self.body = body


class TransportError(LLMError):
    """Connection-level failure while sending or reading the stream."""
    pass


class StreamTimeoutError(TransportError):
    """Overall deadline or inter-chunk inactivity limit exceeded."""
    pass


class ParseError(LLMError):
    """One SSE payload did not match the completion chunk schema."""

    def __init__(self, message: str, payload: str, **kwargs):
        super().__init__(message, **kwargs)
        self.payload = payload


class StreamStartError(LLMError):
    """The sink refused to open a stream."""
    pass


class SinkError(LLMError):
    """The sink failed to accept a chunk for a reason other than cancellation."""
    pass


class StreamCancelledError(Exception):
    """Raised by a sink's ``stream_chunk`` when the consumer cancelled.

    Deliberately not an ``LLMError``: cancellation is not a failure.
    """

    def __init__(self, stream_id: str | None = None):
        super().__init__(f"Stream {stream_id} was cancelled" if stream_id else
                         "Stream was cancelled")
        self.stream_id = stream_id
