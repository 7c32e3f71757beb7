"""
DeepSeek chat-completions integration.

This package provides:
- Immutable message and request dataclasses
- A typed error taxonomy for streaming attempts
- A shared, lazily initialised HTTP transport (``llm.client``)
- SSE decoding and the streaming session (``llm.streaming``)
"""

from __future__ import annotations

from .exceptions import (
    ConfigError,
    HttpError,
    LLMError,
    NotInitializedError,
    ParseError,
    SinkError,
    StreamCancelledError,
    StreamStartError,
    StreamTimeoutError,
    TransportError,
)
from .models import (
    DEFAULT_API_URL,
    DEFAULT_MODEL,
    Delta,
    LLMMessage,
    LLMRequest,
    MessageRole,
)

__all__ = [
    "DEFAULT_API_URL",
    "DEFAULT_MODEL",
    # Exceptions
    "ConfigError",
    # Core models
    "Delta",
    "HttpError",
    "LLMError",
    "LLMMessage",
    "LLMRequest",
    "MessageRole",
    "NotInitializedError",
    "ParseError",
    "SinkError",
    "StreamCancelledError",
    "StreamStartError",
    "StreamTimeoutError",
    "TransportError",
]
