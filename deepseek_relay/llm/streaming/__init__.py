"""
Streaming functionality for the completion relay.

This package contains:
- SSE framing over arbitrarily fragmented byte chunks
- Completion chunk parsing into text deltas
- The per-request streaming session state machine
- Sink and host-context interfaces
"""

from .models import SessionPhase, SessionState, SSEEvent, StreamOutcome
from .parser import CompletionEventParser, SSEFrameDecoder, decode_sse_stream
from .session import StreamingSession
from .sink import HostContext, PluginMetadata, StreamSink

__all__ = [
    "CompletionEventParser",
    "HostContext",
    "PluginMetadata",
    "SSEEvent",
    "SSEFrameDecoder",
    "SessionPhase",
    "SessionState",
    "StreamOutcome",
    "StreamSink",
    "StreamingSession",
    "decode_sse_stream",
]
