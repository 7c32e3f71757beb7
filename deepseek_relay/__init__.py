"""
DeepSeek streaming relay.

Relays one chat turn to a DeepSeek-compatible chat-completions endpoint and
streams the answer, delta by delta, into a host-provided sink.
"""

from __future__ import annotations

from .chat_service import ACKNOWLEDGEMENT, ChatRelayService
from .config import Configuration, UserConfig, UserConfigStore
from .history import HistoryEntry, build_conversation
from .llm.client import TransportClient
from .llm.streaming import (
    HostContext,
    PluginMetadata,
    SessionState,
    StreamingSession,
    StreamOutcome,
    StreamSink,
)
from .runtime import WorkerRuntime

__version__ = "0.1.0"

__all__ = [
    "ACKNOWLEDGEMENT",
    "ChatRelayService",
    "Configuration",
    "HistoryEntry",
    "HostContext",
    "PluginMetadata",
    "SessionState",
    "StreamOutcome",
    "StreamSink",
    "StreamingSession",
    "TransportClient",
    "UserConfig",
    "UserConfigStore",
    "WorkerRuntime",
    "build_conversation",
]
