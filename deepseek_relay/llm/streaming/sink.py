"""
Capability interfaces the streaming session is wired to.

A host implements ``StreamSink`` to receive the answer and ``HostContext``
to expose its conversation history; the session never depends on how the
host actually renders or stores anything.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from pydantic import BaseModel

if TYPE_CHECKING:                                        # pragma: no cover
    from deepseek_relay.history.models import HistoryEntry


class PluginMetadata(BaseModel):
    """Identity of the host-side plugin instance, used for log context."""
    id: str
    name: str
    version: str = "0.0.0"
    instance_id: str | None = None


@runtime_checkable
class HostContext(Protocol):
    """Per-conversation context handed in by the host."""

    @property
    def metadata(self) -> PluginMetadata: ...

    def get_history(self) -> list[HistoryEntry] | None: ...


@runtime_checkable
class StreamSink(Protocol):
    """Receives one streamed answer.

    ``stream_chunk`` raises ``StreamCancelledError`` when the consumer
    cancelled; any other exception is a delivery failure.
    """

    async def stream_start(self, context: HostContext) -> str: ...

    async def stream_chunk(
        self, stream_id: str, text: str, is_final: bool
    ) -> None: ...

    async def stream_end(
        self, stream_id: str, success: bool, error_message: str | None
    ) -> None: ...
