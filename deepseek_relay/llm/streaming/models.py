"""
Streaming-specific dataclasses: SSE events and the session state machine.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field

DONE_SENTINEL = "[DONE]"
NO_CONTENT_MESSAGE = "no content received"


@dataclass(frozen=True)
class SSEEvent:
    """One complete server-sent event."""
    payload: str
    field_name: str = "data"

    @property
    def is_done(self) -> bool:
        return self.payload == DONE_SENTINEL


# Wire schema of one streamed completion chunk:
# {"choices": [{"delta": {"content": "..."}}]}


class ChunkDelta(BaseModel):
    content: str | None = None


class ChunkChoice(BaseModel):
    delta: ChunkDelta = Field(default_factory=ChunkDelta)


class ChatCompletionChunk(BaseModel):
    choices: list[ChunkChoice]


class SessionPhase(Enum):
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    FINISHED = "finished"


class StreamOutcome(Enum):
    """Terminal outcome of one streaming session."""
    COMPLETED_WITH_CONTENT = "completed_with_content"
    COMPLETED_EMPTY = "completed_empty"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class SessionState:
    """Snapshot of a session: ``NotStarted``, ``Active(stream_id)`` or ``Finished(outcome)``."""
    phase: SessionPhase = SessionPhase.NOT_STARTED
    stream_id: str | None = None
    outcome: StreamOutcome | None = None
    reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase is SessionPhase.FINISHED

    def activate(self, stream_id: str) -> SessionState:
        if self.phase is not SessionPhase.NOT_STARTED:
            raise RuntimeError(f"Cannot activate a session in phase {self.phase.value}")
        return SessionState(SessionPhase.ACTIVE, stream_id=stream_id)

    def finish(
        self, outcome: StreamOutcome, reason: str | None = None
    ) -> SessionState:
        if self.phase is SessionPhase.FINISHED:
            raise RuntimeError("Session already finished")
        return SessionState(
            SessionPhase.FINISHED,
            stream_id=self.stream_id,
            outcome=outcome,
            reason=reason,
        )
