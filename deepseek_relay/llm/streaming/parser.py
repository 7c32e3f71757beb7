"""
SSE framing and completion-chunk decoding for streamed chat completions.

The decoder turns arbitrarily fragmented byte chunks into complete events;
the parser turns one event payload into zero or more text deltas.
"""

from __future__ import annotations

import codecs
from collections.abc import AsyncGenerator, AsyncIterable

from pydantic import ValidationError

from deepseek_relay.logging_utils import get_logger

from ..exceptions import ParseError
from ..models import Delta
from .models import DONE_SENTINEL, ChatCompletionChunk, SSEEvent

logger = get_logger(__name__)

EVENT_SEPARATOR = "\n\n"
DATA_PREFIX = "data: "


class SSEFrameDecoder:
    """Incremental SSE framer holding the carry-over buffer of one stream.

    A decoder belongs to exactly one response; create a new one per session.
    """

    def __init__(self) -> None:
        # Replacement decoding: malformed bytes never abort the stream, and
        # multi-byte characters split across chunks are reassembled.
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._done = False
        self.stats = {
            'events': 0,
            'ignored_segments': 0,
            'dropped_tail_bytes': 0,
        }

    @property
    def done(self) -> bool:
        """True once the ``[DONE]`` sentinel has been decoded."""
        return self._done

    def feed(self, chunk: bytes) -> list[SSEEvent]:
        """Append one raw chunk and return every event it completed, in order."""
        if self._done:
            return []

        text = self._decoder.decode(chunk)
        self._buffer = (self._buffer + text).replace("\r\n", "\n")
        if EVENT_SEPARATOR not in self._buffer:
            return []

        *segments, self._buffer = self._buffer.split(EVENT_SEPARATOR)

        events: list[SSEEvent] = []
        for segment in segments:
            event = self._parse_segment(segment)
            if event is None:
                self.stats['ignored_segments'] += 1
                continue

            self.stats['events'] += 1
            events.append(event)

            if event.is_done:
                # Anything after the sentinel is ignored
                self._done = True
                self._buffer = ""
                break

        return events

    def finish(self) -> None:
        """Flush at end of input; an unterminated trailing event is dropped."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        if tail.strip() and not self._done:
            self.stats['dropped_tail_bytes'] += len(tail.encode("utf-8"))
            logger.debug(
                "Dropping unterminated trailing SSE segment",
                tail_length=len(tail),
            )

    @staticmethod
    def _parse_segment(segment: str) -> SSEEvent | None:
        """Extract the ``data: `` payload of one event; other lines are discarded."""
        data_lines = [
            line[len(DATA_PREFIX):]
            for line in segment.split("\n")
            if line.startswith(DATA_PREFIX)
        ]
        if not data_lines:
            return None

        payload = "\n".join(data_lines)
        if payload.strip() == DONE_SENTINEL:
            return SSEEvent(payload=DONE_SENTINEL)
        return SSEEvent(payload=payload)


async def decode_sse_stream(
    chunks: AsyncIterable[bytes],
    decoder: SSEFrameDecoder | None = None,
) -> AsyncGenerator[SSEEvent]:
    """
    Lazily decode a byte stream into SSE events.

    The sentinel event is yielded last and ends the sequence even when the
    transport still has bytes pending.
    """
    decoder = decoder or SSEFrameDecoder()

    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
            if event.is_done:
                return

    decoder.finish()


class CompletionEventParser:
    """Decodes completion chunk payloads into deltas, tracking parse failures."""

    def __init__(self) -> None:
        self.stats = {
            'parsed_events': 0,
            'parse_errors': 0,
        }

    def parse(self, payload: str) -> list[Delta]:
        """
        Parse one event payload.

        Returns:
            One delta per choice that carries ``content``; empty when none do

        Raises:
            ParseError: If the payload is not a valid completion chunk
        """
        try:
            chunk = ChatCompletionChunk.model_validate_json(payload)
        except ValidationError as e:
            self.stats['parse_errors'] += 1
            raise ParseError(
                f"Invalid completion chunk: {e.error_count()} validation error(s)",
                payload=payload,
            ) from e

        self.stats['parsed_events'] += 1
        return [
            Delta(content=choice.delta.content)
            for choice in chunk.choices
            if choice.delta.content is not None
        ]

    def get_stats(self) -> dict[str, int]:
        """Get parsing statistics for monitoring."""
        return self.stats.copy()

    def reset_stats(self) -> None:
        self.stats = {
            'parsed_events': 0,
            'parse_errors': 0,
        }
