"""
One streamed completion, from request to the sink's final ``stream_end``.

State machine::

    NotStarted --(2xx + stream_start)--> Active(stream_id) --> Finished(outcome)
    NotStarted --(guard / HTTP / start failure)------------> Finished(Failed)

Cancellation reported by the sink is a silent exit: no ``stream_end`` and no
error for the caller. Every other failure after ``stream_start`` notifies the
sink with ``stream_end(success=False)`` before propagating.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, AsyncIterator, Sequence
from contextlib import AsyncExitStack, aclosing
from typing import Any

import httpx

from deepseek_relay.logging_utils import get_logger, operation_context

from ..client import TransportClient
from ..exceptions import (
    ConfigError,
    LLMError,
    NotInitializedError,
    ParseError,
    SinkError,
    StreamCancelledError,
    StreamStartError,
    StreamTimeoutError,
    TransportError,
)
from ..models import DEFAULT_MODEL, LLMMessage, LLMRequest
from .models import (
    NO_CONTENT_MESSAGE,
    SessionPhase,
    SessionState,
    StreamOutcome,
)
from .parser import CompletionEventParser, SSEFrameDecoder, decode_sse_stream
from .sink import HostContext, StreamSink

logger = get_logger(__name__)


class StreamingSession:
    """Drives a single streaming request; discard after ``run()``."""

    def __init__(
        self,
        transport: TransportClient,
        sink: StreamSink,
        context: HostContext,
        *,
        api_key: str,
        api_url: str,
        model: str = DEFAULT_MODEL,
        request_timeout: float | None = None,
        inactivity_timeout: float | None = None,
    ) -> None:
        self.transport = transport
        self.sink = sink
        self.context = context
        self.api_key = api_key
        self.api_url = api_url
        self.model = model
        self.request_timeout = request_timeout
        self.inactivity_timeout = inactivity_timeout

        self.state = SessionState()
        self.decoder = SSEFrameDecoder()
        self.parser = CompletionEventParser()
        self.has_content = False

        self._ran = False
        self._deadline: float | None = None
        self._log: Any = logger

    @property
    def stream_id(self) -> str | None:
        return self.state.stream_id

    async def run(self, messages: Sequence[LLMMessage]) -> SessionState:
        """
        Stream one answer for ``messages`` into the sink.

        Returns:
            The terminal session state

        Raises:
            ConfigError, NotInitializedError: Before any network I/O
            HttpError, TransportError, StreamTimeoutError: Transport failures
            StreamStartError: The sink refused to open a stream
            SinkError: The sink failed to accept a chunk
        """
        if self._ran:
            raise RuntimeError("StreamingSession objects are single-use")
        self._ran = True

        async with operation_context(
            "streaming_session",
            context={"model": self.model, "message_count": len(messages)},
        ) as op_log:
            self._log = op_log
            self._check_ready()

            if self.request_timeout:
                self._deadline = asyncio.get_running_loop().time() + self.request_timeout

            body = LLMRequest(messages=list(messages), model=self.model).to_payload()

            async with AsyncExitStack() as stack:
                try:
                    chunks = await self._open_stream(stack, body)
                except LLMError as e:
                    self._finish(StreamOutcome.FAILED, str(e))
                    raise

                stream_id = await self._start()
                await self._pump(stream_id, chunks)

            self._log.info(
                "Session finished",
                outcome=self.state.outcome.value if self.state.outcome else None,
                **self.decoder.stats,
                **self.parser.get_stats(),
            )
        return self.state

    def _check_ready(self) -> None:
        if not self.api_key or not self.api_key.strip():
            self._finish(StreamOutcome.FAILED, "API key is not set")
            raise ConfigError("API key is not set")
        if not self.transport.is_initialized:
            self._finish(StreamOutcome.FAILED, "HTTP client is not initialized")
            raise NotInitializedError("HTTP client is not initialized")

    async def _open_stream(
        self, stack: AsyncExitStack, body: dict[str, Any]
    ) -> AsyncIterator[bytes]:
        try:
            async with asyncio.timeout(self._remaining()):
                return await stack.enter_async_context(
                    self.transport.post_streaming(self.api_url, self.api_key, body)
                )
        except TimeoutError as e:
            raise StreamTimeoutError(
                f"No response within {self.request_timeout}s", model=self.model
            ) from e

    async def _start(self) -> str:
        deadline = self._sink_deadline()
        try:
            async with deadline:
                stream_id = await self.sink.stream_start(self.context)
        except Exception as e:
            if deadline.expired():
                reason = f"Sink did not open a stream within the {self.request_timeout}s deadline"
                self._finish(StreamOutcome.FAILED, reason)
                raise StreamTimeoutError(reason, model=self.model) from e
            self._finish(StreamOutcome.FAILED, f"stream start failed: {e}")
            raise StreamStartError(f"Failed to start stream: {e}") from e

        self.state = self.state.activate(stream_id)
        self._log = self._log.bind(stream_id=stream_id)
        self._log.debug("Stream started")
        return stream_id

    async def _pump(self, stream_id: str, chunks: AsyncIterator[bytes]) -> None:  # noqa: PLR0912
        events = decode_sse_stream(self._guard(chunks), self.decoder)
        try:
            async with aclosing(events):
                async for event in events:
                    if event.is_done:
                        self._log.info("Stream completed")
                        await self._end(stream_id, True, None)
                        self._finish(
                            StreamOutcome.COMPLETED_WITH_CONTENT
                            if self.has_content
                            else StreamOutcome.COMPLETED_EMPTY
                        )
                        return

                    try:
                        deltas = self.parser.parse(event.payload)
                    except ParseError as e:
                        self._log.warning(
                            "Failed to parse chunk",
                            error=str(e),
                            payload_length=len(e.payload),
                        )
                        continue

                    for delta in deltas:
                        if not delta.content:
                            continue
                        if not await self._deliver(stream_id, delta.content):
                            return

        except (TransportError, httpx.HTTPError) as e:
            error = e if isinstance(e, TransportError) else TransportError(
                f"HTTP error: {e!s}", model=self.model
            )
            self._log.warning("Stream interrupted", error=str(error))
            await self._end(stream_id, False, f"Error: {error}")
            self._finish(StreamOutcome.FAILED, str(error))
            if error is e:
                raise
            raise error from e

        except asyncio.CancelledError:
            await self._end(stream_id, False, "Error: request cancelled")
            self._finish(StreamOutcome.FAILED, "request cancelled")
            raise

        # Transport closed without the sentinel
        if self.has_content:
            await self._end(stream_id, True, None)
            self._finish(StreamOutcome.COMPLETED_WITH_CONTENT)
        else:
            self._log.warning("Stream closed without content")
            await self._end(stream_id, False, NO_CONTENT_MESSAGE)
            self._finish(StreamOutcome.FAILED, NO_CONTENT_MESSAGE)

    async def _deliver(self, stream_id: str, text: str) -> bool:
        """Send one chunk; False when the consumer cancelled."""
        deadline = self._sink_deadline()
        try:
            async with deadline:
                await self.sink.stream_chunk(stream_id, text, False)
        except StreamCancelledError:
            self._log.info("Stream was cancelled by user, stopping gracefully")
            self._finish(StreamOutcome.CANCELLED)
            return False
        except Exception as e:
            if deadline.expired():
                raise StreamTimeoutError(
                    f"Sink did not accept a chunk within the {self.request_timeout}s deadline",
                    model=self.model,
                ) from e
            self._log.warning("Failed to send stream chunk", error=str(e))
            await self._end(stream_id, False, f"Error: {e}")
            self._finish(StreamOutcome.FAILED, str(e))
            raise SinkError(f"Failed to deliver stream chunk: {e}") from e

        self.has_content = True
        return True

    async def _end(
        self, stream_id: str, success: bool, error_message: str | None
    ) -> None:
        # Best effort: the outcome is already decided. The request deadline may
        # have passed, so a stuck sink gets one inactivity window.
        try:
            async with asyncio.timeout(self.inactivity_timeout):
                await self.sink.stream_end(stream_id, success, error_message)
        except Exception as e:
            self._log.warning(
                "Failed to send stream end",
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _guard(self, chunks: AsyncIterator[bytes]) -> AsyncGenerator[bytes]:
        """Apply the request deadline and inactivity limit to every chunk read."""
        iterator = aiter(chunks)
        while True:
            timeout = self._read_timeout()
            try:
                async with asyncio.timeout(timeout):
                    chunk = await anext(iterator, None)
            except TimeoutError as e:
                raise StreamTimeoutError(
                    f"No data received for {timeout:.1f}s", model=self.model
                ) from e

            if chunk is None:
                return
            yield chunk

    def _sink_deadline(self) -> asyncio.Timeout:
        """Bound one sink call by what is left of the request deadline."""
        if self._deadline is None:
            return asyncio.timeout(None)
        return asyncio.timeout_at(self._deadline)

    def _remaining(self) -> float | None:
        if self._deadline is None:
            return None
        remaining = self._deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise StreamTimeoutError(
                f"Request exceeded {self.request_timeout}s deadline", model=self.model
            )
        return remaining

    def _read_timeout(self) -> float | None:
        remaining = self._remaining()
        if remaining is None:
            return self.inactivity_timeout
        if self.inactivity_timeout is None:
            return remaining
        return min(remaining, self.inactivity_timeout)

    def _finish(self, outcome: StreamOutcome, reason: str | None = None) -> None:
        if self.state.phase is not SessionPhase.FINISHED:
            self.state = self.state.finish(outcome, reason)
