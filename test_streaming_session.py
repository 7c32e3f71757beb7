#!/usr/bin/env python3
"""
End-to-end tests for StreamingSession against fake sinks and transports.
"""

import asyncio
import json
from contextlib import asynccontextmanager

import httpx
import pytest

from deepseek_relay.history.models import HistoryEntry
from deepseek_relay.llm.client import TransportClient
from deepseek_relay.llm.exceptions import (
    ConfigError,
    HttpError,
    NotInitializedError,
    SinkError,
    StreamCancelledError,
    StreamStartError,
    StreamTimeoutError,
    TransportError,
)
from deepseek_relay.llm.models import LLMMessage
from deepseek_relay.llm.streaming.models import NO_CONTENT_MESSAGE, StreamOutcome
from deepseek_relay.llm.streaming.session import StreamingSession
from deepseek_relay.llm.streaming.sink import PluginMetadata

API_URL = "https://api.deepseek.test/v1/chat/completions"


def sse(content: str) -> bytes:
    return f"data: {json.dumps({'choices': [{'delta': {'content': content}}]})}\n\n".encode()


DONE = b"data: [DONE]\n\n"


class RecordingSink:
    """Sink that records every call; can cancel or fail on demand."""

    def __init__(self, cancel_after=None, chunk_error=None, start_error=None, end_error=None):
        self.cancel_after = cancel_after
        self.chunk_error = chunk_error
        self.start_error = start_error
        self.end_error = end_error
        self.started = 0
        self.chunks = []
        self.finals = []
        self.ends = []

    async def stream_start(self, context):
        if self.start_error:
            raise self.start_error
        self.started += 1
        return "stream_001"

    async def stream_chunk(self, stream_id, text, is_final):
        if self.cancel_after is not None and len(self.chunks) >= self.cancel_after:
            raise StreamCancelledError(stream_id)
        if self.chunk_error:
            raise self.chunk_error
        self.chunks.append(text)
        self.finals.append(is_final)

    async def stream_end(self, stream_id, success, error_message):
        self.ends.append((stream_id, success, error_message))
        if self.end_error:
            raise self.end_error


class HangingSink(RecordingSink):
    """Sink whose chosen callback never returns."""

    def __init__(self, hang_on):
        super().__init__()
        self.hang_on = hang_on

    async def stream_start(self, context):
        if self.hang_on == "start":
            await asyncio.sleep(30)
        return await super().stream_start(context)

    async def stream_chunk(self, stream_id, text, is_final):
        if self.hang_on == "chunk":
            await asyncio.sleep(30)
        await super().stream_chunk(stream_id, text, is_final)

    async def stream_end(self, stream_id, success, error_message):
        await super().stream_end(stream_id, success, error_message)
        if self.hang_on == "end":
            await asyncio.sleep(30)


class FakeContext:
    def __init__(self, history=None):
        self.metadata = PluginMetadata(id="plugin-1", name="DeepSeek")
        self.history = history

    def get_history(self):
        return self.history


class FakeTransport:
    """Stands in for TransportClient, replaying a scripted chunk sequence."""

    def __init__(self, chunks=(), error=None, initialized=True, delay=0.0, fail_with=None):
        self.chunks = list(chunks)
        self.error = error
        self.is_initialized = initialized
        self.delay = delay
        self.fail_with = fail_with
        self.calls = []

    @asynccontextmanager
    async def post_streaming(self, url, api_key, body):
        self.calls.append((url, api_key, body))
        if self.error:
            raise self.error

        async def body_chunks():
            for chunk in self.chunks:
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield chunk
            if self.fail_with:
                raise self.fail_with

        yield body_chunks()


def make_session(transport, sink, api_key="sk-test", **kwargs):
    return StreamingSession(
        transport,
        sink,
        FakeContext(),
        api_key=api_key,
        api_url=API_URL,
        **kwargs,
    )


MESSAGES = [LLMMessage.user("Hi")]


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_chunks_then_done(self):
        sink = RecordingSink()
        transport = FakeTransport([sse("He"), sse("llo"), DONE])

        state = await make_session(transport, sink).run(MESSAGES)

        assert sink.started == 1
        assert sink.chunks == ["He", "llo"]
        assert sink.finals == [False, False]
        assert sink.ends == [("stream_001", True, None)]
        assert state.outcome is StreamOutcome.COMPLETED_WITH_CONTENT
        assert state.stream_id == "stream_001"

    @pytest.mark.asyncio
    async def test_request_body(self):
        transport = FakeTransport([DONE])
        messages = [LLMMessage.system("be brief"), LLMMessage.assistant("ok"), LLMMessage.user("Hi")]

        await make_session(transport, RecordingSink(), model="deepseek-reasoner").run(messages)

        url, api_key, body = transport.calls[0]
        assert url == API_URL
        assert api_key == "sk-test"
        assert body["model"] == "deepseek-reasoner"
        assert body["stream"] is True
        assert body["messages"] == [
            {"role": "system", "content": "be brief"},
            {"role": "assistant", "content": "ok"},
            {"role": "user", "content": "Hi"},
        ]

    @pytest.mark.asyncio
    async def test_fragmented_transport(self):
        raw = sse("He") + sse("llo") + DONE
        chunks = [raw[i:i + 7] for i in range(0, len(raw), 7)]
        sink = RecordingSink()

        await make_session(FakeTransport(chunks), sink).run(MESSAGES)

        assert sink.chunks == ["He", "llo"]
        assert sink.ends == [("stream_001", True, None)]

    @pytest.mark.asyncio
    async def test_done_without_content(self):
        sink = RecordingSink()
        state = await make_session(FakeTransport([DONE]), sink).run(MESSAGES)

        assert sink.chunks == []
        assert sink.ends == [("stream_001", True, None)]
        assert state.outcome is StreamOutcome.COMPLETED_EMPTY

    @pytest.mark.asyncio
    async def test_empty_and_malformed_events_are_skipped(self):
        sink = RecordingSink()
        transport = FakeTransport([
            sse("a"),
            b"data: not-json\n\n",
            b'data: {"choices": [{"delta": {"role": "assistant"}}]}\n\n',
            sse(""),
            sse("b"),
            DONE,
        ])

        session = make_session(transport, sink)
        await session.run(MESSAGES)

        assert sink.chunks == ["a", "b"]
        assert sink.ends == [("stream_001", True, None)]
        assert session.parser.get_stats()["parse_errors"] == 1

    @pytest.mark.asyncio
    async def test_bytes_after_done_are_ignored(self):
        sink = RecordingSink()
        transport = FakeTransport([sse("x") + DONE + sse("late"), sse("later")])

        await make_session(transport, sink).run(MESSAGES)

        assert sink.chunks == ["x"]
        assert len(sink.ends) == 1

    @pytest.mark.asyncio
    async def test_session_is_single_use(self):
        session = make_session(FakeTransport([DONE]), RecordingSink())
        await session.run(MESSAGES)
        with pytest.raises(RuntimeError):
            await session.run(MESSAGES)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_stops_silently(self):
        sink = RecordingSink(cancel_after=1)
        transport = FakeTransport([sse("He"), sse("llo"), sse("!"), DONE])

        state = await make_session(transport, sink).run(MESSAGES)

        assert sink.chunks == ["He"]
        assert sink.ends == []
        assert state.outcome is StreamOutcome.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_on_first_chunk(self):
        sink = RecordingSink(cancel_after=0)
        state = await make_session(FakeTransport([sse("x"), DONE]), sink).run(MESSAGES)

        assert sink.chunks == []
        assert sink.ends == []
        assert state.outcome is StreamOutcome.CANCELLED

    @pytest.mark.asyncio
    async def test_task_cancellation_reports_failure(self):
        sink = RecordingSink()
        transport = FakeTransport([sse("a"), sse("b"), DONE], delay=0.5)
        task = asyncio.create_task(make_session(transport, sink).run(MESSAGES))

        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert sink.ends == [("stream_001", False, "Error: request cancelled")]


class TestFailures:
    @pytest.mark.asyncio
    async def test_blank_api_key_does_no_io(self):
        sink = RecordingSink()
        transport = FakeTransport([DONE])
        session = make_session(transport, sink, api_key="   ")

        with pytest.raises(ConfigError):
            await session.run(MESSAGES)

        assert transport.calls == []
        assert sink.started == 0
        assert session.state.outcome is StreamOutcome.FAILED

    @pytest.mark.asyncio
    async def test_transport_not_initialized(self):
        sink = RecordingSink()
        transport = FakeTransport([DONE], initialized=False)

        with pytest.raises(NotInitializedError):
            await make_session(transport, sink).run(MESSAGES)

        assert transport.calls == []
        assert sink.started == 0

    @pytest.mark.asyncio
    async def test_http_error_leaves_sink_untouched(self):
        sink = RecordingSink()
        transport = FakeTransport(error=HttpError(401, "invalid api key"))
        session = make_session(transport, sink)

        with pytest.raises(HttpError) as exc_info:
            await session.run(MESSAGES)

        assert exc_info.value.status_code == 401
        assert "invalid api key" in str(exc_info.value)
        assert sink.started == 0
        assert sink.ends == []
        assert session.state.stream_id is None
        assert session.state.outcome is StreamOutcome.FAILED

    @pytest.mark.asyncio
    async def test_stream_start_failure(self):
        sink = RecordingSink(start_error=RuntimeError("UI gone"))

        with pytest.raises(StreamStartError):
            await make_session(FakeTransport([sse("x"), DONE]), sink).run(MESSAGES)

        assert sink.chunks == []
        assert sink.ends == []

    @pytest.mark.asyncio
    async def test_sink_error_ends_stream_then_propagates(self):
        sink = RecordingSink(chunk_error=RuntimeError("boom"))
        session = make_session(FakeTransport([sse("He"), sse("llo"), DONE]), sink)

        with pytest.raises(SinkError):
            await session.run(MESSAGES)

        assert sink.ends == [("stream_001", False, "Error: boom")]
        assert session.state.outcome is StreamOutcome.FAILED

    @pytest.mark.asyncio
    async def test_stream_end_failure_is_not_fatal(self):
        sink = RecordingSink(end_error=RuntimeError("UI gone"))
        state = await make_session(FakeTransport([sse("x"), DONE]), sink).run(MESSAGES)

        assert sink.ends == [("stream_001", True, None)]
        assert state.outcome is StreamOutcome.COMPLETED_WITH_CONTENT

    @pytest.mark.asyncio
    async def test_close_without_done_after_content(self):
        sink = RecordingSink()
        state = await make_session(FakeTransport([sse("partial")]), sink).run(MESSAGES)

        assert sink.chunks == ["partial"]
        assert sink.ends == [("stream_001", True, None)]
        assert state.outcome is StreamOutcome.COMPLETED_WITH_CONTENT

    @pytest.mark.asyncio
    async def test_close_without_done_or_content(self):
        sink = RecordingSink()
        state = await make_session(FakeTransport([b": ping\n\n"]), sink).run(MESSAGES)

        assert sink.ends == [("stream_001", False, NO_CONTENT_MESSAGE)]
        assert state.outcome is StreamOutcome.FAILED
        assert state.reason == NO_CONTENT_MESSAGE

    @pytest.mark.asyncio
    async def test_read_error_mid_stream(self):
        sink = RecordingSink()
        transport = FakeTransport([sse("He")], fail_with=httpx.ReadError("connection reset"))

        with pytest.raises(TransportError):
            await make_session(transport, sink).run(MESSAGES)

        assert sink.chunks == ["He"]
        assert len(sink.ends) == 1
        stream_id, success, message = sink.ends[0]
        assert success is False
        assert message.startswith("Error:")
        assert "connection reset" in message


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_inactivity_timeout(self):
        sink = RecordingSink()

        class StallingTransport(FakeTransport):
            @asynccontextmanager
            async def post_streaming(self, url, api_key, body):
                async def body_chunks():
                    yield sse("He")
                    await asyncio.sleep(5)
                    yield DONE

                yield body_chunks()

        session = make_session(StallingTransport(), sink, inactivity_timeout=0.05, request_timeout=5)

        with pytest.raises(StreamTimeoutError):
            await session.run(MESSAGES)

        assert sink.chunks == ["He"]
        assert sink.ends[0][1] is False
        assert sink.ends[0][2].startswith("Error:")
        assert session.state.outcome is StreamOutcome.FAILED

    @pytest.mark.asyncio
    async def test_overall_deadline(self):
        sink = RecordingSink()
        chunks = [sse(str(i)) for i in range(50)] + [DONE]
        session = make_session(
            FakeTransport(chunks, delay=0.02), sink, inactivity_timeout=1.0, request_timeout=0.15
        )

        with pytest.raises(StreamTimeoutError):
            await session.run(MESSAGES)

        assert 0 < len(sink.chunks) < 50
        assert sink.ends[-1][1] is False


class TestStuckSink:
    @pytest.mark.asyncio
    async def test_stuck_stream_chunk_hits_deadline(self):
        sink = HangingSink("chunk")
        session = make_session(
            FakeTransport([sse("He"), DONE]), sink, request_timeout=0.1, inactivity_timeout=0.1
        )

        with pytest.raises(StreamTimeoutError):
            await asyncio.wait_for(session.run(MESSAGES), timeout=5)

        assert sink.chunks == []
        assert len(sink.ends) == 1
        assert sink.ends[0][1] is False
        assert sink.ends[0][2].startswith("Error:")
        assert session.state.outcome is StreamOutcome.FAILED

    @pytest.mark.asyncio
    async def test_stuck_stream_start_hits_deadline(self):
        sink = HangingSink("start")
        session = make_session(FakeTransport([sse("He"), DONE]), sink, request_timeout=0.1)

        with pytest.raises(StreamTimeoutError):
            await asyncio.wait_for(session.run(MESSAGES), timeout=5)

        assert sink.started == 0
        assert sink.ends == []
        assert session.state.outcome is StreamOutcome.FAILED

    @pytest.mark.asyncio
    async def test_stuck_stream_end_does_not_block(self):
        sink = HangingSink("end")
        session = make_session(FakeTransport([sse("He"), DONE]), sink, inactivity_timeout=0.05)

        state = await asyncio.wait_for(session.run(MESSAGES), timeout=5)

        assert sink.chunks == ["He"]
        assert sink.ends == [("stream_001", True, None)]
        assert state.outcome is StreamOutcome.COMPLETED_WITH_CONTENT


class TestWithHttpTransport:
    """Same flow through a real TransportClient over httpx.MockTransport."""

    @pytest.mark.asyncio
    async def test_streams_over_http(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                headers={"Content-Type": "text/event-stream"},
                content=sse("He") + sse("llo") + DONE,
            )

        sink = RecordingSink()
        async with TransportClient(transport=httpx.MockTransport(handler)) as transport:
            history = [HistoryEntry(role="system", content="be brief")]
            session = StreamingSession(
                transport, sink, FakeContext(history), api_key="sk-test", api_url=API_URL
            )
            state = await session.run(MESSAGES)

        assert sink.chunks == ["He", "llo"]
        assert state.outcome is StreamOutcome.COMPLETED_WITH_CONTENT
        assert seen[0].headers["Authorization"] == "Bearer sk-test"

    @pytest.mark.asyncio
    async def test_unauthorized_over_http(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, text='{"error": "invalid api key"}')

        sink = RecordingSink()
        async with TransportClient(transport=httpx.MockTransport(handler)) as transport:
            session = StreamingSession(
                transport, sink, FakeContext(), api_key="sk-bad", api_url=API_URL
            )
            with pytest.raises(HttpError) as exc_info:
                await session.run(MESSAGES)

        assert exc_info.value.status_code == 401
        assert "invalid api key" in exc_info.value.body
        assert sink.started == 0
        assert sink.ends == []
