"""
Command-line entry point: stream one answer to stdout.

    python -m deepseek_relay "Explain SSE in one paragraph"

Ctrl+C cancels the stream the same way a host UI would.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
import uuid
from typing import TextIO

from deepseek_relay.config import Configuration, UserConfigStore
from deepseek_relay.history.conversation_utils import build_conversation
from deepseek_relay.history.models import HistoryEntry
from deepseek_relay.llm.client import TransportClient
from deepseek_relay.llm.exceptions import LLMError, StreamCancelledError
from deepseek_relay.llm.streaming.models import StreamOutcome
from deepseek_relay.llm.streaming.session import StreamingSession
from deepseek_relay.llm.streaming.sink import PluginMetadata
from deepseek_relay.logging_utils import configure_logging


class ConsoleSink:
    """Writes streamed text to a terminal; ``cancel()`` stops the stream."""

    def __init__(self, out: TextIO = sys.stdout) -> None:
        self.out = out
        self.cancelled = False
        self.success: bool | None = None
        self.error_message: str | None = None

    def cancel(self) -> None:
        self.cancelled = True

    async def stream_start(self, context: CliContext) -> str:
        return f"cli-{uuid.uuid4().hex[:8]}"

    async def stream_chunk(self, stream_id: str, text: str, is_final: bool) -> None:
        if self.cancelled:
            raise StreamCancelledError(stream_id)
        self.out.write(text)
        self.out.flush()

    async def stream_end(
        self, stream_id: str, success: bool, error_message: str | None
    ) -> None:
        self.success = success
        self.error_message = error_message
        self.out.write("\n")
        self.out.flush()


class CliContext:
    """Host context with an optional system prompt as its only history."""

    def __init__(self, system_prompt: str | None = None) -> None:
        self.metadata = PluginMetadata(id="cli", name="deepseek-relay")
        self._history = (
            [HistoryEntry(role="system", content=system_prompt)]
            if system_prompt
            else None
        )

    def get_history(self) -> list[HistoryEntry] | None:
        return self._history


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="deepseek-relay",
        description="Stream a DeepSeek chat completion to stdout.",
    )
    parser.add_argument("prompt", help="User message to send")
    parser.add_argument("--system", default=None, help="Optional system prompt")
    parser.add_argument("--api-key", default=None, help="Overrides user config and env")
    parser.add_argument("--api-url", default=None, help="Overrides user config")
    parser.add_argument("--config", default=None, help="Path to an alternative config.yaml")
    parser.add_argument("--log-level", default=None, help="Logging level (default from config)")
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    """Stream one answer; returns the process exit code."""
    args = parse_args(argv)

    config = Configuration(args.config)
    configure_logging(args.log_level or config.get_logging_config().get("level", "INFO"))

    user_config = UserConfigStore(config.get_user_config_path()).load()
    llm_config = config.get_llm_config()
    streaming_config = config.get_streaming_config()

    api_key = args.api_key or user_config.api_key or config.llm_api_key
    api_url = args.api_url or user_config.api_url or llm_config["default_api_url"]

    sink = ConsoleSink()
    context = CliContext(args.system)

    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, sink.cancel)

    messages = build_conversation(
        context.get_history(), args.prompt, streaming_config["history_limit"]
    )

    async with TransportClient(config.get_http_client_config()) as transport:
        session = StreamingSession(
            transport,
            sink,
            context,
            api_key=api_key or "",
            api_url=api_url,
            model=llm_config["model"],
            request_timeout=streaming_config["request_timeout"],
            inactivity_timeout=streaming_config["inactivity_timeout"],
        )
        try:
            state = await session.run(messages)
        except LLMError as e:
            print(f"error: {e}", file=sys.stderr)
            return 1

    if state.outcome in (StreamOutcome.COMPLETED_WITH_CONTENT, StreamOutcome.CANCELLED):
        return 0

    print(f"error: {state.reason or 'empty response'}", file=sys.stderr)
    return 1


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
