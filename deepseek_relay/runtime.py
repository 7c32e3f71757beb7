"""
Background worker runtime for streaming tasks.

The host calls into the relay from its own (synchronous) thread. Each user
message becomes one task on a dedicated asyncio event loop running in a
daemon thread, so ``handle_message`` returns immediately while the answer
streams in the background.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import functools
import threading
from collections.abc import Coroutine
from typing import Any, TypeVar

from deepseek_relay.logging_utils import RelayErrorHandler, get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class WorkerRuntime:
    """Owns one event loop thread; shared by every clone of its owner."""

    def __init__(
        self,
        shutdown_grace: float = 1.0,
        name: str = "deepseek-relay-runtime",
    ) -> None:
        self.shutdown_grace = shutdown_grace
        self.name = name
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._owners = 0
        self._state_lock = threading.Lock()
        self._futures: set[concurrent.futures.Future[Any]] = set()

    @property
    def is_running(self) -> bool:
        return self._loop is not None and self._loop.is_running()

    @property
    def owners(self) -> int:
        return self._owners

    @property
    def pending_count(self) -> int:
        return len(self._futures)

    def start(self) -> None:
        """Create the loop thread. Raises RuntimeError if already started."""
        with self._state_lock:
            if self._loop is not None:
                raise RuntimeError("Worker runtime already started")

            loop = asyncio.new_event_loop()
            ready = threading.Event()

            def _run() -> None:
                asyncio.set_event_loop(loop)
                loop.call_soon(ready.set)
                loop.run_forever()

            thread = threading.Thread(target=_run, name=self.name, daemon=True)
            thread.start()
            ready.wait()

            self._loop = loop
            self._thread = thread
            self._owners = 1

        logger.info("Worker runtime initialized successfully", thread=self.name)

    def share(self) -> WorkerRuntime:
        """Register another owner; each owner must call ``shutdown()`` once."""
        with self._state_lock:
            if self._loop is None:
                raise RuntimeError("Worker runtime is not running")
            self._owners += 1
        return self

    def submit(
        self,
        coro: Coroutine[Any, Any, T],
        *,
        description: str = "task",
    ) -> concurrent.futures.Future[T]:
        """Schedule ``coro`` on the loop; failures are logged when it completes."""
        loop = self._loop
        if loop is None or not loop.is_running():
            coro.close()
            raise RuntimeError("Worker runtime is not running")

        future = asyncio.run_coroutine_threadsafe(coro, loop)
        self._futures.add(future)
        future.add_done_callback(functools.partial(self._on_done, description))
        return future

    def run(
        self, coro: Coroutine[Any, Any, T], timeout: float | None = None
    ) -> T:
        """Run ``coro`` on the loop and block for its result."""
        if threading.current_thread() is self._thread:
            coro.close()
            raise RuntimeError("Cannot block on the runtime from its own thread")
        return self.submit(coro, description="blocking call").result(timeout)

    def _on_done(
        self, description: str, future: concurrent.futures.Future[Any]
    ) -> None:
        self._futures.discard(future)
        if future.cancelled():
            logger.info("Task cancelled", task=description)
            return
        error = future.exception()
        if error is not None:
            RelayErrorHandler.log_failure(error, description)

    def shutdown(self) -> bool:
        """
        Tear the loop down, giving running tasks ``shutdown_grace`` seconds.

        Returns:
            False when teardown was skipped because other owners remain or
            the runtime was never started.
        """
        with self._state_lock:
            if self._loop is None or self._thread is None:
                logger.warning("Worker runtime not initialized, cannot shutdown")
                return False
            if self._owners > 1:
                self._owners -= 1
                logger.warning(
                    "Cannot shutdown runtime: other references still exist",
                    owners=self._owners,
                )
                return False

            loop, thread = self._loop, self._thread
            self._loop = None
            self._thread = None
            self._owners = 0

        if threading.current_thread() is thread:
            raise RuntimeError("Cannot shut down the runtime from its own thread")

        drain = asyncio.run_coroutine_threadsafe(self._drain(), loop)
        try:
            drain.result(timeout=self.shutdown_grace * 2 + 1.0)
        except concurrent.futures.TimeoutError:
            logger.warning("Timed out draining worker tasks", grace=self.shutdown_grace)

        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout=self.shutdown_grace + 1.0)
        if thread.is_alive():
            logger.warning("Worker runtime thread did not stop in time")
            return False

        loop.close()
        logger.info("Worker runtime shutdown successfully")
        return True

    async def _drain(self) -> None:
        """Let tasks finish within the grace period, then cancel the rest."""
        current = asyncio.current_task()
        tasks = [task for task in asyncio.all_tasks() if task is not current]

        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.shutdown_grace)
            for task in pending:
                task.cancel()
            if pending:
                logger.info("Cancelling unfinished worker tasks", count=len(pending))
                await asyncio.wait(pending, timeout=self.shutdown_grace)

        await asyncio.get_running_loop().shutdown_asyncgens()
