"""Correlates embedding requests with replies from an isolated worker.

Each request gets a fresh uuid and a one-shot ``asyncio.Future`` in the
pending map.  A single reader task pulls replies off the worker channel and
hands them to ``handle_reply()``, which settles the matching future and
removes its entry.  Replies without a pending entry are model-readiness
events and update ``status`` instead.
"""

from __future__ import annotations

import asyncio
import logging
import multiprocessing
import queue
import uuid
from typing import Any, Protocol

from lumina_ai.errors import EmbeddingError
from lumina_ai.events.bus import EventBus
from lumina_ai.types import AIEvent, EventType, ModelStatus

from .worker import EmbedderFactory, default_embedder_factory, run_worker

_logger = logging.getLogger(__name__)


class WorkerChannel(Protocol):
    """Message-passing link to the worker."""

    def send(self, message: dict[str, Any]) -> None:
        ...

    async def receive(self) -> dict[str, Any] | None:
        """Next reply, or ``None`` once the worker has shut down."""
        ...

    async def close(self) -> None:
        ...


def next_reply(replies: Any, process: Any, poll_interval: float) -> dict[str, Any] | None:
    """Block until a reply arrives on *replies*, or return ``None`` once
    *process* has died.

    The queue is polled every *poll_interval* seconds so a worker that
    exits without writing its shutdown sentinel is still noticed.
    """
    while True:
        try:
            return replies.get(timeout=poll_interval)
        except queue.Empty:
            if not process.is_alive():
                _logger.error(
                    "Embedding worker exited unexpectedly (exitcode=%s)",
                    getattr(process, "exitcode", None),
                )
                return None


class ProcessWorkerChannel:
    """Runs ``run_worker`` in a spawned process connected by two queues."""

    def __init__(
        self,
        embedder_factory: EmbedderFactory = default_embedder_factory,
        poll_interval: float = 0.5,
    ) -> None:
        ctx = multiprocessing.get_context("spawn")
        self._requests = ctx.Queue()
        self._replies = ctx.Queue()
        self._poll_interval = poll_interval
        self._process = ctx.Process(
            target=run_worker,
            args=(self._requests, self._replies, embedder_factory),
            name="lumina-embedding-worker",
            daemon=True,
        )
        self._process.start()
        _logger.info("Embedding worker started (pid=%s)", self._process.pid)

    def send(self, message: dict[str, Any]) -> None:
        if not self._process.is_alive():
            raise OSError("embedding worker is not running")
        self._requests.put(message)

    async def receive(self) -> dict[str, Any] | None:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, next_reply, self._replies, self._process, self._poll_interval,
        )

    async def close(self) -> None:
        loop = asyncio.get_running_loop()
        if self._process.is_alive():
            self._requests.put(None)
            await loop.run_in_executor(None, self._process.join, 5)
            if self._process.is_alive():
                _logger.warning("Embedding worker did not exit, terminating")
                self._process.terminate()
                await loop.run_in_executor(None, self._process.join, 1)
        # Unblock a reader even when the worker died without its sentinel.
        self._replies.put(None)


class TaskCorrelator:
    """Dispatch embedding requests and resolve callers by correlation id.

    Parameters
    ----------
    channel:
        Link to the worker.  Use ``ProcessWorkerChannel()`` in production.
    event_bus:
        Receives ``MODEL_*`` readiness events (optional).
    """

    def __init__(self, channel: WorkerChannel, event_bus: EventBus | None = None) -> None:
        self._channel = channel
        self._event_bus = event_bus
        self._pending: dict[str, asyncio.Future[Any]] = {}
        self._reader: asyncio.Task[None] | None = None
        self._closed = False
        self.status = ModelStatus()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        """Start the reply reader on the running loop."""
        if self._reader is None or self._reader.done():
            self._reader = asyncio.create_task(self._read_loop(), name="embedding-reply-reader")

    async def request_embedding(self, text: str | list[str]) -> Any:
        """Embed *text* in the worker and return the vector."""
        if self._closed:
            raise EmbeddingError("Embedding worker is closed")

        task_id = str(uuid.uuid4())
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[task_id] = future
        try:
            self._channel.send({"id": task_id, "type": "embed", "payload": text})
        except (OSError, ValueError) as e:
            self._pending.pop(task_id, None)
            raise EmbeddingError(f"Could not reach embedding worker: {e}") from e

        try:
            return await future
        finally:
            # Settled entries are already gone; this only drops abandoned ones.
            self._pending.pop(task_id, None)

    async def handle_reply(self, message: dict[str, Any]) -> bool:
        """Route one worker reply.  Returns ``True`` if it settled a request."""
        task_id = message.get("id")
        status = message.get("status")
        future = self._pending.get(task_id) if task_id is not None else None

        if future is None or status not in ("complete", "error"):
            await self._update_status(message)
            return False

        del self._pending[task_id]
        if future.done():
            return False
        if status == "complete":
            future.set_result(message.get("result"))
        else:
            future.set_exception(EmbeddingError(str(message.get("error") or "Embedding failed")))
        return True

    async def close(self) -> None:
        """Stop the reader, shut the worker down and reject pending callers."""
        self._closed = True
        await self._channel.close()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        self._reject_all("Embedding worker stopped")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        while True:
            message = await self._channel.receive()
            if message is None:
                _logger.info("Embedding worker channel closed")
                break
            try:
                await self.handle_reply(message)
            except Exception:
                _logger.exception("Failed to handle worker reply: %r", message)
        self._reject_all("Embedding worker stopped")

    def _reject_all(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(EmbeddingError(reason))

    async def _update_status(self, message: dict[str, Any]) -> None:
        status = message.get("status")
        if status == "progress":
            try:
                self.status.progress = float(message.get("progress") or 0.0)
            except (TypeError, ValueError):
                return
            await self._emit(EventType.MODEL_PROGRESS, {"progress": self.status.progress})
        elif status == "ready":
            self.status.ready = True
            self.status.progress = 100.0
            await self._emit(EventType.MODEL_READY, {})
        elif status == "error":
            self.status.error = str(message.get("error") or "Unknown worker error")
            _logger.error("AI worker error: %s", self.status.error)
            await self._emit(EventType.MODEL_ERROR, {"error": self.status.error})
        else:
            _logger.debug("Ignoring uncorrelated worker message: %r", message)

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self._event_bus is not None:
            await self._event_bus.emit(AIEvent(type=event_type, data=data))
