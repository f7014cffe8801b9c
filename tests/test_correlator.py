"""Tests for embedding request/reply correlation."""

from __future__ import annotations

import asyncio
import functools
import os
import queue

import pytest

from lumina_ai.embeddings.correlator import ProcessWorkerChannel, TaskCorrelator, next_reply
from lumina_ai.errors import EmbeddingError
from lumina_ai.events.bus import EventBus
from lumina_ai.types import EventType


class FakeChannel:
    """In-memory worker link; tests push replies with ``reply()``."""

    def __init__(self, fail_send: Exception | None = None):
        self.sent = []
        self.replies: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.fail_send = fail_send

    def send(self, message):
        if self.fail_send is not None:
            raise self.fail_send
        self.sent.append(message)

    async def receive(self):
        return await self.replies.get()

    async def close(self):
        self.closed = True
        self.replies.put_nowait(None)

    def reply(self, message):
        self.replies.put_nowait(message)


async def _until(predicate, limit: int = 1000):
    for _ in range(limit):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


def _complete(task_id, result):
    return {"id": task_id, "type": "embed", "status": "complete", "result": result}


# ---------------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------------

class TestCorrelation:
    async def test_request_shape(self):
        channel = FakeChannel()
        correlator = TaskCorrelator(channel)
        task = asyncio.create_task(correlator.request_embedding("hello"))
        await _until(lambda: channel.sent)

        sent = channel.sent[0]
        assert sent["type"] == "embed"
        assert sent["payload"] == "hello"
        assert isinstance(sent["id"], str) and sent["id"]

        await correlator.handle_reply(_complete(sent["id"], [0.1, 0.2]))
        assert await task == [0.1, 0.2]

    async def test_out_of_order_replies_resolve_own_callers(self):
        channel = FakeChannel()
        correlator = TaskCorrelator(channel)
        correlator.start()

        tasks = [asyncio.create_task(correlator.request_embedding(f"text-{i}")) for i in range(5)]
        await _until(lambda: len(channel.sent) == 5)
        assert correlator.pending_count == 5
        assert len({m["id"] for m in channel.sent}) == 5

        for message in reversed(channel.sent):
            channel.reply(_complete(message["id"], [float(message["payload"].split("-")[1])]))

        results = await asyncio.wait_for(asyncio.gather(*tasks), timeout=1)
        assert results == [[0.0], [1.0], [2.0], [3.0], [4.0]]
        assert correlator.pending_count == 0
        await correlator.close()

    async def test_error_reply_rejects_only_that_caller(self):
        channel = FakeChannel()
        correlator = TaskCorrelator(channel)
        ok = asyncio.create_task(correlator.request_embedding("a"))
        bad = asyncio.create_task(correlator.request_embedding("b"))
        await _until(lambda: len(channel.sent) == 2)

        first, second = channel.sent
        await correlator.handle_reply({"id": second["id"], "status": "error", "error": "model crashed"})
        await correlator.handle_reply(_complete(first["id"], [1.0]))

        assert await ok == [1.0]
        with pytest.raises(EmbeddingError, match="model crashed"):
            await bad
        assert correlator.pending_count == 0

    async def test_duplicate_reply_settles_once(self):
        channel = FakeChannel()
        correlator = TaskCorrelator(channel)
        task = asyncio.create_task(correlator.request_embedding("a"))
        await _until(lambda: channel.sent)
        task_id = channel.sent[0]["id"]

        assert await correlator.handle_reply(_complete(task_id, [1.0])) is True
        assert await correlator.handle_reply(_complete(task_id, [2.0])) is False
        assert await task == [1.0]

    async def test_unknown_id_is_ignored(self):
        correlator = TaskCorrelator(FakeChannel())
        assert await correlator.handle_reply(_complete("nobody", [1.0])) is False
        assert correlator.pending_count == 0

    async def test_send_failure(self):
        correlator = TaskCorrelator(FakeChannel(fail_send=OSError("broken pipe")))
        with pytest.raises(EmbeddingError, match="broken pipe"):
            await correlator.request_embedding("a")
        assert correlator.pending_count == 0

    async def test_abandoned_request_removed(self):
        channel = FakeChannel()
        correlator = TaskCorrelator(channel)
        task = asyncio.create_task(correlator.request_embedding("a"))
        await _until(lambda: channel.sent)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert correlator.pending_count == 0


# ---------------------------------------------------------------------------
# Model status
# ---------------------------------------------------------------------------

class TestModelStatus:
    async def test_progress_and_ready(self):
        bus = EventBus()
        events = []
        bus.subscribe("*", events.append)
        correlator = TaskCorrelator(FakeChannel(), event_bus=bus)

        await correlator.handle_reply({"type": "progress", "status": "progress", "progress": 42})
        assert correlator.status.progress == 42.0
        assert correlator.status.ready is False

        await correlator.handle_reply({"type": "progress", "status": "ready"})
        assert correlator.status.ready is True
        assert correlator.status.progress == 100.0

        assert [e.type for e in events] == [EventType.MODEL_PROGRESS, EventType.MODEL_READY]
        assert events[0].data == {"progress": 42.0}

    async def test_uncorrelated_error(self):
        bus = EventBus()
        events = []
        bus.subscribe(EventType.MODEL_ERROR, events.append)
        correlator = TaskCorrelator(FakeChannel(), event_bus=bus)

        await correlator.handle_reply({"status": "error", "error": "onnx runtime missing"})
        assert correlator.status.error == "onnx runtime missing"
        assert events[0].data == {"error": "onnx runtime missing"}

    async def test_progress_for_pending_id_does_not_settle(self):
        channel = FakeChannel()
        correlator = TaskCorrelator(channel)
        task = asyncio.create_task(correlator.request_embedding("a"))
        await _until(lambda: channel.sent)
        task_id = channel.sent[0]["id"]

        assert await correlator.handle_reply({"id": task_id, "status": "progress", "progress": 5}) is False
        assert not task.done()
        await correlator.handle_reply(_complete(task_id, [3.0]))
        assert await task == [3.0]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    async def test_close_rejects_pending(self):
        channel = FakeChannel()
        correlator = TaskCorrelator(channel)
        correlator.start()
        task = asyncio.create_task(correlator.request_embedding("a"))
        await _until(lambda: channel.sent)

        await correlator.close()

        assert channel.closed
        with pytest.raises(EmbeddingError):
            await task
        assert correlator.pending_count == 0

    async def test_request_after_close(self):
        correlator = TaskCorrelator(FakeChannel())
        await correlator.close()
        with pytest.raises(EmbeddingError, match="closed"):
            await correlator.request_embedding("a")

    async def test_worker_exit_rejects_pending(self):
        channel = FakeChannel()
        correlator = TaskCorrelator(channel)
        correlator.start()
        task = asyncio.create_task(correlator.request_embedding("a"))
        await _until(lambda: channel.sent)

        channel.reply(None)
        with pytest.raises(EmbeddingError, match="stopped"):
            await asyncio.wait_for(task, timeout=1)

    async def test_bad_reply_does_not_kill_reader(self):
        channel = FakeChannel()
        correlator = TaskCorrelator(channel)
        correlator.start()
        task = asyncio.create_task(correlator.request_embedding("a"))
        await _until(lambda: channel.sent)

        channel.reply({"status": "progress", "progress": "not-a-number"})
        channel.reply(_complete(channel.sent[0]["id"], [9.0]))
        assert await asyncio.wait_for(task, timeout=1) == [9.0]
        await correlator.close()


# ---------------------------------------------------------------------------
# Process channel
# ---------------------------------------------------------------------------

class FakeProcess:
    def __init__(self, alive: bool = True, exitcode: int | None = None):
        self.alive = alive
        self.exitcode = exitcode

    def is_alive(self):
        return self.alive


class TestNextReply:
    def test_returns_queued_reply(self):
        replies = queue.Queue()
        replies.put({"status": "ready"})
        assert next_reply(replies, FakeProcess(), 0.01) == {"status": "ready"}

    def test_dead_process_ends_stream(self):
        assert next_reply(queue.Queue(), FakeProcess(alive=False, exitcode=1), 0.01) is None

    def test_keeps_waiting_while_process_alive(self):
        replies = queue.Queue()
        process = FakeProcess()
        polls = []
        real_get = replies.get

        def get(timeout):
            polls.append(timeout)
            if len(polls) == 3:
                replies.put({"id": "a"})
            return real_get(timeout=timeout)

        replies.get = get
        assert next_reply(replies, process, 0.01) == {"id": "a"}
        assert len(polls) == 3


class TestProcessWorkerChannel:
    async def test_crashed_worker_rejects_pending_callers(self):
        channel = ProcessWorkerChannel(
            embedder_factory=functools.partial(os._exit, 1),
            poll_interval=0.05,
        )
        correlator = TaskCorrelator(channel)
        correlator.start()
        try:
            with pytest.raises(EmbeddingError, match="stopped"):
                await asyncio.wait_for(correlator.request_embedding("a"), timeout=30)
            assert correlator.pending_count == 0
        finally:
            await asyncio.wait_for(correlator.close(), timeout=10)

    async def test_request_after_crash_fails_fast(self):
        channel = ProcessWorkerChannel(
            embedder_factory=functools.partial(os._exit, 1),
            poll_interval=0.05,
        )
        correlator = TaskCorrelator(channel)
        correlator.start()
        try:
            with pytest.raises(EmbeddingError):
                await asyncio.wait_for(correlator.request_embedding("a"), timeout=30)
            with pytest.raises(EmbeddingError):
                await asyncio.wait_for(correlator.request_embedding("b"), timeout=5)
        finally:
            await asyncio.wait_for(correlator.close(), timeout=10)
