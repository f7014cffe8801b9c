"""Tests for the incremental stream decoder."""

from __future__ import annotations

import asyncio
import json

import pytest

from lumina_ai.cancel import CancelToken
from lumina_ai.errors import CancelledError
from lumina_ai.llm.stream import (
    StreamMode,
    decode_stream,
    iter_lines,
    iter_ndjson_events,
    iter_sse_events,
)


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


async def _collect(agen) -> list:
    return [item async for item in agen]


def _split_at(data: bytes, *offsets: int) -> list[bytes]:
    parts, start = [], 0
    for off in sorted(offsets):
        parts.append(data[start:off])
        start = off
    parts.append(data[start:])
    return parts


_SSE_PAYLOAD = (
    'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n'
    'data: {"choices":[{"delta":{"content":"Héllo "}}]}\n\n'
    'data: {"choices":[{"delta":{"content":"世界"}}]}\n\n'
    ": keep-alive comment\n\n"
    'data: {"choices":[{"delta":{"content":"!"}}]}\n\n'
    "data: [DONE]\n\n"
).encode("utf-8")


# ---------------------------------------------------------------------------
# Lines
# ---------------------------------------------------------------------------

class TestIterLines:
    async def test_carries_partial_line(self):
        lines = await _collect(iter_lines(_chunks(b"ab", b"c\nde", b"f\n")))
        assert lines == ["abc", "def"]

    async def test_multibyte_character_split(self):
        data = "é\n".encode("utf-8")
        lines = await _collect(iter_lines(_chunks(data[:1], data[1:])))
        assert lines == ["é"]

    async def test_flushes_unterminated_tail(self):
        lines = await _collect(iter_lines(_chunks(b"one\ntwo")))
        assert lines == ["one", "two"]

    async def test_strips_carriage_returns(self):
        lines = await _collect(iter_lines(_chunks(b"a\r\nb\r\n")))
        assert lines == ["a", "b"]


# ---------------------------------------------------------------------------
# Event-stream
# ---------------------------------------------------------------------------

class TestEventStream:
    async def test_scenario_single_token(self):
        body = b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\ndata: [DONE]\n\n'
        events = await _collect(iter_sse_events(_chunks(body)))
        assert events == [{"choices": [{"delta": {"content": "Hi"}}]}]

    async def test_sentinel_never_yielded(self):
        events = await _collect(iter_sse_events(_chunks(_SSE_PAYLOAD)))
        assert "[DONE]" not in events
        assert all(isinstance(e, dict) for e in events)
        assert len(events) == 4

    async def test_stops_at_sentinel_without_reading_further(self):
        reads = []

        async def source():
            for part in (b"data: {\"a\": 1}\n", b"data: [DONE]\n", b"data: {\"b\": 2}\n"):
                reads.append(part)
                yield part

        events = await _collect(iter_sse_events(source()))
        assert events == [{"a": 1}]
        assert len(reads) == 2

    async def test_malformed_frame_skipped(self):
        body = b'data: {"broken": \n\ndata: {"ok": true}\n\ndata: [DONE]\n\n'
        events = await _collect(iter_sse_events(_chunks(body)))
        assert events == [{"ok": True}]

    async def test_ignores_non_data_lines(self):
        body = b'event: message_start\ndata: {"x": 1}\nid: 7\n\n'
        events = await _collect(iter_sse_events(_chunks(body)))
        assert events == [{"x": 1}]

    async def test_prefix_without_space(self):
        events = await _collect(iter_sse_events(_chunks(b'data:{"x": 1}\n')))
        assert events == [{"x": 1}]

    async def test_ends_at_end_of_input_without_sentinel(self):
        events = await _collect(iter_sse_events(_chunks(b'data: {"x": 1}\n\n')))
        assert events == [{"x": 1}]

    @pytest.mark.parametrize("offsets", [
        (1,), (5,), (17,), (40, 41), (52, 53, 54), (60, 61, 62, 63, 64),
    ])
    async def test_chunking_invariance(self, offsets):
        whole = await _collect(iter_sse_events(_chunks(_SSE_PAYLOAD)))
        parts = _split_at(_SSE_PAYLOAD, *offsets)
        split = await _collect(iter_sse_events(_chunks(*parts)))
        assert split == whole

    async def test_chunking_invariance_byte_by_byte(self):
        whole = await _collect(iter_sse_events(_chunks(_SSE_PAYLOAD)))
        bytewise = [_SSE_PAYLOAD[i:i + 1] for i in range(len(_SSE_PAYLOAD))]
        split = await _collect(iter_sse_events(_chunks(*bytewise)))
        assert split == whole
        tokens = [e["choices"][0]["delta"].get("content") for e in split]
        assert tokens == [None, "Héllo ", "世界", "!"]


# ---------------------------------------------------------------------------
# NDJSON
# ---------------------------------------------------------------------------

class TestNDJSON:
    async def test_scenario_done_flag(self):
        body = (
            b'{"message":{"content":"A"},"done":false}\n'
            b'{"message":{"content":"B"},"done":true}\n'
        )
        events = await _collect(iter_ndjson_events(_chunks(body)))
        assert [e["message"]["content"] for e in events] == ["A", "B"]

    async def test_exits_after_done_line(self):
        body = (
            b'{"message":{"content":"A"},"done":true}\n'
            b'{"message":{"content":"late"},"done":false}\n'
        )
        events = await _collect(iter_ndjson_events(_chunks(body)))
        assert len(events) == 1

    async def test_object_split_across_chunks(self):
        line = json.dumps({"message": {"content": "ü"}, "done": False}).encode() + b"\n"
        events = await _collect(iter_ndjson_events(_chunks(line[:10], line[10:])))
        assert events[0]["message"]["content"] == "ü"

    async def test_skips_blank_and_malformed(self):
        body = b'\n{oops\n{"message":{"content":"x"},"done":true}\n'
        events = await _collect(iter_ndjson_events(_chunks(body)))
        assert len(events) == 1

    async def test_custom_done_key(self):
        body = b'{"t":"a","finished":true}\n{"t":"b"}\n'
        events = await _collect(iter_ndjson_events(_chunks(body), done_key="finished"))
        assert [e["t"] for e in events] == ["a"]


class TestDecodeStream:
    async def test_dispatch_by_mode_string(self):
        events = await _collect(decode_stream(_chunks(b'{"done": true}\n'), "line-delimited-json"))
        assert events == [{"done": True}]

    async def test_dispatch_event_stream(self):
        events = await _collect(decode_stream(_chunks(b"data: 1\n"), StreamMode.EVENT_STREAM))
        assert events == [1]

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            decode_stream(_chunks(b""), "xml")


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class TestCancellation:
    async def test_cancel_while_waiting_for_chunk(self):
        token = CancelToken()
        closed = asyncio.Event()

        async def slow_source():
            try:
                yield b'data: {"n": 1}\n'
                await asyncio.sleep(10)
                yield b'data: {"n": 2}\n'
            finally:
                closed.set()

        received = []

        async def consume():
            async for event in iter_sse_events(slow_source(), token):
                received.append(event)

        task = asyncio.create_task(consume())
        while not received:
            await asyncio.sleep(0)
        token.cancel()

        with pytest.raises(CancelledError):
            await asyncio.wait_for(task, timeout=1)
        assert received == [{"n": 1}]

    async def test_already_cancelled_reads_nothing(self):
        token = CancelToken()
        token.cancel()
        reads = []

        async def source():
            reads.append(1)
            yield b"data: {}\n"

        with pytest.raises(CancelledError):
            await _collect(iter_sse_events(source(), token))
        assert reads == []

    async def test_cancel_between_lines_of_one_chunk(self):
        token = CancelToken()
        body = b'data: {"n": 1}\ndata: {"n": 2}\ndata: {"n": 3}\n'
        received = []
        with pytest.raises(CancelledError):
            async for event in iter_sse_events(_chunks(body), token):
                received.append(event)
                token.cancel()
        assert received == [{"n": 1}]
