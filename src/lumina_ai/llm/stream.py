"""Incremental decoder for streaming provider responses.

Turns an async iterator of raw bytes into decoded JSON events.  Two wire
styles are supported:

- ``event-stream``: ``data: {...}`` lines, terminated by ``data: [DONE]``
- ``line-delimited-json``: one JSON object per line, terminated by an
  object whose ``done`` flag is set

Chunk boundaries may fall anywhere, including inside a multi-byte UTF-8
character or in the middle of a line; undecoded bytes and the partial last
line are carried over to the next read.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import enum
import json
import logging
from typing import Any, AsyncGenerator, AsyncIterable, AsyncIterator

from lumina_ai.cancel import CancelToken
from lumina_ai.errors import ParseError

_logger = logging.getLogger(__name__)

_DATA_PREFIX = "data:"
_DONE_SENTINEL = "[DONE]"


class StreamMode(str, enum.Enum):
    EVENT_STREAM = "event-stream"
    NDJSON = "line-delimited-json"


def parse_frame(payload: str) -> Any:
    """Parse one frame payload, raising ``ParseError`` on malformed JSON."""
    try:
        return json.loads(payload)
    except json.JSONDecodeError as e:
        raise ParseError(f"malformed frame: {payload[:80]!r}") from e


# ---------------------------------------------------------------------------
# Byte / line plumbing
# ---------------------------------------------------------------------------

async def _anext(iterator: AsyncIterator[bytes]) -> tuple[bool, bytes]:
    try:
        return True, await iterator.__anext__()
    except StopAsyncIteration:
        return False, b""


async def _read_chunk(
    iterator: AsyncIterator[bytes],
    cancel: CancelToken | None,
) -> tuple[bool, bytes]:
    """Await the next chunk, racing it against *cancel*."""
    if cancel is None:
        return await _anext(iterator)

    cancel.raise_if_cancelled()
    read = asyncio.ensure_future(_anext(iterator))
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({read, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
    if not read.done():
        read.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await read
        cancel.raise_if_cancelled()
    return read.result()


async def iter_lines(
    chunks: AsyncIterable[bytes],
    cancel: CancelToken | None = None,
) -> AsyncGenerator[str, None]:
    """Yield decoded text lines (without terminators) from a byte stream."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    iterator = chunks.__aiter__()
    pending = ""

    while True:
        more, chunk = await _read_chunk(iterator, cancel)
        if not more:
            break
        pending += decoder.decode(chunk)
        *lines, pending = pending.split("\n")
        for line in lines:
            if cancel is not None:
                cancel.raise_if_cancelled()
            yield line.rstrip("\r")

    pending += decoder.decode(b"", final=True)
    if pending:
        yield pending.rstrip("\r")


# ---------------------------------------------------------------------------
# Framings
# ---------------------------------------------------------------------------

async def iter_sse_events(
    chunks: AsyncIterable[bytes],
    cancel: CancelToken | None = None,
) -> AsyncGenerator[Any, None]:
    """Decode an event-stream body into JSON payloads.

    The ``[DONE]`` sentinel ends the sequence and is never yielded.
    Malformed frames are skipped.
    """
    lines = iter_lines(chunks, cancel)
    try:
        async for line in lines:
            if not line.startswith(_DATA_PREFIX):
                continue
            payload = line[len(_DATA_PREFIX):].strip()
            if not payload:
                continue
            if payload == _DONE_SENTINEL:
                return
            try:
                yield parse_frame(payload)
            except ParseError as e:
                _logger.debug("Skipping SSE frame: %s", e)
    finally:
        await lines.aclose()


async def iter_ndjson_events(
    chunks: AsyncIterable[bytes],
    cancel: CancelToken | None = None,
    done_key: str = "done",
) -> AsyncGenerator[Any, None]:
    """Decode a newline-delimited JSON body.

    The object carrying a truthy *done_key* is yielded and ends the sequence.
    """
    lines = iter_lines(chunks, cancel)
    try:
        async for line in lines:
            if not line.strip():
                continue
            try:
                data = parse_frame(line)
            except ParseError as e:
                _logger.debug("Skipping NDJSON line: %s", e)
                continue
            yield data
            if isinstance(data, dict) and data.get(done_key):
                return
    finally:
        await lines.aclose()


def decode_stream(
    chunks: AsyncIterable[bytes],
    mode: StreamMode | str,
    cancel: CancelToken | None = None,
    done_key: str = "done",
) -> AsyncGenerator[Any, None]:
    """Return a lazy, one-pass event iterator for *chunks* in *mode*."""
    mode = StreamMode(mode)
    if mode is StreamMode.EVENT_STREAM:
        return iter_sse_events(chunks, cancel)
    return iter_ndjson_events(chunks, cancel, done_key)

