"""Cooperative cancellation token threaded through every suspending call."""

from __future__ import annotations

import asyncio
import logging

from lumina_ai.errors import CancelledError

_logger = logging.getLogger(__name__)


class CancelToken:
    """One-shot cancellation signal.

    ``cancel()`` is idempotent: the first call records the reason, later
    calls are no-ops.  Suspending code polls ``cancelled`` (or calls
    ``raise_if_cancelled()``) at each iteration boundary, or awaits
    ``wait()`` to race against it.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._timed_out = False

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def timed_out(self) -> bool:
        return self._timed_out

    def cancel(self, *, timed_out: bool = False) -> bool:
        """Signal cancellation.  Returns ``True`` only on the first call."""
        if self._event.is_set():
            return False
        self._timed_out = timed_out
        self._event.set()
        _logger.debug("Cancel token set (timed_out=%s)", timed_out)
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError(timed_out=self._timed_out)

    async def wait(self) -> None:
        await self._event.wait()
