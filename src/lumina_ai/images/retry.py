"""Bounded exponential-backoff retry for slow, failure-prone calls.

Used around image generation: up to ``max_retries`` extra attempts with
delays of ``base_delay * 2**attempt`` (2, 4, 8 s by default).  Failures that
another attempt cannot fix are re-raised immediately.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from lumina_ai.cancel import CancelToken
from lumina_ai.errors import (
    AIError,
    CancelledError,
    OfflineError,
    RateLimitError,
    ServiceUnavailableError,
)

_logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_RETRIES = 3
_BACKOFF_BASE = 2.0  # seconds -- exponential: 2, 4, 8

# Cancellation/timeout, throttling, no connectivity, service not available
_NON_RETRYABLE: tuple[type[AIError], ...] = (
    CancelledError,
    RateLimitError,
    OfflineError,
    ServiceUnavailableError,
)

NETWORK_HINT = (
    "Unable to connect to the image service. Check your internet connection "
    "and firewall/proxy settings, then try again in a few moments."
)
CORS_HINT = (
    "The request was blocked by a cross-origin restriction. "
    "Please try again or check your network settings."
)
GENERIC_HINT = (
    "The free service may be temporarily unavailable. Please try again later."
)

_NETWORK_MARKERS = ("failed to fetch", "networkerror", "network", "connect")
_CORS_MARKERS = ("cors",)


def is_retryable(exc: BaseException) -> bool:
    """Return ``True`` if another attempt could plausibly succeed."""
    if not isinstance(exc, AIError):
        return False
    return not isinstance(exc, _NON_RETRYABLE)


def diagnostic_hint(message: str) -> str:
    """Pick a human-readable hint by matching the error text."""
    lower = message.lower()
    if any(m in lower for m in _CORS_MARKERS):
        return CORS_HINT
    if any(m in lower for m in _NETWORK_MARKERS):
        return NETWORK_HINT
    return GENERIC_HINT


class RetryPolicy:
    """Retry an async call with exponential backoff and error classification.

    Parameters
    ----------
    max_retries:
        Extra attempts after the first one (total attempts = max_retries + 1).
    base_delay:
        Delay before the first retry; doubles on each following retry.
    sleep:
        Awaitable sleep function, replaceable in tests.
    """

    def __init__(
        self,
        max_retries: int = _MAX_RETRIES,
        base_delay: float = _BACKOFF_BASE,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        cancel: CancelToken | None = None,
    ) -> T:
        """Call *fn* until it succeeds, fails terminally, or attempts run out.

        Only ``AIError`` failures are considered for retry; anything else
        (e.g. a ``ValueError`` from input validation) propagates at once.
        Setting *cancel* interrupts a pending backoff with ``CancelledError``.
        """
        total = self.max_retries + 1
        attempt = 0
        while True:
            attempt += 1
            if cancel is not None:
                cancel.raise_if_cancelled()
            try:
                return await fn()
            except AIError as e:
                if not is_retryable(e):
                    _logger.info("Not retrying %s: %s", type(e).__name__, e)
                    raise
                if attempt >= total:
                    _logger.error("Giving up after %d attempts: %s", attempt, e)
                    e.hint = diagnostic_hint(str(e))
                    raise
                delay = self.delay_for(attempt - 1)
                _logger.warning(
                    "Attempt %d/%d failed (%s), retrying in %.1fs...",
                    attempt, total, e, delay,
                )
            await self._backoff(delay, cancel)

    async def _backoff(self, delay: float, cancel: CancelToken | None) -> None:
        if cancel is None:
            await self._sleep(delay)
            return
        sleeper = asyncio.ensure_future(self._sleep(delay))
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            waiter.cancel()
        cancel.raise_if_cancelled()
