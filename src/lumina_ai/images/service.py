"""Image generation via the Hugging Face inference router.

Kept apart from chat: a single slow POST returning image bytes, wrapped by
``RetryPolicy`` in ``generate_image_with_retry``.  Also hosts the helpers
that recognise image requests typed into the chat composer.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
from typing import Awaitable, Callable

import httpx

from lumina_ai.cancel import CancelToken
from lumina_ai.errors import (
    CancelledError,
    ImageGenerationError,
    NetworkError,
    OfflineError,
    error_for_status,
)
from lumina_ai.types import ImageResult

from .retry import RetryPolicy

_logger = logging.getLogger(__name__)

ROUTER_URL = "https://router.huggingface.co/hf-inference/models/black-forest-labs/FLUX.1-schnell"
PROBE_URL = "https://huggingface.co"
_PROVIDER = "Hugging Face"
_TIMEOUT = 90.0

ConnectivityCheck = Callable[[], Awaitable[bool]]


# ---------------------------------------------------------------------------
# Connectivity
# ---------------------------------------------------------------------------

async def check_api_connectivity(
    client: httpx.AsyncClient | None = None,
    timeout: float = 10.0,
) -> bool:
    """Return ``True`` if the Hugging Face host answers at all."""
    try:
        if client is not None:
            await client.head(PROBE_URL, timeout=timeout)
        else:
            async with httpx.AsyncClient(timeout=timeout) as probe:
                await probe.head(PROBE_URL)
    except httpx.HTTPError as e:
        _logger.info("Connectivity probe failed: %s", e)
        return False
    return True


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

def _error_detail(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return resp.text


def _to_data_url(content: bytes, content_type: str) -> str:
    mime = (content_type or "image/png").split(";")[0].strip() or "image/png"
    return f"data:{mime};base64,{base64.b64encode(content).decode('ascii')}"


async def _post(
    client: httpx.AsyncClient | None,
    headers: dict[str, str],
    payload: dict,
    timeout: float,
) -> httpx.Response:
    request_timeout = httpx.Timeout(timeout, connect=30)
    if client is not None:
        return await client.post(ROUTER_URL, json=payload, headers=headers, timeout=request_timeout)
    async with httpx.AsyncClient(timeout=request_timeout) as owned:
        return await owned.post(ROUTER_URL, json=payload, headers=headers)


async def generate_image(
    prompt: str,
    api_key: str | None = None,
    client: httpx.AsyncClient | None = None,
    cancel: CancelToken | None = None,
    timeout: float = _TIMEOUT,
    connectivity_check: ConnectivityCheck | None = None,
) -> ImageResult:
    """Generate one image for *prompt* and return it as a data URL.

    Raises
    ------
    ValueError
        If *prompt* is empty.
    OfflineError
        If *connectivity_check* reports no connectivity.
    CancelledError
        On cancellation or when *timeout* elapses.
    ProviderHTTPError
        Typed by status (``RateLimitError``, ``ServiceUnavailableError`` ...).
    """
    if not prompt or not isinstance(prompt, str) or not prompt.strip():
        raise ValueError("Prompt cannot be empty.")
    prompt = prompt.strip()

    if connectivity_check is not None and not await connectivity_check():
        raise OfflineError()

    headers = {"Content-Type": "application/json"}
    if api_key and api_key.strip():
        headers["Authorization"] = f"Bearer {api_key.strip()}"
        _logger.info("Using Hugging Face API key %s...", api_key.strip()[:7])
    else:
        _logger.info("Using Hugging Face free tier (no API key)")

    payload = {"inputs": prompt, "parameters": {}}
    call = asyncio.ensure_future(_post(client, headers, payload, timeout))
    waiters = {call}
    if cancel is not None:
        waiters.add(asyncio.ensure_future(cancel.wait()))
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        call.cancel()
        raise
    finally:
        for w in waiters - {call}:
            w.cancel()

    if not call.done():
        call.cancel()
        timed_out = cancel is not None and cancel.timed_out
        raise CancelledError(
            "Image generation timed out." if timed_out else "Image generation was cancelled.",
            timed_out=timed_out,
        )
    try:
        resp = call.result()
    except httpx.TimeoutException as e:
        raise CancelledError("Image generation timed out.", timed_out=True) from e
    except httpx.HTTPError as e:
        raise NetworkError(f"Network error: Unable to connect to Hugging Face API ({e})") from e

    if resp.status_code >= 400:
        raise error_for_status(resp.status_code, _error_detail(resp), _PROVIDER)

    if not resp.content:
        raise ImageGenerationError("Received empty image from generation service.")

    return ImageResult(
        image_url=_to_data_url(resp.content, resp.headers.get("content-type", "")),
        prompt=prompt,
    )


async def generate_image_with_retry(
    prompt: str,
    api_key: str | None = None,
    client: httpx.AsyncClient | None = None,
    cancel: CancelToken | None = None,
    timeout: float = _TIMEOUT,
    max_retries: int = 3,
    backoff_base: float = 2.0,
    connectivity_check: ConnectivityCheck | None = None,
    policy: RetryPolicy | None = None,
) -> ImageResult:
    """``generate_image`` wrapped in a bounded exponential-backoff ``RetryPolicy``."""
    policy = policy or RetryPolicy(max_retries=max_retries, base_delay=backoff_base)
    return await policy.run(
        lambda: generate_image(
            prompt,
            api_key=api_key,
            client=client,
            cancel=cancel,
            timeout=timeout,
            connectivity_check=connectivity_check,
        ),
        cancel=cancel,
    )


# ---------------------------------------------------------------------------
# Request detection
# ---------------------------------------------------------------------------

_IMAGE_COMMANDS = ("/image", "/img", "/generate", "/draw", "/create image")
_IMAGE_PHRASES = (
    "draw ",
    "generate image",
    "create image",
    "make image",
    "show image",
    "image of",
    "picture of",
    "photo of",
)
_DRAW_ARTICLE_RE = re.compile(r"^draw\s+(a|an|the|some|any)\s+", re.IGNORECASE)
_POLITE_RE = re.compile(
    r"^(can you|could you|please|will you)\s+(generate|create|make|draw|show)\s+(an?\s+)?image",
    re.IGNORECASE,
)
_INTENT_RE = re.compile(r"generate.*image|create.*image|make.*image|draw.*image", re.IGNORECASE)

_COMMAND_PREFIX_RE = re.compile(r"^/(image|img|generate|draw|create image)\s*", re.IGNORECASE)
_POLITE_PREFIX_RE = re.compile(
    r"^(can you|could you|please|will you)\s+(generate|create|make|draw|show)\s+(an?\s+)?image\s+(of\s+)?",
    re.IGNORECASE,
)
_VERB_PREFIX_RE = re.compile(
    r"^(draw|generate|create|make|show)\s+(an?\s+|the\s+|some\s+|any\s+)?"
    r"(image\s+of\s+|image\s+|picture\s+of\s+|photo\s+of\s+)?",
    re.IGNORECASE,
)


def is_image_generation_request(text: str) -> bool:
    """Heuristically decide whether *text* asks for an image."""
    if not text or not isinstance(text, str):
        return False
    trimmed = text.strip().lower()
    if trimmed.startswith(_IMAGE_COMMANDS):
        return True
    if trimmed.startswith(_IMAGE_PHRASES):
        return True
    if _DRAW_ARTICLE_RE.match(trimmed) or _POLITE_RE.match(trimmed):
        return True
    return bool(_INTENT_RE.search(trimmed)) and len(trimmed) < 100


def extract_image_prompt(text: str) -> str:
    """Strip the command or request phrasing, leaving the image description."""
    if not text or not isinstance(text, str):
        return ""
    trimmed = text.strip()
    prompt = _COMMAND_PREFIX_RE.sub("", trimmed, count=1).strip()
    if prompt == trimmed or not prompt:
        prompt = _POLITE_PREFIX_RE.sub("", trimmed, count=1)
        prompt = _VERB_PREFIX_RE.sub("", prompt, count=1).strip()
    return prompt or trimmed
