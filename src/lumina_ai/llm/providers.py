"""Streaming chat adapters for the supported providers.

Every adapter satisfies the ``ChatProvider`` protocol: ``stream_chat()``
takes ``{role, content}`` messages plus ``ChatOptions`` and yields plain
text tokens in arrival order.  Adapters are independent classes with no
shared base state; the request plumbing they have in common lives in the
module-level helpers below.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import (
    Any,
    AsyncGenerator,
    AsyncIterator,
    Awaitable,
    Protocol,
    TypeVar,
    runtime_checkable,
)

import httpx

from lumina_ai.cancel import CancelToken
from lumina_ai.config import ProviderConfig
from lumina_ai.errors import (
    CancelledError,
    ConfigurationError,
    NetworkError,
    error_for_status,
)
from lumina_ai.types import ChatOptions

from .stream import StreamMode, decode_stream

_logger = logging.getLogger(__name__)

_STREAM_TIMEOUT = httpx.Timeout(60, connect=30, read=60)

T = TypeVar("T")


@runtime_checkable
class ChatProvider(Protocol):
    """Capability interface implemented by every provider variant."""

    id: str
    name: str
    default_model: str

    def is_configured(self) -> bool:
        ...

    def stream_chat(
        self,
        messages: list[dict[str, Any]],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[str]:
        ...


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _client_scope(client: httpx.AsyncClient | None) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Use the injected client, or own a fresh one for the duration of a call."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=_STREAM_TIMEOUT) as owned:
        yield owned


async def _until_cancelled(awaitable: Awaitable[T], cancel: CancelToken | None) -> T:
    """Await *awaitable*, abandoning it as soon as *cancel* is set."""
    call = asyncio.ensure_future(awaitable)
    if cancel is None:
        return await call

    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        call.cancel()
        raise
    finally:
        waiter.cancel()

    if not call.done():
        call.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await call
        raise CancelledError(timed_out=cancel.timed_out)
    return call.result()


async def _stream_events(
    client: httpx.AsyncClient | None,
    provider: str,
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any],
    mode: StreamMode,
    options: ChatOptions,
) -> AsyncGenerator[Any, None]:
    """POST *payload* and yield decoded events from the streaming response.

    Connecting, waiting for headers and every body read are raced against
    the cancel token.  Non-success statuses are raised as typed errors
    before decoding starts; any other httpx failure becomes ``NetworkError``.
    """
    cancel = options.cancel
    if cancel is not None:
        cancel.raise_if_cancelled()

    _logger.debug("POST %s (provider=%s, model=%s)", url, provider, payload.get("model"))
    try:
        async with _client_scope(client) as http:
            request = http.build_request("POST", url, json=payload, headers=headers)
            resp = await _until_cancelled(http.send(request, stream=True), cancel)
            try:
                if resp.status_code >= 400:
                    raw = await _until_cancelled(resp.aread(), cancel)
                    _logger.warning("%s returned %d", provider, resp.status_code)
                    raise error_for_status(
                        resp.status_code, raw.decode("utf-8", errors="replace"), provider,
                    )

                events = decode_stream(resp.aiter_bytes(), mode, cancel)
                try:
                    async for event in events:
                        yield event
                finally:
                    await events.aclose()
            finally:
                await resp.aclose()
    except httpx.TimeoutException as e:
        if cancel is not None and cancel.cancelled:
            raise CancelledError(timed_out=cancel.timed_out) from e
        raise NetworkError(f"{provider} request timed out: {e}") from e
    except httpx.HTTPError as e:
        raise NetworkError(f"{provider} request failed: {e}") from e


def _require_key(config: ProviderConfig, provider: str) -> str:
    if not config.has_credential:
        raise ConfigurationError(f"Missing {provider} API key.")
    return config.api_key.strip()


def _bearer_headers(api_key: str) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {api_key}",
    }


def _choice_delta_text(event: Any) -> str:
    """Token at ``choices[0].delta.content`` (OpenAI-compatible frames)."""
    if not isinstance(event, dict):
        return ""
    choices = event.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    return content if isinstance(content, str) else ""


async def _openai_compatible_stream(
    client: httpx.AsyncClient | None,
    provider: str,
    url: str,
    api_key: str,
    model: str,
    messages: list[dict[str, Any]],
    options: ChatOptions,
) -> AsyncGenerator[str, None]:
    payload = {
        "model": model,
        "messages": messages,
        "temperature": options.temperature,
        "stream": True,
    }
    events = _stream_events(
        client, provider, url, _bearer_headers(api_key), payload,
        StreamMode.EVENT_STREAM, options,
    )
    try:
        async for event in events:
            token = _choice_delta_text(event)
            if token:
                yield token
    finally:
        await events.aclose()


# ---------------------------------------------------------------------------
# Provider variants
# ---------------------------------------------------------------------------

class OpenAIProvider:
    """OpenAI chat completions (event-stream)."""

    id = "openai"
    name = "OpenAI"
    default_model = "gpt-4o"
    endpoint = "https://api.openai.com/v1/chat/completions"

    def __init__(self, config: ProviderConfig, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._client = client

    def is_configured(self) -> bool:
        return self.config.has_credential

    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        options: ChatOptions | None = None,
    ) -> AsyncGenerator[str, None]:
        options = options or ChatOptions()
        api_key = _require_key(self.config, self.name)
        stream = _openai_compatible_stream(
            self._client, self.name, self.config.base_url or self.endpoint,
            api_key, options.model or self.config.model or self.default_model,
            messages, options,
        )
        try:
            async for token in stream:
                yield token
        finally:
            await stream.aclose()


class DeepSeekProvider:
    """DeepSeek chat completions; same wire format as OpenAI."""

    id = "deepseek"
    name = "DeepSeek"
    default_model = "deepseek-chat"
    endpoint = "https://api.deepseek.com/chat/completions"

    def __init__(self, config: ProviderConfig, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._client = client

    def is_configured(self) -> bool:
        return self.config.has_credential

    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        options: ChatOptions | None = None,
    ) -> AsyncGenerator[str, None]:
        options = options or ChatOptions()
        api_key = _require_key(self.config, self.name)
        stream = _openai_compatible_stream(
            self._client, self.name, self.config.base_url or self.endpoint,
            api_key, options.model or self.config.model or self.default_model,
            messages, options,
        )
        try:
            async for token in stream:
                yield token
        finally:
            await stream.aclose()


class AnthropicProvider:
    """Anthropic Messages API (event-stream, typed events)."""

    id = "anthropic"
    name = "Anthropic"
    default_model = "claude-3-5-sonnet-20240620"
    endpoint = "https://api.anthropic.com/v1/messages"
    api_version = "2023-06-01"

    def __init__(self, config: ProviderConfig, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._client = client

    def is_configured(self) -> bool:
        return self.config.has_credential

    @staticmethod
    def split_system(messages: list[dict[str, Any]]) -> tuple[str, list[dict[str, Any]]]:
        """Move system messages out of the list into a single top-level string."""
        system_parts: list[str] = []
        rest: list[dict[str, Any]] = []
        for m in messages:
            if m.get("role") == "system":
                if m.get("content"):
                    system_parts.append(str(m["content"]))
            else:
                rest.append(m)
        return "\n\n".join(system_parts), rest

    def build_payload(self, messages: list[dict[str, Any]], options: ChatOptions) -> dict[str, Any]:
        system, chat = self.split_system(messages)
        payload: dict[str, Any] = {
            "model": options.model or self.config.model or self.default_model,
            "messages": chat,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "stream": True,
        }
        if system:
            payload["system"] = system
        return payload

    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        options: ChatOptions | None = None,
    ) -> AsyncGenerator[str, None]:
        options = options or ChatOptions()
        api_key = _require_key(self.config, self.name)
        headers = {
            "Content-Type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": self.api_version,
        }
        events = _stream_events(
            self._client, self.name, self.config.base_url or self.endpoint,
            headers, self.build_payload(messages, options),
            StreamMode.EVENT_STREAM, options,
        )
        try:
            async for event in events:
                if not isinstance(event, dict) or event.get("type") != "content_block_delta":
                    continue
                delta = event.get("delta") or {}
                text = delta.get("text") if isinstance(delta, dict) else None
                if isinstance(text, str) and text:
                    yield text
        finally:
            await events.aclose()


class OllamaProvider:
    """Local Ollama ``/api/chat`` (newline-delimited JSON, no credential)."""

    id = "ollama"
    name = "Ollama (Local)"
    default_model = "llama3"
    endpoint = "http://localhost:11434/api/chat"

    def __init__(self, config: ProviderConfig, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._client = client

    def is_configured(self) -> bool:
        return True

    @property
    def url(self) -> str:
        base = (self.config.base_url or "").strip().rstrip("/")
        if not base:
            return self.endpoint
        if base.endswith("/api/chat"):
            return base
        return base.removesuffix("/v1") + "/api/chat"

    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        options: ChatOptions | None = None,
    ) -> AsyncGenerator[str, None]:
        options = options or ChatOptions()
        payload = {
            "model": options.model or self.config.model or self.default_model,
            "messages": messages,
            "stream": True,
            "options": {"temperature": options.temperature},
        }
        events = _stream_events(
            self._client, self.name, self.url,
            {"Content-Type": "application/json"}, payload,
            StreamMode.NDJSON, options,
        )
        try:
            async for event in events:
                if not isinstance(event, dict):
                    continue
                msg = event.get("message") or {}
                content = msg.get("content") if isinstance(msg, dict) else None
                if isinstance(content, str) and content:
                    yield content
        finally:
            await events.aclose()
