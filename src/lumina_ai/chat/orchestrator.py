"""Chat orchestrator: drives one streaming exchange at a time.

    idle → sending → streaming → idle
                   ↘ error → idle

The orchestrator owns the active ``ChatSession``.  Each token from the
provider is appended to the assistant placeholder and published on the
event bus before the next token is read, so collaborators observe partial
output in arrival order.
"""

from __future__ import annotations

import asyncio
import enum
import functools
import logging
from typing import Any, Awaitable, Callable, Iterable, Protocol

import httpx

from lumina_ai.cancel import CancelToken
from lumina_ai.chat.prompt import PromptContext, build_messages
from lumina_ai.config import AIConfig
from lumina_ai.errors import AIError, CancelledError, ConfigurationError
from lumina_ai.events.bus import EventBus
from lumina_ai.images.service import extract_image_prompt, generate_image_with_retry
from lumina_ai.llm.providers import ChatProvider
from lumina_ai.llm.registry import create_provider
from lumina_ai.types import (
    AIEvent,
    ChatOptions,
    ChatSession,
    ContextSnippet,
    EventType,
    ImageResult,
    Message,
    Role,
)

_logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Request timed out. The AI is taking too long to respond."

ProviderFactory = Callable[..., ChatProvider]
ImageGenerator = Callable[[str, CancelToken], Awaitable[ImageResult]]
UpdateCallback = Callable[[list[Message]], Any]


class ChatState(enum.Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    ERROR = "error"


class SessionStore(Protocol):
    """Persistence collaborator that receives finished sessions."""

    async def save(self, session: ChatSession) -> None:
        ...


class ChatOrchestrator:
    """Conversation state plus the streaming exchange state machine.

    Parameters
    ----------
    config:
        Resolved AI configuration (active provider, credentials, timeouts).
    event_bus:
        Bus receiving ``CHAT_*`` events (optional).
    store:
        Session persistence collaborator (optional).
    provider_factory:
        Builds the adapter for a provider id; defaults to ``create_provider``.
    client:
        Shared ``httpx.AsyncClient`` handed to adapters (optional).
    on_update:
        Called with the message list after every published change.
    image_generator:
        ``async (prompt, cancel) -> ImageResult``; defaults to the retrying HF call.
    """

    def __init__(
        self,
        config: AIConfig,
        event_bus: EventBus | None = None,
        store: SessionStore | None = None,
        provider_factory: ProviderFactory = create_provider,
        client: httpx.AsyncClient | None = None,
        on_update: UpdateCallback | None = None,
        image_generator: ImageGenerator | None = None,
    ) -> None:
        self._config = config
        self._event_bus = event_bus or EventBus()
        self._store = store
        self._provider_factory = provider_factory
        self._client = client
        self._on_update = on_update
        self._image_generator = image_generator or self._default_image_generator
        self._state = ChatState.IDLE
        self._cancel: CancelToken | None = None
        self.error: str | None = None
        self.session = ChatSession()

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def state(self) -> ChatState:
        return self._state

    @property
    def messages(self) -> list[Message]:
        return self.session.messages

    @property
    def is_busy(self) -> bool:
        return self._state is not ChatState.IDLE

    # ------------------------------------------------------------------
    # Exchange
    # ------------------------------------------------------------------

    async def send(
        self,
        text: str,
        knowledge: Iterable[ContextSnippet] = (),
        open_documents: Iterable[ContextSnippet] = (),
        mentioned: Iterable[ContextSnippet] = (),
        model: str | None = None,
    ) -> Message | None:
        """Send *text* and stream the reply into the session.

        Returns the finalized assistant message, or ``None`` when nothing
        was sent or the exchange failed (see ``error``).
        """
        if not text or not text.strip():
            return None
        if self.is_busy:
            _logger.warning("send() ignored: exchange already in progress (%s)", self._state.value)
            return None

        await self._set_state(ChatState.SENDING)
        self.error = None
        self.session.messages.append(Message(role=Role.USER, content=text.strip()))
        self.session.touch()
        await self._publish()

        try:
            provider = self._resolve_provider()
        except ConfigurationError as e:
            await self._fail(e)
            return None

        history = [m.to_wire() for m in self.session.messages]
        context = PromptContext(
            knowledge=list(knowledge),
            open_documents=list(open_documents),
            mentioned=list(mentioned),
        )
        outgoing = build_messages(history, context, self._config.context_char_budget)

        token = CancelToken()
        self._cancel = token
        loop = asyncio.get_running_loop()
        timer = loop.call_later(
            self._config.chat_timeout,
            functools.partial(token.cancel, timed_out=True),
        )

        placeholder = Message(role=Role.ASSISTANT, generating=True)
        self.session.messages.append(placeholder)
        self.session.refresh_title()
        await self._set_state(ChatState.STREAMING)
        await self._emit(EventType.CHAT_STARTED, {
            "provider": provider.id,
            "session_id": self.session.id,
        })

        options = ChatOptions(
            model=model,
            temperature=self._config.temperature,
            cancel=token,
        )
        try:
            await self._consume(provider, outgoing, options, placeholder)
        except CancelledError as e:
            self._finalize(placeholder)
            if e.timed_out:
                self.error = TIMEOUT_MESSAGE
            await self._publish()
            await self._emit(EventType.CHAT_CANCELLED, {"timed_out": e.timed_out})
            await self._set_state(ChatState.IDLE)
            return None
        except AIError as e:
            self._finalize(placeholder)
            await self._fail(e)
            return None
        except asyncio.CancelledError:
            self._finalize(placeholder)
            self._state = ChatState.IDLE
            raise
        except Exception as e:
            _logger.exception("Unexpected failure while streaming from %s", provider.id)
            self._finalize(placeholder)
            await self._fail(AIError(f"Unexpected error: {e}"))
            return None
        finally:
            timer.cancel()
            self._cancel = None

        self._finalize(placeholder)
        self.session.touch()
        await self._publish()
        await self._set_state(ChatState.IDLE)
        await self._emit(EventType.CHAT_DONE, {
            "session_id": self.session.id,
            "content_length": len(placeholder.content),
        })
        await self._persist()
        return placeholder

    def cancel(self) -> bool:
        """Abort the running exchange.  A no-op when nothing is running."""
        token = self._cancel
        if token is None:
            return False
        return token.cancel()

    async def request_image(self, text: str) -> Message | None:
        """Handle an image command: append the request and the generated image."""
        prompt = extract_image_prompt(text)
        if not prompt:
            return None
        if self.is_busy:
            _logger.warning("request_image() ignored: exchange already in progress")
            return None

        await self._set_state(ChatState.SENDING)
        self.error = None
        self.session.messages.append(Message(role=Role.USER, content=text.strip()))
        placeholder = Message(role=Role.ASSISTANT, generating=True)
        self.session.messages.append(placeholder)
        self.session.refresh_title()
        await self._publish()

        token = CancelToken()
        self._cancel = token
        try:
            result = await self._image_generator(prompt, token)
            token.raise_if_cancelled()
        except CancelledError as e:
            self._finalize(placeholder)
            if e.timed_out:
                self.error = e.user_message
            await self._publish()
            await self._emit(EventType.CHAT_CANCELLED, {"timed_out": e.timed_out})
            await self._set_state(ChatState.IDLE)
            return None
        except AIError as e:
            self._finalize(placeholder)
            await self._fail(e)
            return None
        except asyncio.CancelledError:
            self._finalize(placeholder)
            self._state = ChatState.IDLE
            raise
        except Exception as e:
            _logger.exception("Unexpected failure while generating an image")
            self._finalize(placeholder)
            await self._fail(AIError(f"Unexpected error: {e}"))
            return None
        finally:
            self._cancel = None

        placeholder.image = result
        placeholder.content = f"Generated image for: {result.prompt}"
        self._finalize(placeholder)
        self.session.touch()
        await self._publish()
        await self._set_state(ChatState.IDLE)
        await self._persist()
        return placeholder

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    def new_chat(self) -> ChatSession:
        """Start a fresh session; any running exchange is cancelled."""
        self.cancel()
        self.session = ChatSession()
        self.error = None
        return self.session

    def clear(self) -> None:
        self.cancel()
        self.session.messages.clear()
        self.session.title = "New Chat"
        self.error = None

    def load_session(self, session: ChatSession) -> None:
        self.cancel()
        self.session = session
        self.error = None

    def rate_message(self, index: int, rating: str) -> str | None:
        """Toggle an ``"up"``/``"down"`` rating on an assistant message."""
        if rating not in ("up", "down"):
            raise ValueError(f"Invalid rating: {rating!r}")
        msg = self.session.messages[index]
        if msg.role is not Role.ASSISTANT or msg.generating:
            raise ValueError("Only finished assistant messages can be rated")
        msg.rating = None if msg.rating == rating else rating
        return msg.rating

    def update_message(self, index: int, **fields: Any) -> Message:
        """Overwrite fields of a stored message, e.g. after an inline edit."""
        msg = self.session.messages[index]
        if msg.generating:
            raise ValueError("Cannot edit a message that is still streaming")
        for name in fields:
            if name in ("role", "generating") or not hasattr(msg, name):
                raise ValueError(f"Cannot update message field {name!r}")
        for name, value in fields.items():
            setattr(msg, name, value)
        self.session.touch()
        return msg

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve_provider(self) -> ChatProvider:
        provider_id = self._config.provider
        provider = self._provider_factory(
            provider_id,
            self._config.provider_config(provider_id),
            client=self._client,
        )
        if not provider.is_configured():
            raise ConfigurationError(
                f"Missing {provider.name} API key. Please configure it in Settings > AI Models."
            )
        return provider

    async def _consume(
        self,
        provider: ChatProvider,
        outgoing: list[dict[str, Any]],
        options: ChatOptions,
        placeholder: Message,
    ) -> None:
        token = options.cancel
        stream = provider.stream_chat(outgoing, options)
        try:
            async for chunk in stream:
                if token is not None and token.cancelled:
                    break
                placeholder.content += chunk
                await self._publish(chunk)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        if token is not None:
            token.raise_if_cancelled()

    def _finalize(self, placeholder: Message) -> None:
        placeholder.generating = False
        if not placeholder.content and placeholder.image is None:
            try:
                self.session.messages.remove(placeholder)
            except ValueError:
                pass

    async def _fail(self, error: AIError) -> None:
        _logger.warning("Chat exchange failed: %s", error)
        self.error = error.user_message
        await self._set_state(ChatState.ERROR)
        await self._emit(EventType.CHAT_ERROR, {
            "error": self.error,
            "kind": type(error).__name__,
        })
        await self._publish()
        await self._set_state(ChatState.IDLE)

    async def _set_state(self, state: ChatState) -> None:
        self._state = state
        await self._emit(EventType.CHAT_STATE, {"state": state.value})

    async def _publish(self, token: str | None = None) -> None:
        if token is not None:
            await self._emit(EventType.CHAT_STREAMING, {
                "token": token,
                "content": self.session.messages[-1].content,
            })
        if self._on_update is not None:
            result = self._on_update(list(self.session.messages))
            if asyncio.iscoroutine(result):
                await result

    async def _persist(self) -> None:
        if self._store is None:
            return
        try:
            await self._store.save(self.session)
        except Exception:
            _logger.exception("Failed to persist chat session %s", self.session.id)

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        await self._event_bus.emit(AIEvent(type=event_type, data=data))

    async def _default_image_generator(self, prompt: str, cancel: CancelToken) -> ImageResult:
        image_cfg = self._config.image
        return await generate_image_with_retry(
            prompt,
            api_key=image_cfg.api_key or None,
            timeout=image_cfg.timeout,
            max_retries=image_cfg.max_retries,
            backoff_base=image_cfg.backoff_base,
            client=self._client,
            cancel=cancel,
        )
