"""Shared data types for the Lumina AI core."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from lumina_ai.cancel import CancelToken


# ---------------------------------------------------------------------------
# Chat types
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass
class ImageResult:
    """A generated image, already encoded as a data URL."""

    image_url: str
    prompt: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class Message:
    """One chat message.

    ``generating`` is ``True`` only for the assistant placeholder that is
    being filled by an active stream.
    """

    role: Role
    content: str = ""
    rating: str | None = None  # "up" | "down"
    image: ImageResult | None = None
    generating: bool = False

    def to_wire(self) -> dict[str, str]:
        """Provider-agnostic ``{role, content}`` form."""
        return {"role": self.role.value, "content": self.content}


_TITLE_MAX_CHARS = 40


@dataclass
class ChatSession:
    """An ordered conversation."""

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    title: str = "New Chat"
    messages: list[Message] = field(default_factory=list)
    updated_at: float = field(default_factory=time.time)

    def touch(self) -> None:
        self.updated_at = time.time()

    def refresh_title(self) -> None:
        """Derive the title from the first user message once the chat has a reply."""
        if len(self.messages) <= 1:
            return
        for msg in self.messages:
            if msg.role is Role.USER and msg.content.strip():
                text = " ".join(msg.content.split())
                if len(text) > _TITLE_MAX_CHARS:
                    text = text[:_TITLE_MAX_CHARS].rstrip() + "..."
                self.title = text
                return


@dataclass
class ContextSnippet:
    """A titled piece of note content injected into the system prompt."""

    title: str
    content: str


@dataclass
class ChatOptions:
    """Per-request generation options."""

    model: str | None = None
    temperature: float = 0.7
    max_tokens: int = 4096
    cancel: CancelToken | None = None


# ---------------------------------------------------------------------------
# Embedding types
# ---------------------------------------------------------------------------

@dataclass
class ModelStatus:
    """Process-wide readiness of the embedding model."""

    progress: float = 0.0
    ready: bool = False
    error: str | None = None


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Event types published by the AI core."""

    # Chat lifecycle
    CHAT_STARTED = "chat.started"
    CHAT_STREAMING = "chat.streaming"
    CHAT_DONE = "chat.done"
    CHAT_ERROR = "chat.error"
    CHAT_CANCELLED = "chat.cancelled"
    CHAT_STATE = "chat.state"

    # Embedding model
    MODEL_PROGRESS = "model.progress"
    MODEL_READY = "model.ready"
    MODEL_ERROR = "model.error"


@dataclass
class AIEvent:
    """Event emitted by the AI core via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
