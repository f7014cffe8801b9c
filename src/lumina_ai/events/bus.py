"""Ordered pub/sub for chat and embedding-model events.

Subscriptions name a single ``EventType``, an event family (``"chat"`` or
``"model"``, matching the prefix of ``EventType`` values) or ``"*"``.
Handlers run one at a time in subscription order and ``emit()`` returns only
after the last one has finished, so a handler on ``CHAT_STREAMING`` sees
tokens exactly in the order the orchestrator appended them, even when an
earlier handler suspends.
"""

from __future__ import annotations

import inspect
import logging
from collections import deque
from typing import Any, Callable, Union

from lumina_ai.types import AIEvent, EventType

_logger = logging.getLogger(__name__)

ALL = "*"
FAMILIES = frozenset(t.value.split(".", 1)[0] for t in EventType)

Handler = Callable[[AIEvent], Any]
Topic = Union[EventType, str]
Unsubscribe = Callable[[], None]


def topic_key(topic: Topic) -> str:
    """Normalise *topic* to ``"*"``, a family name or an event type value."""
    if isinstance(topic, EventType):
        return topic.value
    if topic == ALL or topic in FAMILIES:
        return topic
    try:
        return EventType(topic).value
    except ValueError:
        raise ValueError(f"Unknown event topic: {topic!r}") from None


def matches(key: str, event_type: EventType) -> bool:
    if key == ALL or key == event_type.value:
        return True
    return event_type.value.startswith(key + ".")


class EventBus:
    """Sequential async event bus with a bounded replay history.

    Handlers may be sync or async.  A handler that raises is logged and
    skipped; delivery continues with the next subscriber.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._subscriptions: list[tuple[str, Handler]] = []
        self._history: deque[AIEvent] = deque(maxlen=max_history)

    def subscribe(self, topic: Topic, handler: Handler) -> Unsubscribe:
        """Register *handler* for *topic*.  Returns a callable that undoes it."""
        entry = (topic_key(topic), handler)
        self._subscriptions.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscriptions:
                self._subscriptions.remove(entry)

        return unsubscribe

    def on_chat(self, handler: Handler) -> Unsubscribe:
        """Receive every ``CHAT_*`` event."""
        return self.subscribe("chat", handler)

    def on_model(self, handler: Handler) -> Unsubscribe:
        """Receive every ``MODEL_*`` readiness event."""
        return self.subscribe("model", handler)

    def unsubscribe(self, topic: Topic, handler: Handler) -> None:
        entry = (topic_key(topic), handler)
        if entry in self._subscriptions:
            self._subscriptions.remove(entry)

    async def emit(self, event: AIEvent) -> None:
        self._history.append(event)
        for key, handler in list(self._subscriptions):
            if matches(key, event.type):
                await self._deliver(handler, event)

    def history(self, topic: Topic = ALL) -> list[AIEvent]:
        """Recorded events for *topic*, oldest first."""
        key = topic_key(topic)
        return [e for e in self._history if matches(key, e.type)]

    def last(self, topic: Topic = ALL) -> AIEvent | None:
        key = topic_key(topic)
        for event in reversed(self._history):
            if matches(key, event.type):
                return event
        return None

    def clear(self) -> None:
        self._subscriptions.clear()
        self._history.clear()

    @staticmethod
    async def _deliver(handler: Handler, event: AIEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "Handler %s failed on %s",
                getattr(handler, "__name__", handler),
                event.type.value,
            )
