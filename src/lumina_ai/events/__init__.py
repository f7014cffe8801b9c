"""Event bus for the Lumina AI core."""

from lumina_ai.events.bus import EventBus

__all__ = ["EventBus"]
