"""Chat orchestration for the Lumina AI core."""

from lumina_ai.chat.orchestrator import ChatOrchestrator, ChatState, SessionStore
from lumina_ai.chat.prompt import PromptContext, build_messages, build_system_prompt

__all__ = [
    "ChatOrchestrator",
    "ChatState",
    "PromptContext",
    "SessionStore",
    "build_messages",
    "build_system_prompt",
]
