"""Provider adapters and stream decoding for the Lumina AI core."""

from lumina_ai.llm.providers import (
    AnthropicProvider,
    ChatProvider,
    DeepSeekProvider,
    OllamaProvider,
    OpenAIProvider,
)
from lumina_ai.llm.registry import available_providers, create_provider
from lumina_ai.llm.stream import StreamMode, decode_stream

__all__ = [
    "AnthropicProvider",
    "ChatProvider",
    "DeepSeekProvider",
    "OllamaProvider",
    "OpenAIProvider",
    "StreamMode",
    "available_providers",
    "create_provider",
    "decode_stream",
]
