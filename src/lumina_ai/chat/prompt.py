"""System prompt assembly.

The system message is the static persona followed by up to three optional
context sections.  Every snippet is truncated to a per-item character
budget so that attaching many notes cannot grow the prompt without bound.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from lumina_ai.types import ContextSnippet

PERSONA = """You are Lumina AI, an intelligent knowledge assistant inside a modern Markdown editor. You help users with writing, coding, and organizing thoughts.
You are capable of:
- **Code & Tech**: Explaining, debugging, and refactoring code.
- **Content Creation**: Drafting, editing, and polishing markdown notes.
- **Knowledge Management**: Summarizing and structuring complex ideas.

Be concise, helpful, and use beautiful Markdown formatting."""

DEFAULT_ITEM_BUDGET = 2000


def _render_section(label: str, snippets: Iterable[ContextSnippet], budget: int) -> str:
    blocks = []
    for snip in snippets:
        content = (snip.content or "")[:budget]
        blocks.append(f"--- [{snip.title}] ---\n{content}")
    if not blocks:
        return ""
    return f"## {label}\n\n" + "\n\n".join(blocks)


@dataclass
class PromptContext:
    """Context sections attached to one outgoing request."""

    knowledge: list[ContextSnippet] = field(default_factory=list)
    open_documents: list[ContextSnippet] = field(default_factory=list)
    mentioned: list[ContextSnippet] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.knowledge or self.open_documents or self.mentioned)


def build_system_prompt(
    context: PromptContext | None = None,
    item_budget: int = DEFAULT_ITEM_BUDGET,
    persona: str = PERSONA,
) -> str:
    parts = [persona]
    if context is not None:
        for label, snippets in (
            ("Relevant Knowledge", context.knowledge),
            ("Open Documents", context.open_documents),
            ("Mentioned Documents", context.mentioned),
        ):
            section = _render_section(label, snippets, item_budget)
            if section:
                parts.append(section)
    return "\n\n".join(parts)


def build_messages(
    history: Iterable[dict[str, Any]],
    context: PromptContext | None = None,
    item_budget: int = DEFAULT_ITEM_BUDGET,
) -> list[dict[str, Any]]:
    """Prepend the system message to the wire-format history."""
    system = {"role": "system", "content": build_system_prompt(context, item_budget)}
    return [system, *history]
