"""Tests for system prompt assembly."""

from lumina_ai.chat.prompt import (
    PERSONA,
    PromptContext,
    build_messages,
    build_system_prompt,
)
from lumina_ai.types import ContextSnippet


class TestBuildSystemPrompt:
    def test_persona_only(self):
        assert build_system_prompt() == PERSONA
        assert build_system_prompt(PromptContext()) == PERSONA

    def test_section_order(self):
        ctx = PromptContext(
            knowledge=[ContextSnippet("K", "k body")],
            open_documents=[ContextSnippet("O", "o body")],
            mentioned=[ContextSnippet("M", "m body")],
        )
        prompt = build_system_prompt(ctx)
        k = prompt.index("## Relevant Knowledge")
        o = prompt.index("## Open Documents")
        m = prompt.index("## Mentioned Documents")
        assert prompt.startswith(PERSONA)
        assert k < o < m

    def test_snippet_format(self):
        ctx = PromptContext(open_documents=[ContextSnippet("Daily.md", "hello")])
        prompt = build_system_prompt(ctx)
        assert "## Open Documents\n\n--- [Daily.md] ---\nhello" in prompt

    def test_empty_sections_omitted(self):
        ctx = PromptContext(mentioned=[ContextSnippet("M", "x")])
        prompt = build_system_prompt(ctx)
        assert "Relevant Knowledge" not in prompt
        assert "Open Documents" not in prompt
        assert "Mentioned Documents" in prompt

    def test_each_item_truncated(self):
        ctx = PromptContext(knowledge=[
            ContextSnippet("A", "a" * 5000),
            ContextSnippet("B", "b" * 5000),
        ])
        prompt = build_system_prompt(ctx, item_budget=2000)
        assert "a" * 2000 in prompt
        assert "a" * 2001 not in prompt
        assert "b" * 2000 in prompt
        assert "b" * 2001 not in prompt

    def test_custom_budget(self):
        ctx = PromptContext(knowledge=[ContextSnippet("A", "0123456789")])
        assert build_system_prompt(ctx, item_budget=4).endswith("--- [A] ---\n0123")


class TestBuildMessages:
    def test_system_first_then_history(self):
        history = [
            {"role": "user", "content": "q1"},
            {"role": "assistant", "content": "a1"},
            {"role": "user", "content": "q2"},
        ]
        msgs = build_messages(history)
        assert msgs[0]["role"] == "system"
        assert msgs[1:] == history

    def test_history_not_mutated(self):
        history = [{"role": "user", "content": "q"}]
        build_messages(history, PromptContext(knowledge=[ContextSnippet("K", "x")]))
        assert history == [{"role": "user", "content": "q"}]


def test_prompt_context_is_empty():
    assert PromptContext().is_empty
    assert not PromptContext(knowledge=[ContextSnippet("a", "b")]).is_empty
