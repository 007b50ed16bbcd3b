"""Tests for cortex.core.utils rendering helpers."""

import pytest

from cortex.core.utils import (
    COMPRESSION_LEVELS,
    estimate_tokens,
    example_line,
    memory_tokens,
    render_memory,
    truncate_at_word_boundary,
)
from cortex.types import Memory, MemoryKind


def _procedure(**knowledge):
    knowledge = knowledge or {"name": "deploy", "steps": ["build", {"action": "push"}]}
    return Memory(
        kind=MemoryKind.PROCEDURAL,
        summary="How to deploy: build; push",
        knowledge=knowledge,
        id="p1",
        tags={"ops", "ci"},
    )


class TestRenderMemory:
    def test_levels(self):
        memory = _procedure()
        assert render_memory(memory, 0) == "[procedural:p1]"
        assert render_memory(memory, 1) == "[procedural:p1]\n  How to deploy: build; push"
        assert render_memory(memory, 2) == (
            "[procedural:p1]\n  How to deploy: build; push\n  example: build"
        )
        assert render_memory(memory, 3) == (
            "[procedural:p1]\n  How to deploy: build; push\n  example: build\n"
            "  knowledge:\n    name: deploy\n    steps: build; push\n  tags: ci, ops"
        )

    def test_token_estimate_grows_with_level(self):
        memory = _procedure()
        tokens = [memory_tokens(memory, level) for level in COMPRESSION_LEVELS]
        assert tokens == sorted(tokens)
        assert len(set(tokens)) == len(tokens)

    def test_missing_summary(self):
        memory = _procedure()
        memory.summary = ""
        assert render_memory(memory, 1).endswith("\n  (no summary)")

    def test_long_summary_is_truncated(self):
        memory = _procedure()
        memory.summary = "word " * 100
        line = render_memory(memory, 1).splitlines()[1].strip()
        assert line.endswith("...")
        assert len(line) <= 200

    def test_invalid_level(self):
        with pytest.raises(ValueError):
            render_memory(_procedure(), 4)


class TestExampleLine:
    def test_prefers_examples_key_order(self):
        memory = _procedure(name="x", steps=["one"], good_example="use_pool()")
        assert example_line(memory) == "use_pool()"

    def test_falls_back_to_any_key(self):
        memory = _procedure(name="deploy")
        assert example_line(memory) == "name: deploy"

    def test_empty_knowledge(self):
        memory = _procedure()
        memory.knowledge = {}
        assert example_line(memory) == "(no detail)"

    def test_only_first_line(self):
        memory = _procedure(knowledge="first line\nsecond line")
        assert example_line(memory) == "first line"


class TestTextHelpers:
    def test_estimate_tokens(self):
        assert estimate_tokens("x" * 8) == 2
        assert estimate_tokens("x" * 9) == 3

    def test_truncate_tiny_budget(self):
        assert truncate_at_word_boundary("abcdef", 2) == "..."

    def test_truncate_without_spaces(self):
        assert truncate_at_word_boundary("abcdefghij", 8) == "abcde..."
