"""Utility functions and constants for cortex core."""

import json
import logging
import math
from typing import Any

from cortex.types import Memory

logger = logging.getLogger(__name__)

# Maximum token budget allowed
MAX_TOKEN_BUDGET = 50000

# Minimum token budget allowed
MIN_TOKEN_BUDGET = 1

# Maximum characters of a one-line summary at compression level 1
DEFAULT_MAX_LINE_CHARS = 200

# Compression levels, least to most detail
COMPRESSION_ID_ONLY = 0
COMPRESSION_SUMMARY = 1
COMPRESSION_EXAMPLE = 2
COMPRESSION_FULL = 3
COMPRESSION_LEVELS = (COMPRESSION_ID_ONLY, COMPRESSION_SUMMARY, COMPRESSION_EXAMPLE, COMPRESSION_FULL)

# Knowledge keys tried, in order, for the example line at level 2
_EXAMPLE_KEYS = (
    "examples",
    "good_example",
    "bad_example",
    "steps",
    "knowledge",
    "rationale",
    "reason",
    "resolution",
    "interaction",
)


def estimate_tokens(text: str) -> int:
    """Estimate token count from text: one token per 4 characters, at least 1."""
    if not text:
        return 1
    return max(1, math.ceil(len(text) / 4))


def truncate_at_word_boundary(text: str, max_chars: int) -> str:
    """Truncate text at a word boundary with ellipsis."""
    if not text or len(text) <= max_chars:
        return text
    target = max_chars - 3
    if target <= 0:
        return "..."
    cut = text[:target]
    space = cut.rfind(" ")
    if space > target // 2:
        cut = cut[:space]
    return cut.rstrip() + "..."


def _value_text(value: Any) -> str:
    if isinstance(value, list):
        parts = []
        for item in value:
            if isinstance(item, dict):
                parts.append(str(item.get("action") or json.dumps(item, sort_keys=True)))
            else:
                parts.append(str(item))
        return "; ".join(parts)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def example_line(memory: Memory) -> str:
    """The most illustrative single line of a memory's knowledge."""
    knowledge = memory.knowledge or {}
    for key in _EXAMPLE_KEYS:
        value = knowledge.get(key)
        if value:
            if isinstance(value, list):
                value = value[0]
            return truncate_at_word_boundary(_value_text(value).splitlines()[0], DEFAULT_MAX_LINE_CHARS)
    for key in sorted(knowledge):
        if knowledge[key]:
            return truncate_at_word_boundary(
                f"{key}: {_value_text(knowledge[key])}".splitlines()[0], DEFAULT_MAX_LINE_CHARS
            )
    return "(no detail)"


def render_memory(memory: Memory, level: int = COMPRESSION_SUMMARY) -> str:
    """Render a memory at a compression level.

    0: ``[kind:id]``; 1: adds the one-line summary; 2: adds an example line;
    3: adds the full knowledge and tags. Each level extends the previous
    one, so its token estimate is strictly larger.
    """
    if level not in COMPRESSION_LEVELS:
        raise ValueError(f"compression level must be one of {COMPRESSION_LEVELS}, got {level}")

    text = f"[{memory.kind.value}:{memory.id}]"
    if level == COMPRESSION_ID_ONLY:
        return text

    summary = (memory.summary or "").strip().splitlines()
    line = truncate_at_word_boundary(summary[0], DEFAULT_MAX_LINE_CHARS) if summary else ""
    text += f"\n  {line or '(no summary)'}"
    if level == COMPRESSION_SUMMARY:
        return text

    text += f"\n  example: {example_line(memory)}"
    if level == COMPRESSION_EXAMPLE:
        return text

    lines = [f"    {key}: {_value_text(memory.knowledge[key])}" for key in sorted(memory.knowledge)]
    text += "\n  knowledge:"
    if lines:
        text += "\n" + "\n".join(lines)
    text += f"\n  tags: {', '.join(sorted(memory.tags)) or '-'}"
    return text


def memory_tokens(memory: Memory, level: int = COMPRESSION_SUMMARY) -> int:
    return estimate_tokens(render_memory(memory, level))
