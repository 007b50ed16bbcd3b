"""cortex core: the MemoryEngine class and its operation mixins.

Public names are re-exported here:
    from cortex.core import MemoryEngine
    from cortex.core import estimate_tokens, render_memory
    from cortex.core import MAX_TOKEN_BUDGET, MIN_TOKEN_BUDGET
"""

from cortex.core.engine import MemoryEngine
from cortex.core.scheduler import MaintenanceScheduler, ScheduledJob
from cortex.core.utils import (
    COMPRESSION_EXAMPLE,
    COMPRESSION_FULL,
    COMPRESSION_ID_ONLY,
    COMPRESSION_LEVELS,
    COMPRESSION_SUMMARY,
    MAX_TOKEN_BUDGET,
    MIN_TOKEN_BUDGET,
    estimate_tokens,
    memory_tokens,
    render_memory,
    truncate_at_word_boundary,
)
from cortex.core.validation import sanitize_list, sanitize_number, sanitize_string

__all__ = [
    "MemoryEngine",
    "MaintenanceScheduler",
    "ScheduledJob",
    # Constants
    "COMPRESSION_ID_ONLY",
    "COMPRESSION_SUMMARY",
    "COMPRESSION_EXAMPLE",
    "COMPRESSION_FULL",
    "COMPRESSION_LEVELS",
    "MAX_TOKEN_BUDGET",
    "MIN_TOKEN_BUDGET",
    # Functions
    "estimate_tokens",
    "memory_tokens",
    "render_memory",
    "truncate_at_word_boundary",
    "sanitize_list",
    "sanitize_number",
    "sanitize_string",
]
