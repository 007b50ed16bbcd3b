"""
Cortex - Persistent memory for coding agents.

Typed memories that decay, contradict, consolidate and link causally,
retrieved under a token budget.
"""

from .config import CortexConfig
from .core import MaintenanceScheduler, MemoryEngine
from .protocols import (
    ConsolidationAlreadyInProgress,
    CortexError,
    EmbeddingProvider,
    EmbeddingProviderUnavailable,
    InvalidKindError,
    MemoryNotFoundError,
    StorageIOFailure,
    ValidationFailure,
)
from .types import (
    CausalLink,
    Importance,
    Intent,
    Memory,
    MemoryFilter,
    MemoryKind,
    Relation,
)

try:
    from importlib.metadata import version

    __version__ = version("cortex-memory")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    "MemoryEngine",
    "MaintenanceScheduler",
    "CortexConfig",
    # Types
    "CausalLink",
    "Importance",
    "Intent",
    "Memory",
    "MemoryFilter",
    "MemoryKind",
    "Relation",
    # Errors
    "CortexError",
    "ConsolidationAlreadyInProgress",
    "EmbeddingProvider",
    "EmbeddingProviderUnavailable",
    "InvalidKindError",
    "MemoryNotFoundError",
    "StorageIOFailure",
    "ValidationFailure",
]
