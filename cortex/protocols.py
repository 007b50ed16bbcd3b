"""
cortex Protocol Definitions
===========================

Interface contracts and the error taxonomy shared by every cortex layer.

Protocol version: 1

Layers and their roles:
- Storage:   The persistent store. Memories, causal links, sessions, records.
- Features:  Decay, causal graph, contradictions, validation, consolidation,
             retrieval, learning, prediction. Mixed into the engine.
- Embedder:  A pluggable text-to-vector provider. Optional. Its absence (or
             failure) degrades search to lexical matching.
- Engine:    The in-process facade (``cortex.MemoryEngine``) callers use.

Error handling philosophy:
- Unknown kinds at the boundary raise InvalidKindError (a ValueError)
- Malformed payloads and bad inputs raise ValidationFailure (a ValueError)
  before anything is persisted
- Lookups of unknown ids return None; only ``update`` raises MemoryNotFoundError
- Confidence values are clamped, never rejected
- Embedding failures are logged and swallowed into a lexical fallback
- Storage failures raise StorageIOFailure and are never swallowed
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

# =============================================================================
# PROTOCOL VERSION
# =============================================================================

PROTOCOL_VERSION = 1


# =============================================================================
# ERRORS
# =============================================================================


class CortexError(Exception):
    """Base for all cortex errors."""

    pass


class InvalidKindError(CortexError, ValueError):
    """Raised when a memory kind is not one of the known kinds."""

    def __init__(self, kind: object):
        super().__init__(f"Invalid memory kind: {kind!r}")
        self.kind = kind


class ValidationFailure(CortexError, ValueError):
    """Raised when a memory payload or an argument fails validation.

    Always raised before any persistence happens.
    """

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class MemoryNotFoundError(CortexError, KeyError):
    """Raised by update when the target memory does not exist."""

    def __init__(self, memory_id: str):
        super().__init__(memory_id)
        self.memory_id = memory_id

    def __str__(self) -> str:
        return f"Memory not found: {self.memory_id}"


class EmbeddingProviderUnavailable(CortexError):
    """Raised when the embedding provider fails or times out.

    Non-fatal. Callers log it and fall back to lexical matching.
    """

    pass


class ConsolidationAlreadyInProgress(CortexError):
    """Raised when a consolidation pass is already running."""

    pass


class StorageIOFailure(CortexError):
    """Raised by the store when the underlying database fails. Fatal."""

    pass


# =============================================================================
# EMBEDDING PROVIDER
# =============================================================================


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Interface for text-to-vector providers.

    Implementations: HashEmbedder (local, deterministic),
    OpenAIEmbedder (remote), TimeoutEmbedder (wrapper).
    """

    @property
    def dimension(self) -> int:
        """Length of every vector this provider returns."""
        ...

    @property
    def name(self) -> str:
        """Stable identifier, stored next to each embedding."""
        ...

    def embed(self, text: str) -> list[float]:
        """Embed one text. Raises on failure."""
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts in order."""
        ...
