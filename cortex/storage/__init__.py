"""cortex storage backend.

Local-first storage using SQLite, with optional sqlite-vec vector scoring
and pluggable embedding providers.
"""

from .embeddings import (
    HASH_EMBEDDING_DIM,
    Embedder,
    HashEmbedder,
    OpenAIEmbedder,
    TimeoutEmbedder,
    clear_embedder_cache,
    cosine_similarity,
    get_default_embedder,
    pack_embedding,
    unpack_embedding,
)
from .sqlite import SQLiteStorage

__all__ = [
    "Embedder",
    "HASH_EMBEDDING_DIM",
    "HashEmbedder",
    "OpenAIEmbedder",
    "SQLiteStorage",
    "TimeoutEmbedder",
    "clear_embedder_cache",
    "cosine_similarity",
    "get_default_embedder",
    "pack_embedding",
    "unpack_embedding",
]
