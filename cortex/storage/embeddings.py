"""Embedding providers for cortex.

- HashEmbedder: local, deterministic, no dependencies. Character n-grams plus
  whole words hashed into a fixed-size unit vector. Good enough for
  near-duplicate and topical matching.
- OpenAIEmbedder: remote embeddings through the ``openai`` SDK (optional).
- TimeoutEmbedder: wraps any provider with a bounded call time and turns
  every failure into EmbeddingProviderUnavailable.
"""

import hashlib
import logging
import math
import os
import struct
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import List, Optional, Sequence, Tuple

from cortex.protocols import EmbeddingProvider, EmbeddingProviderUnavailable

logger = logging.getLogger(__name__)

HASH_EMBEDDING_DIM = 384

OPENAI_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class Embedder:
    """Base class for embedding providers."""

    @property
    def dimension(self) -> int:
        raise NotImplementedError

    @property
    def name(self) -> str:
        return type(self).__name__

    def embed(self, text: str) -> List[float]:
        raise NotImplementedError

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [self.embed(t) for t in texts]


class HashEmbedder(Embedder):
    """Feature-hashing embedder over character n-grams and words."""

    def __init__(self, dim: int = HASH_EMBEDDING_DIM, ngram_range: Tuple[int, int] = (2, 3)):
        self._dim = dim
        self.ngram_range = ngram_range

    @property
    def dimension(self) -> int:
        return self._dim

    @property
    def name(self) -> str:
        return f"hash-{self._dim}"

    def _get_ngrams(self, text: str) -> List[str]:
        text = text.lower().strip()
        if not text:
            return []
        features = []
        lo, hi = self.ngram_range
        for n in range(lo, hi + 1):
            for i in range(len(text) - n + 1):
                features.append(text[i : i + n])
        features.extend(text.split())
        return features

    def embed(self, text: str) -> List[float]:
        vec = [0.0] * self._dim
        for feature in self._get_ngrams(text or ""):
            digest = hashlib.md5(feature.encode("utf-8")).digest()
            index = int.from_bytes(digest[:4], "little") % self._dim
            sign = 1.0 if digest[4] & 1 else -1.0
            vec[index] += sign
        norm = math.sqrt(sum(v * v for v in vec))
        if norm == 0:
            return vec
        return [v / norm for v in vec]


class OpenAIEmbedder(Embedder):
    """Embeddings from the OpenAI API. The SDK is imported lazily."""

    def __init__(self, model: str = "text-embedding-3-small", api_key: Optional[str] = None):
        self.model = model
        self.api_key = api_key
        self._client = None

    @property
    def dimension(self) -> int:
        return OPENAI_DIMENSIONS.get(self.model, 1536)

    @property
    def name(self) -> str:
        return f"openai-{self.model}"

    def _get_client(self):
        if self._client is None:
            try:
                import openai
            except ImportError:
                raise RuntimeError("openai package not installed. Run: pip install openai")
            self._client = openai.OpenAI(api_key=self.api_key)
        return self._client

    def embed(self, text: str) -> List[float]:
        client = self._get_client()
        response = client.embeddings.create(model=self.model, input=text)
        return list(response.data[0].embedding)

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        client = self._get_client()
        response = client.embeddings.create(model=self.model, input=texts)
        return [list(item.embedding) for item in response.data]


class TimeoutEmbedder(Embedder):
    """Bounds every provider call and normalises failures.

    The provider runs on a single worker thread. A call that does not finish
    within ``timeout`` seconds is abandoned (the worker finishes it in the
    background) and EmbeddingProviderUnavailable is raised.
    """

    def __init__(self, provider: EmbeddingProvider, timeout: float = 2.0):
        self.provider = provider
        self.timeout = timeout
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    @property
    def dimension(self) -> int:
        return self.provider.dimension

    @property
    def name(self) -> str:
        return self.provider.name

    def _submit(self, fn, arg):
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="cortex-embed"
                )
            future = self._executor.submit(fn, arg)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            raise EmbeddingProviderUnavailable(
                f"{self.name} did not respond within {self.timeout}s"
            ) from None
        except EmbeddingProviderUnavailable:
            raise
        except Exception as e:
            raise EmbeddingProviderUnavailable(f"{self.name} failed: {e}") from e

    def embed(self, text: str) -> List[float]:
        return self._submit(self.provider.embed, text)

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return self._submit(self.provider.embed_batch, texts)

    def close(self) -> None:
        with self._lock:
            if self._executor is not None:
                self._executor.shutdown(wait=False)
                self._executor = None


# Cached result of the OpenAI availability check
_openai_available: Optional[bool] = None


def get_default_embedder() -> Embedder:
    """OpenAI when a key is configured and reachable, else the hash embedder."""
    global _openai_available

    if _openai_available is False:
        return HashEmbedder()

    api_key = os.environ.get("OPENAI_API_KEY")
    if not api_key:
        return HashEmbedder()

    embedder = OpenAIEmbedder(api_key=api_key)
    if _openai_available is None:
        try:
            embedder.embed("test")
            _openai_available = True
        except Exception as e:
            logger.warning(f"OpenAI embeddings unavailable, using hash embedder: {e}")
            _openai_available = False
            return HashEmbedder()
    return embedder


def clear_embedder_cache() -> None:
    global _openai_available
    _openai_available = None


def pack_embedding(embedding: Sequence[float]) -> bytes:
    """Pack floats as little-endian float32, the layout sqlite-vec reads."""
    return struct.pack(f"<{len(embedding)}f", *embedding)


def unpack_embedding(data: bytes) -> List[float]:
    count = len(data) // 4
    return list(struct.unpack(f"<{count}f", data))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for mismatched or zero vectors."""
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
