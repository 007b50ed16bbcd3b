"""Tests for cortex/storage/embeddings.py."""

import math
import struct
import threading
from unittest.mock import MagicMock, patch

import pytest

from cortex.protocols import EmbeddingProvider, EmbeddingProviderUnavailable
from cortex.storage.embeddings import (
    HASH_EMBEDDING_DIM,
    HashEmbedder,
    OpenAIEmbedder,
    TimeoutEmbedder,
    clear_embedder_cache,
    content_hash,
    cosine_similarity,
    get_default_embedder,
    pack_embedding,
    unpack_embedding,
)

# ---------------------------------------------------------------------------
# HashEmbedder
# ---------------------------------------------------------------------------


class TestHashEmbedder:
    def test_dimension_default(self):
        e = HashEmbedder()
        assert e.dimension == HASH_EMBEDDING_DIM
        assert e.name == f"hash-{HASH_EMBEDDING_DIM}"

    def test_embed_custom_dim(self):
        e = HashEmbedder(dim=64)
        assert len(e.embed("hello world")) == 64

    def test_embed_empty_text_returns_zero_vector(self):
        vec = HashEmbedder().embed("   ")
        assert all(v == 0.0 for v in vec)
        assert len(vec) == HASH_EMBEDDING_DIM

    def test_embed_deterministic(self):
        e = HashEmbedder()
        assert e.embed("the quick brown fox") == e.embed("the quick brown fox")

    def test_embed_unit_length(self):
        vec = HashEmbedder().embed("some text for embedding")
        norm = math.sqrt(sum(x * x for x in vec))
        assert abs(norm - 1.0) < 1e-6

    def test_similar_texts_score_higher(self):
        e = HashEmbedder()
        base = e.embed("always use connection pooling")
        near = e.embed("always use connection pools")
        far = e.embed("rotate log files every night")
        assert cosine_similarity(base, near) > cosine_similarity(base, far)

    def test_embed_single_char(self):
        """A single char is shorter than the smallest n-gram, so only the word feature counts."""
        vec = HashEmbedder().embed("a")
        assert any(v != 0.0 for v in vec)

    def test_get_ngrams(self):
        ngrams = HashEmbedder(ngram_range=(2, 3))._get_ngrams("hi there")
        assert "i " in ngrams
        assert "hi " in ngrams
        assert "there" in ngrams

    def test_embed_batch_default(self):
        e = HashEmbedder()
        texts = ["hello", "world"]
        assert e.embed_batch(texts) == [e.embed(t) for t in texts]

    def test_satisfies_provider_protocol(self):
        assert isinstance(HashEmbedder(), EmbeddingProvider)


# ---------------------------------------------------------------------------
# OpenAIEmbedder
# ---------------------------------------------------------------------------


class TestOpenAIEmbedder:
    def test_dimensions(self):
        assert OpenAIEmbedder(model="text-embedding-3-large").dimension == 3072
        assert OpenAIEmbedder(model="some-future-model").dimension == 1536

    def test_get_client_import_error(self):
        e = OpenAIEmbedder()
        with patch.dict("sys.modules", {"openai": None}):
            with pytest.raises(RuntimeError, match="openai package not installed"):
                e._get_client()

    def test_get_client_lazy_init(self):
        """Client is created once and reused."""
        mock_openai = MagicMock()
        e = OpenAIEmbedder(api_key="test-key")
        with patch.dict("sys.modules", {"openai": mock_openai}):
            assert e._get_client() is e._get_client()
            mock_openai.OpenAI.assert_called_once_with(api_key="test-key")

    def test_embed_calls_api_with_correct_params(self):
        e = OpenAIEmbedder(model="text-embedding-3-large")
        mock_client = MagicMock()
        mock_client.embeddings.create.return_value = MagicMock(data=[MagicMock(embedding=[0.1])])
        e._client = mock_client

        assert e.embed("hello world") == [0.1]
        mock_client.embeddings.create.assert_called_once_with(
            model="text-embedding-3-large", input="hello world"
        )

    def test_embed_batch_sends_all_texts(self):
        e = OpenAIEmbedder()
        mock_client = MagicMock()
        mock_client.embeddings.create.return_value = MagicMock(
            data=[MagicMock(embedding=[float(i)]) for i in range(3)]
        )
        e._client = mock_client

        result = e.embed_batch(["x", "y", "z"])
        assert result == [[0.0], [1.0], [2.0]]
        mock_client.embeddings.create.assert_called_once_with(
            model="text-embedding-3-small", input=["x", "y", "z"]
        )


# ---------------------------------------------------------------------------
# TimeoutEmbedder
# ---------------------------------------------------------------------------


class _SlowEmbedder(HashEmbedder):
    def __init__(self, release: threading.Event):
        super().__init__(dim=8)
        self.release = release

    def embed(self, text):
        self.release.wait(5)
        return super().embed(text)


class _BrokenEmbedder(HashEmbedder):
    def embed(self, text):
        raise ConnectionError("connection refused")


class TestTimeoutEmbedder:
    def test_passes_through(self):
        wrapped = TimeoutEmbedder(HashEmbedder(dim=16), timeout=5)
        try:
            assert wrapped.embed("hello") == HashEmbedder(dim=16).embed("hello")
            assert wrapped.dimension == 16
            assert wrapped.name == "hash-16"
        finally:
            wrapped.close()

    def test_failure_becomes_unavailable(self):
        wrapped = TimeoutEmbedder(_BrokenEmbedder(), timeout=5)
        try:
            with pytest.raises(EmbeddingProviderUnavailable, match="connection refused"):
                wrapped.embed("hello")
        finally:
            wrapped.close()

    def test_timeout_becomes_unavailable(self):
        release = threading.Event()
        wrapped = TimeoutEmbedder(_SlowEmbedder(release), timeout=0.05)
        try:
            with pytest.raises(EmbeddingProviderUnavailable, match="did not respond"):
                wrapped.embed("hello")
        finally:
            release.set()
            wrapped.close()

    def test_close_is_idempotent(self):
        wrapped = TimeoutEmbedder(HashEmbedder(), timeout=1)
        wrapped.close()
        wrapped.close()


# ---------------------------------------------------------------------------
# Module-level functions
# ---------------------------------------------------------------------------


class TestGetDefaultEmbedder:
    def setup_method(self):
        clear_embedder_cache()

    def teardown_method(self):
        clear_embedder_cache()

    def test_no_api_key_returns_hash(self):
        with patch.dict("os.environ", {}, clear=True):
            assert isinstance(get_default_embedder(), HashEmbedder)

    def test_api_key_but_openai_fails_returns_hash(self):
        with patch.dict("os.environ", {"OPENAI_API_KEY": "sk-test"}):
            with patch.object(OpenAIEmbedder, "embed", side_effect=RuntimeError("no openai")):
                assert isinstance(get_default_embedder(), HashEmbedder)

    def test_api_key_and_openai_works_returns_openai(self):
        with patch.dict("os.environ", {"OPENAI_API_KEY": "sk-test"}):
            with patch.object(OpenAIEmbedder, "embed", return_value=[0.1, 0.2]):
                assert isinstance(get_default_embedder(), OpenAIEmbedder)

    def test_cache_prevents_recheck(self):
        """Once OpenAI availability is cached, subsequent calls use cache."""
        with patch.dict("os.environ", {"OPENAI_API_KEY": "sk-test"}):
            with patch.object(OpenAIEmbedder, "embed", return_value=[0.1]) as mock_embed:
                get_default_embedder()
                get_default_embedder()
                mock_embed.assert_called_once_with("test")

    def test_clear_resets_cache(self):
        import cortex.storage.embeddings as mod

        mod._openai_available = True
        clear_embedder_cache()
        assert mod._openai_available is None


# ---------------------------------------------------------------------------
# pack / unpack / similarity
# ---------------------------------------------------------------------------


class TestVectorHelpers:
    def test_pack_layout_is_little_endian_float32(self):
        packed = pack_embedding([1.0, 2.0, 3.0])
        assert packed == struct.pack("<3f", 1.0, 2.0, 3.0)
        assert unpack_embedding(packed) == [1.0, 2.0, 3.0]

    def test_empty_embedding(self):
        assert pack_embedding([]) == b""
        assert unpack_embedding(b"") == []

    def test_cosine_similarity(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert cosine_similarity([1.0], [1.0, 2.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_content_hash_is_stable(self):
        assert content_hash("abc") == content_hash("abc")
        assert content_hash("abc") != content_hash("abd")
