"""SQLite storage backend for cortex.

Local-first storage with:
- SQLite for structured data (one ``memories`` table for every kind)
- sqlite-vec for vector distance in SQL (if available), text matching otherwise
- A single write lock; reads open their own WAL connection and take no lock
"""

import contextlib
import logging
import sqlite3
import tempfile
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Set

from cortex.config import DEFAULT_EMBEDDING_TIMEOUT_SECONDS, get_cortex_home
from cortex.kinds import parse_kind, render_summary, validate_knowledge
from cortex.protocols import (
    EmbeddingProvider,
    EmbeddingProviderUnavailable,
    MemoryNotFoundError,
    StorageIOFailure,
    ValidationFailure,
)
from cortex.types import (
    CausalLink,
    ConsolidationRecord,
    Importance,
    Memory,
    MemoryFilter,
    MemoryKind,
    MemoryPage,
    Relation,
    SearchResult,
    Session,
    ValidationRecord,
    clamp_confidence,
    to_iso,
    utc_now,
)

from . import links_crud, memory_crud, records_crud, search_impl
from .embeddings import (
    TimeoutEmbedder,
    content_hash,
    get_default_embedder,
    pack_embedding,
    unpack_embedding,
)
from .schema import init_db

logger = logging.getLogger(__name__)

# Fields a caller may change through update()
PATCHABLE_FIELDS = frozenset(
    {"summary", "knowledge", "base_confidence", "importance", "tags", "soft_deleted"}
)

# Marks an embedding the store should compute itself
EMBED = object()


class SQLiteStorage:
    """SQLite-backed store for memories, causal links, sessions and records."""

    def __init__(
        self,
        db_path: Optional[Path] = None,
        embedder: Optional[EmbeddingProvider] = None,
        embedding_timeout: float = DEFAULT_EMBEDDING_TIMEOUT_SECONDS,
        use_embeddings: bool = True,
        now_fn: Optional[Callable[[], datetime]] = None,
    ):
        self.db_path = self._resolve_db_path(db_path)
        self._now = now_fn or utc_now

        self._write_lock = threading.RLock()
        self._local = threading.local()

        # Set when the last search fell back to lexical because the provider failed
        self.last_search_degraded = False

        self._has_vec = self._check_sqlite_vec()

        self._embedder: Optional[TimeoutEmbedder] = None
        if use_embeddings:
            provider = embedder if embedder is not None else get_default_embedder()
            self._embedder = TimeoutEmbedder(provider, timeout=embedding_timeout)

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

        if not self._has_vec:
            logger.info("sqlite-vec not available, search will use text matching")

    # === Connection handling ===

    def _resolve_db_path(self, db_path: Optional[Path]) -> Path:
        """Resolve the database path, falling back to temp dir if home is not writable."""
        if db_path is not None:
            return Path(db_path).expanduser().resolve()

        default_path = get_cortex_home() / "memories.db"
        try:
            default_path.parent.mkdir(parents=True, exist_ok=True)
            return default_path
        except OSError as e:
            fallback_dir = Path(tempfile.gettempdir()) / ".cortex"
            logger.warning(
                f"Cannot write to {default_path.parent} ({e}), falling back to {fallback_dir}"
            )
            return fallback_dir / "memories.db"

    def _check_sqlite_vec(self) -> bool:
        """Check if sqlite-vec extension is available."""
        try:
            import sqlite_vec

            conn = sqlite3.connect(":memory:")
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.close()
            return True
        except ImportError:
            logger.debug("sqlite-vec package not installed")
            return False
        except Exception as e:
            logger.debug(f"sqlite-vec not available: {e}")
            return False

    def _load_vec(self, conn: sqlite3.Connection):
        """Load sqlite-vec extension into connection."""
        try:
            import sqlite_vec

            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
        except Exception as e:
            logger.warning(f"Could not load sqlite-vec: {e}")
            self._has_vec = False

    def _get_conn(self) -> sqlite3.Connection:
        """Get a database connection with sqlite-vec loaded if available."""
        conn = sqlite3.connect(self.db_path, timeout=5.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        if self._has_vec:
            self._load_vec(conn)
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection.

        - Transaction commit on success
        - Transaction rollback on exception
        - Connection close in all cases
        - sqlite3/OS errors surface as StorageIOFailure
        """
        try:
            conn = self._get_conn()
        except (sqlite3.Error, OSError) as e:
            raise StorageIOFailure(f"Could not open {self.db_path}: {e}") from e
        try:
            yield conn
            conn.commit()
        except (sqlite3.Error, OSError) as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise StorageIOFailure(str(e)) from e
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextlib.contextmanager
    def transaction(self):
        """Hold the write lock and one connection for a multi-step write.

        Every store write made on this thread while the block is open joins
        the same transaction. Nested calls reuse the outer transaction.
        """
        with self._write_lock:
            existing = getattr(self._local, "conn", None)
            if existing is not None:
                yield existing
                return
            with self._connect() as conn:
                self._local.conn = conn
                try:
                    yield conn
                finally:
                    self._local.conn = None

    @contextlib.contextmanager
    def _read(self):
        """Connection for reads; joins an open transaction on this thread."""
        existing = getattr(self._local, "conn", None)
        if existing is not None:
            yield existing
            return
        with self._connect() as conn:
            yield conn

    def _init_db(self):
        """Initialize the database schema. Delegates to schema.init_db()."""
        with self._connect() as conn:
            init_db(conn=conn, db_path=self.db_path)

    @property
    def has_vector_search(self) -> bool:
        return self._has_vec and self._embedder is not None

    @property
    def embedder(self) -> Optional[TimeoutEmbedder]:
        return self._embedder

    def now(self) -> datetime:
        return self._now()

    def close(self):
        """Release the embedding worker.

        Connections are per-operation, so there is nothing else to close.
        """
        if self._embedder is not None:
            self._embedder.close()

    # === Embeddings ===

    def embed_text(self, text: str) -> Optional[List[float]]:
        """Embed through the bounded provider. None when unavailable."""
        if self._embedder is None or not text.strip():
            return None
        try:
            return self._embedder.embed(text)
        except EmbeddingProviderUnavailable as e:
            logger.warning(f"Embedding provider unavailable: {e}")
            return None

    def _save_embedding(
        self, conn: sqlite3.Connection, memory_id: str, text: str, vector: List[float]
    ) -> None:
        conn.execute(
            """
            INSERT OR REPLACE INTO embeddings
                (memory_id, embedding, dimension, content_hash, provider, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                memory_id,
                pack_embedding(vector),
                len(vector),
                content_hash(text),
                self._embedder.name if self._embedder else "unknown",
                to_iso(self._now()),
            ),
        )

    def _embedding_hash(self, memory_id: str) -> Optional[str]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT content_hash FROM embeddings WHERE memory_id = ?", (memory_id,)
            ).fetchone()
        return row["content_hash"] if row else None

    def get_embedding(self, memory_id: str) -> Optional[List[float]]:
        return self.get_embeddings([memory_id]).get(memory_id)

    def get_embeddings(self, memory_ids: Sequence[str]) -> Dict[str, List[float]]:
        result: Dict[str, List[float]] = {}
        ids = list(dict.fromkeys(memory_ids))
        with self._read() as conn:
            for start in range(0, len(ids), 500):
                chunk = ids[start : start + 500]
                placeholders = ",".join("?" for _ in chunk)
                rows = conn.execute(
                    f"SELECT memory_id, embedding FROM embeddings WHERE memory_id IN ({placeholders})",
                    chunk,
                ).fetchall()
                for row in rows:
                    result[row["memory_id"]] = unpack_embedding(row["embedding"])
        return result

    # === Memories ===

    def _prepare_new(self, memory: Memory, now: datetime) -> Memory:
        memory.kind = parse_kind(memory.kind)
        memory.knowledge = validate_knowledge(memory.kind, memory.knowledge)
        if not isinstance(memory.importance, Importance):
            try:
                memory.importance = Importance(memory.importance)
            except ValueError:
                raise ValidationFailure(
                    f"Invalid importance: {memory.importance!r}", field="importance"
                ) from None
        if not isinstance(memory.summary, str):
            raise ValidationFailure("summary must be a string", field="summary")
        if not memory.summary.strip():
            memory.summary = render_summary(memory.kind, memory.knowledge)
        memory.tags = {str(t).strip() for t in memory.tags if str(t).strip()}
        memory.base_confidence = clamp_confidence(memory.base_confidence)
        memory.id = memory.id or str(uuid.uuid4())
        memory.created_at = memory.created_at or now
        memory.updated_at = memory.updated_at or memory.created_at
        memory.access_count = max(0, int(memory.access_count or 0))
        return memory

    def embed_memory(self, memory: Memory) -> Optional[List[float]]:
        """Validate a new memory in place and embed its searchable text.

        Lets callers pay for the provider call before opening a transaction;
        pass the result to add() as ``embedding``.
        """
        memory = self._prepare_new(memory, self._now())
        return self.embed_text(search_impl.searchable_text(memory))

    def add(
        self, memory: Memory, links: Sequence[CausalLink] = (), embedding: Any = EMBED
    ) -> str:
        """Persist a new memory, its embedding and its links atomically.

        Links with an empty ``source_id`` (or ``target_id``) are bound to the
        new memory. The other endpoint must exist. ``embedding`` is a vector
        from embed_memory() (None for none); by default it is computed here.

        Raises:
            InvalidKindError, ValidationFailure: before anything is written
        """
        now = self._now()
        memory = self._prepare_new(memory, now)
        bound: List[CausalLink] = []
        for link in links:
            bound_link = CausalLink(
                source_id=link.source_id or memory.id,
                target_id=link.target_id or memory.id,
                relation=Relation(link.relation),
                weight=link.weight,
                created_at=link.created_at or now,
            )
            try:
                links_crud.check_link(bound_link)
            except ValueError as e:
                raise ValidationFailure(str(e), field="links") from e
            bound.append(bound_link)

        text = search_impl.searchable_text(memory)
        vector = self.embed_text(text) if embedding is EMBED else embedding

        with self.transaction() as conn:
            for link in bound:
                other = link.target_id if link.source_id == memory.id else link.source_id
                if other != memory.id and memory_crud.get_memory(conn, other) is None:
                    raise ValidationFailure(f"Linked memory not found: {other}", field="links")
            memory_crud.insert_memory(conn, memory)
            if vector is not None:
                self._save_embedding(conn, memory.id, text, vector)
            for link in bound:
                links_crud.upsert_link(conn, link, now)

        logger.debug(f"Added {memory.kind.value} memory {memory.id} with {len(bound)} links")
        return memory.id

    def import_memory(self, memory: Memory) -> bool:
        """Insert a memory exactly as given (ids, timestamps, access counts).

        Returns False if the id already exists.
        """
        now = self._now()
        memory = self._prepare_new(memory, now)
        text = search_impl.searchable_text(memory)
        vector = self.embed_text(text)
        with self.transaction() as conn:
            if memory_crud.get_memory(conn, memory.id) is not None:
                return False
            memory_crud.insert_memory(conn, memory)
            if vector is not None:
                self._save_embedding(conn, memory.id, text, vector)
        return True

    def replace_imported(self, memory: Memory) -> Memory:
        """Overwrite an existing memory with an imported record, timestamps included.

        The kind of a memory never changes.
        """
        existing = self.get(memory.id)
        if existing is None:
            raise MemoryNotFoundError(memory.id)
        memory = self._prepare_new(memory, self._now())
        if memory.kind != existing.kind:
            raise ValidationFailure(
                f"Cannot change kind of {memory.id} from {existing.kind.value} to {memory.kind.value}",
                field="kind",
            )
        text = search_impl.searchable_text(memory)
        vector = None
        if self._embedding_hash(memory.id) != content_hash(text):
            vector = self.embed_text(text)
        with self.transaction() as conn:
            memory_crud.update_memory_row(conn, memory)
            if vector is not None:
                self._save_embedding(conn, memory.id, text, vector)
        return memory

    def get(self, memory_id: str) -> Optional[Memory]:
        """Fetch one memory, soft-deleted or not. None if unknown."""
        with self._read() as conn:
            return memory_crud.get_memory(conn, memory_id)

    def get_many(self, memory_ids: Sequence[str]) -> Dict[str, Memory]:
        with self._read() as conn:
            return memory_crud.get_memories(conn, memory_ids)

    def update(self, memory_id: str, patch: Mapping[str, Any]) -> Memory:
        """Apply a partial update and return the stored result.

        Raises:
            MemoryNotFoundError: unknown id
            ValidationFailure: unknown field or invalid payload
        """
        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise ValidationFailure(
                f"Cannot update field(s): {', '.join(sorted(unknown))}", field=sorted(unknown)[0]
            )
        current = self.get(memory_id)
        if current is None:
            raise MemoryNotFoundError(memory_id)

        if "knowledge" in patch:
            current.knowledge = validate_knowledge(current.kind, patch["knowledge"])
        if "summary" in patch:
            if not isinstance(patch["summary"], str):
                raise ValidationFailure("summary must be a string", field="summary")
            current.summary = patch["summary"]
        if "base_confidence" in patch:
            current.base_confidence = clamp_confidence(patch["base_confidence"])
        if "importance" in patch:
            try:
                current.importance = Importance(patch["importance"])
            except ValueError:
                raise ValidationFailure(
                    f"Invalid importance: {patch['importance']!r}", field="importance"
                ) from None
        if "tags" in patch:
            current.tags = {str(t).strip() for t in (patch["tags"] or ()) if str(t).strip()}
        if "soft_deleted" in patch:
            current.soft_deleted = bool(patch["soft_deleted"])
        return self.replace(current)

    def replace(self, memory: Memory) -> Memory:
        """Overwrite every mutable field of an existing memory.

        Re-embeds when the searchable text changed.
        """
        memory.updated_at = self._now()
        text = search_impl.searchable_text(memory)
        vector = None
        if self._embedding_hash(memory.id) != content_hash(text):
            vector = self.embed_text(text)
        with self.transaction() as conn:
            if not memory_crud.update_memory_row(conn, memory):
                raise MemoryNotFoundError(memory.id)
            if vector is not None:
                self._save_embedding(conn, memory.id, text, vector)
        return memory

    def soft_delete(self, memory_id: str) -> bool:
        """Mark a memory deleted. False if unknown or already deleted."""
        with self.transaction() as conn:
            deleted = memory_crud.mark_soft_deleted(conn, memory_id, self._now())
        if deleted:
            logger.debug(f"Soft-deleted memory {memory_id}")
        return deleted

    def set_confidence(self, memory_id: str, confidence: float) -> bool:
        with self.transaction() as conn:
            return memory_crud.set_base_confidence(conn, memory_id, confidence, self._now())

    def touch_access(self, memory_ids: Sequence[str], now: Optional[datetime] = None) -> int:
        with self.transaction() as conn:
            return memory_crud.touch_access(conn, list(memory_ids), now or self._now())

    def list_memories(
        self,
        memory_filter: Optional[MemoryFilter] = None,
        cursor: Optional[str] = None,
        limit: int = 50,
    ) -> MemoryPage:
        """One page in (created_at, id) order. Pass ``next_cursor`` back for the next."""
        if limit <= 0:
            raise ValidationFailure("limit must be positive", field="limit")
        with self._read() as conn:
            memories, next_cursor = memory_crud.list_memories(conn, memory_filter, cursor, limit)
        return MemoryPage(memories=memories, next_cursor=next_cursor)

    def iter_memories(
        self, memory_filter: Optional[MemoryFilter] = None, page_size: int = 200
    ) -> Iterator[Memory]:
        cursor = None
        while True:
            page = self.list_memories(memory_filter, cursor=cursor, limit=page_size)
            yield from page.memories
            if page.next_cursor is None:
                return
            cursor = page.next_cursor

    def query(self, memory_filter: Optional[MemoryFilter] = None, limit: Optional[int] = None) -> List[Memory]:
        with self._read() as conn:
            return memory_crud.query_memories(conn, memory_filter, limit)

    def with_tags(
        self, tags: Sequence[str], kinds: Optional[Sequence[MemoryKind]] = None
    ) -> List[Memory]:
        with self._read() as conn:
            return memory_crud.memories_with_tags(conn, tags, kinds)

    def count_by_kind(self, include_deleted: bool = False) -> Dict[str, int]:
        with self._read() as conn:
            return memory_crud.count_by_kind(conn, include_deleted)

    # === Search ===

    def embed_query(self, query: str) -> Optional[List[float]]:
        """Query vector for search(). None when vectors are off or the provider failed."""
        if not self.has_vector_search or not (query or "").strip():
            return None
        try:
            return self._embedder.embed(query)
        except EmbeddingProviderUnavailable as e:
            logger.warning(f"Search degraded to lexical matching: {e}")
            return None

    def search(
        self,
        query: str,
        kinds: Optional[Sequence[MemoryKind]] = None,
        min_confidence: Optional[float] = None,
        limit: int = 10,
        query_vector: Any = EMBED,
    ) -> List[SearchResult]:
        """Hybrid lexical + vector search.

        Score is ``0.4 * lexical + 0.6 * vector`` when vectors are available,
        lexical alone otherwise. A failing or slow provider degrades the call
        to lexical (``last_search_degraded`` is set) instead of failing it.
        ``min_confidence`` applies to base confidence. ``query_vector`` comes
        from embed_query(); by default the query is embedded here.
        """
        self.last_search_degraded = False
        if limit <= 0 or not (query or "").strip():
            return []
        kinds = [parse_kind(k) for k in kinds] if kinds else None

        with self._read() as conn:
            lexical = search_impl.lexical_search(conn, query, kinds, min_confidence)

        vector = None
        if self.has_vector_search:
            if query_vector is EMBED:
                query_vector = self.embed_query(query)
            if query_vector is None:
                self.last_search_degraded = True
            else:
                try:
                    with self._read() as conn:
                        vector = search_impl.vector_search(
                            conn,
                            pack_embedding(query_vector),
                            len(query_vector),
                            kinds,
                            min_confidence,
                            limit,
                        )
                except (StorageIOFailure, sqlite3.Error) as e:
                    logger.warning(f"Vector search failed: {e}, falling back to text search")
                    vector = None
                if not vector:
                    vector = None

        return search_impl.merge_hybrid(lexical, vector, limit)

    # === Causal links ===

    def add_link(self, link: CausalLink) -> None:
        """Insert or re-weight a link. Self-links raise ValueError."""
        links_crud.check_link(link)
        with self.transaction() as conn:
            links_crud.upsert_link(conn, link, self._now())

    def remove_link(self, source_id: str, target_id: str, relation: Relation) -> bool:
        with self.transaction() as conn:
            return links_crud.delete_link(conn, source_id, target_id, relation)

    def links_from(
        self, memory_id: str, relations: Optional[Sequence[Relation]] = None
    ) -> List[CausalLink]:
        with self._read() as conn:
            return links_crud.links_from(conn, memory_id, relations)

    def links_to(
        self, memory_id: str, relations: Optional[Sequence[Relation]] = None
    ) -> List[CausalLink]:
        with self._read() as conn:
            return links_crud.links_to(conn, memory_id, relations)

    def all_links(self) -> List[CausalLink]:
        with self._read() as conn:
            return links_crud.all_links(conn)

    def count_orphaned_links(self) -> int:
        with self._read() as conn:
            return links_crud.count_orphaned_links(conn)

    # === Sessions ===

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._read() as conn:
            return records_crud.get_session(conn, session_id)

    def save_session(self, session_id: str, now: datetime, reset: bool = False) -> None:
        with self.transaction() as conn:
            records_crud.upsert_session(conn, session_id, now)
            if reset:
                records_crud.reset_session(conn, session_id, now)

    def add_sent_ids(self, session_id: str, memory_ids: Sequence[str], now: datetime) -> None:
        with self.transaction() as conn:
            records_crud.upsert_session(conn, session_id, now)
            records_crud.add_sent_ids(conn, session_id, memory_ids, now)

    def get_sent_ids(self, session_id: str) -> Set[str]:
        with self._read() as conn:
            return records_crud.get_sent_ids(conn, session_id)

    def delete_session(self, session_id: str) -> bool:
        with self.transaction() as conn:
            return records_crud.delete_session(conn, session_id)

    def delete_sessions_before(self, cutoff: datetime) -> int:
        with self.transaction() as conn:
            return records_crud.delete_sessions_before(conn, cutoff)

    # === Consolidation / validation records ===

    def get_consolidation_record(self, signature: str) -> Optional[ConsolidationRecord]:
        with self._read() as conn:
            return records_crud.get_consolidation_record(conn, signature)

    def save_consolidation_record(self, record: ConsolidationRecord) -> None:
        with self.transaction() as conn:
            records_crud.insert_consolidation_record(conn, record)

    def has_validation_record(self, memory_id: str, fingerprint: str) -> bool:
        with self._read() as conn:
            return records_crud.has_validation_record(conn, memory_id, fingerprint)

    def save_validation_record(self, record: ValidationRecord) -> bool:
        with self.transaction() as conn:
            return records_crud.insert_validation_record(conn, record)

    def validation_records(self, memory_id: Optional[str] = None) -> List[ValidationRecord]:
        with self._read() as conn:
            return records_crud.list_validation_records(conn, memory_id)
