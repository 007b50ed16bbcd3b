"""MemoryEngine class: main interface for memory operations.

This module defines the MemoryEngine class skeleton, which inherits from
the core operation mixins and the feature mixins.
"""

import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from cortex.config import CortexConfig
from cortex.core.serializers import SerializersMixin
from cortex.core.status import StatusMixin
from cortex.core.validation import InputValidationMixin
from cortex.core.writers import WritersMixin
from cortex.features import (
    CausalMixin,
    ConsolidationMixin,
    ContradictionMixin,
    DecayConfig,
    DecayMixin,
    LearningMixin,
    PredictionMixin,
    RetrievalMixin,
    SessionManager,
    ValidationMixin,
)
from cortex.protocols import EmbeddingProvider
from cortex.storage import SQLiteStorage
from cortex.types import ContradictionResult, Session, utc_now

logger = logging.getLogger(__name__)


class MemoryEngine(
    InputValidationMixin,
    WritersMixin,
    StatusMixin,
    SerializersMixin,
    # Feature mixins:
    DecayMixin,
    CausalMixin,
    ContradictionMixin,
    ValidationMixin,
    ConsolidationMixin,
    RetrievalMixin,
    LearningMixin,
    PredictionMixin,
):
    """Main interface for cortex memory operations.

    Every write goes through the storage write lock, so one engine can be
    shared between foreground calls and a ``MaintenanceScheduler``.

    Examples:
        engine = MemoryEngine(db_path="~/.cortex/project.db")
        engine.add(
            MemoryKind.TRIBAL,
            {"topic": "deps", "knowledge": "Always pin dependencies", "severity": "warning"},
        )
        bundle = engine.retrieve(Intent.ADD_FEATURE, focus="dependencies", session_id="s1")
    """

    def __init__(
        self,
        db_path: Optional[Union[str, Path]] = None,
        config: Optional[CortexConfig] = None,
        embedder: Optional[EmbeddingProvider] = None,
        use_embeddings: bool = True,
        stack_id: Optional[str] = None,
        storage: Optional[SQLiteStorage] = None,
        now_fn: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the engine.

        Args:
            db_path: SQLite file; defaults to ``<cortex home>/memories.db``
            config: Tunable constants; defaults to ``CortexConfig.from_env()``
            embedder: Embedding provider; auto-selected when omitted
            use_embeddings: False for a purely lexical store
            stack_id: Name used in event logs (env ``CORTEX_STACK_ID``)
            storage: Pre-built storage, used instead of ``db_path``
            now_fn: Clock returning aware UTC datetimes
        """
        self.stack_id = self._validate_stack_id(
            stack_id or os.environ.get("CORTEX_STACK_ID", "default")
        )
        self.config = config if config is not None else CortexConfig.from_env()
        self._now: Callable[[], datetime] = now_fn or utc_now

        if storage is not None:
            self._storage = storage
        else:
            self._storage = SQLiteStorage(
                db_path=Path(db_path) if db_path is not None else None,
                embedder=embedder,
                embedding_timeout=self.config.embedding_timeout_seconds,
                use_embeddings=use_embeddings,
                now_fn=self._now,
            )

        self._decay_config = DecayConfig(
            bonus_per_access_days=self.config.bonus_per_access_days,
            max_usage_bonus_days=self.config.max_usage_bonus_days,
        )
        self._consolidation_lock = threading.Lock()
        self._sessions = SessionManager(
            self._storage, ttl_seconds=self.config.session_ttl_seconds, now_fn=self._now
        )
        # Contradictions resolved by the most recent add()/update()
        self.last_contradictions: List[ContradictionResult] = []

        logger.debug(
            f"MemoryEngine initialized for stack {self.stack_id} at {self._storage.db_path}, "
            f"vector search: {self._storage.has_vector_search}"
        )

    @property
    def storage(self) -> SQLiteStorage:
        return self._storage

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    # === Sessions ===

    def touch_session(self, session_id: str, now: Optional[datetime] = None) -> Session:
        """Create or refresh a session. An expired session starts fresh."""
        return self._sessions.touch(session_id, now=now)

    def sent_ids(self, session_id: str) -> Sequence[str]:
        return sorted(self._sessions.sent_ids(session_id))

    def end_session(self, session_id: str) -> bool:
        return self._sessions.end(session_id)

    def sweep_sessions(self, ttl_seconds: Optional[float] = None) -> int:
        """Delete sessions idle longer than the TTL. Returns the number removed."""
        return self._sessions.sweep_expired(ttl_seconds=ttl_seconds)

    # === Lifecycle ===

    def close(self) -> None:
        self._storage.close()

    def __enter__(self) -> "MemoryEngine":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"MemoryEngine(stack_id={self.stack_id!r}, db_path={str(self._storage.db_path)!r})"

    def info(self) -> Dict[str, Any]:
        """Storage and provider details, for diagnostics."""
        embedder = self._storage.embedder
        return {
            "stack_id": self.stack_id,
            "db_path": str(self._storage.db_path),
            "vector_search": self._storage.has_vector_search,
            "embedder": embedder.name if embedder is not None else None,
            "last_search_degraded": self._storage.last_search_degraded,
        }
