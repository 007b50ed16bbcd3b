"""Retrieval sessions for cortex.

A session remembers which memory ids a caller has already been handed, so
repeated ``retrieve``/``predict`` calls surface new material. Sessions are
addressed by id and passed explicitly; nothing here is process-global.
A session idle for longer than its TTL starts over with an empty sent set.
"""

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional, Sequence, Set

from cortex.config import DEFAULT_SESSION_TTL_SECONDS
from cortex.protocols import ValidationFailure
from cortex.types import Session, utc_now

if TYPE_CHECKING:
    from cortex.storage.sqlite import SQLiteStorage

logger = logging.getLogger(__name__)


class SessionManager:
    """Session bookkeeping on top of the storage ``sessions`` tables."""

    def __init__(
        self,
        storage: "SQLiteStorage",
        ttl_seconds: float = DEFAULT_SESSION_TTL_SECONDS,
        now_fn: Optional[Callable[[], datetime]] = None,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._storage = storage
        self.ttl = timedelta(seconds=ttl_seconds)
        self._now_fn = now_fn or utc_now

    def _now(self, now: Optional[datetime] = None) -> datetime:
        return now or self._now_fn()

    @staticmethod
    def _check_id(session_id: str) -> str:
        if not isinstance(session_id, str) or not session_id.strip():
            raise ValidationFailure("session_id must be a non-empty string", field="session_id")
        return session_id

    def _expired(self, session: Session, now: datetime) -> bool:
        return session.last_touched_at is not None and now - session.last_touched_at > self.ttl

    def get(self, session_id: str) -> Optional[Session]:
        return self._storage.get_session(self._check_id(session_id))

    def touch(self, session_id: str, now: Optional[datetime] = None) -> Session:
        """Create or refresh a session. An expired one is reset first."""
        self._check_id(session_id)
        now = self._now(now)
        existing = self._storage.get_session(session_id)
        reset = existing is not None and self._expired(existing, now)
        if reset:
            logger.debug(f"Session {session_id} expired, starting fresh")
        self._storage.save_session(session_id, now, reset=reset)
        return self._storage.get_session(session_id)

    def sent_ids(self, session_id: str, now: Optional[datetime] = None) -> Set[str]:
        """Ids already delivered in this session; empty once it has expired."""
        session = self.get(session_id)
        if session is None or self._expired(session, self._now(now)):
            return set()
        return set(session.sent_memory_ids)

    def mark_sent(
        self, session_id: str, memory_ids: Sequence[str], now: Optional[datetime] = None
    ) -> None:
        self._check_id(session_id)
        if not memory_ids:
            return
        self._storage.add_sent_ids(session_id, list(dict.fromkeys(memory_ids)), self._now(now))

    def end(self, session_id: str) -> bool:
        return self._storage.delete_session(self._check_id(session_id))

    def sweep_expired(
        self, ttl_seconds: Optional[float] = None, now: Optional[datetime] = None
    ) -> int:
        """Delete sessions idle longer than the TTL. Returns the number removed."""
        ttl = timedelta(seconds=ttl_seconds) if ttl_seconds is not None else self.ttl
        removed = self._storage.delete_sessions_before(self._now(now) - ttl)
        if removed:
            logger.info(f"Swept {removed} expired sessions")
        return removed
