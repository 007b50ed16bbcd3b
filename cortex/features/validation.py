"""Validation sweep for cortex.

Walks a scope of memories, flags the ones whose effective confidence has
fallen below a floor, regenerates broken summaries from knowledge, and
optionally soft-deletes what cannot be repaired. One ValidationRecord is
kept per memory state, so a repeated sweep over unchanged data writes
nothing new.
"""

import hashlib
import logging
import threading
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, List, Optional

from cortex.kinds import MAX_SUMMARY_LENGTH, render_summary, validate_knowledge
from cortex.protocols import ValidationFailure
from cortex.types import (
    Importance,
    Memory,
    MemoryFilter,
    ValidationOutcome,
    ValidationRecord,
    ValidationScope,
    ValidationStats,
)

if TYPE_CHECKING:
    from cortex.core.engine import MemoryEngine

logger = logging.getLogger(__name__)

DEFAULT_MIN_CONFIDENCE = 0.2
RECENT_WINDOW_DAYS = 7
STALE_SCOPE_THRESHOLD = 0.5


def memory_fingerprint(memory: Memory) -> str:
    """Hash of the fields validation looks at."""
    updated = memory.updated_at.isoformat() if memory.updated_at else ""
    payload = f"{memory.summary}\x00{memory.base_confidence:.6f}\x00{updated}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def summary_issue(summary: str) -> Optional[str]:
    if not summary or not summary.strip():
        return "empty summary"
    if len(summary) > MAX_SUMMARY_LENGTH:
        return f"summary longer than {MAX_SUMMARY_LENGTH} characters"
    return None


class ValidationMixin:
    """Memory validation and healing."""

    def _validation_scope(
        self: "MemoryEngine", scope: ValidationScope, now: datetime
    ) -> List[Memory]:
        storage = self._storage
        if scope == ValidationScope.HIGH_IMPORTANCE:
            return storage.query(MemoryFilter(importance=[Importance.HIGH, Importance.CRITICAL]))
        if scope == ValidationScope.RECENT:
            return storage.query(
                MemoryFilter(updated_after=now - timedelta(days=RECENT_WINDOW_DAYS))
            )
        memories = storage.query(MemoryFilter())
        if scope == ValidationScope.STALE:
            return [
                m for m in memories if self.effective_confidence(m, now) < STALE_SCOPE_THRESHOLD
            ]
        return memories

    def validate(
        self: "MemoryEngine",
        scope: ValidationScope = ValidationScope.ALL,
        auto_heal: bool = True,
        remove_invalid: bool = False,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        cancel_event: Optional[threading.Event] = None,
        now: Optional[datetime] = None,
    ) -> ValidationStats:
        """Validate memories in ``scope``.

        Per memory, in order:
        - effective confidence below ``min_confidence``: stale, and removed
          (soft-deleted) when ``remove_invalid``
        - knowledge no longer matching its kind: removed when
          ``remove_invalid``, otherwise reported
        - empty or over-long summary: regenerated from knowledge when
          ``auto_heal``; removed when that is impossible and ``remove_invalid``

        Checks ``cancel_event`` between memories.
        """
        try:
            scope = ValidationScope(scope)
        except ValueError:
            raise ValidationFailure(f"Invalid validation scope: {scope!r}", field="scope") from None
        now = now or self._now()
        storage = self._storage
        stats = ValidationStats()

        for memory in self._validation_scope(scope, now):
            if cancel_event is not None and cancel_event.is_set():
                stats.cancelled = True
                logger.info(f"Validation cancelled after {stats.validated} memories")
                break

            stats.validated += 1
            fingerprint = memory_fingerprint(memory)
            outcome = ValidationOutcome.VALID
            issue: Optional[str] = None

            effective = self.effective_confidence(memory, now)
            knowledge_error: Optional[str] = None
            try:
                validate_knowledge(memory.kind, memory.knowledge)
            except ValidationFailure as e:
                knowledge_error = str(e)

            if effective < min_confidence:
                issue = f"effective confidence {effective:.2f} below {min_confidence:.2f}"
                stats.stale += 1
                outcome = ValidationOutcome.STALE
                if remove_invalid:
                    storage.soft_delete(memory.id)
                    stats.removed += 1
                    outcome = ValidationOutcome.REMOVED
            elif knowledge_error is not None:
                issue = knowledge_error
                if remove_invalid:
                    storage.soft_delete(memory.id)
                    stats.removed += 1
                    outcome = ValidationOutcome.REMOVED
                else:
                    stats.stale += 1
                    outcome = ValidationOutcome.STALE
            else:
                issue = summary_issue(memory.summary)
                if issue is not None:
                    healed = render_summary(memory.kind, memory.knowledge) if auto_heal else ""
                    if healed:
                        memory.summary = healed
                        storage.replace(memory)
                        stats.healed += 1
                        outcome = ValidationOutcome.HEALED
                    elif remove_invalid:
                        storage.soft_delete(memory.id)
                        stats.removed += 1
                        outcome = ValidationOutcome.REMOVED
                    else:
                        stats.stale += 1
                        outcome = ValidationOutcome.STALE

            if outcome == ValidationOutcome.VALID:
                stats.valid += 1
            else:
                stats.issues.append(
                    {
                        "memory_id": memory.id,
                        "kind": memory.kind.value,
                        "issue": issue,
                        "outcome": outcome.value,
                    }
                )

            storage.save_validation_record(
                ValidationRecord(
                    memory_id=memory.id,
                    outcome=outcome,
                    timestamp=now,
                    issue=issue,
                    fingerprint=fingerprint,
                )
            )

        logger.info(
            f"Validation ({scope.value}): {stats.validated} checked, {stats.valid} valid, "
            f"{stats.healed} healed, {stats.stale} stale, {stats.removed} removed"
        )
        return stats
