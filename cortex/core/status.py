"""Store status and health reporting for cortex."""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from cortex.features.decay import decay_report
from cortex.types import MemoryFilter, MemoryKind

logger = logging.getLogger(__name__)

RECENT_ACCESS_DAYS = 7
LOW_CONFIDENCE_SHARE = 0.3
PENDING_CONSOLIDATION_LIMIT = 50
LARGE_STORE_SIZE = 1000


def compute_health_score(
    total: int, average_confidence: float, low_confidence_count: int, pending_consolidation: int
) -> int:
    """0-100: start at 100 and subtract per problem found."""
    score = 100
    if average_confidence < 0.5:
        score -= 20
    if low_confidence_count > total * LOW_CONFIDENCE_SHARE:
        score -= 15
    if pending_consolidation > PENDING_CONSOLIDATION_LIMIT:
        score -= 10
    if total > LARGE_STORE_SIZE:
        score -= 5
    return max(0, score)


class StatusMixin:
    """Aggregate statistics over the store."""

    def status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Get memory statistics.

        Averages use effective (decayed) confidence. Nothing is touched.
        """
        now = now or self._now()
        memories = self._storage.query(MemoryFilter())
        total = len(memories)

        effective = [self.effective_confidence(m, now) for m in memories]
        average = sum(effective) / total if total else 0.0
        low = sum(1 for c in effective if c < self.config.low_confidence_threshold)
        recent_cutoff = now - timedelta(days=RECENT_ACCESS_DAYS)
        recently_accessed = sum(
            1
            for m in memories
            if m.last_accessed_at is not None and m.last_accessed_at > recent_cutoff
        )
        pending = sum(1 for m in memories if m.kind == MemoryKind.EPISODIC)

        return {
            "stack_id": self.stack_id,
            "total": total,
            "by_kind": self._storage.count_by_kind(),
            "average_confidence": average,
            "low_confidence_count": low,
            "recently_accessed": recently_accessed,
            "pending_consolidation": pending,
            "health_score": compute_health_score(total, average, low, pending),
        }

    def health(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """``status()`` plus per-kind decay, orphaned links and recommendations."""
        now = now or self._now()
        report = self.status(now)
        decay = decay_report(self._storage.iter_memories(), now, self._decay_config)
        orphaned = self._storage.count_orphaned_links()

        report["confidence_by_kind"] = decay["by_kind"]
        report["past_half_life"] = decay["past_half_life"]
        report["orphaned_links"] = orphaned
        report["recommendations"] = self._recommendations(report)
        return report

    def _recommendations(self, report: Dict[str, Any]) -> List[str]:
        total = report["total"]
        actions = []
        if total and report["average_confidence"] < 0.5:
            actions.append(
                "Average confidence is low: confirm memories that still hold and "
                "run validate(scope='stale')"
            )
        if total and report["low_confidence_count"] > total * LOW_CONFIDENCE_SHARE:
            actions.append(f"{report['low_confidence_count']} memories have low confidence")
        if report["pending_consolidation"] > PENDING_CONSOLIDATION_LIMIT:
            actions.append(
                f"{report['pending_consolidation']} episodic memories pending consolidation: "
                "run consolidate()"
            )
        if total > LARGE_STORE_SIZE:
            actions.append("Large memory count: consider running consolidation")
        if report["past_half_life"]:
            actions.append(f"{report['past_half_life']} memories are past one half-life")
        if report["orphaned_links"]:
            actions.append(f"{report['orphaned_links']} causal links point at missing memories")
        return actions
