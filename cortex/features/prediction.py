"""Predictive preloading for cortex.

Guesses which memories a caller is about to need from what it is doing
now: the focus areas and tags of the active context, the memories it used
recently, and how much each candidate is still trusted.

Score = 0.4 * contextual overlap + 0.35 * causal proximity + 0.25 * effective
confidence, times the intent's kind priority when an intent is given.
Predictions are read-only: nothing is marked sent or touched.
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Dict, List, Optional, Set, Tuple

from cortex.protocols import ValidationFailure
from cortex.storage.search_impl import tokenize
from cortex.types import Intent, Memory, Prediction, PredictionContext

from .causal import graph_distances
from .retrieval import parse_intent, priority_weight

if TYPE_CHECKING:
    from cortex.core.engine import MemoryEngine

logger = logging.getLogger(__name__)

OVERLAP_WEIGHT = 0.4
CAUSAL_WEIGHT = 0.35
CONFIDENCE_WEIGHT = 0.25

MAX_CAUSAL_DISTANCE = 3
RECENCY_SCALE_DAYS = 7.0
SEARCH_LIMIT = 50


def context_terms(context: PredictionContext) -> List[str]:
    """Lower-cased focus areas, their words, and tags; first occurrence wins."""
    terms: List[str] = []
    for area in context.focus_areas:
        area = (area or "").strip().lower()
        if area:
            terms.append(area)
            terms.extend(tokenize(area))
    terms.extend((tag or "").strip().lower() for tag in context.tags)
    return [t for t in dict.fromkeys(terms) if t]


def recency_weight(memory: Memory, now: datetime) -> float:
    """``1 / (1 + days_since_access / 7)``; never-accessed memories count from creation."""
    reference = memory.last_accessed_at or memory.created_at
    if reference is None:
        return 1.0
    days = max(0.0, (now - reference).total_seconds() / 86400.0)
    return 1.0 / (1.0 + days / RECENCY_SCALE_DAYS)


def matched_terms(memory: Memory, terms: List[str]) -> Tuple[List[str], List[str]]:
    """(terms found in the summary, terms found among the tags)."""
    summary = (memory.summary or "").lower()
    summary_words = set(tokenize(summary, min_length=1))
    tags = {t.lower() for t in memory.tags}
    in_summary, in_tags = [], []
    for term in terms:
        if term in tags:
            in_tags.append(term)
        elif term in summary_words or (" " in term and term in summary):
            in_summary.append(term)
    return in_summary, in_tags


class PredictionMixin:
    """Context-driven memory prediction."""

    def _nearest_recent(
        self: "MemoryEngine", recent_ids: List[str]
    ) -> Dict[str, Tuple[int, str]]:
        """``{memory_id: (distance, recent_id)}`` within three hops of a recent memory."""
        nearest: Dict[str, Tuple[int, str]] = {}
        for recent_id in recent_ids:
            for memory_id, distance in graph_distances(
                self._storage, [recent_id], MAX_CAUSAL_DISTANCE
            ).items():
                if distance == 0:
                    continue
                current = nearest.get(memory_id)
                if current is None or distance < current[0]:
                    nearest[memory_id] = (distance, recent_id)
        return nearest

    def predict(
        self: "MemoryEngine",
        context: PredictionContext,
        intent: Optional[Intent] = None,
        limit: int = 10,
        now: Optional[datetime] = None,
    ) -> List[Prediction]:
        """Rank memories likely to be needed next.

        Candidates come from searching the focus areas, from tag matches,
        and from the causal neighbourhood of ``recent_memory_ids``. The
        recent memories themselves, and anything already sent in
        ``context.session_id``, are excluded.
        """
        if not isinstance(limit, int) or limit <= 0:
            raise ValidationFailure("limit must be a positive integer", field="limit")
        intent = parse_intent(intent) if intent is not None else None
        now = now or self._now()
        storage = self._storage

        terms = context_terms(context)
        recent_ids = [mid for mid in dict.fromkeys(context.recent_memory_ids) if mid]
        excluded: Set[str] = set(recent_ids)
        if context.session_id:
            excluded |= self._sessions.sent_ids(context.session_id, now)

        candidates: Dict[str, Memory] = {}
        focus_text = " ".join(a for a in context.focus_areas if a)
        if focus_text.strip():
            for result in storage.search(focus_text, limit=SEARCH_LIMIT):
                candidates[result.memory.id] = result.memory
        if terms:
            for memory in storage.with_tags(terms):
                candidates.setdefault(memory.id, memory)

        nearest = self._nearest_recent(recent_ids)
        missing = [mid for mid in nearest if mid not in candidates]
        candidates.update(storage.get_many(missing))

        predictions: List[Prediction] = []
        for memory_id, memory in candidates.items():
            if memory_id in excluded or memory.soft_deleted:
                continue
            in_summary, in_tags = matched_terms(memory, terms)
            fraction = (len(set(in_summary) | set(in_tags)) / len(terms)) if terms else 0.0
            overlap = fraction * recency_weight(memory, now)

            distance, via = nearest.get(memory_id, (None, None))
            causal = 1.0 / distance if distance else 0.0
            confidence = self.effective_confidence(memory, now)

            score = (
                OVERLAP_WEIGHT * overlap + CAUSAL_WEIGHT * causal + CONFIDENCE_WEIGHT * confidence
            )
            if intent is not None:
                score *= priority_weight(intent, memory.kind)

            contributions = [
                (OVERLAP_WEIGHT * overlap, "overlap"),
                (CAUSAL_WEIGHT * causal, "causal"),
                (CONFIDENCE_WEIGHT * confidence, "confidence"),
            ]
            dominant = max(contributions, key=lambda c: c[0])[1]
            if dominant == "overlap" and overlap > 0:
                focus = (in_summary or in_tags)[0]
                reason = f"matches focus '{focus}'"
                if in_tags:
                    reason += f" (tags: {', '.join(sorted(in_tags))})"
            elif dominant == "causal" and causal > 0:
                hops = "hop" if distance == 1 else "hops"
                reason = f"{distance} {hops} from recently used memory {via[:8]}"
            else:
                reason = f"high confidence ({confidence:.2f})"

            predictions.append(
                Prediction(
                    memory=memory,
                    score=score,
                    reason=reason,
                    signals={"overlap": overlap, "causal": causal, "confidence": confidence},
                )
            )

        predictions.sort(key=lambda p: (-p.score, p.memory.created_at, p.memory.id))
        logger.debug(
            f"predict: {len(predictions)} candidates, returning {min(limit, len(predictions))}"
        )
        return predictions[:limit]
