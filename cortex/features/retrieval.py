"""Intent-aware retrieval for cortex.

Builds a token-bounded bundle of memories for a task. Candidates come from
hybrid search over the kinds that matter for the intent (plus tag matches,
so a degraded search still finds something), are scored by decayed
confidence, similarity and kind priority, and are packed greedily into the
budget. Within a session, a memory is handed out once.
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Tuple

from cortex.core.utils import (
    COMPRESSION_LEVELS,
    COMPRESSION_SUMMARY,
    MAX_TOKEN_BUDGET,
    MIN_TOKEN_BUDGET,
    estimate_tokens,
    render_memory,
)
from cortex.kinds import SEVERITY_VALUES
from cortex.logging_config import log_retrieve
from cortex.protocols import ValidationFailure
from cortex.storage.search_impl import tokenize
from cortex.types import Intent, Memory, MemoryFilter, MemoryKind, RetrievalResult, RetrievedMemory

if TYPE_CHECKING:
    from cortex.core.engine import MemoryEngine

logger = logging.getLogger(__name__)

# Kinds consulted per intent, most relevant first
PRIORITY_KINDS: Dict[Intent, Tuple[MemoryKind, ...]] = {
    Intent.FIX_BUG: (
        MemoryKind.CODE_SMELL,
        MemoryKind.TRIBAL,
        MemoryKind.INCIDENT,
        MemoryKind.PROCEDURAL,
        MemoryKind.SEMANTIC,
    ),
    Intent.ADD_FEATURE: (
        MemoryKind.PATTERN_RATIONALE,
        MemoryKind.PROCEDURAL,
        MemoryKind.DECISION_CONTEXT,
        MemoryKind.TRIBAL,
        MemoryKind.SEMANTIC,
    ),
    Intent.REFACTOR: (
        MemoryKind.PATTERN_RATIONALE,
        MemoryKind.CODE_SMELL,
        MemoryKind.DECISION_CONTEXT,
        MemoryKind.SEMANTIC,
    ),
    Intent.SECURITY_AUDIT: (
        MemoryKind.TRIBAL,
        MemoryKind.CONSTRAINT_OVERRIDE,
        MemoryKind.CODE_SMELL,
        MemoryKind.INCIDENT,
    ),
    Intent.UNDERSTAND_CODE: (
        MemoryKind.CORE,
        MemoryKind.DECISION_CONTEXT,
        MemoryKind.PATTERN_RATIONALE,
        MemoryKind.SEMANTIC,
        MemoryKind.ENTITY,
    ),
    Intent.ADD_TEST: (
        MemoryKind.PROCEDURAL,
        MemoryKind.PATTERN_RATIONALE,
        MemoryKind.CODE_SMELL,
        MemoryKind.WORKFLOW,
    ),
}

# Similarity given to memories found only through a shared tag
TAG_MATCH_SIMILARITY = 0.05

# Search depth; never fewer than this many candidates are considered
MIN_CANDIDATES = 50

PRIORITY_WEIGHT_STEP = 0.1
MIN_PRIORITY_WEIGHT = 0.5

WARNING_KINDS = (MemoryKind.TRIBAL, MemoryKind.CODE_SMELL)
_SEVERITY_RANK = {"info": 0, "warning": 1, "critical": 2}


def parse_intent(value) -> Intent:
    if isinstance(value, Intent):
        return value
    try:
        return Intent(value)
    except ValueError:
        raise ValidationFailure(
            f"Unknown intent {value!r}; expected one of {[i.value for i in Intent]}",
            field="intent",
        ) from None


def priority_kinds(intent) -> Tuple[MemoryKind, ...]:
    return PRIORITY_KINDS[parse_intent(intent)]


def priority_weight(intent, kind: MemoryKind) -> float:
    """1.0 for the intent's first kind, 0.1 less per rank, never below 0.5."""
    kinds = priority_kinds(intent)
    if kind not in kinds:
        return MIN_PRIORITY_WEIGHT
    return max(MIN_PRIORITY_WEIGHT, 1.0 - PRIORITY_WEIGHT_STEP * kinds.index(kind))


def clamp_budget(max_tokens) -> int:
    if not isinstance(max_tokens, int) or max_tokens < MIN_TOKEN_BUDGET:
        return MIN_TOKEN_BUDGET
    return min(max_tokens, MAX_TOKEN_BUDGET)


def focus_tags(focus: str) -> List[str]:
    """Tag values a focus string could refer to: the whole string and its words."""
    focus = (focus or "").strip()
    if not focus:
        return []
    candidates = [focus, focus.lower()] + tokenize(focus, min_length=2)
    return list(dict.fromkeys(candidates))


def memory_severity(memory: Memory) -> str:
    severity = str(memory.knowledge.get("severity") or "warning").lower()
    return severity if severity in SEVERITY_VALUES else "warning"


class RetrievalMixin:
    """Budgeted, intent-aware retrieval."""

    def _retrieval_candidates(
        self: "MemoryEngine", focus: str, kinds: Sequence[MemoryKind], limit: int
    ) -> Dict[str, Tuple[Memory, float]]:
        """``{id: (memory, similarity)}`` from search plus tag matches."""
        candidates: Dict[str, Tuple[Memory, float]] = {}
        for result in self._storage.search(focus, kinds=kinds, limit=limit):
            candidates[result.memory.id] = (result.memory, result.score)

        tags = focus_tags(focus)
        if tags:
            for memory in self._storage.with_tags(tags, kinds=kinds):
                if memory.id not in candidates:
                    candidates[memory.id] = (memory, TAG_MATCH_SIMILARITY)
                else:
                    mem, score = candidates[memory.id]
                    candidates[memory.id] = (mem, max(score, TAG_MATCH_SIMILARITY))
        return candidates

    def retrieve(
        self: "MemoryEngine",
        intent: Intent,
        focus: str,
        max_tokens: Optional[int] = None,
        compression_level: int = COMPRESSION_SUMMARY,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RetrievalResult:
        """Retrieve context for a task under a token budget.

        Args:
            intent: What the caller is about to do; selects priority kinds
            focus: Free-text focus (file, feature, symptom)
            max_tokens: Budget for the rendered bundle (clamped to 1-50000);
                ``config.default_max_tokens`` when omitted
            compression_level: 0 ids only, 1 summaries, 2 with an example,
                3 full detail
            session_id: Memories already sent in this session are skipped,
                and the ones returned now are marked sent

        Returns:
            RetrievalResult; the summed ``tokens`` of its memories never
            exceed ``max_tokens``.
        """
        intent = parse_intent(intent)
        if compression_level not in COMPRESSION_LEVELS:
            raise ValidationFailure(
                f"compression_level must be one of {COMPRESSION_LEVELS}", field="compression_level"
            )
        if max_tokens is None:
            max_tokens = self.config.default_max_tokens
        budget = clamp_budget(max_tokens)
        now = now or self._now()
        kinds = PRIORITY_KINDS[intent]

        sent = set()
        if session_id is not None:
            self._sessions.touch(session_id, now)
            sent = self._sessions.sent_ids(session_id, now)

        limit = max(MIN_CANDIDATES, budget // 20)
        candidates = self._retrieval_candidates(focus, kinds, limit)

        scored = []
        for memory_id, (memory, similarity) in candidates.items():
            if memory_id in sent or memory.soft_deleted:
                continue
            effective = self.effective_confidence(memory, now)
            score = effective * similarity * priority_weight(intent, memory.kind)
            scored.append((score, effective, similarity, memory))
        scored.sort(key=lambda s: (-s[0], s[3].created_at, s[3].id))

        result = RetrievalResult(total_candidates=len(scored), intent=intent)
        for score, effective, similarity, memory in scored:
            rendered = render_memory(memory, compression_level)
            tokens = estimate_tokens(rendered)
            if result.tokens_used + tokens > budget:
                continue
            result.memories.append(
                RetrievedMemory(
                    memory=memory,
                    score=score,
                    effective_confidence=effective,
                    similarity=similarity,
                    tokens=tokens,
                    rendered=rendered,
                )
            )
            result.tokens_used += tokens
            if budget - result.tokens_used < MIN_TOKEN_BUDGET:
                break

        accepted = result.memory_ids
        if accepted:
            if session_id is not None:
                self._sessions.mark_sent(session_id, accepted, now)
            self._storage.touch_access(accepted, now)

        logger.debug(
            f"retrieve({intent.value}): {len(accepted)}/{result.total_candidates} memories, "
            f"{result.tokens_used}/{budget} tokens"
        )
        log_retrieve(
            self.stack_id, intent.value, len(accepted), result.total_candidates, result.tokens_used
        )
        return result

    def get_warnings(
        self: "MemoryEngine",
        focus: Optional[str] = None,
        min_severity: str = "warning",
        limit: int = 20,
        now: Optional[datetime] = None,
    ) -> List[Tuple[Memory, float]]:
        """Active tribal and code-smell warnings, highest effective confidence first.

        ``focus`` narrows to memories matching it by search or tag. Returns
        ``(memory, effective_confidence)`` pairs and does not touch access.
        """
        if min_severity not in _SEVERITY_RANK:
            raise ValidationFailure(
                f"min_severity must be one of {sorted(_SEVERITY_RANK)}", field="min_severity"
            )
        now = now or self._now()
        threshold = _SEVERITY_RANK[min_severity]

        if focus and focus.strip():
            candidates = self._retrieval_candidates(focus, WARNING_KINDS, MIN_CANDIDATES)
            memories = [memory for memory, _ in candidates.values()]
        else:
            memories = self._storage.query(MemoryFilter(kinds=list(WARNING_KINDS)))

        warnings = []
        for memory in memories:
            if memory.soft_deleted or _SEVERITY_RANK[memory_severity(memory)] < threshold:
                continue
            warnings.append((memory, self.effective_confidence(memory, now)))
        warnings.sort(key=lambda w: (-w[1], w[0].created_at, w[0].id))
        return warnings[:limit]
