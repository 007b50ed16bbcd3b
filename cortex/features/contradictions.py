"""Contradiction detection for cortex.

When a factual memory is written, nearby factual memories are checked for
conflicting statements. A confirmed conflict links the pair with
``contradicts``, cuts the older memory's confidence, and passes a shrinking
share of that cut to memories that support or derive from it.
"""

import logging
import re
from collections import deque
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from cortex.storage.search_impl import STOP_WORDS
from cortex.storage.sqlite import EMBED
from cortex.types import (
    FACTUAL_KINDS,
    CausalLink,
    ContradictionResult,
    Memory,
    MemoryKind,
    Relation,
    clamp_confidence,
)

if TYPE_CHECKING:
    from cortex.core.engine import MemoryEngine

logger = logging.getLogger(__name__)

# Opposition word pairs. Both directions are checked.
OPPOSITION_PAIRS: Tuple[Tuple[str, str], ...] = (
    # Frequency/Certainty
    ("always", "never"),
    ("sometimes", "never"),
    ("often", "rarely"),
    # Modal verbs and necessity
    ("should", "shouldn't"),
    ("must", "mustn't"),
    ("can", "cannot"),
    ("do", "don't"),
    # Preferences and recommendations
    ("use", "avoid"),
    ("prefer", "avoid"),
    ("like", "dislike"),
    ("allow", "forbid"),
    ("allow", "prevent"),
    ("recommended", "discouraged"),
    ("required", "optional"),
    ("include", "exclude"),
    # States
    ("enable", "disable"),
    ("enabled", "disabled"),
    ("sync", "async"),
    ("synchronous", "asynchronous"),
    ("mutable", "immutable"),
    ("safe", "unsafe"),
    ("secure", "insecure"),
    # Truth values
    ("true", "false"),
    ("correct", "incorrect"),
    ("valid", "invalid"),
    ("right", "wrong"),
    # Comparatives
    ("more", "less"),
    ("better", "worse"),
    ("faster", "slower"),
    ("increase", "decrease"),
)

# Words that flip the meaning of a statement
NEGATION_MARKERS: FrozenSet[str] = frozenset(
    {
        "not",
        "no",
        "never",
        "don't",
        "dont",
        "doesn't",
        "didn't",
        "isn't",
        "aren't",
        "won't",
        "can't",
        "cannot",
        "shouldn't",
        "mustn't",
        "avoid",
        "without",
    }
)

_OPPOSITION_WORDS = frozenset(w for pair in OPPOSITION_PAIRS for w in pair)
_WORD_RE = re.compile(r"[a-z0-9][a-z0-9'_\-]*")


def _words(text: str) -> Set[str]:
    return set(_WORD_RE.findall((text or "").lower().replace("’", "'")))


def topic_words(text: str) -> Set[str]:
    """Content words: no stop words, negation markers or opposition words."""
    return {
        w
        for w in _words(text)
        if w not in STOP_WORDS and w not in NEGATION_MARKERS and w not in _OPPOSITION_WORDS
    }


def topic_overlap(a: str, b: str) -> float:
    """Shared topic words as a fraction of the smaller word set."""
    wa, wb = topic_words(a), topic_words(b)
    if not wa or not wb:
        return 0.0
    return len(wa & wb) / min(len(wa), len(wb))


def _shares_topic(a: str, b: str) -> bool:
    wa, wb = topic_words(a), topic_words(b)
    shared = len(wa & wb)
    if min(len(wa), len(wb)) <= 2:
        return shared >= 1
    return shared >= 2


def conflict_reason(a: str, b: str) -> Optional[str]:
    """Why two statements conflict, or None.

    Conflicting means they share topic words and either exactly one of them
    is negated or an opposition pair appears across them.
    """
    if not _shares_topic(a, b):
        return None
    words_a, words_b = _words(a), _words(b)

    for x, y in OPPOSITION_PAIRS:
        if (x in words_a and y in words_b and y not in words_a and x not in words_b) or (
            y in words_a and x in words_b and x not in words_a and y not in words_b
        ):
            return f"opposition: '{x}' vs '{y}'"

    neg_a = bool(words_a & NEGATION_MARKERS)
    neg_b = bool(words_b & NEGATION_MARKERS)
    if neg_a != neg_b:
        return "negation"
    return None


def _statement(memory: Memory) -> str:
    return memory.summary or ""


class ContradictionMixin:
    """Contradiction detection and confidence penalties."""

    def _contradiction_candidates(
        self: "MemoryEngine", memory: Memory, query_vector: Any = EMBED
    ) -> Dict[str, Memory]:
        storage = self._storage
        config = self.config
        statement = _statement(memory)
        candidates: Dict[str, Memory] = {}

        kinds = sorted(FACTUAL_KINDS, key=lambda k: k.value)
        results = storage.search(statement, kinds=kinds, limit=20, query_vector=query_vector)
        vectors_used = storage.has_vector_search and not storage.last_search_degraded
        for result in results:
            other = result.memory
            if other.id == memory.id or other.soft_deleted:
                continue
            if vectors_used and result.score >= config.contradiction_similarity:
                candidates[other.id] = other
            elif topic_overlap(statement, _statement(other)) >= config.topic_overlap:
                candidates[other.id] = other

        if memory.tags:
            for other in storage.with_tags(sorted(memory.tags), kinds=list(FACTUAL_KINDS)):
                if other.id != memory.id:
                    candidates.setdefault(other.id, other)
        return candidates

    def _already_contradicting(self: "MemoryEngine", a: str, b: str) -> bool:
        for link in self._storage.links_from(a, [Relation.CONTRADICTS]):
            if link.target_id == b:
                return True
        for link in self._storage.links_to(a, [Relation.CONTRADICTS]):
            if link.source_id == b:
                return True
        return False

    def check_contradictions(
        self: "MemoryEngine",
        memory: Memory,
        explicit_ids: Sequence[str] = (),
        exclude_ids: Sequence[str] = (),
        query_vector: Any = EMBED,
    ) -> List[ContradictionResult]:
        """Detect and resolve contradictions for a freshly written memory.

        ``explicit_ids`` are memories the caller already declared as
        contradicted; they are confirmed without text analysis. Pairs that
        were already linked by an earlier check are not penalised again, and
        ``exclude_ids`` are never considered. ``query_vector`` is the
        statement embedding from ``storage.embed_query``, when the caller
        computed it ahead of a transaction.
        """
        if memory.kind not in FACTUAL_KINDS or memory.soft_deleted:
            return []

        excluded = set(exclude_ids)
        explicit = [
            mid for mid in dict.fromkeys(explicit_ids) if mid != memory.id and mid not in excluded
        ]
        confirmed: List[Tuple[Memory, str]] = []
        for mid in explicit:
            other = self._storage.get(mid)
            if other is not None and not other.soft_deleted:
                confirmed.append((other, "explicit"))

        explicit_set = set(explicit) | excluded
        candidates = self._contradiction_candidates(memory, query_vector)
        for other in sorted(candidates.values(), key=lambda m: (m.created_at, m.id)):
            if other.id in explicit_set:
                continue
            reason = conflict_reason(_statement(memory), _statement(other))
            if reason is None:
                continue
            if self._already_contradicting(memory.id, other.id):
                continue
            confirmed.append((other, reason))

        results = []
        for other, reason in confirmed:
            results.append(self._resolve_contradiction(memory, other, reason))
        return results

    def _resolve_contradiction(
        self: "MemoryEngine", new: Memory, existing: Memory, reason: str
    ) -> ContradictionResult:
        storage = self._storage
        config = self.config

        older = min((new, existing), key=lambda m: (m.created_at, m.id))
        with storage.transaction():
            storage.add_link(
                CausalLink(source_id=new.id, target_id=existing.id, relation=Relation.CONTRADICTS)
            )
            current = storage.get(older.id)
            before = current.base_confidence
            after = clamp_confidence(before * (1.0 - config.contradiction_penalty))
            storage.set_confidence(older.id, after)
            delta = before - after
            propagated = self._propagate_penalty(older.id, delta, exclude={new.id, existing.id})

        logger.info(
            f"Contradiction ({reason}) between {new.short_id} and {existing.short_id}: "
            f"{older.short_id} confidence {before:.2f} -> {after:.2f}, "
            f"{len(propagated)} related memories adjusted"
        )
        return ContradictionResult(
            new_memory_id=new.id,
            existing_memory_id=existing.id,
            reason=reason,
            penalized_memory_id=older.id,
            confidence_before=before,
            confidence_after=after,
            propagated=propagated,
        )

    def _propagate_penalty(
        self: "MemoryEngine", start_id: str, delta: float, exclude: Iterable[str] = ()
    ) -> Dict[str, float]:
        """Pass a halving share of ``delta`` along supports/derived_from edges.

        Hop 1 loses ``factor * delta``, hop 2 ``factor**2 * delta``, and so on
        up to ``propagation_depth``. Core memories are neither reduced nor
        walked through. Returns ``{memory_id: new_base_confidence}``.
        """
        storage = self._storage
        config = self.config
        relations = [Relation.SUPPORTS, Relation.DERIVED_FROM]
        visited: Set[str] = {start_id} | set(exclude)
        queue: deque = deque([(start_id, 0)])
        updated: Dict[str, float] = {}

        while queue:
            current, depth = queue.popleft()
            if depth >= config.propagation_depth:
                continue
            neighbor_ids = [l.target_id for l in storage.links_from(current, relations)]
            neighbor_ids += [l.source_id for l in storage.links_to(current, relations)]
            for neighbor_id in neighbor_ids:
                if neighbor_id in visited:
                    continue
                visited.add(neighbor_id)
                neighbor = storage.get(neighbor_id)
                if neighbor is None or neighbor.soft_deleted or neighbor.kind == MemoryKind.CORE:
                    continue
                reduction = delta * (config.propagation_factor ** (depth + 1))
                new_conf = clamp_confidence(neighbor.base_confidence - reduction)
                storage.set_confidence(neighbor_id, new_conf)
                updated[neighbor_id] = new_conf
                queue.append((neighbor_id, depth + 1))
        return updated
