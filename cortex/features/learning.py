"""Learning from corrections, and explicit feedback, for cortex.

``learn`` turns a correction ("don't do X, do Y") into durable memories:

- a ``tribal`` fact carrying the corrected knowledge,
- a ``code_smell`` anti-pattern when there is something concrete to avoid,
- a ``feedback`` record that the fact was learned from.

Memories that state the corrected original are implicitly rejected and
superseded by the new fact. ``feedback`` adjusts base confidence only;
effective confidence is always recomputed from it.
"""

import logging
import re
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from cortex.core.validation import sanitize_list, sanitize_string
from cortex.kinds import MAX_SUMMARY_LENGTH
from cortex.logging_config import log_feedback
from cortex.protocols import ValidationFailure
from cortex.storage.search_impl import STOP_WORDS, tokenize
from cortex.types import (
    CausalLink,
    FeedbackAction,
    FeedbackResult,
    Importance,
    LearningContext,
    LearningResult,
    Memory,
    MemoryKind,
    Relation,
    clamp_confidence,
)

if TYPE_CHECKING:
    from cortex.core.engine import MemoryEngine

logger = logging.getLogger(__name__)

CONFIRM_BOOST = 0.10
REJECT_FACTOR = 0.70
MODIFY_PENALTY = 0.10

# Confidence given to knowledge learned from a correction
LEARNED_CONFIDENCE = 0.8

# Placeholder callers send when there is no concrete original statement
PLACEHOLDER_ORIGINALS = frozenset({"", "previous approach", "n/a", "none", "unknown"})

DEFAULT_TOPIC = "Learned correction"
MAX_TOPIC_WORDS = 4

IMPERATIVE_MARKERS = ("always", "never", "use", "avoid", "prefer", "must", "should", "don't")

# Checked in order; the first category with a keyword hit wins
CATEGORY_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    (
        "security",
        (
            "security", "secure", "auth", "password", "secret", "token", "credential",
            "injection", "xss", "csrf", "encrypt", "sanitize", "permission", "vulnerab",
        ),
    ),
    (
        "performance",
        (
            "performance", "slow", "fast", "latency", "cache", "n+1", "optimiz",
            "efficient", "memory leak", "timeout", "batch",
        ),
    ),
    (
        "style",
        (
            "style", "naming", "format", "lint", "indent", "convention", "readab",
            "camelcase", "snake_case",
        ),
    ),
    (
        "correctness",
        (
            "bug", "wrong", "incorrect", "error", "crash", "broken", "fails", "exception",
            "off-by-one",
        ),
    ),
    (
        "pattern",
        ("pattern", "architecture", "design", "abstraction", "structure", "layer", "module"),
    ),
)

_SENTENCE_RE = re.compile(r"(?<=[.!?;])\s+|\n+")
_WORD_RE = re.compile(r"[a-z0-9][a-z0-9'_\-]*")


def normalize_text(text: str) -> str:
    return " ".join((text or "").lower().replace("’", "'").split())


def is_real_statement(original: Optional[str]) -> bool:
    normalized = normalize_text(original or "")
    return normalized not in PLACEHOLDER_ORIGINALS and bool(_WORD_RE.search(normalized))


def categorize(correction: str, original: str = "") -> str:
    text = normalize_text(f"{correction} {original}") + " "
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return "correction"


def extract_principles(correction: str) -> List[str]:
    """Sentences carrying an imperative marker, or the whole correction."""
    principles = []
    for sentence in _SENTENCE_RE.split(correction.strip()):
        sentence = sentence.strip()
        if not sentence:
            continue
        words = set(_WORD_RE.findall(normalize_text(sentence)))
        if any(marker in words for marker in IMPERATIVE_MARKERS):
            principles.append(sentence)
    return principles or [correction.strip()]


def extract_topic(correction: str) -> str:
    """First few content words of the correction."""
    words = []
    for token in tokenize(correction):
        if token in STOP_WORDS or token in IMPERATIVE_MARKERS or token in words:
            continue
        words.append(token)
        if len(words) == MAX_TOPIC_WORDS:
            break
    return " ".join(words) or DEFAULT_TOPIC


def matches_original(summary: str, original: str) -> bool:
    """Case/whitespace-normalized equality or containment either way."""
    a, b = normalize_text(summary), normalize_text(original)
    if not a or not b:
        return False
    return a == b or b in a or a in b


class LearningMixin:
    """Learning from corrections and confidence feedback."""

    def _memories_stating(self: "MemoryEngine", original: str) -> List[Memory]:
        found: Dict[str, Memory] = {}
        for result in self._storage.search(original, limit=50):
            memory = result.memory
            if not memory.soft_deleted and matches_original(memory.summary, original):
                found[memory.id] = memory
        return sorted(found.values(), key=lambda m: (m.created_at, m.id))

    def learn(
        self: "MemoryEngine",
        original: Optional[str],
        correction: str,
        corrected_artifact: Optional[str] = None,
        context: Optional[LearningContext] = None,
    ) -> LearningResult:
        """Learn from a correction.

        Args:
            original: What was said or done before (may be a placeholder)
            correction: The correction itself
            corrected_artifact: Corrected code or text, kept as the good example
            context: Related memory ids, active file and extra tags

        Returns:
            LearningResult with the ids created (fact first), the extracted
            principles, the superseded ids and the category.
        """
        correction = sanitize_string(correction, "correction", 5000)
        original = sanitize_string(original, "original", 5000, required=False).strip()
        corrected_artifact = sanitize_string(
            corrected_artifact, "corrected_artifact", 20000, required=False
        )
        context = context or LearningContext()
        context_tags = sanitize_list(context.tags, "context.tags", 100)
        related_ids = sanitize_list(context.related_memory_ids, "context.related_memory_ids", 100)

        category = categorize(correction, original)
        principles = extract_principles(correction)
        topic = extract_topic(correction)
        real_original = is_real_statement(original)

        related = [mid for mid in dict.fromkeys(related_ids) if self._storage.get(mid) is not None]
        superseded = self._memories_stating(original) if real_original else []
        superseded = [m for m in superseded if m.id not in related]
        superseded_ids = [m.id for m in superseded]

        tags = set(context_tags) | {category, "learned"}
        if context.active_file:
            tags.add(f"file:{context.active_file}")
        derived = [
            CausalLink(source_id="", target_id=mid, relation=Relation.DERIVED_FROM) for mid in related
        ]
        severity = "critical" if category == "security" else "warning"

        fact_knowledge = {"topic": topic, "knowledge": correction, "severity": severity}
        if real_original:
            fact_knowledge["original"] = original
        if len(principles) > 1 or principles[0] != correction.strip():
            fact_knowledge["principles"] = principles
        fact = Memory(
            kind=MemoryKind.TRIBAL,
            summary=_summary_line(correction),
            knowledge=fact_knowledge,
            base_confidence=LEARNED_CONFIDENCE,
            importance=Importance.HIGH if category == "security" else Importance.NORMAL,
            tags=tags,
        )
        fact_links = derived + [
            CausalLink(source_id="", target_id=mid, relation=Relation.SUPERSEDES)
            for mid in superseded_ids
        ]
        fact_embedded = self._embed_for_write(fact)
        fact_id = fact.id

        smell = None
        if real_original or corrected_artifact:
            smell_knowledge = {"name": topic, "reason": correction}
            if real_original:
                smell_knowledge["bad_example"] = original
            if corrected_artifact:
                smell_knowledge["good_example"] = corrected_artifact
            smell = Memory(
                kind=MemoryKind.CODE_SMELL,
                summary="",
                knowledge=smell_knowledge,
                base_confidence=LEARNED_CONFIDENCE,
                tags=tags,
            )
            smell_links = derived + [
                CausalLink(source_id="", target_id=fact_id, relation=Relation.RELATED_TO)
            ]
            smell_embedded = self._embed_for_write(smell)

        feedback_knowledge = {"feedback": correction, "category": category}
        if real_original:
            feedback_knowledge["original"] = original
        record = Memory(
            kind=MemoryKind.FEEDBACK,
            summary="",
            knowledge=feedback_knowledge,
            base_confidence=LEARNED_CONFIDENCE,
            tags=tags,
        )
        record_links = derived + [
            CausalLink(source_id="", target_id=fact_id, relation=Relation.LEARNED_FROM)
        ]
        record_embedded = self._embed_for_write(record, check_contradictions=False)

        # All or nothing: a failed write leaves the superseded memories untouched
        with self._storage.transaction():
            for memory_id in superseded_ids:
                self.feedback(memory_id, FeedbackAction.REJECT)
            self._store(fact, fact_links, fact_embedded, exclude_ids=superseded_ids)
            saved = [fact]
            if smell is not None:
                self._store(
                    smell, smell_links, smell_embedded, exclude_ids=superseded_ids + [fact_id]
                )
                saved.append(smell)
            self._store(record, record_links, record_embedded, check_contradictions=False)
            saved.append(record)

        for memory in saved:
            self._log_saved(memory)
        created = [memory.id for memory in saved]

        logger.info(
            f"Learned {category} correction: {len(created)} memories, "
            f"{len(principles)} principles, {len(superseded_ids)} superseded"
        )
        return LearningResult(
            created_memory_ids=created,
            extracted_principles=principles,
            superseded_ids=superseded_ids,
            category=category,
        )

    def feedback(
        self: "MemoryEngine",
        memory_id: str,
        action: FeedbackAction,
        new_summary: Optional[str] = None,
    ) -> Optional[FeedbackResult]:
        """Adjust a memory's base confidence from explicit feedback.

        confirm adds 0.10 (capped at 1.0), reject multiplies by 0.70, modify
        subtracts 0.10 and replaces the summary when one is given. Counts as
        an access. Returns None for an unknown id.
        """
        try:
            action = FeedbackAction(action)
        except ValueError:
            raise ValidationFailure(f"Invalid feedback action: {action!r}", field="action") from None
        if new_summary is not None:
            new_summary = sanitize_string(new_summary, "new_summary", MAX_SUMMARY_LENGTH)

        memory = self._storage.get(memory_id)
        if memory is None:
            return None

        before = memory.base_confidence
        if action == FeedbackAction.CONFIRM:
            after = min(1.0, before + CONFIRM_BOOST)
        elif action == FeedbackAction.REJECT:
            after = max(0.0, before * REJECT_FACTOR)
        else:
            after = max(0.0, before - MODIFY_PENALTY)
        after = clamp_confidence(round(after, 10))

        patch = {"base_confidence": after}
        if action == FeedbackAction.MODIFY and new_summary:
            patch["summary"] = new_summary
        updated = self._storage.update(memory_id, patch)
        self._storage.touch_access([memory_id])

        if "summary" in patch:
            self.check_contradictions(updated)

        logger.debug(f"Feedback {action.value} on {memory_id[:8]}: {before:.2f} -> {after:.2f}")
        log_feedback(self.stack_id, memory_id, action.value, before, after)
        return FeedbackResult(
            memory_id=memory_id,
            action=action,
            previous_confidence=before,
            new_confidence=after,
        )


def _summary_line(correction: str) -> str:
    line = " ".join(correction.split())
    if len(line) > MAX_SUMMARY_LENGTH:
        line = line[: MAX_SUMMARY_LENGTH - 3].rstrip() + "..."
    return line
