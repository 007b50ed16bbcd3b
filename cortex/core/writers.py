"""Memory write and lookup operations for cortex."""

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from cortex.core.validation import sanitize_list, sanitize_number, sanitize_string
from cortex.kinds import MAX_SUMMARY_LENGTH, parse_kind, validate_knowledge
from cortex.logging_config import log_save
from cortex.protocols import ValidationFailure
from cortex.types import (
    FACTUAL_KINDS,
    CausalLink,
    ContradictionResult,
    Importance,
    Memory,
    MemoryFilter,
    MemoryKind,
    MemoryPage,
    Relation,
    SearchResult,
)

logger = logging.getLogger(__name__)


def _coerce_link(link: Any) -> CausalLink:
    """Accept a CausalLink or a ``{"target_id", "relation", ...}`` mapping."""
    if isinstance(link, CausalLink):
        return link
    if isinstance(link, Mapping):
        try:
            relation = Relation(link.get("relation"))
        except ValueError:
            raise ValidationFailure(
                f"Invalid relation: {link.get('relation')!r}", field="links"
            ) from None
        return CausalLink(
            source_id=link.get("source_id") or "",
            target_id=link.get("target_id") or "",
            relation=relation,
            weight=sanitize_number(link.get("weight"), "weight", 0.0, 1.0, default=1.0),
        )
    raise ValidationFailure(f"Invalid link: {link!r}", field="links")


class WritersMixin:
    """Memory write and lookup operations."""

    def _embed_for_write(
        self, memory: Memory, check_contradictions: bool = True
    ) -> Tuple[Optional[List[float]], Optional[List[float]]]:
        """Provider calls for a write, made before its transaction opens.

        Validates the memory in place (it gets its id here) and returns the
        memory embedding plus the statement embedding used to look for
        contradictions.
        """
        embedding = self._storage.embed_memory(memory)
        query_vector = None
        if check_contradictions and memory.kind in FACTUAL_KINDS:
            query_vector = self._storage.embed_query(memory.summary)
        return embedding, query_vector

    def _store(
        self,
        memory: Memory,
        links: Sequence[CausalLink],
        embedded: Tuple[Optional[List[float]], Optional[List[float]]],
        explicit_contradicts: Sequence[str] = (),
        exclude_ids: Sequence[str] = (),
        check_contradictions: bool = True,
    ) -> Tuple[str, List[ContradictionResult]]:
        """Insert a memory and resolve its contradictions. Runs inside a transaction."""
        embedding, query_vector = embedded
        memory_id = self._storage.add(memory, links=links, embedding=embedding)
        contradictions: List[ContradictionResult] = []
        if check_contradictions:
            stored = self._storage.get(memory_id)
            contradictions = self.check_contradictions(
                stored,
                explicit_ids=explicit_contradicts,
                exclude_ids=exclude_ids,
                query_vector=query_vector,
            )
        return memory_id, contradictions

    def _log_saved(self, memory: Memory) -> None:
        log_save(
            self.stack_id,
            kind=memory.kind.value,
            memory_id=memory.id,
            summary=memory.summary[:50],
        )

    def _write(
        self,
        memory: Memory,
        links: Sequence[CausalLink] = (),
        explicit_contradicts: Sequence[str] = (),
        exclude_ids: Sequence[str] = (),
        check_contradictions: bool = True,
    ) -> Tuple[str, List[ContradictionResult]]:
        """Store a memory and resolve the contradictions it introduces, as one transaction."""
        embedded = self._embed_for_write(memory, check_contradictions)
        with self._storage.transaction():
            memory_id, contradictions = self._store(
                memory,
                links,
                embedded,
                explicit_contradicts=explicit_contradicts,
                exclude_ids=exclude_ids,
                check_contradictions=check_contradictions,
            )
        self._log_saved(memory)
        return memory_id, contradictions

    def add(
        self,
        kind: MemoryKind,
        knowledge: Mapping[str, Any],
        summary: Optional[str] = None,
        base_confidence: float = 1.0,
        importance: Importance = Importance.NORMAL,
        tags: Optional[Sequence[str]] = None,
        links: Optional[Sequence[Any]] = None,
    ) -> str:
        """Add a memory.

        Args:
            kind: Memory kind (a ``MemoryKind`` or its name)
            knowledge: Kind-specific payload; validated before anything is written
            summary: One-line summary; generated from knowledge when omitted
            base_confidence: Clamped to 0.0-1.0
            importance: low, normal, high or critical
            tags: Free-form tags
            links: CausalLinks (or mappings) from the new memory; a
                ``contradicts`` link declares an explicit contradiction

        Returns:
            The new memory id. Contradictions resolved by this write are
            available on ``last_contradictions``.

        Raises:
            InvalidKindError: unknown kind
            ValidationFailure: malformed knowledge or input
        """
        kind = parse_kind(kind)
        knowledge = validate_knowledge(kind, knowledge)
        summary = sanitize_string(summary, "summary", MAX_SUMMARY_LENGTH, required=False)
        if not isinstance(base_confidence, (int, float)) or isinstance(base_confidence, bool):
            raise ValidationFailure("base_confidence must be a number", field="base_confidence")
        try:
            importance = Importance(importance)
        except ValueError:
            raise ValidationFailure(f"Invalid importance: {importance!r}", field="importance") from None
        tags = sanitize_list(tags, "tags", 100)
        bound_links = [_coerce_link(link) for link in (links or ())]
        explicit = [
            link.target_id
            for link in bound_links
            if link.relation == Relation.CONTRADICTS and not link.source_id and link.target_id
        ]

        memory = Memory(
            kind=kind,
            summary=summary,
            knowledge=knowledge,
            base_confidence=base_confidence,
            importance=importance,
            tags=set(tags),
        )
        memory_id, contradictions = self._write(memory, bound_links, explicit_contradicts=explicit)
        self.last_contradictions = contradictions
        return memory_id

    def get(self, memory_id: str) -> Optional[Memory]:
        """Fetch a memory by id. Returns None when unknown. Does not count as an access."""
        return self._storage.get(self._validate_memory_id(memory_id))

    def update(self, memory_id: str, **patch: Any) -> Memory:
        """Patch a memory and return the stored result.

        Accepts ``summary``, ``knowledge``, ``base_confidence``,
        ``importance`` and ``tags``. A changed summary or knowledge on a
        factual memory re-runs contradiction detection.

        Raises:
            MemoryNotFoundError: unknown id
            ValidationFailure: bad field or value
        """
        memory_id = self._validate_memory_id(memory_id)
        if "soft_deleted" in patch:
            raise ValidationFailure("Use delete() to remove a memory", field="soft_deleted")
        if "summary" in patch:
            patch["summary"] = sanitize_string(
                patch["summary"], "summary", MAX_SUMMARY_LENGTH, required=False
            )
        if "tags" in patch:
            patch["tags"] = sanitize_list(patch["tags"], "tags", 100)

        updated = self._storage.update(memory_id, patch)
        self.last_contradictions = []
        if "summary" in patch or "knowledge" in patch:
            self.last_contradictions = self.check_contradictions(updated)
        logger.debug(f"Updated memory {memory_id}: {', '.join(sorted(patch))}")
        return updated

    def delete(self, memory_id: str) -> bool:
        """Soft-delete a memory. False when unknown or already deleted."""
        return self._storage.soft_delete(self._validate_memory_id(memory_id))

    def search(
        self,
        query: str,
        kinds: Optional[Sequence[MemoryKind]] = None,
        min_confidence: Optional[float] = None,
        limit: int = 10,
    ) -> List[SearchResult]:
        """Hybrid search. Degrades to lexical matching if the provider fails."""
        query = sanitize_string(query, "query", 1000)
        if min_confidence is not None:
            min_confidence = sanitize_number(min_confidence, "min_confidence", 0.0, 1.0)
        if not isinstance(limit, int) or limit <= 0:
            raise ValidationFailure("limit must be a positive integer", field="limit")
        return self._storage.search(query, kinds=kinds, min_confidence=min_confidence, limit=limit)

    def list(
        self,
        memory_filter: Optional[MemoryFilter] = None,
        cursor: Optional[str] = None,
        limit: int = 50,
    ) -> MemoryPage:
        """One page of memories, oldest first. Pass ``next_cursor`` back for more."""
        return self._storage.list_memories(memory_filter, cursor=cursor, limit=limit)

    def count_by_kind(self) -> Dict[str, int]:
        return self._storage.count_by_kind()
