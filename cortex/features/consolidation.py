"""Episode consolidation for cortex.

Raw ``episodic`` memories decay within days. Consolidation clusters similar
episodes and folds each cluster into one durable ``semantic`` memory that
links back to its sources, then retires the sources.

Only one pass runs at a time; a concurrent call returns immediately with
``skipped_in_progress`` set.
"""

import hashlib
import logging
import re
import threading
from collections import Counter
from datetime import datetime
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Set

from cortex.core.utils import COMPRESSION_FULL, memory_tokens
from cortex.kinds import knowledge_text, render_summary
from cortex.logging_config import log_consolidation
from cortex.protocols import ConsolidationAlreadyInProgress
from cortex.storage.embeddings import cosine_similarity
from cortex.storage.search_impl import STOP_WORDS, tokenize
from cortex.types import (
    CausalLink,
    ConsolidationRecord,
    ConsolidationStats,
    Memory,
    MemoryFilter,
    MemoryKind,
    Relation,
)

if TYPE_CHECKING:
    from cortex.core.engine import MemoryEngine

logger = logging.getLogger(__name__)

# Safety cap for consolidation input size. Pairwise similarity is quadratic,
# so each pass takes the oldest episodes; later passes process the rest.
MAX_CONSOLIDATION_EPISODES = 500

# Recurring lines kept in the synthesized knowledge
MAX_RECURRING_LINES = 5

_LINE_SPLIT_RE = re.compile(r"[\n.;!?]+")


class _UnionFind:
    def __init__(self, items: Sequence[str]):
        self.parent = {item: item for item in items}

    def find(self, item: str) -> str:
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, a: str, b: str) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            # Smaller id wins, keeps roots deterministic
            if rb < ra:
                ra, rb = rb, ra
            self.parent[rb] = ra


def cluster_signature(memory_ids: Sequence[str]) -> str:
    """sha256 over the sorted member ids."""
    return hashlib.sha256(",".join(sorted(memory_ids)).encode("utf-8")).hexdigest()


def content_tokens(memory: Memory) -> Set[str]:
    """Content words plus ``#tag`` features, for Jaccard similarity."""
    text = f"{memory.summary} {knowledge_text(memory.knowledge)}"
    tokens = {t for t in tokenize(text) if t not in STOP_WORDS}
    tokens.update(f"#{tag.lower()}" for tag in memory.tags)
    return tokens


def jaccard(a: Set[str], b: Set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def cluster_episodes(
    episodes: Sequence[Memory],
    threshold: float,
    embeddings: Optional[Dict[str, List[float]]] = None,
) -> List[List[Memory]]:
    """Single-link clusters of episodes at ``similarity >= threshold``.

    Pairs where both sides have an embedding use cosine similarity; other
    pairs use Jaccard over content tokens and tags. Clusters are returned
    oldest-first, members oldest-first.
    """
    embeddings = embeddings or {}
    uf = _UnionFind([e.id for e in episodes])
    tokens = {e.id: content_tokens(e) for e in episodes}

    for i, a in enumerate(episodes):
        for b in episodes[i + 1 :]:
            va, vb = embeddings.get(a.id), embeddings.get(b.id)
            if va is not None and vb is not None and len(va) == len(vb):
                similarity = cosine_similarity(va, vb)
            else:
                similarity = jaccard(tokens[a.id], tokens[b.id])
            if similarity >= threshold:
                uf.union(a.id, b.id)

    groups: Dict[str, List[Memory]] = {}
    for episode in episodes:
        groups.setdefault(uf.find(episode.id), []).append(episode)
    clusters = [sorted(g, key=lambda m: (m.created_at, m.id)) for g in groups.values()]
    clusters.sort(key=lambda g: (g[0].created_at, g[0].id))
    return clusters


def _episode_lines(memory: Memory) -> List[str]:
    text = "\n".join(
        str(v) for v in (memory.knowledge.get("interaction"), memory.knowledge.get("outcome")) if v
    ) or memory.summary
    return [" ".join(line.split()) for line in _LINE_SPLIT_RE.split(text) if line.strip()]


def synthesize(cluster: Sequence[Memory]) -> Memory:
    """Build the semantic memory that replaces a cluster of episodes."""
    token_counts: Counter = Counter()
    tag_counts: Counter = Counter()
    for episode in cluster:
        token_counts.update({t for t in content_tokens(episode) if not t.startswith("#")})
        tag_counts.update(episode.tags)

    # Most common shared token or tag; tags win ties, then alphabetical
    ranked = [(count, 1, tag) for tag, count in tag_counts.items() if count >= 2]
    ranked += [(count, 0, token) for token, count in token_counts.items() if count >= 2]
    if ranked:
        ranked.sort(key=lambda r: (-r[0], -r[1], r[2]))
        topic = ranked[0][2]
    else:
        topic = "recurring episodes"

    line_counts: Counter = Counter()
    first_seen: Dict[str, str] = {}
    for episode in cluster:
        for line in dict.fromkeys(_episode_lines(episode)):
            key = line.lower()
            line_counts[key] += 1
            first_seen.setdefault(key, line)
    recurring = [first_seen[k] for k, c in line_counts.most_common() if c >= 2]
    if not recurring:
        recurring = list(dict.fromkeys(e.summary for e in cluster if e.summary))
    recurring = recurring[:MAX_RECURRING_LINES]

    tags: Set[str] = set()
    for episode in cluster:
        tags.update(episode.tags)

    knowledge = {
        "topic": topic,
        "knowledge": "; ".join(recurring) or topic,
        "supporting_evidence": len(cluster),
        "source_episodes": [e.id for e in cluster],
    }
    return Memory(
        kind=MemoryKind.SEMANTIC,
        summary=render_summary(MemoryKind.SEMANTIC, knowledge),
        knowledge=knowledge,
        base_confidence=sum(e.base_confidence for e in cluster) / len(cluster),
        importance=max((e.importance for e in cluster), key=lambda i: i.rank),
        tags=tags,
    )


class ConsolidationMixin:
    """Episode-to-semantic consolidation."""

    def consolidate(
        self: "MemoryEngine",
        min_episodes: Optional[int] = None,
        similarity_threshold: Optional[float] = None,
        dry_run: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> ConsolidationStats:
        """Fold clusters of similar episodes into semantic memories.

        Args:
            min_episodes: Smallest cluster worth consolidating (default 3)
            similarity_threshold: Pairwise similarity that joins two episodes
                (default 0.6)
            dry_run: Report what would happen without writing anything
            cancel_event: Checked between clusters

        Returns:
            ConsolidationStats; ``skipped_in_progress`` is set when another
            pass was already running.
        """
        try:
            return self._consolidate_locked(
                min_episodes if min_episodes is not None else self.config.min_episodes,
                (
                    similarity_threshold
                    if similarity_threshold is not None
                    else self.config.consolidation_similarity
                ),
                dry_run,
                cancel_event,
            )
        except ConsolidationAlreadyInProgress:
            logger.info("Consolidation already in progress, skipping")
            return ConsolidationStats(dry_run=dry_run, skipped_in_progress=True)

    def _consolidate_locked(
        self: "MemoryEngine",
        min_episodes: int,
        threshold: float,
        dry_run: bool,
        cancel_event: Optional[threading.Event],
    ) -> ConsolidationStats:
        if not self._consolidation_lock.acquire(blocking=False):
            raise ConsolidationAlreadyInProgress()
        try:
            return self._run_consolidation(min_episodes, threshold, dry_run, cancel_event)
        finally:
            self._consolidation_lock.release()

    def _run_consolidation(
        self: "MemoryEngine",
        min_episodes: int,
        threshold: float,
        dry_run: bool,
        cancel_event: Optional[threading.Event],
    ) -> ConsolidationStats:
        storage = self._storage
        stats = ConsolidationStats(dry_run=dry_run)

        cap = min(self.config.max_consolidation_episodes, MAX_CONSOLIDATION_EPISODES)
        episodes = storage.query(MemoryFilter(kinds=[MemoryKind.EPISODIC]), limit=cap)
        if len(episodes) < min_episodes:
            return stats

        embeddings = storage.get_embeddings([e.id for e in episodes])
        clusters = cluster_episodes(episodes, threshold, embeddings)

        for cluster in clusters:
            if cancel_event is not None and cancel_event.is_set():
                stats.cancelled = True
                logger.info(f"Consolidation cancelled after {stats.clusters} clusters")
                break
            if len(cluster) < min_episodes:
                continue
            ids = [e.id for e in cluster]
            signature = cluster_signature(ids)
            if storage.get_consolidation_record(signature) is not None:
                continue

            semantic = synthesize(cluster)
            tokens_before = sum(memory_tokens(e, COMPRESSION_FULL) for e in cluster)

            if not dry_run:
                semantic = self._commit_cluster(cluster, semantic, signature)
                stats.created_memory_ids.append(semantic.id)
            tokens_after = memory_tokens(semantic, COMPRESSION_FULL)

            stats.clusters += 1
            stats.episodes_processed += len(cluster)
            stats.memories_created += 1
            stats.memories_pruned += len(cluster)
            stats.estimated_tokens_freed += max(0, tokens_before - tokens_after)

        logger.info(
            f"Consolidation{' (dry run)' if dry_run else ''}: {stats.clusters} clusters, "
            f"{stats.memories_created} created, {stats.memories_pruned} pruned, "
            f"~{stats.estimated_tokens_freed} tokens freed"
        )
        if stats.clusters:
            log_consolidation(
                self.stack_id,
                created=stats.memories_created,
                pruned=stats.memories_pruned,
                tokens_freed=stats.estimated_tokens_freed,
                dry_run=dry_run,
            )
        return stats

    def _commit_cluster(
        self: "MemoryEngine", cluster: Sequence[Memory], semantic: Memory, signature: str
    ) -> Memory:
        """Create the semantic memory, retire the sources, record the cluster. One transaction."""
        storage = self._storage
        now: datetime = self._now()
        links = [
            CausalLink(source_id="", target_id=e.id, relation=Relation.DERIVED_FROM)
            for e in cluster
        ]
        embedding = storage.embed_memory(semantic)
        with storage.transaction():
            memory_id = storage.add(semantic, links=links, embedding=embedding)
            for episode in cluster:
                storage.soft_delete(episode.id)
            storage.save_consolidation_record(
                ConsolidationRecord(
                    cluster_signature=signature,
                    source_episode_ids=[e.id for e in cluster],
                    produced_memory_id=memory_id,
                    created_at=now,
                )
            )
        return storage.get(memory_id)
