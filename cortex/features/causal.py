"""Causal graph traversal for cortex.

Memories are nodes; ``causal_links`` rows are typed directed edges. Cycles
are allowed, so every walk keeps a visited set.
"""

import logging
from collections import deque
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Set, Tuple

from cortex.protocols import ValidationFailure
from cortex.types import CausalLink, Direction, Memory, Narrative, Relation, TraversalStep

if TYPE_CHECKING:
    from cortex.core.engine import MemoryEngine
    from cortex.storage.sqlite import SQLiteStorage

logger = logging.getLogger(__name__)

DEFAULT_TRAVERSAL_DEPTH = 3
DEFAULT_EXPLAIN_DEPTH = 5

# Edges followed by explain(), pointing from a memory toward its origins
ORIGIN_RELATIONS = (Relation.DERIVED_FROM, Relation.SUPERSEDES)


def _neighbors(
    storage: "SQLiteStorage",
    memory_id: str,
    direction: Direction,
    relations: Optional[Sequence[Relation]],
) -> List[Tuple[str, Relation]]:
    """(neighbor_id, relation) pairs in a stable order."""
    result: List[Tuple[str, Relation]] = []
    if direction in (Direction.OUT, Direction.BOTH):
        result.extend((l.target_id, l.relation) for l in storage.links_from(memory_id, relations))
    if direction in (Direction.IN, Direction.BOTH):
        result.extend((l.source_id, l.relation) for l in storage.links_to(memory_id, relations))
    return result


def traverse(
    storage: "SQLiteStorage",
    memory_id: str,
    direction: Direction = Direction.OUT,
    max_depth: int = DEFAULT_TRAVERSAL_DEPTH,
    relations: Optional[Sequence[Relation]] = None,
) -> List[TraversalStep]:
    """Breadth-first walk from ``memory_id``.

    Each reachable memory is reported once, at its shallowest depth, with
    the relation of the edge that reached it and the id path from the
    start. The start node is not reported. Soft-deleted memories are
    reported but not expanded.
    """
    direction = Direction(direction)
    if max_depth <= 0 or storage.get(memory_id) is None:
        return []

    visited: Set[str] = {memory_id}
    queue: deque = deque([(memory_id, 0, [memory_id])])
    steps: List[TraversalStep] = []

    while queue:
        current, depth, path = queue.popleft()
        if depth >= max_depth:
            continue
        for neighbor_id, relation in _neighbors(storage, current, direction, relations):
            if neighbor_id in visited:
                continue
            visited.add(neighbor_id)
            memory = storage.get(neighbor_id)
            if memory is None:
                continue
            new_path = path + [neighbor_id]
            steps.append(
                TraversalStep(memory=memory, relation=relation, depth=depth + 1, path=new_path)
            )
            if not memory.soft_deleted:
                queue.append((neighbor_id, depth + 1, new_path))
    return steps


def graph_distances(
    storage: "SQLiteStorage",
    start_ids: Sequence[str],
    max_depth: int,
) -> Dict[str, int]:
    """Shortest undirected hop count from any start id, up to ``max_depth``."""
    distances: Dict[str, int] = {mid: 0 for mid in start_ids}
    queue: deque = deque((mid, 0) for mid in start_ids)
    while queue:
        current, depth = queue.popleft()
        if depth >= max_depth:
            continue
        for neighbor_id, _ in _neighbors(storage, current, Direction.BOTH, None):
            if neighbor_id not in distances:
                distances[neighbor_id] = depth + 1
                queue.append((neighbor_id, depth + 1))
    return distances


def _label(memory: Memory) -> str:
    return memory.summary.strip() or f"[{memory.kind.value}:{memory.short_id}]"


def _sentence(source: Memory, relation: Relation, target: Memory) -> str:
    if relation == Relation.SUPERSEDES:
        return f"{_label(source)} supersedes {_label(target)}."
    return f"{_label(source)} exists because of {_label(target)}."


def explain(
    storage: "SQLiteStorage", memory_id: str, max_depth: int = DEFAULT_EXPLAIN_DEPTH
) -> Optional[Narrative]:
    """Narrate why a memory exists by walking toward its origins.

    Follows derived_from and supersedes edges outward. Hops are ordered by
    the origin memory's created_at (then id), one sentence each.
    Deterministic for a given graph.
    """
    root = storage.get(memory_id)
    if root is None:
        return None

    hops: List[Tuple[Memory, Relation, Memory]] = []
    visited: Set[str] = {memory_id}
    seen_edges: Set[Tuple[str, str, str]] = set()
    queue: deque = deque([(root, 0)])

    while queue:
        current, depth = queue.popleft()
        if depth >= max_depth:
            continue
        for link in storage.links_from(current.id, ORIGIN_RELATIONS):
            if link.key in seen_edges:
                continue
            seen_edges.add(link.key)
            origin = storage.get(link.target_id)
            if origin is None:
                continue
            hops.append((current, link.relation, origin))
            if origin.id not in visited:
                visited.add(origin.id)
                queue.append((origin, depth + 1))

    hops.sort(key=lambda h: (h[2].created_at, h[2].id, h[0].id, h[1].value))
    steps = [_sentence(source, relation, origin) for source, relation, origin in hops]
    if steps:
        text = " ".join(steps)
    else:
        text = f"{_label(root)} has no recorded origins."
    return Narrative(memory_id=memory_id, text=text, steps=steps)


def build_graph(storage: "SQLiteStorage", memory_id: str, depth: int = 2) -> Dict[str, Any]:
    """Nodes and edges within ``depth`` hops (either direction)."""
    root = storage.get(memory_id)
    if root is None:
        return {"nodes": [], "edges": []}

    nodes: Dict[str, Memory] = {root.id: root}
    for step in traverse(storage, memory_id, Direction.BOTH, depth):
        nodes[step.memory.id] = step.memory

    edges: Dict[Tuple[str, str, str], CausalLink] = {}
    for node_id in nodes:
        for link in storage.links_from(node_id):
            if link.target_id in nodes:
                edges[link.key] = link

    return {
        "nodes": [
            {
                "id": m.id,
                "kind": m.kind.value,
                "summary": m.summary,
                "base_confidence": m.base_confidence,
                "soft_deleted": m.soft_deleted,
            }
            for m in sorted(nodes.values(), key=lambda m: (m.created_at, m.id))
        ],
        "edges": [
            {
                "source": l.source_id,
                "target": l.target_id,
                "relation": l.relation.value,
                "weight": l.weight,
            }
            for _, l in sorted(edges.items())
        ],
    }


class CausalMixin:
    """Causal-graph operations exposed on the engine."""

    def traverse(
        self: "MemoryEngine",
        memory_id: str,
        direction: Direction = Direction.OUT,
        max_depth: int = DEFAULT_TRAVERSAL_DEPTH,
        relations: Optional[Sequence[Relation]] = None,
    ) -> List[TraversalStep]:
        return traverse(self._storage, memory_id, direction, max_depth, relations)

    def explain(
        self: "MemoryEngine", memory_id: str, max_depth: int = DEFAULT_EXPLAIN_DEPTH
    ) -> Optional[Narrative]:
        return explain(self._storage, memory_id, max_depth)

    def graph(self: "MemoryEngine", memory_id: str, depth: int = 2) -> Dict[str, Any]:
        return build_graph(self._storage, memory_id, depth)

    def get_related(
        self: "MemoryEngine", memory_id: str, relations: Optional[Sequence[Relation]] = None
    ) -> List[Memory]:
        """Direct neighbours in either direction, oldest first."""
        return [
            step.memory
            for step in sorted(
                traverse(self._storage, memory_id, Direction.BOTH, 1, relations),
                key=lambda s: (s.memory.created_at, s.memory.id),
            )
        ]

    def link(
        self: "MemoryEngine",
        source_id: str,
        target_id: str,
        relation: Relation,
        weight: float = 1.0,
    ) -> CausalLink:
        """Add (or re-weight) a link between two existing memories."""
        for mid in (source_id, target_id):
            if self._storage.get(mid) is None:
                raise ValidationFailure(f"Linked memory not found: {mid}", field="links")
        link = CausalLink(
            source_id=source_id, target_id=target_id, relation=Relation(relation), weight=weight
        )
        self._storage.add_link(link)
        return link
