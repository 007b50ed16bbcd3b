"""Tests for causal graph traversal, explain() and graph()."""

import pytest

from cortex.features.causal import graph_distances
from cortex.protocols import ValidationFailure
from cortex.types import Direction, MemoryKind, Relation


@pytest.fixture
def goal(engine):
    def _add(title):
        return engine.add(MemoryKind.GOAL, {"title": title})

    return _add


class TestTraverse:
    def test_outgoing_by_depth(self, engine, goal):
        """Steps come back breadth first with depth, path and relation."""
        a, b, c = goal("A"), goal("B"), goal("C")
        engine.link(a, b, Relation.REQUIRES)
        engine.link(b, c, Relation.REQUIRES)

        steps = engine.traverse(a)
        assert [(s.memory.id, s.depth) for s in steps] == [(b, 1), (c, 2)]
        assert steps[1].path == [a, b, c]
        assert steps[0].relation == Relation.REQUIRES

    def test_max_depth(self, engine, goal):
        """Traversal stops at max_depth."""
        a, b, c = goal("A"), goal("B"), goal("C")
        engine.link(a, b, Relation.REQUIRES)
        engine.link(b, c, Relation.REQUIRES)
        assert [s.memory.id for s in engine.traverse(a, max_depth=1)] == [b]
        assert engine.traverse(a, max_depth=0) == []

    def test_directions(self, engine, goal):
        """Incoming, outgoing and both directions follow the edge direction."""
        a, b = goal("A"), goal("B")
        engine.link(a, b, Relation.BLOCKS)

        assert engine.traverse(b, Direction.OUT) == []
        assert [s.memory.id for s in engine.traverse(b, Direction.IN)] == [a]
        assert [s.memory.id for s in engine.traverse(b, "both")] == [a]

    def test_cycle_terminates(self, engine, goal):
        """Each memory is visited once even in a cycle."""
        a, b, c = goal("A"), goal("B"), goal("C")
        engine.link(a, b, Relation.RELATED_TO)
        engine.link(b, c, Relation.RELATED_TO)
        engine.link(c, a, Relation.RELATED_TO)

        steps = engine.traverse(a, max_depth=10)
        assert [s.memory.id for s in steps] == [b, c]

    def test_relation_filter(self, engine, goal):
        """Only the requested relations are followed."""
        a, b, c = goal("A"), goal("B"), goal("C")
        engine.link(a, b, Relation.OWNS)
        engine.link(a, c, Relation.AFFECTS)
        assert [s.memory.id for s in engine.traverse(a, relations=[Relation.AFFECTS])] == [c]

    def test_deleted_nodes_reported_but_not_expanded(self, engine, goal):
        """A soft-deleted memory appears but is not walked through."""
        a, b, c = goal("A"), goal("B"), goal("C")
        engine.link(a, b, Relation.REQUIRES)
        engine.link(b, c, Relation.REQUIRES)
        engine.delete(b)

        steps = engine.traverse(a)
        assert [s.memory.id for s in steps] == [b]
        assert steps[0].memory.soft_deleted

    def test_unknown_start(self, engine):
        """An unknown start id yields no steps."""
        assert engine.traverse("missing") == []


class TestLink:
    def test_link_requires_existing_memories(self, engine, goal):
        """Linking to an unknown memory fails."""
        a = goal("A")
        with pytest.raises(ValidationFailure):
            engine.link(a, "missing", Relation.SUPPORTS)

    def test_self_link_rejected(self, engine, goal):
        """A memory cannot link to itself."""
        a = goal("A")
        with pytest.raises(ValueError):
            engine.link(a, a, Relation.SUPPORTS)

    def test_get_related(self, engine, goal):
        """Related memories include both link directions."""
        a, b, c = goal("A"), goal("B"), goal("C")
        engine.link(a, b, Relation.SUPPORTS)
        engine.link(c, a, Relation.SUPPORTS)
        assert [m.id for m in engine.get_related(a)] == [b, c]


class TestExplain:
    def test_narrates_origins_in_creation_order(self, engine, goal):
        """Origins are told oldest first."""
        first, second = goal("Collect metrics"), goal("Build dashboard")
        derived = goal("Alert on latency")
        engine.link(derived, second, Relation.DERIVED_FROM)
        engine.link(derived, first, Relation.DERIVED_FROM)

        narrative = engine.explain(derived)
        assert narrative.steps == [
            "Goal: Alert on latency exists because of Goal: Collect metrics.",
            "Goal: Alert on latency exists because of Goal: Build dashboard.",
        ]
        assert narrative.text == " ".join(narrative.steps)

    def test_supersedes_sentence(self, engine, goal):
        """Supersedes links read as a replacement."""
        old, new = goal("Use REST"), goal("Use gRPC")
        engine.link(new, old, Relation.SUPERSEDES)
        assert engine.explain(new).steps == ["Goal: Use gRPC supersedes Goal: Use REST."]

    def test_is_deterministic_with_cycles(self, engine, goal):
        """Cyclic origins give the same text every time."""
        a, b = goal("A"), goal("B")
        engine.link(a, b, Relation.DERIVED_FROM)
        engine.link(b, a, Relation.DERIVED_FROM)
        assert engine.explain(a).text == engine.explain(a).text
        assert len(engine.explain(a).steps) == 2

    def test_no_origins(self, engine, goal):
        """A memory without origins says so."""
        a = goal("Lonely")
        assert engine.explain(a).text == "Goal: Lonely has no recorded origins."

    def test_unknown_memory(self, engine):
        """Explaining an unknown id returns None."""
        assert engine.explain("missing") is None


class TestGraph:
    def test_nodes_and_edges(self, engine, goal):
        """Nodes within depth and the edges between them."""
        a, b, c, far = goal("A"), goal("B"), goal("C"), goal("Far")
        engine.link(a, b, Relation.SUPPORTS)
        engine.link(c, a, Relation.BLOCKS)
        engine.link(b, far, Relation.SUPPORTS)

        graph = engine.graph(a, depth=1)
        assert [n["id"] for n in graph["nodes"]] == [a, b, c]
        assert {(e["source"], e["target"], e["relation"]) for e in graph["edges"]} == {
            (a, b, "supports"),
            (c, a, "blocks"),
        }

    def test_unknown_root(self, engine):
        """An unknown root gives an empty graph."""
        assert engine.graph("missing") == {"nodes": [], "edges": []}

    def test_graph_distances_are_undirected(self, engine, goal):
        """Distances ignore edge direction and stop at max_depth."""
        a, b, c = goal("A"), goal("B"), goal("C")
        engine.link(b, a, Relation.SUPPORTS)
        engine.link(b, c, Relation.SUPPORTS)
        assert graph_distances(engine.storage, [a], max_depth=2) == {a: 0, b: 1, c: 2}
        assert graph_distances(engine.storage, [a], max_depth=1) == {a: 0, b: 1}
