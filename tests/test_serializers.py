"""Tests for export/import."""

import json

import pytest

from cortex.core.serializers import EXPORT_FORMAT_VERSION, memory_from_dict, memory_to_dict
from cortex.protocols import InvalidKindError, ValidationFailure
from cortex.types import Intent, MemoryKind, Relation


@pytest.fixture
def populated(engine, make_tribal):
    tip = engine.add(
        MemoryKind.TRIBAL, make_tribal("db", "Pool connections"), tags=["db"], base_confidence=0.9
    )
    goal = engine.add(MemoryKind.GOAL, {"title": "Scale the API"})
    engine.link(goal, tip, Relation.REQUIRES)
    engine.retrieve(Intent.FIX_BUG, "pool connections")
    gone = engine.add(MemoryKind.GOAL, {"title": "Abandoned"})
    engine.delete(gone)
    return {"tip": tip, "goal": goal, "gone": gone}


@pytest.fixture
def other_engine(tmp_path, clock):
    from cortex.config import CortexConfig
    from cortex.core import MemoryEngine

    e = MemoryEngine(
        db_path=tmp_path / "other.db",
        config=CortexConfig(),
        use_embeddings=False,
        stack_id="other",
        now_fn=clock,
    )
    yield e
    e.close()


class TestExport:
    def test_export_shape(self, engine, populated):
        """Export carries version, stack id, memories and links."""
        data = engine.export_memories()

        assert data["version"] == EXPORT_FORMAT_VERSION
        assert data["stack_id"] == "test_stack"
        assert {m["id"] for m in data["memories"]} == {populated["tip"], populated["goal"]}
        assert data["links"] == [
            {
                "source_id": populated["goal"],
                "target_id": populated["tip"],
                "relation": "requires",
                "weight": 1.0,
                "created_at": data["links"][0]["created_at"],
            }
        ]

    def test_include_deleted(self, engine, populated):
        """Soft-deleted memories are exported only on request."""
        ids = {m["id"] for m in engine.export_memories(include_deleted=True)["memories"]}
        assert populated["gone"] in ids

    def test_memory_dict_round_trip_keeps_bookkeeping(self, engine, populated):
        """Access counts, timestamps and tags survive a dict round trip."""
        memory = engine.get(populated["tip"])
        restored = memory_from_dict(memory_to_dict(memory))
        assert restored.access_count == 1
        assert restored.last_accessed_at == memory.last_accessed_at
        assert restored.tags == {"db"}


class TestImport:
    def test_import_preserves_records(self, engine, other_engine, populated):
        """Imported memories keep their ids, confidence, timestamps and links."""
        data = engine.export_memories()

        result = other_engine.import_memories(data)

        assert result == {
            "imported": 2,
            "updated": 0,
            "skipped": 0,
            "links_imported": 1,
            "errors": [],
        }
        original = engine.get(populated["tip"])
        copy = other_engine.get(populated["tip"])
        assert copy.base_confidence == 0.9
        assert copy.created_at == original.created_at
        assert copy.access_count == original.access_count
        assert [m.id for m in other_engine.get_related(populated["goal"])] == [populated["tip"]]

    def test_existing_ids_skipped(self, engine, populated):
        """Ids already in the store are skipped by default."""
        result = engine.import_memories(engine.export_memories())
        assert result["imported"] == 0
        assert result["skipped"] == 2

    def test_overwrite_existing(self, engine, populated):
        """With skip_existing=False existing ids are replaced."""
        data = engine.export_memories()
        for record in data["memories"]:
            if record["id"] == populated["tip"]:
                record["base_confidence"] = 0.4

        result = engine.import_memories(data, skip_existing=False)

        assert result["updated"] == 2
        assert engine.get(populated["tip"]).base_confidence == 0.4

    def test_invalid_records_reported(self, engine):
        """Bad records are reported one by one; good ones still import."""
        data = {
            "version": EXPORT_FORMAT_VERSION,
            "memories": [
                {"id": "a", "kind": "wizardry", "knowledge": {}},
                {"id": "b", "kind": "goal", "knowledge": {}},
                {"kind": "goal", "knowledge": {"title": "No id"}},
                {"id": "c", "kind": "goal", "knowledge": {"title": "Fine"}},
                {"id": "d", "kind": "goal", "knowledge": {"title": "x"}, "created_at": "soon"},
            ],
            "links": [{"source_id": "c", "target_id": "missing", "relation": "supports"}],
        }

        result = engine.import_memories(data)

        assert result["imported"] == 1
        assert [e["id"] for e in result["errors"] if not e.get("link")] == ["a", "b", None, "d"]
        assert result["links_imported"] == 0
        assert any(e.get("link") for e in result["errors"])
        assert engine.get("c") is not None

    def test_bad_payloads(self, engine):
        """A malformed payload or unknown version is rejected outright."""
        with pytest.raises(ValidationFailure):
            engine.import_memories({"memories": "nope"})
        with pytest.raises(ValidationFailure):
            engine.import_memories({"version": 99, "memories": []})

    def test_unknown_kind_raises_from_dict(self):
        with pytest.raises(InvalidKindError):
            memory_from_dict({"id": "a", "kind": "wizardry"})

    def test_file_round_trip(self, engine, other_engine, populated, tmp_path):
        """A file written by export imports into another store."""
        path = engine.export_to_file(tmp_path / "out" / "export.json")
        assert json.loads(path.read_text())["stack_id"] == "test_stack"
        assert other_engine.import_from_file(path)["imported"] == 2

    def test_invalid_json_file(self, engine, tmp_path):
        """A file that is not JSON raises ValidationFailure."""
        path = tmp_path / "broken.json"
        path.write_text("{not json")
        with pytest.raises(ValidationFailure):
            engine.import_from_file(path)
