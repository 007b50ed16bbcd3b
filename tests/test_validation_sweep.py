"""Tests for the validation sweep (validate())."""

import threading
from datetime import timedelta

import pytest

from cortex.protocols import ValidationFailure
from cortex.types import Importance, MemoryKind, ValidationOutcome, ValidationScope


def _episode(engine, text="Paired on the flaky login test"):
    return engine.add(MemoryKind.EPISODIC, {"interaction": text})


def _corrupt_knowledge(engine, memory_id):
    with engine.storage.transaction() as conn:
        conn.execute(
            "UPDATE memories SET knowledge = ? WHERE id = ?", ('{"topic": "db"}', memory_id)
        )


class TestStaleness:
    def test_low_effective_confidence_is_reported(self, engine):
        """Memories below the low-confidence threshold are reported as stale."""
        memory_id = _episode(engine)
        created = engine.get(memory_id).created_at

        stats = engine.validate(now=created + timedelta(days=30))

        assert stats.validated == 1
        assert stats.stale == 1
        assert stats.removed == 0
        assert stats.issues[0]["memory_id"] == memory_id
        assert "below 0.20" in stats.issues[0]["issue"]
        assert not engine.get(memory_id).soft_deleted

    def test_remove_invalid_soft_deletes_stale(self, engine):
        """With remove_invalid stale memories are soft-deleted and recorded."""
        memory_id = _episode(engine)
        created = engine.get(memory_id).created_at

        stats = engine.validate(remove_invalid=True, now=created + timedelta(days=30))

        assert stats.removed == 1
        assert engine.get(memory_id).soft_deleted
        assert engine.storage.validation_records(memory_id)[0].outcome == ValidationOutcome.REMOVED

    def test_fresh_memories_are_valid(self, engine, make_tribal):
        engine.add(MemoryKind.TRIBAL, make_tribal("db", "Pool connections"))
        stats = engine.validate()
        assert (stats.validated, stats.valid, stats.stale) == (1, 1, 0)
        assert stats.issues == []


class TestKnowledge:
    def test_invalid_knowledge_reported(self, engine, make_tribal):
        """Knowledge that no longer validates is reported."""
        memory_id = engine.add(MemoryKind.TRIBAL, make_tribal("db", "Pool connections"))
        _corrupt_knowledge(engine, memory_id)

        stats = engine.validate()

        assert stats.stale == 1
        assert "missing required field 'knowledge'" in stats.issues[0]["issue"]
        assert not engine.get(memory_id).soft_deleted

    def test_invalid_knowledge_removed(self, engine, make_tribal):
        memory_id = engine.add(MemoryKind.TRIBAL, make_tribal("db", "Pool connections"))
        _corrupt_knowledge(engine, memory_id)

        stats = engine.validate(remove_invalid=True)

        assert stats.removed == 1
        assert engine.get(memory_id).soft_deleted


class TestHealing:
    def test_empty_summary_regenerated(self, engine, make_tribal):
        """An empty summary is rebuilt from knowledge."""
        memory_id = engine.add(MemoryKind.TRIBAL, make_tribal("db", "Pool connections"))
        engine.update(memory_id, summary="")
        assert engine.get(memory_id).summary == ""

        stats = engine.validate()

        assert stats.healed == 1
        assert engine.get(memory_id).summary == "[warning] db: Pool connections"
        assert stats.issues[0]["outcome"] == "healed"

    def test_no_auto_heal_reports_stale(self, engine, make_tribal):
        """Without auto_heal an empty summary is only reported."""
        memory_id = engine.add(MemoryKind.TRIBAL, make_tribal("db", "Pool connections"))
        engine.update(memory_id, summary="")

        stats = engine.validate(auto_heal=False)

        assert stats.healed == 0
        assert stats.stale == 1
        assert engine.get(memory_id).summary == ""

    def test_no_auto_heal_with_remove(self, engine, make_tribal):
        memory_id = engine.add(MemoryKind.TRIBAL, make_tribal("db", "Pool connections"))
        engine.update(memory_id, summary="")

        stats = engine.validate(auto_heal=False, remove_invalid=True)

        assert stats.removed == 1
        assert engine.get(memory_id).soft_deleted


class TestRecords:
    def test_repeat_sweep_writes_no_new_records(self, engine, make_tribal):
        """An unchanged memory is recorded once."""
        memory_id = engine.add(MemoryKind.TRIBAL, make_tribal("db", "Pool connections"))
        engine.validate()
        engine.validate()
        assert len(engine.storage.validation_records(memory_id)) == 1

    def test_changed_memory_gets_new_record(self, engine, make_tribal):
        """A changed memory is recorded again."""
        memory_id = engine.add(MemoryKind.TRIBAL, make_tribal("db", "Pool connections"))
        engine.validate()
        engine.update(memory_id, base_confidence=0.9)
        engine.validate()
        assert len(engine.storage.validation_records(memory_id)) == 2


class TestScopes:
    def test_high_importance_scope(self, engine, make_tribal):
        engine.add(MemoryKind.TRIBAL, make_tribal("db", "Pool connections"))
        engine.add(
            MemoryKind.TRIBAL, make_tribal("auth", "Rotate keys"), importance=Importance.CRITICAL
        )
        assert engine.validate(scope=ValidationScope.HIGH_IMPORTANCE).validated == 1

    def test_recent_scope(self, engine, clock):
        _episode(engine, "Old pairing session")
        clock.advance(days=10)
        _episode(engine, "New pairing session")
        assert engine.validate(scope="recent").validated == 1

    def test_stale_scope(self, engine, clock, make_tribal):
        """The stale scope only looks at memories below half effective confidence."""
        _episode(engine)
        engine.add(MemoryKind.TRIBAL, make_tribal("db", "Pool connections"))
        stats = engine.validate(scope=ValidationScope.STALE, now=clock.current + timedelta(days=8))
        assert stats.validated == 1

    def test_invalid_scope(self, engine):
        with pytest.raises(ValidationFailure):
            engine.validate(scope="everything")

    def test_deleted_memories_skipped(self, engine):
        engine.delete(_episode(engine))
        assert engine.validate().validated == 0


class TestCancellation:
    def test_cancel_event_stops_sweep(self, engine, make_tribal):
        """A set cancel event stops the sweep before any memory."""
        engine.add(MemoryKind.TRIBAL, make_tribal("db", "Pool connections"))
        cancel = threading.Event()
        cancel.set()

        stats = engine.validate(cancel_event=cancel)

        assert stats.cancelled
        assert stats.validated == 0
