"""Tests for learn() and feedback()."""

import pytest

from cortex.features.learning import (
    DEFAULT_TOPIC,
    LEARNED_CONFIDENCE,
    categorize,
    extract_principles,
    extract_topic,
    is_real_statement,
    matches_original,
)
from cortex.protocols import StorageIOFailure, ValidationFailure
from cortex.types import FeedbackAction, Importance, LearningContext, MemoryKind, Relation

SESSIONS_FIX = "Store user sessions in Redis so they survive restarts."


class TestExtraction:
    def test_categorize(self):
        assert categorize("Use parameterized queries to stop SQL injection") == "security"
        assert categorize("The report loop is slow") == "performance"
        assert categorize("Rename it per the naming convention") == "style"
        assert categorize("This crashes on empty input") == "correctness"
        assert categorize("Keep the storage layer thin") == "pattern"
        assert categorize("Say hello first") == "correction"

    def test_categorize_looks_at_original(self):
        assert categorize("Do it differently", "we stored the password in plain text") == "security"

    def test_principles_keep_imperative_sentences(self):
        principles = extract_principles(
            "The login flow is fine. Never log raw tokens! Prefer structured logs."
        )
        assert principles == ["Never log raw tokens!", "Prefer structured logs."]

    def test_principles_fall_back_to_whole_correction(self):
        assert extract_principles("  plain remark here ") == ["plain remark here"]

    def test_topic(self):
        assert extract_topic("Always use the connection pool") == "connection pool"
        assert extract_topic("Do it") == DEFAULT_TOPIC

    def test_is_real_statement(self):
        assert not is_real_statement("previous approach")
        assert not is_real_statement("  N/A ")
        assert not is_real_statement("???")
        assert not is_real_statement(None)
        assert is_real_statement("use globals")

    def test_matches_original(self):
        assert matches_original("[warning] db: Use globals", "use   GLOBALS")
        assert not matches_original("", "use globals")
        assert not matches_original("Pool connections", "use globals")


class TestLearn:
    def test_placeholder_original(self, engine):
        result = engine.learn("previous approach", "Always hash passwords with bcrypt")

        assert result.category == "security"
        assert result.superseded_ids == []
        assert result.extracted_principles == ["Always hash passwords with bcrypt"]
        fact_id, record_id = result.created_memory_ids

        fact = engine.get(fact_id)
        assert fact.kind == MemoryKind.TRIBAL
        assert fact.base_confidence == LEARNED_CONFIDENCE
        assert fact.importance == Importance.HIGH
        assert fact.knowledge == {
            "topic": "hash passwords bcrypt",
            "knowledge": "Always hash passwords with bcrypt",
            "severity": "critical",
        }
        assert fact.tags == {"security", "learned"}

        record = engine.get(record_id)
        assert record.kind == MemoryKind.FEEDBACK
        assert record.summary == "Feedback: Always hash passwords with bcrypt"
        links = engine.storage.links_from(record_id, [Relation.LEARNED_FROM])
        assert [link.target_id for link in links] == [fact_id]

    def test_real_original_is_superseded(self, engine, make_tribal):
        old = engine.add(
            MemoryKind.TRIBAL, make_tribal("caching", "Cache user sessions in memory")
        )

        result = engine.learn("Cache user sessions in memory", SESSIONS_FIX)

        assert result.category == "performance"
        assert result.superseded_ids == [old]
        assert engine.get(old).base_confidence == pytest.approx(0.7)

        fact_id, smell_id, record_id = result.created_memory_ids
        fact = engine.get(fact_id)
        assert fact.knowledge["original"] == "Cache user sessions in memory"
        assert fact.knowledge["topic"] == "store user sessions redis"
        superseded = engine.storage.links_from(fact_id, [Relation.SUPERSEDES])
        assert [link.target_id for link in superseded] == [old]

        smell = engine.get(smell_id)
        assert smell.kind == MemoryKind.CODE_SMELL
        assert smell.knowledge["bad_example"] == "Cache user sessions in memory"
        assert smell.knowledge["reason"] == SESSIONS_FIX
        assert engine.get(record_id).kind == MemoryKind.FEEDBACK

    def test_corrected_artifact_creates_smell(self, engine):
        result = engine.learn(
            None, "Prefer pathlib for file paths", corrected_artifact="Path(root) / name"
        )
        fact_id, smell_id, _ = result.created_memory_ids
        assert engine.get(smell_id).knowledge["good_example"] == "Path(root) / name"
        assert "bad_example" not in engine.get(smell_id).knowledge

    def test_context_links_and_tags(self, engine):
        goal = engine.add(MemoryKind.GOAL, {"title": "Ship billing"})
        context = LearningContext(
            related_memory_ids=[goal, "missing"], active_file="app.py", tags=["billing"]
        )

        result = engine.learn(None, "Say hello first", context=context)

        fact_id = result.created_memory_ids[0]
        fact = engine.get(fact_id)
        assert fact.tags == {"billing", "correction", "learned", "file:app.py"}
        derived = engine.storage.links_from(fact_id, [Relation.DERIVED_FROM])
        assert [link.target_id for link in derived] == [goal]

    def test_multiple_principles_are_stored(self, engine):
        result = engine.learn(None, "The flow is fine. Never log raw tokens!")
        fact = engine.get(result.created_memory_ids[0])
        assert fact.knowledge["principles"] == ["Never log raw tokens!"]

    def test_empty_correction_rejected(self, engine):
        with pytest.raises(ValidationFailure):
            engine.learn("something", "   ")
        assert engine.count_by_kind() == {}

    def test_failed_write_rolls_back_everything(self, engine, make_tribal, monkeypatch):
        """A write failing partway leaves the store as it was."""
        old = engine.add(MemoryKind.TRIBAL, make_tribal("deps", "Float dependency versions"))
        real_add = engine.storage.add
        calls = []

        def flaky_add(memory, *args, **kwargs):
            calls.append(memory.kind)
            if len(calls) == 2:
                raise StorageIOFailure("disk full")
            return real_add(memory, *args, **kwargs)

        monkeypatch.setattr(engine.storage, "add", flaky_add)

        with pytest.raises(StorageIOFailure):
            engine.learn("Float dependency versions", "Pin every dependency")

        assert calls == [MemoryKind.TRIBAL, MemoryKind.CODE_SMELL]
        stored = engine.get(old)
        assert stored.base_confidence == 1.0
        assert stored.access_count == 0
        assert engine.count_by_kind() == {"tribal": 1}
        assert engine.storage.links_to(old) == []


class TestFeedback:
    @pytest.fixture
    def memory_id(self, engine, make_tribal):
        return engine.add(
            MemoryKind.TRIBAL, make_tribal("db", "Pool connections"), base_confidence=0.8
        )

    def test_confirm(self, engine, memory_id):
        result = engine.feedback(memory_id, FeedbackAction.CONFIRM)
        assert result.previous_confidence == 0.8
        assert result.new_confidence == pytest.approx(0.9)
        assert engine.get(memory_id).base_confidence == pytest.approx(0.9)

    def test_confirm_is_capped(self, engine, make_tribal):
        memory_id = engine.add(
            MemoryKind.TRIBAL, make_tribal("db", "Pool connections"), base_confidence=0.95
        )
        assert engine.feedback(memory_id, "confirm").new_confidence == 1.0
        assert engine.feedback(memory_id, "confirm").new_confidence == 1.0

    def test_reject(self, engine, memory_id):
        assert engine.feedback(memory_id, "reject").new_confidence == pytest.approx(0.56)

    def test_modify_replaces_summary(self, engine, memory_id):
        result = engine.feedback(memory_id, "modify", new_summary="Pool connections per worker")
        assert result.new_confidence == pytest.approx(0.7)
        assert engine.get(memory_id).summary == "Pool connections per worker"

    def test_counts_as_access(self, engine, memory_id):
        engine.feedback(memory_id, "confirm")
        assert engine.get(memory_id).access_count == 1

    def test_unknown_memory(self, engine):
        assert engine.feedback("missing", "confirm") is None

    def test_invalid_action(self, engine, memory_id):
        with pytest.raises(ValidationFailure):
            engine.feedback(memory_id, "applaud")
