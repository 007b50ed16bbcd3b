"""
Pytest fixtures and test configuration for cortex tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from cortex.config import CortexConfig
from cortex.core import MemoryEngine
from cortex.storage import HashEmbedder, SQLiteStorage

START = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic UTC clock.

    Every read returns the current time and then moves it forward by
    ``step``, so consecutive writes get strictly increasing timestamps.
    """

    def __init__(self, start: datetime = START, step: timedelta = timedelta(seconds=1)):
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        now = self.current
        self.current = self.current + self.step
        return now

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture(autouse=True)
def cortex_home(tmp_path, monkeypatch):
    """Keep logs and default databases inside the test's tmp_path."""
    home = tmp_path / "cortex-home"
    monkeypatch.setenv("CORTEX_DATA_DIR", str(home))
    monkeypatch.delenv("CORTEX_STACK_ID", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    return home


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage(tmp_path, clock):
    """Lexical-only storage: no embedder, deterministic search scores."""
    s = SQLiteStorage(db_path=tmp_path / "test.db", use_embeddings=False, now_fn=clock)
    yield s
    s.close()


@pytest.fixture
def vector_storage(tmp_path, clock):
    """Storage with the local hash embedder (vector scoring needs sqlite-vec)."""
    s = SQLiteStorage(db_path=tmp_path / "vectors.db", embedder=HashEmbedder(), now_fn=clock)
    yield s
    s.close()


@pytest.fixture
def engine(tmp_path, clock):
    """Lexical-only engine with default config and a fake clock."""
    e = MemoryEngine(
        db_path=tmp_path / "engine.db",
        config=CortexConfig(),
        use_embeddings=False,
        stack_id="test_stack",
        now_fn=clock,
    )
    yield e
    e.close()


def tribal(topic: str, knowledge: str, severity: str = "warning") -> dict:
    """Knowledge payload for a tribal memory."""
    return {"topic": topic, "knowledge": knowledge, "severity": severity}


@pytest.fixture
def make_tribal():
    return tribal
