"""Tests for cortex.logging_config."""

import logging
from datetime import datetime

import pytest

from cortex.logging_config import (
    log_consolidation,
    log_feedback,
    log_memory_event,
    log_retrieve,
    log_save,
    setup_cortex_logging,
)


@pytest.fixture(autouse=True)
def clean_cortex_logger():
    """Remove all handlers from the cortex logger before/after each test."""
    logger = logging.getLogger("cortex")
    logger.handlers.clear()
    logger.setLevel(logging.WARNING)
    yield
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def log_dir(cortex_home):
    return cortex_home / "logs"


def _events(log_dir):
    date_str = datetime.now().strftime("%Y-%m-%d")
    return (log_dir / f"memory-events-{date_str}.log").read_text().splitlines()


class TestSetupCortexLogging:
    def test_adds_file_handler(self, log_dir):
        """Should attach one dated file handler to the cortex logger."""
        logger = setup_cortex_logging("proj")
        assert logger.name == "cortex"
        assert logger.level == logging.INFO
        file_handlers = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
        assert len(file_handlers) == 1
        assert list(log_dir.glob("local-*.log"))

    def test_idempotent(self, log_dir):
        """Should not add a second handler when called again."""
        setup_cortex_logging()
        setup_cortex_logging()
        assert len(logging.getLogger("cortex").handlers) == 1

    def test_debug_adds_console(self, log_dir):
        """Should add a console handler at debug level."""
        logger = setup_cortex_logging(level="debug")
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 2

    def test_unknown_level_falls_back_to_info(self, log_dir):
        """Should use INFO for an unrecognized level name."""
        assert setup_cortex_logging(level="chatty").level == logging.INFO

    def test_child_loggers_reach_the_file(self, log_dir):
        """Should write module logger records to the log file."""
        setup_cortex_logging()
        logging.getLogger("cortex.storage.sqlite").warning("disk nearly full")
        for handler in logging.getLogger("cortex").handlers:
            handler.flush()
        [path] = log_dir.glob("local-*.log")
        assert "| WARNING | cortex.storage.sqlite | disk nearly full" in path.read_text()


class TestMemoryEvents:
    def test_event_line_format(self, log_dir):
        """Should write timestamp, event, agent and details separated by pipes."""
        log_memory_event("save", "kind=tribal", stack_id="proj")
        [line] = _events(log_dir)
        assert line.endswith(" | save | agent=proj | kind=tribal")

    def test_save(self, log_dir):
        """Should shorten the id and include the summary."""
        log_save("proj", "tribal", "0123456789abcdef", summary="Pool connections")
        assert _events(log_dir)[0].endswith(
            "| save | agent=proj | kind=tribal, id=01234567..., summary=Pool connections"
        )

    def test_retrieve(self, log_dir):
        """Should record intent, counts and tokens used."""
        log_retrieve("proj", "fix_bug", 2, 20, 52)
        assert _events(log_dir)[0].endswith(
            "intent=fix_bug, returned=2, candidates=20, tokens=52"
        )

    def test_consolidation(self, log_dir):
        """Should record created, pruned and freed counts."""
        log_consolidation("proj", 1, 3, 40, dry_run=True)
        assert _events(log_dir)[0].endswith("created=1, pruned=3, tokens_freed=40, dry_run=True")

    def test_feedback(self, log_dir):
        """Should record the confidence change with two decimals."""
        log_feedback("proj", "0123456789abcdef", "reject", 0.8, 0.56)
        assert _events(log_dir)[0].endswith(
            "id=01234567..., action=reject, confidence=0.80->0.56"
        )

    def test_events_append(self, log_dir):
        """Should append rather than overwrite."""
        log_memory_event("a", "one")
        log_memory_event("b", "two")
        assert len(_events(log_dir)) == 2
