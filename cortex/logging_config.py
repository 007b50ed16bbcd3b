"""Local file logging for cortex.

Two files per day under ``<cortex home>/logs``:

- ``local-YYYY-MM-DD.log``: everything logged under the ``cortex`` logger.
- ``memory-events-YYYY-MM-DD.log``: one line per memory event (save,
  retrieve, consolidation, feedback), readable without the full log.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from cortex.config import get_cortex_home

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _log_dir() -> Path:
    log_dir = get_cortex_home() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def setup_cortex_logging(stack_id: str = "default", level: str = "INFO") -> logging.Logger:
    """Configure the ``cortex`` logger with a dated file handler.

    Safe to call repeatedly; handlers are only added once. A console handler
    is added as well when ``level`` is DEBUG.
    """
    logger = logging.getLogger("cortex")
    resolved = getattr(logging, str(level).upper(), None)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logger.setLevel(resolved)

    if any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        return logger

    formatter = logging.Formatter(LOG_FORMAT)
    date_str = datetime.now().strftime("%Y-%m-%d")
    file_handler = logging.FileHandler(_log_dir() / f"local-{date_str}.log", encoding="utf-8")
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    if resolved == logging.DEBUG:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        logger.addHandler(console)

    logger.debug(f"cortex logging initialised for stack {stack_id}")
    return logger


def log_memory_event(event_type: str, details: str, stack_id: str = "default") -> None:
    """Append one line to today's memory-events log."""
    date_str = datetime.now().strftime("%Y-%m-%d")
    timestamp = datetime.now().isoformat(timespec="seconds")
    path = _log_dir() / f"memory-events-{date_str}.log"
    with open(path, "a", encoding="utf-8") as f:
        f.write(f"{timestamp} | {event_type} | agent={stack_id} | {details}\n")


def log_save(stack_id: str, kind: str, memory_id: str, summary: Optional[str] = None) -> None:
    details = f"kind={kind}, id={memory_id[:8]}..."
    if summary:
        details += f", summary={summary[:80]}"
    log_memory_event("save", details, stack_id=stack_id)


def log_retrieve(
    stack_id: str, intent: str, returned: int, candidates: int, tokens_used: int
) -> None:
    log_memory_event(
        "retrieve",
        f"intent={intent}, returned={returned}, candidates={candidates}, tokens={tokens_used}",
        stack_id=stack_id,
    )


def log_consolidation(
    stack_id: str, created: int, pruned: int, tokens_freed: int, dry_run: bool = False
) -> None:
    log_memory_event(
        "consolidation",
        f"created={created}, pruned={pruned}, tokens_freed={tokens_freed}, dry_run={dry_run}",
        stack_id=stack_id,
    )


def log_feedback(stack_id: str, memory_id: str, action: str, before: float, after: float) -> None:
    log_memory_event(
        "feedback",
        f"id={memory_id[:8]}..., action={action}, confidence={before:.2f}->{after:.2f}",
        stack_id=stack_id,
    )
