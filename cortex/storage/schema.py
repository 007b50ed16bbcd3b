"""Database schema for cortex SQLite storage.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Database initialization (init_db)
"""

import logging
import os
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Memories (every kind shares one table; payload lives in knowledge JSON)
CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    summary TEXT NOT NULL DEFAULT '',
    knowledge TEXT NOT NULL DEFAULT '{}',  -- JSON object
    base_confidence REAL NOT NULL DEFAULT 1.0,
    importance TEXT NOT NULL DEFAULT 'normal',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_accessed_at TEXT,
    access_count INTEGER NOT NULL DEFAULT 0,
    soft_deleted INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_memories_kind ON memories(kind);
CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(created_at, id);
CREATE INDEX IF NOT EXISTS idx_memories_deleted ON memories(soft_deleted);

-- Tags (one row per memory/tag pair)
CREATE TABLE IF NOT EXISTS memory_tags (
    memory_id TEXT NOT NULL,
    tag TEXT NOT NULL,
    PRIMARY KEY (memory_id, tag)
);
CREATE INDEX IF NOT EXISTS idx_memory_tags_tag ON memory_tags(tag);

-- Causal links (directed, typed)
CREATE TABLE IF NOT EXISTS causal_links (
    source_id TEXT NOT NULL,
    target_id TEXT NOT NULL,
    relation TEXT NOT NULL,
    weight REAL NOT NULL DEFAULT 1.0,
    created_at TEXT NOT NULL,
    PRIMARY KEY (source_id, target_id, relation)
);
CREATE INDEX IF NOT EXISTS idx_causal_links_target ON causal_links(target_id);

-- Sessions
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    last_touched_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS session_sent (
    session_id TEXT NOT NULL,
    memory_id TEXT NOT NULL,
    sent_at TEXT NOT NULL,
    PRIMARY KEY (session_id, memory_id)
);

-- Consolidation records (one per processed episode cluster)
CREATE TABLE IF NOT EXISTS consolidation_records (
    cluster_signature TEXT PRIMARY KEY,
    source_episode_ids TEXT NOT NULL,  -- JSON array
    produced_memory_id TEXT,
    created_at TEXT NOT NULL
);

-- Validation records (one per memory state)
CREATE TABLE IF NOT EXISTS validation_records (
    memory_id TEXT NOT NULL,
    fingerprint TEXT NOT NULL,
    outcome TEXT NOT NULL,
    issue TEXT,
    timestamp TEXT NOT NULL,
    PRIMARY KEY (memory_id, fingerprint)
);

-- Embeddings (float32 blob; compared with sqlite-vec when available)
CREATE TABLE IF NOT EXISTS embeddings (
    memory_id TEXT PRIMARY KEY,
    embedding BLOB NOT NULL,
    dimension INTEGER NOT NULL,
    content_hash TEXT NOT NULL,
    provider TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""


def init_db(conn: sqlite3.Connection, db_path: Path) -> None:
    """Initialize the database schema.

    Args:
        conn: Database connection.
        db_path: Path to the database file (for permissions).
    """
    conn.executescript(SCHEMA)

    cur = conn.execute("SELECT version FROM schema_version LIMIT 1")
    row = cur.fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif row[0] != SCHEMA_VERSION:
        logger.info(f"Updating schema version {row[0]} -> {SCHEMA_VERSION}")
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))

    conn.commit()

    # Set secure file permissions (owner read/write only)
    try:
        os.chmod(db_path, 0o600)
    except OSError as e:
        logger.warning(f"Could not set secure permissions: {e}")
