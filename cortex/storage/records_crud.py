"""Session, consolidation-record and validation-record CRUD."""

import json
import logging
import sqlite3
from datetime import datetime
from typing import List, Optional, Sequence, Set

from cortex.types import (
    ConsolidationRecord,
    Session,
    ValidationOutcome,
    ValidationRecord,
    parse_datetime,
    to_iso,
)

logger = logging.getLogger(__name__)


# === Sessions ===


def get_session(conn: sqlite3.Connection, session_id: str) -> Optional[Session]:
    row = conn.execute(
        "SELECT session_id, created_at, last_touched_at FROM sessions WHERE session_id = ?",
        (session_id,),
    ).fetchone()
    if row is None:
        return None
    return Session(
        session_id=row["session_id"],
        sent_memory_ids=get_sent_ids(conn, session_id),
        created_at=parse_datetime(row["created_at"]),
        last_touched_at=parse_datetime(row["last_touched_at"]),
    )


def upsert_session(conn: sqlite3.Connection, session_id: str, now: datetime) -> None:
    conn.execute(
        """
        INSERT INTO sessions (session_id, created_at, last_touched_at) VALUES (?, ?, ?)
        ON CONFLICT (session_id) DO UPDATE SET last_touched_at = excluded.last_touched_at
        """,
        (session_id, to_iso(now), to_iso(now)),
    )


def reset_session(conn: sqlite3.Connection, session_id: str, now: datetime) -> None:
    """Start an expired session over: empty sent set, fresh created_at."""
    conn.execute("DELETE FROM session_sent WHERE session_id = ?", (session_id,))
    conn.execute(
        "UPDATE sessions SET created_at = ?, last_touched_at = ? WHERE session_id = ?",
        (to_iso(now), to_iso(now), session_id),
    )


def add_sent_ids(
    conn: sqlite3.Connection, session_id: str, memory_ids: Sequence[str], now: datetime
) -> None:
    conn.executemany(
        "INSERT OR IGNORE INTO session_sent (session_id, memory_id, sent_at) VALUES (?, ?, ?)",
        [(session_id, mid, to_iso(now)) for mid in memory_ids],
    )


def get_sent_ids(conn: sqlite3.Connection, session_id: str) -> Set[str]:
    rows = conn.execute(
        "SELECT memory_id FROM session_sent WHERE session_id = ?", (session_id,)
    ).fetchall()
    return {r["memory_id"] for r in rows}


def delete_session(conn: sqlite3.Connection, session_id: str) -> bool:
    conn.execute("DELETE FROM session_sent WHERE session_id = ?", (session_id,))
    cur = conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
    return cur.rowcount > 0


def delete_sessions_before(conn: sqlite3.Connection, cutoff: datetime) -> int:
    """Delete sessions idle since before ``cutoff``. Returns how many."""
    cutoff_iso = to_iso(cutoff)
    conn.execute(
        """
        DELETE FROM session_sent WHERE session_id IN (
            SELECT session_id FROM sessions WHERE last_touched_at < ?
        )
        """,
        (cutoff_iso,),
    )
    cur = conn.execute("DELETE FROM sessions WHERE last_touched_at < ?", (cutoff_iso,))
    return cur.rowcount


# === Consolidation records ===


def get_consolidation_record(
    conn: sqlite3.Connection, signature: str
) -> Optional[ConsolidationRecord]:
    row = conn.execute(
        "SELECT cluster_signature, source_episode_ids, produced_memory_id, created_at "
        "FROM consolidation_records WHERE cluster_signature = ?",
        (signature,),
    ).fetchone()
    if row is None:
        return None
    return ConsolidationRecord(
        cluster_signature=row["cluster_signature"],
        source_episode_ids=json.loads(row["source_episode_ids"] or "[]"),
        produced_memory_id=row["produced_memory_id"],
        created_at=parse_datetime(row["created_at"]),
    )


def insert_consolidation_record(conn: sqlite3.Connection, record: ConsolidationRecord) -> None:
    conn.execute(
        """
        INSERT OR IGNORE INTO consolidation_records
            (cluster_signature, source_episode_ids, produced_memory_id, created_at)
        VALUES (?, ?, ?, ?)
        """,
        (
            record.cluster_signature,
            json.dumps(sorted(record.source_episode_ids)),
            record.produced_memory_id,
            to_iso(record.created_at),
        ),
    )


# === Validation records ===


def has_validation_record(conn: sqlite3.Connection, memory_id: str, fingerprint: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM validation_records WHERE memory_id = ? AND fingerprint = ?",
        (memory_id, fingerprint),
    ).fetchone()
    return row is not None


def insert_validation_record(conn: sqlite3.Connection, record: ValidationRecord) -> bool:
    """Insert unless a record for the same memory state exists. Returns True if written."""
    cur = conn.execute(
        """
        INSERT OR IGNORE INTO validation_records
            (memory_id, fingerprint, outcome, issue, timestamp)
        VALUES (?, ?, ?, ?, ?)
        """,
        (
            record.memory_id,
            record.fingerprint,
            ValidationOutcome(record.outcome).value,
            record.issue,
            to_iso(record.timestamp),
        ),
    )
    return cur.rowcount > 0


def list_validation_records(
    conn: sqlite3.Connection, memory_id: Optional[str] = None
) -> List[ValidationRecord]:
    sql = "SELECT memory_id, fingerprint, outcome, issue, timestamp FROM validation_records"
    params: list = []
    if memory_id is not None:
        sql += " WHERE memory_id = ?"
        params.append(memory_id)
    sql += " ORDER BY timestamp ASC, memory_id ASC"
    return [
        ValidationRecord(
            memory_id=r["memory_id"],
            outcome=ValidationOutcome(r["outcome"]),
            timestamp=parse_datetime(r["timestamp"]),
            issue=r["issue"],
            fingerprint=r["fingerprint"],
        )
        for r in conn.execute(sql, params).fetchall()
    ]
