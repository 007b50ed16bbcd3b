"""Memory CRUD for cortex storage.

Module-level functions that take an open ``sqlite3.Connection``: row
conversion, inserts and updates of the ``memories``/``memory_tags`` tables,
filtered listing with keyset pagination.

SQLiteStorage keeps thin wrapper methods that delegate here and owns the
connection and the write lock.
"""

import base64
import binascii
import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from cortex.protocols import ValidationFailure
from cortex.types import (
    Importance,
    Memory,
    MemoryFilter,
    MemoryKind,
    clamp_confidence,
    parse_datetime,
    to_iso,
)

logger = logging.getLogger(__name__)

MEMORY_COLUMNS = (
    "m.id, m.kind, m.summary, m.knowledge, m.base_confidence, m.importance, "
    "m.created_at, m.updated_at, m.last_accessed_at, m.access_count, m.soft_deleted, "
    "(SELECT json_group_array(t.tag) FROM memory_tags t WHERE t.memory_id = m.id) AS tags"
)

MEMORY_SELECT = f"SELECT {MEMORY_COLUMNS} FROM memories m"


def _from_json(s: Optional[str]) -> Any:
    """Parse JSON string."""
    if not s:
        return None
    try:
        return json.loads(s)
    except json.JSONDecodeError:
        return None


def _safe_get(row: sqlite3.Row, key: str, default: Any = None) -> Any:
    """Safely get value from row."""
    try:
        value = row[key]
        return value if value is not None else default
    except (IndexError, KeyError):
        return default


def row_to_memory(row: sqlite3.Row) -> Memory:
    """Convert a row selected with MEMORY_COLUMNS to a Memory."""
    importance = _safe_get(row, "importance", Importance.NORMAL.value)
    try:
        importance = Importance(importance)
    except ValueError:
        importance = Importance.NORMAL
    tags = _from_json(_safe_get(row, "tags")) or []
    return Memory(
        id=row["id"],
        kind=MemoryKind(row["kind"]),
        summary=_safe_get(row, "summary", ""),
        knowledge=_from_json(row["knowledge"]) or {},
        base_confidence=_safe_get(row, "base_confidence", 1.0),
        importance=importance,
        tags={t for t in tags if t is not None},
        created_at=parse_datetime(row["created_at"]),
        updated_at=parse_datetime(row["updated_at"]),
        last_accessed_at=parse_datetime(_safe_get(row, "last_accessed_at")),
        access_count=_safe_get(row, "access_count", 0),
        soft_deleted=bool(_safe_get(row, "soft_deleted", 0)),
    )


def insert_memory(conn: sqlite3.Connection, memory: Memory) -> None:
    """Insert a fully-populated memory and its tags."""
    conn.execute(
        """
        INSERT INTO memories (
            id, kind, summary, knowledge, base_confidence, importance,
            created_at, updated_at, last_accessed_at, access_count, soft_deleted
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            memory.id,
            memory.kind.value,
            memory.summary,
            json.dumps(memory.knowledge, sort_keys=True, default=str),
            clamp_confidence(memory.base_confidence),
            memory.importance.value,
            to_iso(memory.created_at),
            to_iso(memory.updated_at),
            to_iso(memory.last_accessed_at),
            max(0, int(memory.access_count)),
            1 if memory.soft_deleted else 0,
        ),
    )
    replace_tags(conn, memory.id, memory.tags)


def update_memory_row(conn: sqlite3.Connection, memory: Memory) -> bool:
    """Write every mutable field of an existing memory. Returns False if absent."""
    cur = conn.execute(
        """
        UPDATE memories SET
            summary = ?, knowledge = ?, base_confidence = ?, importance = ?,
            updated_at = ?, last_accessed_at = ?, access_count = ?, soft_deleted = ?
        WHERE id = ?
        """,
        (
            memory.summary,
            json.dumps(memory.knowledge, sort_keys=True, default=str),
            clamp_confidence(memory.base_confidence),
            memory.importance.value,
            to_iso(memory.updated_at),
            to_iso(memory.last_accessed_at),
            max(0, int(memory.access_count)),
            1 if memory.soft_deleted else 0,
            memory.id,
        ),
    )
    if cur.rowcount == 0:
        return False
    replace_tags(conn, memory.id, memory.tags)
    return True


def replace_tags(conn: sqlite3.Connection, memory_id: str, tags: Iterable[str]) -> None:
    conn.execute("DELETE FROM memory_tags WHERE memory_id = ?", (memory_id,))
    conn.executemany(
        "INSERT OR IGNORE INTO memory_tags (memory_id, tag) VALUES (?, ?)",
        [(memory_id, tag) for tag in sorted(set(tags))],
    )


def set_base_confidence(
    conn: sqlite3.Connection, memory_id: str, confidence: float, now: datetime
) -> bool:
    cur = conn.execute(
        "UPDATE memories SET base_confidence = ?, updated_at = ? WHERE id = ?",
        (clamp_confidence(confidence), to_iso(now), memory_id),
    )
    return cur.rowcount > 0


def mark_soft_deleted(conn: sqlite3.Connection, memory_id: str, now: datetime) -> bool:
    cur = conn.execute(
        "UPDATE memories SET soft_deleted = 1, updated_at = ? WHERE id = ? AND soft_deleted = 0",
        (to_iso(now), memory_id),
    )
    return cur.rowcount > 0


def touch_access(conn: sqlite3.Connection, memory_ids: Sequence[str], now: datetime) -> int:
    """Bump access_count and last_accessed_at. Does not change updated_at."""
    if not memory_ids:
        return 0
    cur = conn.executemany(
        "UPDATE memories SET access_count = access_count + 1, last_accessed_at = ? WHERE id = ?",
        [(to_iso(now), mid) for mid in memory_ids],
    )
    return cur.rowcount


def get_memory(conn: sqlite3.Connection, memory_id: str) -> Optional[Memory]:
    row = conn.execute(f"{MEMORY_SELECT} WHERE m.id = ?", (memory_id,)).fetchone()
    return row_to_memory(row) if row else None


def get_memories(conn: sqlite3.Connection, memory_ids: Sequence[str]) -> Dict[str, Memory]:
    """Batch fetch. Unknown ids are absent from the result."""
    result: Dict[str, Memory] = {}
    ids = list(dict.fromkeys(memory_ids))
    # Stay under SQLite's default variable limit
    for start in range(0, len(ids), 500):
        chunk = ids[start : start + 500]
        placeholders = ",".join("?" for _ in chunk)
        rows = conn.execute(f"{MEMORY_SELECT} WHERE m.id IN ({placeholders})", chunk).fetchall()
        for row in rows:
            memory = row_to_memory(row)
            result[memory.id] = memory
    return result


def build_filter_clause(memory_filter: Optional[MemoryFilter]) -> Tuple[str, List[Any]]:
    """Translate a MemoryFilter into a WHERE fragment (without 'WHERE') and params."""
    memory_filter = memory_filter or MemoryFilter()
    clauses: List[str] = []
    params: List[Any] = []

    if not memory_filter.include_deleted:
        clauses.append("m.soft_deleted = 0")
    if memory_filter.kinds:
        kinds = [MemoryKind(k).value for k in memory_filter.kinds]
        clauses.append(f"m.kind IN ({','.join('?' for _ in kinds)})")
        params.extend(kinds)
    if memory_filter.importance:
        levels = [Importance(i).value for i in memory_filter.importance]
        clauses.append(f"m.importance IN ({','.join('?' for _ in levels)})")
        params.extend(levels)
    if memory_filter.tags:
        tags = list(memory_filter.tags)
        clauses.append(
            "EXISTS (SELECT 1 FROM memory_tags ft WHERE ft.memory_id = m.id "
            f"AND ft.tag IN ({','.join('?' for _ in tags)}))"
        )
        params.extend(tags)
    if memory_filter.min_confidence is not None:
        clauses.append("m.base_confidence >= ?")
        params.append(float(memory_filter.min_confidence))
    if memory_filter.max_confidence is not None:
        clauses.append("m.base_confidence <= ?")
        params.append(float(memory_filter.max_confidence))
    if memory_filter.created_after is not None:
        clauses.append("m.created_at > ?")
        params.append(to_iso(memory_filter.created_after))
    if memory_filter.updated_after is not None:
        clauses.append("m.updated_at > ?")
        params.append(to_iso(memory_filter.updated_after))

    return " AND ".join(clauses) if clauses else "1 = 1", params


def encode_cursor(memory: Memory) -> str:
    """Opaque keyset cursor pointing just past ``memory``."""
    payload = json.dumps([to_iso(memory.created_at), memory.id]).encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("ascii")


def decode_cursor(cursor: str) -> Tuple[str, str]:
    try:
        created_at, memory_id = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")))
    except (binascii.Error, ValueError, TypeError, UnicodeError):
        raise ValidationFailure(f"Invalid cursor: {cursor!r}", field="cursor") from None
    if not isinstance(created_at, str) or not isinstance(memory_id, str):
        raise ValidationFailure(f"Invalid cursor: {cursor!r}", field="cursor")
    return created_at, memory_id


def list_memories(
    conn: sqlite3.Connection,
    memory_filter: Optional[MemoryFilter],
    cursor: Optional[str],
    limit: int,
) -> Tuple[List[Memory], Optional[str]]:
    """One page ordered by (created_at, id) ascending, plus the next cursor."""
    where, params = build_filter_clause(memory_filter)
    if cursor:
        created_at, memory_id = decode_cursor(cursor)
        where += " AND (m.created_at > ? OR (m.created_at = ? AND m.id > ?))"
        params.extend([created_at, created_at, memory_id])
    rows = conn.execute(
        f"{MEMORY_SELECT} WHERE {where} ORDER BY m.created_at ASC, m.id ASC LIMIT ?",
        params + [limit + 1],
    ).fetchall()
    memories = [row_to_memory(r) for r in rows[:limit]]
    next_cursor = encode_cursor(memories[-1]) if len(rows) > limit and memories else None
    return memories, next_cursor


def query_memories(
    conn: sqlite3.Connection,
    memory_filter: Optional[MemoryFilter] = None,
    limit: Optional[int] = None,
) -> List[Memory]:
    """All memories matching a filter, oldest first."""
    where, params = build_filter_clause(memory_filter)
    sql = f"{MEMORY_SELECT} WHERE {where} ORDER BY m.created_at ASC, m.id ASC"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    return [row_to_memory(r) for r in conn.execute(sql, params).fetchall()]


def count_by_kind(conn: sqlite3.Connection, include_deleted: bool = False) -> Dict[str, int]:
    sql = "SELECT kind, COUNT(*) AS n FROM memories"
    if not include_deleted:
        sql += " WHERE soft_deleted = 0"
    sql += " GROUP BY kind"
    return {row["kind"]: row["n"] for row in conn.execute(sql).fetchall()}


def memories_with_tags(
    conn: sqlite3.Connection, tags: Sequence[str], kinds: Optional[Sequence[MemoryKind]] = None
) -> List[Memory]:
    """Non-deleted memories carrying any of ``tags``."""
    if not tags:
        return []
    return query_memories(conn, MemoryFilter(tags=list(tags), kinds=list(kinds) if kinds else None))
