"""Causal link CRUD for cortex storage.

Links are keyed by (source_id, target_id, relation). Re-adding an existing
key updates its weight. Cycles are allowed; self-links are not.
"""

import logging
import sqlite3
from datetime import datetime
from typing import List, Optional, Sequence

from cortex.types import CausalLink, Relation, parse_datetime, to_iso

logger = logging.getLogger(__name__)

LINK_COLUMNS = "source_id, target_id, relation, weight, created_at"


def row_to_link(row: sqlite3.Row) -> CausalLink:
    return CausalLink(
        source_id=row["source_id"],
        target_id=row["target_id"],
        relation=Relation(row["relation"]),
        weight=row["weight"] if row["weight"] is not None else 1.0,
        created_at=parse_datetime(row["created_at"]),
    )


def check_link(link: CausalLink) -> None:
    """Raise ValueError for links that can never be stored."""
    if not link.source_id or not link.target_id:
        raise ValueError("Causal link requires both source_id and target_id")
    if link.source_id == link.target_id:
        raise ValueError(f"Self-link rejected for memory {link.source_id}")
    Relation(link.relation)


def upsert_link(conn: sqlite3.Connection, link: CausalLink, now: datetime) -> None:
    check_link(link)
    conn.execute(
        f"""
        INSERT INTO causal_links ({LINK_COLUMNS}) VALUES (?, ?, ?, ?, ?)
        ON CONFLICT (source_id, target_id, relation) DO UPDATE SET weight = excluded.weight
        """,
        (
            link.source_id,
            link.target_id,
            Relation(link.relation).value,
            float(link.weight),
            to_iso(link.created_at or now),
        ),
    )


def delete_link(
    conn: sqlite3.Connection, source_id: str, target_id: str, relation: Relation
) -> bool:
    cur = conn.execute(
        "DELETE FROM causal_links WHERE source_id = ? AND target_id = ? AND relation = ?",
        (source_id, target_id, Relation(relation).value),
    )
    return cur.rowcount > 0


def _relation_clause(relations: Optional[Sequence[Relation]]) -> tuple:
    if not relations:
        return "", []
    values = [Relation(r).value for r in relations]
    return f" AND relation IN ({','.join('?' for _ in values)})", values


def links_from(
    conn: sqlite3.Connection, memory_id: str, relations: Optional[Sequence[Relation]] = None
) -> List[CausalLink]:
    extra, params = _relation_clause(relations)
    rows = conn.execute(
        f"SELECT {LINK_COLUMNS} FROM causal_links WHERE source_id = ?{extra} "
        "ORDER BY created_at ASC, target_id ASC",
        [memory_id] + params,
    ).fetchall()
    return [row_to_link(r) for r in rows]


def links_to(
    conn: sqlite3.Connection, memory_id: str, relations: Optional[Sequence[Relation]] = None
) -> List[CausalLink]:
    extra, params = _relation_clause(relations)
    rows = conn.execute(
        f"SELECT {LINK_COLUMNS} FROM causal_links WHERE target_id = ?{extra} "
        "ORDER BY created_at ASC, source_id ASC",
        [memory_id] + params,
    ).fetchall()
    return [row_to_link(r) for r in rows]


def all_links(conn: sqlite3.Connection) -> List[CausalLink]:
    rows = conn.execute(
        f"SELECT {LINK_COLUMNS} FROM causal_links ORDER BY created_at ASC, source_id, target_id"
    ).fetchall()
    return [row_to_link(r) for r in rows]


def count_orphaned_links(conn: sqlite3.Connection) -> int:
    """Links whose source or target no longer exists at all."""
    row = conn.execute(
        """
        SELECT COUNT(*) FROM causal_links l
        WHERE NOT EXISTS (SELECT 1 FROM memories m WHERE m.id = l.source_id)
           OR NOT EXISTS (SELECT 1 FROM memories m WHERE m.id = l.target_id)
        """
    ).fetchone()
    return row[0]
