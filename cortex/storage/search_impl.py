"""Search implementation extracted from SQLiteStorage.

Contains the lexical matching logic, the SQL-side vector scoring and the
hybrid merge. The top-level search() coordinator stays on SQLiteStorage
because it owns the embedder and the degraded-search flag.

All functions receive dependencies explicitly to enable independent
testing and avoid circular imports.
"""

import logging
import re
import sqlite3
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from cortex.kinds import knowledge_text
from cortex.types import Memory, MemoryKind, SearchResult

from .memory_crud import MEMORY_SELECT, row_to_memory

logger = logging.getLogger(__name__)

LEXICAL_WEIGHT = 0.4
VECTOR_WEIGHT = 0.6

_WORD_RE = re.compile(r"[a-z0-9][a-z0-9_\-]*")

# Function words that carry no topic
STOP_WORDS: FrozenSet[str] = frozenset(
    {
        "i", "the", "a", "an", "to", "and", "or", "is", "are", "that", "this", "it",
        "be", "was", "were", "been", "being", "have", "has", "had", "does", "did",
        "will", "would", "could", "may", "might", "for", "of", "in", "on", "at",
        "by", "with", "from", "as", "into", "but", "if", "then", "because", "while",
        "when", "where", "why", "how", "what", "which", "who", "we", "you", "they",
        "our", "your", "their", "its", "than", "so", "all", "any", "each", "there",
    }
)


def tokenize(text: str, min_length: int = 3) -> List[str]:
    """Lowercased word tokens of at least ``min_length`` chars, in order, deduplicated."""
    words = _WORD_RE.findall((text or "").lower())
    return list(dict.fromkeys(w for w in words if len(w) >= min_length))


def query_tokens(query: str) -> List[str]:
    """Search tokens of a query with stop words removed.

    A query made only of stop words keeps them, so it still matches something.
    """
    tokens = tokenize(query)
    return [t for t in tokens if t not in STOP_WORDS] or tokens


def escape_like_pattern(pattern: str) -> str:
    """Escape LIKE pattern special characters to prevent pattern injection."""
    return pattern.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_token_filter(tokens: List[str], columns: List[str]) -> Tuple[str, list]:
    """Build a tokenized OR filter for multiple columns.

    Returns (sql_fragment, params) where sql_fragment is a parenthesized
    OR expression matching any token in any column. Tokens are escaped to
    prevent LIKE metacharacter injection.
    """
    clauses = []
    params: list = []
    for token in tokens:
        pattern = f"%{escape_like_pattern(token)}%"
        for col in columns:
            clauses.append(f"{col} LIKE ? ESCAPE '\\'")
            params.append(pattern)
    return f"({' OR '.join(clauses)})", params


def token_match_score(text: str, tokens: List[str]) -> float:
    """Score a text by fraction of query tokens it contains (case-insensitive)."""
    if not tokens:
        return 1.0
    lower = text.lower()
    hits = sum(1 for t in tokens if t.lower() in lower)
    return hits / len(tokens)


def searchable_text(memory: Memory) -> str:
    """Summary, flattened knowledge and tags as one string."""
    return " ".join(
        [memory.summary or "", knowledge_text(memory.knowledge), " ".join(sorted(memory.tags))]
    )


def _kind_clause(kinds: Optional[Sequence[MemoryKind]]) -> Tuple[str, list]:
    if not kinds:
        return "", []
    values = [MemoryKind(k).value for k in kinds]
    return f" AND m.kind IN ({','.join('?' for _ in values)})", values


def lexical_search(
    conn: sqlite3.Connection,
    query: str,
    kinds: Optional[Sequence[MemoryKind]],
    min_confidence: Optional[float],
) -> Dict[str, Tuple[Memory, float]]:
    """Token-overlap search over summary, knowledge JSON and tags.

    Returns ``{id: (memory, lexical_score)}`` for every memory matching at
    least one token. Every match is scored; the caller ranks and cuts.
    Soft-deleted memories are excluded.
    """
    tokens = query_tokens(query)
    if tokens:
        filt, params = build_token_filter(tokens, ["m.summary", "m.knowledge"])
        tag_placeholders = ",".join("?" for _ in tokens)
        filt = (
            f"({filt} OR EXISTS (SELECT 1 FROM memory_tags st WHERE st.memory_id = m.id "
            f"AND lower(st.tag) IN ({tag_placeholders})))"
        )
        params = params + tokens
    else:
        phrase = (query or "").strip()
        if not phrase:
            return {}
        pattern = f"%{escape_like_pattern(phrase)}%"
        filt = "(m.summary LIKE ? ESCAPE '\\' OR m.knowledge LIKE ? ESCAPE '\\')"
        params = [pattern, pattern]

    kind_sql, kind_params = _kind_clause(kinds)
    conf_sql = ""
    conf_params: list = []
    if min_confidence is not None:
        conf_sql = " AND m.base_confidence >= ?"
        conf_params = [float(min_confidence)]

    rows = conn.execute(
        f"{MEMORY_SELECT} WHERE m.soft_deleted = 0{kind_sql}{conf_sql} AND {filt} "
        "ORDER BY m.created_at ASC, m.id ASC",
        kind_params + conf_params + params,
    ).fetchall()

    results: Dict[str, Tuple[Memory, float]] = {}
    for row in rows:
        memory = row_to_memory(row)
        score = token_match_score(searchable_text(memory), tokens) if tokens else 1.0
        if score > 0:
            results[memory.id] = (memory, score)
    return results


def vector_search(
    conn: sqlite3.Connection,
    query_blob: bytes,
    dimension: int,
    kinds: Optional[Sequence[MemoryKind]],
    min_confidence: Optional[float],
    limit: int,
) -> Dict[str, Tuple[Memory, float]]:
    """Cosine similarity in SQL via sqlite-vec's ``vec_distance_cosine``.

    The connection must have sqlite-vec loaded. Returns
    ``{id: (memory, similarity)}`` with similarity clamped to [0, 1].
    """
    kind_sql, kind_params = _kind_clause(kinds)
    conf_sql = ""
    conf_params: list = []
    if min_confidence is not None:
        conf_sql = " AND m.base_confidence >= ?"
        conf_params = [float(min_confidence)]

    rows = conn.execute(
        f"""
        SELECT e.memory_id AS id, vec_distance_cosine(e.embedding, ?) AS distance
        FROM embeddings e JOIN memories m ON m.id = e.memory_id
        WHERE e.dimension = ? AND m.soft_deleted = 0{kind_sql}{conf_sql}
        ORDER BY distance ASC, m.created_at ASC, m.id ASC
        LIMIT ?
        """,
        [query_blob, dimension] + kind_params + conf_params + [limit * 3],
    ).fetchall()
    if not rows:
        return {}

    similarities = {}
    for row in rows:
        distance = row["distance"]
        if distance is None:
            continue
        similarities[row["id"]] = max(0.0, min(1.0, 1.0 - float(distance)))

    placeholders = ",".join("?" for _ in similarities)
    memory_rows = conn.execute(
        f"{MEMORY_SELECT} WHERE m.id IN ({placeholders})", list(similarities)
    ).fetchall()
    return {
        row["id"]: (row_to_memory(row), similarities[row["id"]]) for row in memory_rows
    }


def merge_hybrid(
    lexical: Dict[str, Tuple[Memory, float]],
    vector: Optional[Dict[str, Tuple[Memory, float]]],
    limit: int,
) -> List[SearchResult]:
    """Combine both result sets.

    With vectors: ``0.4 * lexical + 0.6 * vector`` (missing side counts as 0).
    Without: lexical only. Ordered by score desc, then created_at, then id.
    """
    results: List[SearchResult] = []
    if vector is None:
        for memory, lex in lexical.values():
            results.append(SearchResult(memory=memory, score=lex, lexical_score=lex))
    else:
        ids: Iterable[str] = set(lexical) | set(vector)
        for mid in ids:
            memory = (lexical.get(mid) or vector.get(mid))[0]
            lex = lexical[mid][1] if mid in lexical else 0.0
            vec = vector[mid][1] if mid in vector else 0.0
            results.append(
                SearchResult(
                    memory=memory,
                    score=LEXICAL_WEIGHT * lex + VECTOR_WEIGHT * vec,
                    lexical_score=lex,
                    vector_score=vec,
                )
            )
    results.sort(key=lambda r: (-r.score, r.memory.created_at, r.memory.id))
    return results[:limit]
