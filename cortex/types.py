"""
Shared memory types for cortex.

All memory dataclasses and enums live here. These are the shared vocabulary
between the storage layer, the feature mixins, and callers of the engine.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Set

# === Shared Utility Functions ===


def utc_now() -> datetime:
    """Get the current time as a tz-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime to an ISO string (UTC, tz-aware).

    Always carries microseconds so stored strings sort chronologically.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


class ParseDatetimeError(ValueError):
    """Structured parse failure for ISO datetime strings."""

    def __init__(self, value: str, cause: Exception):
        super().__init__(f"Invalid ISO datetime string: {value!r}")
        self.value = value
        self.cause = cause


def parse_datetime(s: Optional[str], *, strict: bool = False) -> Optional[datetime]:
    """Parse an ISO datetime string into a tz-aware UTC datetime.

    Naive values are assumed to be UTC. Invalid strings return None unless
    ``strict`` is set, in which case ParseDatetimeError is raised.
    """
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (TypeError, ValueError) as exc:
        if strict:
            raise ParseDatetimeError(s, exc) from exc
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def clamp_confidence(value: float) -> float:
    """Clamp a confidence value into [0.0, 1.0]. NaN becomes 0.0."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(1.0, value))


# === Enums ===


class MemoryKind(str, Enum):
    """Closed set of memory variants.

    The per-kind payload schema, half-life and summary template live in
    ``cortex.kinds``.
    """

    CORE = "core"  # Durable identity facts, never decays
    TRIBAL = "tribal"  # Institutional warnings and gotchas
    PROCEDURAL = "procedural"  # How-to procedures
    SEMANTIC = "semantic"  # Consolidated knowledge
    EPISODIC = "episodic"  # Raw interaction records
    PATTERN_RATIONALE = "pattern_rationale"  # Why a pattern exists
    CODE_SMELL = "code_smell"  # Anti-patterns to avoid
    DECISION_CONTEXT = "decision_context"  # Human context for decisions
    CONSTRAINT_OVERRIDE = "constraint_override"  # Approved exceptions
    GOAL = "goal"
    INCIDENT = "incident"  # Postmortems
    SKILL = "skill"  # Skill proficiency
    ENVIRONMENT = "environment"  # Environment descriptors
    AGENT_SPAWN = "agent_spawn"  # Reusable agent configurations
    WORKFLOW = "workflow"
    ENTITY = "entity"  # Projects, products, teams
    MEETING = "meeting"
    CONVERSATION = "conversation"  # Conversation summaries
    FEEDBACK = "feedback"  # Corrections and feedback records
    PREFERENCE = "preference"


VALID_KIND_VALUES = frozenset(k.value for k in MemoryKind)


class Importance(str, Enum):
    """Ordinal importance of a memory."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _IMPORTANCE_RANK[self]


_IMPORTANCE_RANK = {
    Importance.LOW: 0,
    Importance.NORMAL: 1,
    Importance.HIGH: 2,
    Importance.CRITICAL: 3,
}


class Relation(str, Enum):
    """Typed relationship between two memories."""

    DERIVED_FROM = "derived_from"
    SUPERSEDES = "supersedes"
    SUPPORTS = "supports"
    CONTRADICTS = "contradicts"
    RELATED_TO = "related_to"
    OWNS = "owns"
    AFFECTS = "affects"
    BLOCKS = "blocks"
    REQUIRES = "requires"
    LEARNED_FROM = "learned_from"


class Direction(str, Enum):
    """Traversal direction over the causal graph."""

    OUT = "out"
    IN = "in"
    BOTH = "both"


class Intent(str, Enum):
    """Task intent used to pick priority kinds during retrieval."""

    ADD_FEATURE = "add_feature"
    FIX_BUG = "fix_bug"
    REFACTOR = "refactor"
    SECURITY_AUDIT = "security_audit"
    UNDERSTAND_CODE = "understand_code"
    ADD_TEST = "add_test"


class FeedbackAction(str, Enum):
    CONFIRM = "confirm"
    REJECT = "reject"
    MODIFY = "modify"


class ValidationScope(str, Enum):
    ALL = "all"
    STALE = "stale"
    RECENT = "recent"
    HIGH_IMPORTANCE = "high_importance"


class ValidationOutcome(str, Enum):
    VALID = "valid"
    HEALED = "healed"
    STALE = "stale"
    REMOVED = "removed"


# === Memory Dataclasses ===


@dataclass
class Memory:
    """The atomic unit of knowledge.

    ``knowledge`` is the kind-specific payload; its shape is validated
    against the kind's KindSpec on every write. ``base_confidence`` is the
    stored value; rankers must go through the decay calculator.
    """

    kind: MemoryKind
    summary: str = ""
    knowledge: Dict[str, Any] = field(default_factory=dict)
    base_confidence: float = 1.0
    importance: Importance = Importance.NORMAL
    tags: Set[str] = field(default_factory=set)
    id: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    access_count: int = 0
    soft_deleted: bool = False

    def __post_init__(self):
        self.base_confidence = clamp_confidence(self.base_confidence)
        if self.tags is None:
            self.tags = set()
        elif not isinstance(self.tags, set):
            self.tags = set(self.tags)
        if self.knowledge is None:
            self.knowledge = {}

    @property
    def short_id(self) -> str:
        return self.id[:8]


@dataclass
class CausalLink:
    """Directed, typed edge between two memories."""

    source_id: str
    target_id: str
    relation: Relation
    weight: float = 1.0
    created_at: Optional[datetime] = None

    @property
    def key(self) -> tuple:
        return (self.source_id, self.target_id, self.relation.value)


@dataclass
class Session:
    """Per-caller record of memory ids already delivered."""

    session_id: str
    sent_memory_ids: Set[str] = field(default_factory=set)
    created_at: Optional[datetime] = None
    last_touched_at: Optional[datetime] = None


@dataclass
class ConsolidationRecord:
    """Marks a cluster of episodes as already consolidated."""

    cluster_signature: str
    source_episode_ids: List[str]
    produced_memory_id: Optional[str]
    created_at: Optional[datetime] = None


@dataclass
class ValidationRecord:
    """Outcome of validating one memory in one state."""

    memory_id: str
    outcome: ValidationOutcome
    timestamp: Optional[datetime] = None
    issue: Optional[str] = None
    fingerprint: str = ""


# === Query / Result Types ===


@dataclass
class MemoryFilter:
    """Filter for listing memories."""

    kinds: Optional[List[MemoryKind]] = None
    tags: Optional[List[str]] = None  # match any
    importance: Optional[List[Importance]] = None
    min_confidence: Optional[float] = None  # on base confidence
    max_confidence: Optional[float] = None
    include_deleted: bool = False
    created_after: Optional[datetime] = None
    updated_after: Optional[datetime] = None


@dataclass
class MemoryPage:
    memories: List[Memory]
    next_cursor: Optional[str] = None


@dataclass
class SearchResult:
    """A memory matched by hybrid search."""

    memory: Memory
    score: float
    lexical_score: float = 0.0
    vector_score: Optional[float] = None


@dataclass
class TraversalStep:
    """One node reached while walking the causal graph."""

    memory: Memory
    relation: Optional[Relation]
    depth: int
    path: List[str]


@dataclass
class Narrative:
    memory_id: str
    text: str
    steps: List[str] = field(default_factory=list)


@dataclass
class ContradictionResult:
    new_memory_id: str
    existing_memory_id: str
    reason: str
    penalized_memory_id: str
    confidence_before: float
    confidence_after: float
    propagated: Dict[str, float] = field(default_factory=dict)


@dataclass
class ValidationStats:
    validated: int = 0
    valid: int = 0
    healed: int = 0
    stale: int = 0
    removed: int = 0
    cancelled: bool = False
    issues: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ConsolidationStats:
    episodes_processed: int = 0
    memories_created: int = 0
    memories_pruned: int = 0
    estimated_tokens_freed: int = 0
    clusters: int = 0
    dry_run: bool = False
    skipped_in_progress: bool = False
    cancelled: bool = False
    created_memory_ids: List[str] = field(default_factory=list)


@dataclass
class RetrievedMemory:
    memory: Memory
    score: float
    effective_confidence: float
    similarity: float
    tokens: int
    rendered: str


@dataclass
class RetrievalResult:
    memories: List[RetrievedMemory] = field(default_factory=list)
    tokens_used: int = 0
    total_candidates: int = 0
    intent: Optional[Intent] = None

    @property
    def memory_ids(self) -> List[str]:
        return [m.memory.id for m in self.memories]


@dataclass
class LearningContext:
    """Optional context accompanying a correction."""

    related_memory_ids: List[str] = field(default_factory=list)
    active_file: Optional[str] = None
    tags: List[str] = field(default_factory=list)


@dataclass
class LearningResult:
    created_memory_ids: List[str] = field(default_factory=list)
    extracted_principles: List[str] = field(default_factory=list)
    superseded_ids: List[str] = field(default_factory=list)
    category: str = "correction"


@dataclass
class FeedbackResult:
    memory_id: str
    action: FeedbackAction
    previous_confidence: float
    new_confidence: float


@dataclass
class PredictionContext:
    """Contextual signals describing what the caller is doing right now."""

    focus_areas: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    recent_memory_ids: List[str] = field(default_factory=list)
    session_id: Optional[str] = None


@dataclass
class Prediction:
    memory: Memory
    score: float
    reason: str
    signals: Dict[str, float] = field(default_factory=dict)


FACTUAL_KINDS: FrozenSet[MemoryKind] = frozenset(
    {
        MemoryKind.TRIBAL,
        MemoryKind.PROCEDURAL,
        MemoryKind.SEMANTIC,
        MemoryKind.PATTERN_RATIONALE,
        MemoryKind.CODE_SMELL,
        MemoryKind.DECISION_CONTEXT,
        MemoryKind.CONSTRAINT_OVERRIDE,
        MemoryKind.INCIDENT,
        MemoryKind.FEEDBACK,
        MemoryKind.PREFERENCE,
    }
)
