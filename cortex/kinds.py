"""Per-kind payload registry.

One ``KindSpec`` per ``MemoryKind``: its half-life, whether it states a fact
(and so takes part in contradiction detection), the knowledge fields it
requires, and the template used to regenerate a summary from knowledge.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from cortex.protocols import InvalidKindError, ValidationFailure
from cortex.types import MemoryKind

MAX_SUMMARY_LENGTH = 500

SEVERITY_VALUES = frozenset({"info", "warning", "critical"})
PROFICIENCY_VALUES = frozenset({"novice", "competent", "expert"})

# Fields with a closed value set, checked in addition to non-emptiness.
_ENUM_FIELDS: Dict[str, FrozenSet[str]] = {
    "severity": SEVERITY_VALUES,
    "proficiency": PROFICIENCY_VALUES,
}

# Fields holding an ordered list of steps rather than a string.
_LIST_FIELDS = frozenset({"steps"})


@dataclass(frozen=True)
class KindSpec:
    """Static description of one memory kind."""

    kind: MemoryKind
    half_life_days: float
    required_fields: Tuple[str, ...]
    template: str
    description: str = ""
    factual: bool = False
    optional_fields: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def decays(self) -> bool:
        return not math.isinf(self.half_life_days)

    def render_summary(self, knowledge: Mapping[str, Any]) -> str:
        """Fill the summary template from knowledge. Empty string if it can't."""
        values = {}
        for name in self.required_fields:
            value = knowledge.get(name)
            if value is None or value == "" or value == []:
                return ""
            values[name] = _flatten(value)
        try:
            summary = self.template.format(**values)
        except (KeyError, IndexError, ValueError):
            return ""
        summary = " ".join(summary.split())
        if len(summary) > MAX_SUMMARY_LENGTH:
            summary = summary[: MAX_SUMMARY_LENGTH - 3].rstrip() + "..."
        return summary


def _flatten(value: Any) -> str:
    if isinstance(value, list):
        parts = []
        for item in value:
            if isinstance(item, dict):
                parts.append(str(item.get("action", "")).strip())
            else:
                parts.append(str(item).strip())
        return "; ".join(p for p in parts if p)
    return str(value).strip()


_INF = math.inf

KIND_SPECS: Dict[MemoryKind, KindSpec] = {
    spec.kind: spec
    for spec in (
        KindSpec(
            MemoryKind.CORE,
            _INF,
            ("project",),
            "Project: {project}",
            "Durable identity facts",
        ),
        KindSpec(
            MemoryKind.TRIBAL,
            365,
            ("topic", "knowledge", "severity"),
            "[{severity}] {topic}: {knowledge}",
            "Institutional warnings and gotchas",
            factual=True,
            optional_fields=("warnings", "consequences"),
        ),
        KindSpec(
            MemoryKind.PROCEDURAL,
            180,
            ("name", "steps"),
            "How to {name}: {steps}",
            "How-to procedures",
            factual=True,
            optional_fields=("checklist",),
        ),
        KindSpec(
            MemoryKind.SEMANTIC,
            90,
            ("topic", "knowledge"),
            "{topic}: {knowledge}",
            "Consolidated knowledge",
            factual=True,
            optional_fields=("supporting_evidence", "source_episodes"),
        ),
        KindSpec(
            MemoryKind.EPISODIC,
            7,
            ("interaction",),
            "{interaction}",
            "Raw interaction records",
            optional_fields=("context", "outcome"),
        ),
        KindSpec(
            MemoryKind.PATTERN_RATIONALE,
            180,
            ("pattern_name", "rationale"),
            "{pattern_name}: {rationale}",
            "Why a pattern exists",
            factual=True,
            optional_fields=("business_context", "examples"),
        ),
        KindSpec(
            MemoryKind.CODE_SMELL,
            90,
            ("name", "reason"),
            "Avoid {name}: {reason}",
            "Anti-patterns to avoid",
            factual=True,
            optional_fields=("bad_example", "good_example", "severity"),
        ),
        KindSpec(
            MemoryKind.DECISION_CONTEXT,
            180,
            ("decision_summary",),
            "Decision: {decision_summary}",
            "Human context for decisions",
            factual=True,
            optional_fields=("business_context", "technical_context"),
        ),
        KindSpec(
            MemoryKind.CONSTRAINT_OVERRIDE,
            90,
            ("constraint_name", "reason"),
            "Override {constraint_name}: {reason}",
            "Approved exceptions to constraints",
            factual=True,
            optional_fields=("scope", "approved_by"),
        ),
        KindSpec(
            MemoryKind.GOAL,
            90,
            ("title",),
            "Goal: {title}",
            "Objectives",
            optional_fields=("description", "status"),
        ),
        KindSpec(
            MemoryKind.INCIDENT,
            365,
            ("title", "resolution"),
            "Incident {title}: {resolution}",
            "Postmortems",
            factual=True,
            optional_fields=("root_cause", "lessons_learned"),
        ),
        KindSpec(
            MemoryKind.SKILL,
            180,
            ("domain", "proficiency"),
            "{domain} ({proficiency})",
            "Skill proficiency",
        ),
        KindSpec(
            MemoryKind.ENVIRONMENT,
            90,
            ("name",),
            "Environment {name}",
            "Environment descriptors",
            optional_fields=("config", "warnings"),
        ),
        KindSpec(
            MemoryKind.AGENT_SPAWN,
            365,
            ("name", "instructions"),
            "Agent {name}: {instructions}",
            "Reusable agent configurations",
        ),
        KindSpec(
            MemoryKind.WORKFLOW,
            180,
            ("name", "steps"),
            "Workflow {name}: {steps}",
            "Workflows",
        ),
        KindSpec(
            MemoryKind.ENTITY,
            180,
            ("name", "entity_type"),
            "{name} ({entity_type})",
            "Projects, products, teams",
        ),
        KindSpec(
            MemoryKind.MEETING,
            60,
            ("title",),
            "Meeting: {title}",
            "Meeting notes",
            optional_fields=("attendees", "decisions", "action_items"),
        ),
        KindSpec(
            MemoryKind.CONVERSATION,
            30,
            ("title",),
            "Conversation: {title}",
            "Conversation summaries",
            optional_fields=("participants", "outcome"),
        ),
        KindSpec(
            MemoryKind.FEEDBACK,
            120,
            ("feedback",),
            "Feedback: {feedback}",
            "Corrections and feedback records",
            factual=True,
            optional_fields=("original", "category"),
        ),
        KindSpec(
            MemoryKind.PREFERENCE,
            120,
            ("preference",),
            "Prefers {preference}",
            "Stated preferences",
            factual=True,
        ),
    )
}


def parse_kind(value: Any) -> MemoryKind:
    """Coerce a kind name (or MemoryKind) at the boundary."""
    if isinstance(value, MemoryKind):
        return value
    try:
        return MemoryKind(value)
    except ValueError:
        raise InvalidKindError(value) from None


def get_kind_spec(kind: Any) -> KindSpec:
    return KIND_SPECS[parse_kind(kind)]


def half_life_days(kind: Any) -> float:
    """Half-life of a kind in days; ``math.inf`` for kinds that never decay."""
    return get_kind_spec(kind).half_life_days


def validate_knowledge(kind: Any, knowledge: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Validate a knowledge payload against its kind.

    Returns a plain-dict copy. Raises ValidationFailure naming the first bad
    field; raises InvalidKindError for unknown kinds.
    """
    spec = get_kind_spec(kind)
    if knowledge is None:
        knowledge = {}
    if not isinstance(knowledge, Mapping):
        raise ValidationFailure(
            f"knowledge for {spec.kind.value} must be a mapping, got {type(knowledge).__name__}",
            field="knowledge",
        )

    for name in spec.required_fields:
        if name not in knowledge or knowledge[name] is None:
            raise ValidationFailure(
                f"{spec.kind.value} knowledge is missing required field '{name}'",
                field=name,
            )
        value = knowledge[name]
        if name in _LIST_FIELDS:
            _check_steps(spec.kind, name, value)
            continue
        if not isinstance(value, str) or not value.strip():
            raise ValidationFailure(
                f"{spec.kind.value} field '{name}' must be a non-empty string",
                field=name,
            )
        allowed = _ENUM_FIELDS.get(name)
        if allowed is not None and value not in allowed:
            raise ValidationFailure(
                f"{spec.kind.value} field '{name}' must be one of {sorted(allowed)}, got {value!r}",
                field=name,
            )
    return dict(knowledge)


def _check_steps(kind: MemoryKind, name: str, value: Any) -> None:
    if not isinstance(value, list) or not value:
        raise ValidationFailure(
            f"{kind.value} field '{name}' must be a non-empty list", field=name
        )
    for i, step in enumerate(value):
        if isinstance(step, str) and step.strip():
            continue
        if isinstance(step, dict) and str(step.get("action", "")).strip():
            continue
        raise ValidationFailure(
            f"{kind.value} field '{name}[{i}]' must be a string or a dict with an 'action'",
            field=name,
        )


def render_summary(kind: Any, knowledge: Mapping[str, Any]) -> str:
    """Regenerate a summary from knowledge via the kind's template."""
    return get_kind_spec(kind).render_summary(knowledge or {})


def knowledge_text(knowledge: Mapping[str, Any]) -> str:
    """Flatten a knowledge payload into searchable text, keys sorted."""
    parts = []
    for key in sorted(knowledge or {}):
        value = knowledge[key]
        if isinstance(value, (list, tuple)):
            parts.append(_flatten(list(value)))
        elif isinstance(value, dict):
            parts.append(" ".join(str(v) for v in value.values()))
        elif value is not None:
            parts.append(str(value))
    return " ".join(p for p in parts if p)
