"""Confidence decay for cortex.

Stored ``base_confidence`` never changes on read. Every ranking path goes
through ``effective_confidence``, which halves a memory's confidence once per
half-life of its kind. Each recorded access forgives a slice of its age.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Iterable, Optional

from cortex.config import DEFAULT_BONUS_PER_ACCESS_DAYS, DEFAULT_MAX_USAGE_BONUS_DAYS
from cortex.kinds import half_life_days
from cortex.types import Memory, MemoryKind, utc_now

if TYPE_CHECKING:
    from cortex.core.engine import MemoryEngine

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0


@dataclass
class DecayConfig:
    """Configuration for usage-adjusted half-life decay.

    Attributes:
        bonus_per_access_days: Days of age forgiven per access (default: 2)
        max_usage_bonus_days: Cap on forgiven days (default: 60)
    """

    bonus_per_access_days: float = DEFAULT_BONUS_PER_ACCESS_DAYS
    max_usage_bonus_days: float = DEFAULT_MAX_USAGE_BONUS_DAYS

    def __post_init__(self):
        """Validate decay config values."""
        if self.bonus_per_access_days < 0:
            raise ValueError("bonus_per_access_days must be non-negative")
        if self.max_usage_bonus_days < 0:
            raise ValueError("max_usage_bonus_days must be non-negative")

    def usage_bonus_days(self, access_count: int) -> float:
        return min(max(0, access_count) * self.bonus_per_access_days, self.max_usage_bonus_days)


DEFAULT_DECAY_CONFIG = DecayConfig()


def age_days(memory: Memory, now: datetime) -> float:
    """Days since creation, never negative."""
    if memory.created_at is None:
        return 0.0
    return max(0.0, (now - memory.created_at).total_seconds() / SECONDS_PER_DAY)


def effective_confidence(
    memory: Memory,
    now: Optional[datetime] = None,
    config: DecayConfig = DEFAULT_DECAY_CONFIG,
) -> float:
    """Base confidence decayed by the kind's half-life.

    ``base * 2 ** (-max(0, age - usage_bonus) / half_life)``. Kinds with an
    infinite half-life (``core``) return their base confidence unchanged.
    """
    half_life = half_life_days(memory.kind)
    if math.isinf(half_life):
        return memory.base_confidence
    now = now or utc_now()
    effective_age = max(0.0, age_days(memory, now) - config.usage_bonus_days(memory.access_count))
    return memory.base_confidence * math.pow(2.0, -effective_age / half_life)


def past_half_life(
    memory: Memory, now: datetime, config: DecayConfig = DEFAULT_DECAY_CONFIG
) -> bool:
    half_life = half_life_days(memory.kind)
    if math.isinf(half_life):
        return False
    return age_days(memory, now) - config.usage_bonus_days(memory.access_count) >= half_life


def decay_report(
    memories: Iterable[Memory],
    now: Optional[datetime] = None,
    config: DecayConfig = DEFAULT_DECAY_CONFIG,
) -> Dict[str, Any]:
    """Per-kind average effective confidence and the count past one half-life."""
    now = now or utc_now()
    totals: Dict[str, float] = {}
    counts: Dict[str, int] = {}
    past = 0
    for memory in memories:
        kind = memory.kind.value
        totals[kind] = totals.get(kind, 0.0) + effective_confidence(memory, now, config)
        counts[kind] = counts.get(kind, 0) + 1
        if past_half_life(memory, now, config):
            past += 1
    return {
        "by_kind": {k: round(totals[k] / counts[k], 4) for k in sorted(counts)},
        "past_half_life": past,
    }


class DecayMixin:
    """Effective-confidence helpers bound to the engine's config."""

    def effective_confidence(
        self: "MemoryEngine", memory: Memory, now: Optional[datetime] = None
    ) -> float:
        return effective_confidence(memory, now or self._now(), self._decay_config)

    def half_life_days(self: "MemoryEngine", kind: MemoryKind) -> float:
        return half_life_days(kind)
