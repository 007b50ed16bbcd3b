"""Engine configuration.

All tunable constants live on ``CortexConfig``. Values are validated on
construction; ``CortexConfig.from_env()`` overlays ``CORTEX_*`` environment
variables on the defaults.
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Decay
DEFAULT_BONUS_PER_ACCESS_DAYS = 2.0
DEFAULT_MAX_USAGE_BONUS_DAYS = 60.0

# Contradictions
DEFAULT_CONTRADICTION_SIMILARITY = 0.75
DEFAULT_TOPIC_OVERLAP = 0.3
DEFAULT_CONTRADICTION_PENALTY = 0.30
DEFAULT_PROPAGATION_FACTOR = 0.5
DEFAULT_PROPAGATION_DEPTH = 2

# Consolidation
DEFAULT_MIN_EPISODES = 3
DEFAULT_CONSOLIDATION_SIMILARITY = 0.6
MAX_CONSOLIDATION_EPISODES = 500

# Misc
DEFAULT_SESSION_TTL_SECONDS = 3600.0
DEFAULT_EMBEDDING_TIMEOUT_SECONDS = 2.0
DEFAULT_LOW_CONFIDENCE_THRESHOLD = 0.5
DEFAULT_MAX_TOKENS = 2000


def get_cortex_home() -> Path:
    """Resolve the cortex data directory.

    ``CORTEX_DATA_DIR`` wins; otherwise ``~/.cortex``. The directory is not
    created here.
    """
    override = os.environ.get("CORTEX_DATA_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".cortex"


@dataclass
class CortexConfig:
    """Tunable engine constants.

    Attributes:
        bonus_per_access_days: Age forgiven per recorded access (default: 2)
        max_usage_bonus_days: Cap on the forgiven age (default: 60)
        contradiction_similarity: Search score needed to consider two
            memories as contradiction candidates (default: 0.75)
        topic_overlap: Fraction of the smaller word set two summaries must
            share when no embeddings are available (default: 0.3)
        contradiction_penalty: Relative confidence cut applied to the older
            memory of a contradicting pair (default: 0.30)
        propagation_factor: Share of the penalty passed to each further hop
            (default: 0.5)
        propagation_depth: Hops the penalty travels (default: 2)
        session_ttl_seconds: Idle time after which a session starts fresh
        embedding_timeout_seconds: Bound on a single provider call
        low_confidence_threshold: Effective confidence counted as "low"
    """

    bonus_per_access_days: float = DEFAULT_BONUS_PER_ACCESS_DAYS
    max_usage_bonus_days: float = DEFAULT_MAX_USAGE_BONUS_DAYS
    contradiction_similarity: float = DEFAULT_CONTRADICTION_SIMILARITY
    topic_overlap: float = DEFAULT_TOPIC_OVERLAP
    contradiction_penalty: float = DEFAULT_CONTRADICTION_PENALTY
    propagation_factor: float = DEFAULT_PROPAGATION_FACTOR
    propagation_depth: int = DEFAULT_PROPAGATION_DEPTH
    min_episodes: int = DEFAULT_MIN_EPISODES
    consolidation_similarity: float = DEFAULT_CONSOLIDATION_SIMILARITY
    max_consolidation_episodes: int = MAX_CONSOLIDATION_EPISODES
    session_ttl_seconds: float = DEFAULT_SESSION_TTL_SECONDS
    embedding_timeout_seconds: float = DEFAULT_EMBEDDING_TIMEOUT_SECONDS
    low_confidence_threshold: float = DEFAULT_LOW_CONFIDENCE_THRESHOLD
    default_max_tokens: int = DEFAULT_MAX_TOKENS

    def __post_init__(self):
        """Validate config values."""
        if self.bonus_per_access_days < 0:
            raise ValueError("bonus_per_access_days must be non-negative")
        if self.max_usage_bonus_days < 0:
            raise ValueError("max_usage_bonus_days must be non-negative")
        for name in (
            "contradiction_similarity",
            "topic_overlap",
            "contradiction_penalty",
            "propagation_factor",
            "consolidation_similarity",
            "low_confidence_threshold",
        ):
            value = getattr(self, name)
            if value < 0 or value > 1.0:
                raise ValueError(f"{name} must be between 0.0 and 1.0")
        if self.propagation_depth < 0:
            raise ValueError("propagation_depth must be non-negative")
        if self.min_episodes < 2:
            raise ValueError("min_episodes must be at least 2")
        if self.max_consolidation_episodes <= 0:
            raise ValueError("max_consolidation_episodes must be positive")
        if self.session_ttl_seconds <= 0:
            raise ValueError("session_ttl_seconds must be positive")
        if self.embedding_timeout_seconds <= 0:
            raise ValueError("embedding_timeout_seconds must be positive")
        if self.default_max_tokens <= 0:
            raise ValueError("default_max_tokens must be positive")

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "CortexConfig":
        """Build a config from ``CORTEX_<FIELD>`` environment variables.

        Unparseable values are logged and ignored.
        """
        environ = os.environ if environ is None else environ
        kwargs = {}
        for f in fields(cls):
            raw = environ.get(f"CORTEX_{f.name.upper()}")
            if raw is None or raw.strip() == "":
                continue
            caster = int if f.type in (int, "int") else float
            try:
                kwargs[f.name] = caster(raw)
            except ValueError:
                logger.warning(f"Ignoring invalid CORTEX_{f.name.upper()}={raw!r}")
        return cls(**kwargs)
