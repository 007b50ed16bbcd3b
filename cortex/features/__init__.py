"""Feature modules for cortex.

Each feature is implemented as a mixin class that provides specific
functionality to the main MemoryEngine class. Sessions are a plain
collaborator object rather than a mixin.
"""

from cortex.features.causal import CausalMixin
from cortex.features.consolidation import ConsolidationMixin
from cortex.features.contradictions import ContradictionMixin
from cortex.features.decay import DEFAULT_DECAY_CONFIG, DecayConfig, DecayMixin
from cortex.features.learning import LearningMixin
from cortex.features.prediction import PredictionMixin
from cortex.features.retrieval import PRIORITY_KINDS, RetrievalMixin
from cortex.features.sessions import SessionManager
from cortex.features.validation import ValidationMixin

__all__ = [
    "CausalMixin",
    "ConsolidationMixin",
    "ContradictionMixin",
    "DecayConfig",
    "DecayMixin",
    "DEFAULT_DECAY_CONFIG",
    "LearningMixin",
    "PredictionMixin",
    "PRIORITY_KINDS",
    "RetrievalMixin",
    "SessionManager",
    "ValidationMixin",
]
