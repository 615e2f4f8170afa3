"""
adrec - Real-time Click-to-Offer Pipeline

Scores e-commerce click events against an offer model in real time,
notifies shoppers of high-scoring offers and archives every outcome for
batch analysis and retraining.
"""

__version__ = "1.0.0"
__author__ = "adrec Team"

from .core.config import PipelineConfig
from .core.engine import PipelineEngine
from .core.encoder import FeatureEncoder
from .storage.vocabulary import VocabularyStore
from .ml.scoring import ScoringClient, CircuitBreaker

__all__ = [
    "PipelineConfig",
    "PipelineEngine",
    "FeatureEncoder",
    "VocabularyStore",
    "ScoringClient",
    "CircuitBreaker"
]
