"""Core pipeline components"""

from .models import ClickEvent, FeatureVector, ScoreResult, ArchiveRecord, PartitionMarker
from .config import PipelineConfig
from .encoder import FeatureEncoder
from .engine import PipelineEngine

__all__ = [
    "ClickEvent", "FeatureVector", "ScoreResult", "ArchiveRecord", "PartitionMarker",
    "PipelineConfig", "FeatureEncoder", "PipelineEngine"
]
