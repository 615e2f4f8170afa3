"""Storage layer for the pipeline"""

from .vocabulary import VocabularyStore
from .cache import IdempotencyCache
from .archive import Archiver, ArchiveStore, InMemoryArchiveStore, LocalArchiveStore
from .partitions import PartitionTracker
from .dead_letter import DeadLetterStore, InMemoryDeadLetterStore, LocalDeadLetterStore

__all__ = [
    "VocabularyStore", "IdempotencyCache", "Archiver", "ArchiveStore",
    "InMemoryArchiveStore", "LocalArchiveStore", "PartitionTracker",
    "DeadLetterStore", "InMemoryDeadLetterStore", "LocalDeadLetterStore"
]
