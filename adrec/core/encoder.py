"""
Feature Encoder

Turns click events into sparse one-hot vectors laid out exactly like the
vectors the offline model was trained on.
"""

import logging
from typing import Callable, List, Optional, Sequence, Tuple

from . import metrics
from .errors import ConfigError, VocabularyOverCapacityError
from .models import ClickEvent, FeatureVector
from ..storage.vocabulary import FieldBlock, HashedPolicy, VocabularyStore


# timestamp and label are never encoded
ENCODABLE_FIELDS = ("user_id", "offer_id", "country_code", "category", "merchant")

FEATURE_WEIGHT = 1.0


class FeatureEncoder:
    """
    Stateless encoder; all state lives in the shared VocabularyStore.

    Every configured field contributes exactly one index: the value's index,
    a hash bucket when the field is full, or the field's unknown index when
    the value is missing. Values are looked up with surrounding whitespace
    stripped, so " o1" and "o1" share an index.
    """

    def __init__(self, vocabulary: VocabularyStore, fields: Optional[Sequence[str]] = None):
        self.vocabulary = vocabulary
        self.fields = list(fields or vocabulary.field_names)
        self.logger = logging.getLogger(__name__)

        for name in self.fields:
            if name not in ENCODABLE_FIELDS:
                raise ConfigError(f"field '{name}' cannot be encoded")

        self._resolvers: List[Tuple[str, int, Callable[[str], int]]] = [
            (name, vocabulary.unknown_index(name), self._resolver_for(vocabulary.block(name)))
            for name in self.fields
        ]

    def _resolver_for(self, block: FieldBlock) -> Callable[[str], int]:
        if isinstance(block.policy, HashedPolicy):
            return block.hash_index

        vocabulary = self.vocabulary

        def one_hot(raw_value: str) -> int:
            try:
                return vocabulary.lookup_or_assign(block.name, raw_value)
            except VocabularyOverCapacityError:
                vocabulary.overflow_count += 1
                metrics.VOCABULARY_OVERFLOW.labels(field=block.name).inc()
                return block.hash_index(raw_value)

        return one_hot

    def encode(self, event: ClickEvent) -> FeatureVector:
        """
        Encode a click event

        Args:
            event: Click event

        Returns:
            FeatureVector stamped with the vocabulary version it was built against
        """
        indices = {}
        for name, unknown_index, resolve in self._resolvers:
            raw_value = getattr(event, name)
            value = raw_value.strip() if raw_value is not None else ""
            if not value:
                index = unknown_index
            else:
                index = resolve(value)
            indices[index] = FEATURE_WEIGHT

        # Snapshot after lookups so every index above is valid in this version
        version = self.vocabulary.snapshot_version()
        return FeatureVector(event_id=event.event_id, indices=indices, vocabulary_version=version)
