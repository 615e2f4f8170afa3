"""
Vocabulary Store

Append-only mapping from (field, raw value) to stable feature indices, shared
by every encoder in the process. Indices must match the ones used at training
time, so an index is never reused or reassigned.
"""

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Sequence, Union

import orjson

from ..core import metrics
from ..core.errors import ConfigError, VocabularyMismatchError, VocabularyOverCapacityError


UNKNOWN_SLOT = 0


@dataclass(frozen=True)
class OneHotPolicy:
    """Values get vocabulary slots; overflow goes to hash buckets"""
    max_size: int
    hash_buckets: int

    name = "one_hot"

    @property
    def block_size(self) -> int:
        return self.max_size + self.hash_buckets

    @property
    def hash_start(self) -> int:
        return self.max_size


@dataclass(frozen=True)
class HashedPolicy:
    """Values are always hashed; the field never touches the vocabulary"""
    buckets: int

    name = "hashed"

    @property
    def block_size(self) -> int:
        return 1 + self.buckets

    @property
    def hash_buckets(self) -> int:
        return self.buckets

    @property
    def hash_start(self) -> int:
        return 1


FieldPolicy = Union[OneHotPolicy, HashedPolicy]


@dataclass(frozen=True)
class FieldBlock:
    """Contiguous index range owned by one field"""
    name: str
    policy: FieldPolicy
    offset: int

    @property
    def unknown_index(self) -> int:
        return self.offset + UNKNOWN_SLOT

    @property
    def end(self) -> int:
        return self.offset + self.policy.block_size

    def hash_index(self, raw_value: str) -> int:
        """Stable bucket for a value; independent of PYTHONHASHSEED"""
        digest = hashlib.md5(f"{self.name}\x1f{raw_value}".encode("utf-8")).digest()
        bucket = int.from_bytes(digest[:8], "big") % self.policy.hash_buckets
        return self.offset + self.policy.hash_start + bucket

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "policy": self.policy.name,
            "offset": self.offset,
            "block_size": self.policy.block_size,
            "hash_buckets": self.policy.hash_buckets,
        }


def build_layout(
    fields: Sequence[str],
    max_size: int,
    hash_buckets: int,
    hashed_fields: Sequence[str] = ()
) -> List[FieldBlock]:
    """Resolve each field's policy and index block once, in field order"""
    blocks = []
    offset = 0
    hashed = set(hashed_fields)
    for name in fields:
        if name in hashed:
            policy = HashedPolicy(buckets=hash_buckets)
        else:
            policy = OneHotPolicy(max_size=max_size, hash_buckets=hash_buckets)
        block = FieldBlock(name=name, policy=policy, offset=offset)
        blocks.append(block)
        offset = block.end
    return blocks


class VocabularyStore:
    """
    Concurrency-safe arena of feature indices.

    Reads of known values take no lock. Assignment of a new value takes the
    store lock and re-checks, so two callers racing on the same new value get
    the same index and two callers with different new values never share one.
    """

    def __init__(
        self,
        fields: Sequence[str],
        max_size: int = 100000,
        hash_buckets: int = 1024,
        hashed_fields: Sequence[str] = ()
    ):
        """
        Initialize the vocabulary store

        Args:
            fields: Ordered categorical field names
            max_size: Slots per one-hot field, including the unknown slot
            hash_buckets: Fallback buckets per field
            hashed_fields: Fields that are always hashed
        """
        if max_size < 2 or hash_buckets < 1:
            raise ConfigError("vocabulary needs max_size >= 2 and hash_buckets >= 1")

        self.max_size = max_size
        self.hash_buckets = hash_buckets
        self.blocks = {
            block.name: block
            for block in build_layout(fields, max_size, hash_buckets, hashed_fields)
        }
        self.field_names = list(fields)

        self._entries: Dict[str, Dict[str, int]] = {name: {} for name in self.field_names}
        self._next_slot: Dict[str, int] = {name: UNKNOWN_SLOT + 1 for name in self.field_names}
        self._lock = threading.Lock()
        self._version = 0
        self.overflow_count = 0

        self.logger = logging.getLogger(__name__)

    @property
    def dimension(self) -> int:
        """Total width of the feature space"""
        return max((block.end for block in self.blocks.values()), default=0)

    def block(self, field_name: str) -> FieldBlock:
        try:
            return self.blocks[field_name]
        except KeyError:
            raise KeyError(f"field '{field_name}' is not part of the vocabulary")

    def lookup(self, field_name: str, raw_value: str) -> Optional[int]:
        """Index of a known value, or None"""
        block = self.block(field_name)
        if isinstance(block.policy, HashedPolicy):
            return block.hash_index(raw_value)
        slot = self._entries[field_name].get(raw_value)
        return None if slot is None else block.offset + slot

    def lookup_or_assign(self, field_name: str, raw_value: str) -> int:
        """
        Return the index of a value, assigning the next free slot if new

        Args:
            field_name: Categorical field
            raw_value: Raw categorical value

        Returns:
            Feature index

        Raises:
            VocabularyOverCapacityError: if the field has no free slots left
        """
        block = self.block(field_name)
        if isinstance(block.policy, HashedPolicy):
            return block.hash_index(raw_value)

        entries = self._entries[field_name]
        slot = entries.get(raw_value)
        if slot is not None:
            return block.offset + slot

        with self._lock:
            slot = entries.get(raw_value)
            if slot is not None:
                return block.offset + slot

            slot = self._next_slot[field_name]
            if slot >= block.policy.max_size:
                raise VocabularyOverCapacityError(field_name, block.policy.max_size)

            entries[raw_value] = slot
            self._next_slot[field_name] = slot + 1
            self._version += 1

        metrics.VOCABULARY_ASSIGNMENTS.labels(field=field_name).inc()
        self.logger.debug(f"Assigned index {block.offset + slot} to {field_name}={raw_value!r}")
        return block.offset + slot

    def hash_index(self, field_name: str, raw_value: str) -> int:
        return self.block(field_name).hash_index(raw_value)

    def unknown_index(self, field_name: str) -> int:
        return self.block(field_name).unknown_index

    def snapshot_version(self) -> int:
        """Number of assignments made so far; grows with every new index"""
        return self._version

    def size(self, field_name: str) -> int:
        return len(self._entries[field_name])

    def export_vocabulary(self) -> Dict[str, Dict[str, int]]:
        """Copy of the (field -> value -> index) mapping"""
        with self._lock:
            return {
                name: {value: self.blocks[name].offset + slot for value, slot in entries.items()}
                for name, entries in self._entries.items()
            }

    def save(self, path: str):
        """Persist the vocabulary and its layout as JSON"""
        with self._lock:
            document = {
                "version": self._version,
                "saved_at": time.time(),
                "layout": [self.blocks[name].describe() for name in self.field_names],
                "entries": {name: dict(entries) for name, entries in self._entries.items()},
            }
        with open(path, "wb") as fh:
            fh.write(orjson.dumps(document))
        self.logger.info(f"Saved vocabulary version {document['version']} to {path}")

    @classmethod
    def load(
        cls,
        path: str,
        fields: Sequence[str],
        max_size: int = 100000,
        hash_buckets: int = 1024,
        hashed_fields: Sequence[str] = ()
    ) -> "VocabularyStore":
        """
        Load a vocabulary saved by the training side

        The configured layout must match the saved one exactly, otherwise
        indices would silently shift between training and serving.
        """
        with open(path, "rb") as fh:
            document = orjson.loads(fh.read())

        store = cls(fields, max_size=max_size, hash_buckets=hash_buckets, hashed_fields=hashed_fields)
        expected = [store.blocks[name].describe() for name in store.field_names]
        if document.get("layout") != expected:
            raise VocabularyMismatchError(
                f"vocabulary layout in {path} does not match the configured fields"
            )

        for name, entries in document.get("entries", {}).items():
            block = store.blocks[name]
            for value, slot in entries.items():
                if not UNKNOWN_SLOT < slot < block.policy.max_size:
                    raise VocabularyMismatchError(f"slot {slot} for {name}={value!r} is out of range")
            store._entries[name] = dict(entries)
            store._next_slot[name] = max(entries.values(), default=UNKNOWN_SLOT) + 1

        store._version = int(document.get("version", 0))
        store.logger.info(f"Loaded vocabulary version {store._version} from {path}")
        return store

    def get_stats(self) -> Dict[str, Any]:
        return {
            "version": self._version,
            "dimension": self.dimension,
            "field_sizes": {name: len(entries) for name, entries in self._entries.items()},
            "overflow_count": self.overflow_count,
        }
