# tests/test_vocabulary.py
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from hypothesis import given, settings, strategies as st

from adrec.core.errors import ConfigError, VocabularyMismatchError, VocabularyOverCapacityError
from adrec.storage.vocabulary import HashedPolicy, OneHotPolicy, VocabularyStore, build_layout

from conftest import FIELDS


values = st.text(min_size=1, max_size=12)


@settings(max_examples=50, deadline=None)
@given(st.lists(values, min_size=1, max_size=30))
def test_lookup_or_assign_is_deterministic(raw_values):
    store = VocabularyStore(FIELDS, max_size=64, hash_buckets=8)
    first = [store.lookup_or_assign("offer_id", v) for v in raw_values]
    second = [store.lookup_or_assign("offer_id", v) for v in raw_values]

    assert first == second
    for v, index in zip(raw_values, first):
        assert store.lookup("offer_id", v) == index


@settings(max_examples=50, deadline=None)
@given(st.lists(values, min_size=1, max_size=30, unique=True))
def test_distinct_values_get_distinct_indices(raw_values):
    store = VocabularyStore(FIELDS, max_size=64, hash_buckets=8)
    indices = [store.lookup_or_assign("merchant", v) for v in raw_values]

    assert len(set(indices)) == len(raw_values)
    block = store.block("merchant")
    assert all(block.offset < i < block.offset + block.policy.max_size for i in indices)


def test_layout_blocks_are_contiguous_and_disjoint():
    blocks = build_layout(FIELDS, max_size=10, hash_buckets=4, hashed_fields=["user_id"])

    assert isinstance(blocks[0].policy, HashedPolicy)
    assert isinstance(blocks[1].policy, OneHotPolicy)
    assert blocks[0].offset == 0
    for previous, current in zip(blocks, blocks[1:]):
        assert current.offset == previous.end
    assert blocks[0].end == 1 + 4
    assert blocks[1].end - blocks[1].offset == 10 + 4


def test_unknown_index_is_first_slot_of_block(vocabulary):
    for name in FIELDS:
        assert vocabulary.unknown_index(name) == vocabulary.block(name).offset


def test_version_counts_new_assignments_only(vocabulary):
    assert vocabulary.snapshot_version() == 0
    vocabulary.lookup_or_assign("offer_id", "o1")
    vocabulary.lookup_or_assign("offer_id", "o1")
    vocabulary.lookup_or_assign("category", "c1")

    assert vocabulary.snapshot_version() == 2


def test_concurrent_assignment_of_same_value_yields_one_index():
    store = VocabularyStore(FIELDS, max_size=1000, hash_buckets=8)
    barrier = threading.Barrier(8)

    def assign(_):
        barrier.wait()
        return store.lookup_or_assign("offer_id", "o_new")

    with ThreadPoolExecutor(max_workers=8) as pool:
        indices = list(pool.map(assign, range(8)))

    assert len(set(indices)) == 1
    assert store.size("offer_id") == 1
    assert store.snapshot_version() == 1


def test_concurrent_assignment_of_different_values_never_collides():
    store = VocabularyStore(FIELDS, max_size=1000, hash_buckets=8)

    def assign(worker):
        return [store.lookup_or_assign("offer_id", f"o{worker}_{i}") for i in range(50)]

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = [index for chunk in pool.map(assign, range(8)) for index in chunk]

    assert len(set(results)) == 8 * 50
    assert store.snapshot_version() == 8 * 50


def test_full_field_raises_over_capacity():
    store = VocabularyStore(FIELDS, max_size=3, hash_buckets=4)
    store.lookup_or_assign("offer_id", "a")
    store.lookup_or_assign("offer_id", "b")

    with pytest.raises(VocabularyOverCapacityError) as exc_info:
        store.lookup_or_assign("offer_id", "c")
    assert exc_info.value.field_name == "offer_id"
    # Known values still resolve
    assert store.lookup_or_assign("offer_id", "a") == store.lookup("offer_id", "a")


def test_hash_index_stays_inside_fallback_range(vocabulary):
    block = vocabulary.block("offer_id")
    for i in range(200):
        index = vocabulary.hash_index("offer_id", f"value-{i}")
        assert block.offset + block.policy.hash_start <= index < block.end


def test_hashed_field_never_enters_vocabulary():
    store = VocabularyStore(FIELDS, max_size=8, hash_buckets=4, hashed_fields=["user_id"])
    index = store.lookup_or_assign("user_id", "u1")

    assert index == store.hash_index("user_id", "u1")
    assert store.size("user_id") == 0
    assert store.snapshot_version() == 0


def test_invalid_sizes_rejected():
    with pytest.raises(ConfigError):
        VocabularyStore(FIELDS, max_size=1, hash_buckets=4)


def test_save_and_load_keep_indices(tmp_path, vocabulary):
    for value in ["o1", "o2", "o3"]:
        vocabulary.lookup_or_assign("offer_id", value)
    vocabulary.lookup_or_assign("category", "c1")
    path = str(tmp_path / "vocabulary.json")
    vocabulary.save(path)

    loaded = VocabularyStore.load(path, FIELDS, max_size=16, hash_buckets=8)

    assert loaded.export_vocabulary() == vocabulary.export_vocabulary()
    assert loaded.snapshot_version() == vocabulary.snapshot_version()
    # New values continue after the loaded ones
    assert loaded.lookup_or_assign("offer_id", "o4") == vocabulary.lookup_or_assign("offer_id", "o4")


def test_load_rejects_different_layout(tmp_path, vocabulary):
    vocabulary.lookup_or_assign("offer_id", "o1")
    path = str(tmp_path / "vocabulary.json")
    vocabulary.save(path)

    with pytest.raises(VocabularyMismatchError):
        VocabularyStore.load(path, FIELDS, max_size=32, hash_buckets=8)
    with pytest.raises(VocabularyMismatchError):
        VocabularyStore.load(path, list(reversed(FIELDS)), max_size=16, hash_buckets=8)
