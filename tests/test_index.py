import threading
import time

import numpy as np
import pytest

from quill.errors import ConfigurationError
from quill.index import FlatVectorIndex, USearchVectorIndex

DIM = 4


def unit(*values):
    return list(values)


@pytest.fixture
def index():
    return FlatVectorIndex(DIM)


def test_search_orders_by_cosine_similarity(index):
    index.add("a", unit(1, 0, 0, 0), {"owner_id": "u1"})
    index.add("b", unit(1, 1, 0, 0), {"owner_id": "u1"})
    index.add("c", unit(0, 0, 1, 0), {"owner_id": "u1"})

    hits = index.search(unit(1, 0, 0, 0), limit=3)

    assert [h.id for h in hits] == ["a", "b", "c"]
    assert hits[0].score == pytest.approx(1.0)
    assert hits[1].score == pytest.approx(1 / np.sqrt(2))
    assert hits[2].score == pytest.approx(0.0)


def test_add_is_an_upsert(index):
    index.add("a", unit(1, 0, 0, 0), {"owner_id": "u1", "v": "1"})
    index.add("a", unit(0, 1, 0, 0), {"owner_id": "u1", "v": "2"})

    assert len(index) == 1
    hits = index.search(unit(0, 1, 0, 0), limit=5)
    assert hits[0].id == "a"
    assert hits[0].score == pytest.approx(1.0)
    assert hits[0].metadata["v"] == "2"


def test_ties_break_by_insertion_recency(index):
    for name in ("first", "second", "third"):
        index.add(name, unit(1, 0, 0, 0))
    assert [h.id for h in index.search(unit(1, 0, 0, 0), limit=3)] == ["third", "second", "first"]

    # Re-adding refreshes recency
    index.add("first", unit(1, 0, 0, 0))
    assert index.search(unit(1, 0, 0, 0), limit=1)[0].id == "first"


def test_filter_requires_every_key_to_match(index):
    index.add("a", unit(1, 0, 0, 0), {"owner_id": "u1", "content_type": "note"})
    index.add("b", unit(1, 0, 0, 0), {"owner_id": "u1", "content_type": "task"})
    index.add("c", unit(1, 0, 0, 0), {"owner_id": "u2", "content_type": "note"})
    index.add("d", unit(1, 0, 0, 0), {"owner_id": "u1"})

    hits = index.search(unit(1, 0, 0, 0), limit=10, filter={"owner_id": "u1", "content_type": "note"})
    assert [h.id for h in hits] == ["a"]
    assert {h.id for h in index.search(unit(1, 0, 0, 0), 10, {"owner_id": "u1"})} == {"a", "b", "d"}


def test_limit_is_respected(index):
    for i in range(20):
        index.add(f"v{i}", unit(1, i, 0, 0))
    assert len(index.search(unit(1, 0, 0, 0), limit=5)) == 5
    assert index.search(unit(1, 0, 0, 0), limit=0) == []


def test_dimension_mismatch_fails_fast(index):
    with pytest.raises(ConfigurationError):
        index.add("a", [1.0, 0.0])
    with pytest.raises(ConfigurationError):
        index.search([1.0, 0.0, 0.0])
    with pytest.raises(ConfigurationError):
        index.add_batch([("ok", unit(1, 0, 0, 0), None), ("bad", [1.0], None)])
    assert len(index) == 0


def test_add_batch_reports_failed_ids(index):
    result = index.add_batch([
        ("a", unit(1, 0, 0, 0), {"owner_id": "u1"}),
        ("", unit(0, 1, 0, 0), None),
        ("nan", unit(float("nan"), 0, 0, 0), None),
        ("b", unit(0, 0, 1, 0), {"owner_id": "u1"}),
    ])
    assert not result.ok
    assert result.succeeded == ["a", "b"]
    assert set(result.failed) == {"<empty>", "nan"}
    assert len(index) == 2


def test_add_batch_last_write_wins_for_repeated_ids(index):
    result = index.add_batch([
        ("a", unit(1, 0, 0, 0), {"v": "1"}),
        ("a", unit(0, 1, 0, 0), {"v": "2"}),
    ])
    assert result.ok
    assert index.get("a")[1] == {"v": "2"}


def test_remove_is_idempotent(index):
    index.add("a", unit(1, 0, 0, 0))
    index.remove("a")
    index.remove("a")
    index.remove("never-added")
    assert len(index) == 0
    assert index.search(unit(1, 0, 0, 0), limit=5) == []


def test_remove_where_deletes_matching_entries(index):
    index.add("doc#0", unit(1, 0, 0, 0), {"document_id": "doc"})
    index.add("doc#1", unit(0, 1, 0, 0), {"document_id": "doc"})
    index.add("other#0", unit(0, 0, 1, 0), {"document_id": "other"})
    assert index.remove_where({"document_id": "doc"}) == 2
    assert index.ids_matching({"document_id": "other"}) == ["other#0"]
    assert index.remove_where({"document_id": "doc"}) == 0


def test_zero_query_vector_is_allowed(index):
    index.add("a", unit(1, 0, 0, 0))
    hits = index.search(unit(0, 0, 0, 0), limit=1)
    assert hits[0].score == pytest.approx(0.0)


def test_searches_see_a_consistent_snapshot_during_writes(index):
    errors = []

    def writer():
        for i in range(300):
            index.add(f"w{i}", unit(1, i % 7, 0, 0), {"owner_id": "u1"})

    def reader():
        for _ in range(300):
            try:
                for hit in index.search(unit(1, 0, 0, 0), limit=5, filter={"owner_id": "u1"}):
                    assert hit.metadata["owner_id"] == "u1"
            except Exception as e:  # collected and asserted below
                errors.append(e)

    threads = [threading.Thread(target=writer), threading.Thread(target=reader), threading.Thread(target=reader)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(index) == 300


def test_flat_index_persists_and_reloads(tmp_path):
    path = str(tmp_path / "vectors")
    index = FlatVectorIndex(DIM, path=path)
    index.add("a", unit(1, 0, 0, 0), {"owner_id": "u1"})
    index.add("b", unit(0, 1, 0, 0), {"owner_id": "u2"})
    index.save()

    reloaded = FlatVectorIndex(DIM, path=path)
    assert len(reloaded) == 2
    hits = reloaded.search(unit(0, 1, 0, 0), limit=1, filter={"owner_id": "u2"})
    assert hits[0].id == "b"


def test_reload_with_other_dimension_is_a_configuration_error(tmp_path):
    path = str(tmp_path / "vectors")
    index = FlatVectorIndex(DIM, path=path)
    index.add("a", unit(1, 0, 0, 0))
    index.save()
    with pytest.raises(ConfigurationError):
        FlatVectorIndex(DIM + 1, path=path)


def test_usearch_backend_honours_the_same_contract(tmp_path):
    pytest.importorskip("usearch")
    index = USearchVectorIndex(DIM, path=str(tmp_path / "hnsw"))
    index.add("a", unit(1, 0, 0, 0), {"owner_id": "u1"})
    index.add("b", unit(0.9, 0.1, 0, 0), {"owner_id": "u1"})
    index.add("c", unit(1, 0, 0, 0), {"owner_id": "u2"})

    hits = index.search(unit(1, 0, 0, 0), limit=2, filter={"owner_id": "u1"})
    assert [h.id for h in hits] == ["a", "b"]

    index.add("a", unit(0, 0, 1, 0), {"owner_id": "u1"})
    assert len(index) == 3
    assert index.search(unit(0, 0, 1, 0), limit=1)[0].id == "a"

    index.remove("c")
    index.remove("c")
    assert len(index) == 2

    index.save()
    reloaded = USearchVectorIndex(DIM, path=str(tmp_path / "hnsw"))
    assert len(reloaded) == 2
    assert reloaded.get("b")[1] == {"owner_id": "u1"}


def test_writes_do_not_copy_the_index(index):
    index.add_batch([(f"seed{i}", unit(1, i, 0, 0), None) for i in range(20000)])

    def timed_adds(prefix):
        started = time.perf_counter()
        for i in range(2000):
            index.add(f"{prefix}{i}", unit(0, 1, i, 0))
        return time.perf_counter() - started

    small = FlatVectorIndex(DIM)
    started = time.perf_counter()
    for i in range(2000):
        small.add(f"s{i}", unit(0, 1, i, 0))
    baseline = time.perf_counter() - started

    # Per-write cost must not grow with the number of stored vectors
    assert timed_adds("late") < baseline * 4 + 0.1
    assert len(index) == 22000


def test_search_sees_writes_made_after_a_previous_search(index):
    index.add("a", unit(1, 0, 0, 0))
    assert [h.id for h in index.search(unit(1, 0, 0, 0), limit=5)] == ["a"]

    index.add("b", unit(1, 0, 0, 0))
    index.remove("a")
    assert [h.id for h in index.search(unit(1, 0, 0, 0), limit=5)] == ["b"]
    assert index.get("a") is None
    assert index.ids_matching({}) == ["b"]
