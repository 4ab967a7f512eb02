"""Unit tests for the SQLite vector store."""
import numpy as np
import pytest

from deskchat.errors import DimensionMismatch, NotFound
from deskchat.rag.store_vector import (
    VectorStore,
    bytes_to_vector,
    cosine_similarity,
    vector_to_bytes,
)

from conftest import insert_chunk, insert_kb


@pytest.fixture
def store(database):
    insert_kb(database)
    return VectorStore(database)


def fill(database, store, vectors, kb_id="kb1"):
    for i, (chunk_id, vector) in enumerate(vectors.items()):
        insert_chunk(database, kb_id, chunk_id, i)
        store.insert(kb_id, chunk_id, vector)


class TestCosineSimilarity:
    def test_identical_vectors(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_symmetric(self):
        a, b = [1.0, 0.5, -2.0], [0.3, 4.0, 1.0]
        assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))

    def test_orthogonal_and_opposite(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_scale_invariant(self):
        assert cosine_similarity([1.0, 2.0], [10.0, 20.0]) == pytest.approx(1.0)

    def test_zero_vector_scores_zero(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0

    def test_length_mismatch(self):
        with pytest.raises(DimensionMismatch):
            cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0])


def test_blob_roundtrip_is_float32():
    blob = vector_to_bytes([1.5, -2.0, 0.25])
    assert len(blob) == 12
    np.testing.assert_array_equal(bytes_to_vector(blob), np.array([1.5, -2.0, 0.25], dtype="<f4"))


def test_search_orders_by_cosine(database, store):
    fill(database, store, {
        "far": [0.0, 1.0, 0.0],
        "near": [1.0, 0.1, 0.0],
        "exact": [2.0, 0.0, 0.0],
    })

    results = store.search("kb1", [1.0, 0.0, 0.0], top_k=3)

    assert [chunk_id for chunk_id, _ in results] == ["exact", "near", "far"]
    assert results[0][1] == pytest.approx(1.0)
    assert results[2][1] == pytest.approx(0.0)


def test_search_respects_top_k(database, store):
    fill(database, store, {f"c{i}": [1.0, float(i), 0.0] for i in range(5)})

    assert len(store.search("kb1", [1.0, 0.0, 0.0], top_k=2)) == 2
    assert store.search("kb1", [1.0, 0.0, 0.0], top_k=0) == []


def test_ties_keep_insertion_order(database, store):
    fill(database, store, {"first": [1.0, 0.0, 0.0], "second": [3.0, 0.0, 0.0]})

    results = store.search("kb1", [1.0, 0.0, 0.0], top_k=2)

    assert [chunk_id for chunk_id, _ in results] == ["first", "second"]


def test_zero_vectors_score_zero(database, store):
    fill(database, store, {"zero": [0.0, 0.0, 0.0], "one": [1.0, 0.0, 0.0]})

    results = dict(store.search("kb1", [1.0, 0.0, 0.0], top_k=2))
    assert results["zero"] == 0.0

    assert all(score == 0.0 for _, score in store.search("kb1", [0.0, 0.0, 0.0], top_k=2))


def test_empty_kb_returns_nothing(store):
    assert store.search("kb1", [1.0, 0.0, 0.0], top_k=5) == []


def test_dimension_checked_on_insert_and_search(database, store):
    insert_chunk(database, "kb1", "c1", 0)

    with pytest.raises(DimensionMismatch) as exc_info:
        store.insert("kb1", "c1", [1.0, 2.0])
    assert exc_info.value.expected == 3
    assert exc_info.value.actual == 2

    with pytest.raises(DimensionMismatch):
        store.search("kb1", [1.0, 0.0, 0.0, 0.0], top_k=1)


def test_unknown_kb(store):
    with pytest.raises(NotFound):
        store.search("missing", [1.0, 0.0, 0.0], top_k=1)


def test_search_scoped_to_kb(database, store):
    insert_kb(database, "kb2")
    fill(database, store, {"a": [1.0, 0.0, 0.0]})
    fill(database, store, {"b": [1.0, 0.0, 0.0]}, kb_id="kb2")

    assert [c for c, _ in store.search("kb1", [1.0, 0.0, 0.0], top_k=5)] == ["a"]
    assert [c for c, _ in store.search("kb2", [1.0, 0.0, 0.0], top_k=5)] == ["b"]


def test_deletes(database, store):
    fill(database, store, {"a": [1.0, 0.0, 0.0], "b": [0.0, 1.0, 0.0], "c": [0.0, 0.0, 1.0]})
    assert store.count("kb1") == 3

    store.delete_chunk("a")
    assert store.count("kb1") == 2

    store.delete("kb1")
    assert store.count("kb1") == 0
    assert store.search("kb1", [1.0, 0.0, 0.0], top_k=5) == []


def test_delete_document(database, store):
    fill(database, store, {"a": [1.0, 0.0, 0.0], "b": [0.0, 1.0, 0.0]})

    store.delete_document("kb1-doc")

    assert store.count("kb1") == 0
