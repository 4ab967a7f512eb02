"""Unit tests for the keyword index (FTS5 and substring fallback)."""
import pytest

from deskchat.db import Database
from deskchat.errors import ConstraintViolation, NotFound
from deskchat.rag.keyword_index import (
    KeywordIndex,
    build_match_expression,
    normalize_scores,
    query_terms,
)

from conftest import insert_chunk, insert_kb


CONTENTS = {
    "c1": "The quick brown fox jumps over the lazy dog",
    "c2": "A quick guide to brewing coffee",
    "c3": "Foxes are quick and foxes are clever, fox fox",
}


@pytest.fixture(params=["fts5", "substring"])
def index(request, tmp_path):
    """Populated keyword index, once per search mode."""
    database = Database(tmp_path / "kw.sqlite", use_fts=request.param == "fts5")
    if request.param == "fts5" and not database.fts_available:
        pytest.skip("SQLite build lacks FTS5")

    index = KeywordIndex(database)
    assert index.mode == request.param

    insert_kb(database, "kb1")
    for i, (chunk_id, content) in enumerate(CONTENTS.items()):
        insert_chunk(database, "kb1", chunk_id, i, content)
        index.index(chunk_id, content)
    return index


def test_query_terms():
    assert query_terms("Fox, fox and the DOG!") == ["fox", "and", "the", "dog"]
    assert query_terms("  ?! ") == []


def test_match_expression_quotes_terms():
    assert build_match_expression(["fox", 'say"hi']) == '"fox" OR "say""hi"'


def test_ranked_by_relevance(index):
    results = index.search("kb1", "fox", top_k=10)

    ids = [chunk_id for chunk_id, _ in results]
    assert ids[0] == "c3"
    assert set(ids) == {"c1", "c3"}
    scores = [score for _, score in results]
    assert scores == sorted(scores, reverse=True)


def test_any_term_matches(index):
    ids = {chunk_id for chunk_id, _ in index.search("kb1", "coffee dog", top_k=10)}
    assert ids == {"c1", "c2"}


def test_top_k_limits_results(index):
    assert len(index.search("kb1", "quick", top_k=2)) == 2
    assert index.search("kb1", "quick", top_k=0) == []


def test_no_terms_or_no_match(index):
    assert index.search("kb1", "?!", top_k=5) == []
    assert index.search("kb1", "zebra", top_k=5) == []


def test_query_syntax_is_literal(index):
    """Quotes and operators in user queries don't break the search."""
    results = index.search("kb1", 'fox" OR (NEAR AND', top_k=5)
    assert "c3" in [chunk_id for chunk_id, _ in results]


def test_scoped_to_knowledge_base(index):
    insert_kb(index.database, "kb2")
    insert_chunk(index.database, "kb2", "other", 0, "a fox in another base")
    index.index("other", "a fox in another base")

    assert "other" not in [c for c, _ in index.search("kb1", "fox", top_k=10)]
    assert [c for c, _ in index.search("kb2", "fox", top_k=10)] == ["other"]


def test_delete_chunk(index):
    with index.database.transaction() as conn:
        index.delete("c3", conn)
        conn.execute("DELETE FROM chunks WHERE id = 'c3'")

    assert [c for c, _ in index.search("kb1", "fox", top_k=10)] == ["c1"]


def test_delete_document(index):
    with index.database.transaction() as conn:
        index.delete_document("kb1-doc", conn)
        conn.execute("DELETE FROM chunks WHERE document_id = 'kb1-doc'")

    assert index.search("kb1", "quick", top_k=10) == []


def test_index_requires_chunk_row(tmp_path):
    database = Database(tmp_path / "kw.sqlite")
    if not database.fts_available:
        pytest.skip("SQLite build lacks FTS5")

    with pytest.raises(NotFound):
        KeywordIndex(database).index("ghost", "no such chunk")

    insert_kb(database, "kb1")
    insert_chunk(database, "kb1", "c1", 0, "stored text")
    with pytest.raises(ConstraintViolation):
        KeywordIndex(database).index("c1", "different text")


def test_normalize_scores():
    assert normalize_scores([("a", 4.0), ("b", 1.0)]) == [("a", 1.0), ("b", 0.25)]
    assert normalize_scores([("a", 0.0), ("b", 0.0)]) == [("a", 1.0), ("b", 1.0)]
    assert normalize_scores([]) == []


def test_scores_scaled_to_best_hit(index):
    """Both paths score on the same [0, 1] scale as the similarity threshold."""
    results = index.search("kb1", "fox", top_k=10)

    assert results[0] == ("c3", 1.0)
    assert all(0.0 < score <= 1.0 for _, score in results)


def test_reindexing_a_chunk_keeps_one_entry(index):
    before = index.database.fts_entry_count()

    index.index("c3", CONTENTS["c3"])

    assert index.database.fts_entry_count() == before
    assert [c for c, _ in index.search("kb1", "clever", top_k=10)] == ["c3"]


def test_index_rebuilt_for_rows_written_without_fts(tmp_path):
    path = tmp_path / "kw.sqlite"
    plain = Database(path, use_fts=False)
    insert_kb(plain, "kb1")
    for i, (chunk_id, content) in enumerate(CONTENTS.items()):
        insert_chunk(plain, "kb1", chunk_id, i, content)

    database = Database(path, use_fts=True)
    if not database.fts_available:
        pytest.skip("SQLite build lacks FTS5")

    assert database.fts_entry_count() == len(CONTENTS)
    ids = {c for c, _ in KeywordIndex(database).search("kb1", "fox", top_k=10)}
    assert ids == {"c1", "c3"}


def test_deletes_reach_existing_fts_table_in_substring_mode(tmp_path):
    path = tmp_path / "kw.sqlite"
    database = Database(path, use_fts=True)
    if not database.fts_available:
        pytest.skip("SQLite build lacks FTS5")
    insert_kb(database, "kb1")
    for i, (chunk_id, content) in enumerate(CONTENTS.items()):
        insert_chunk(database, "kb1", chunk_id, i, content)
        KeywordIndex(database).index(chunk_id, content)

    substring = KeywordIndex(Database(path, use_fts=False))
    assert substring.mode == "substring"
    assert substring.maintain_fts
    with substring.database.transaction() as conn:
        substring.delete("c3", conn)
        conn.execute("DELETE FROM chunks WHERE id = 'c3'")

    assert database.fts_entry_count() == len(CONTENTS) - 1
    assert [c for c, _ in KeywordIndex(database).search("kb1", "fox", top_k=10)] == ["c1"]
