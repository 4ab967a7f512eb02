"""Unit tests for the knowledge base manager and import pipeline."""
import asyncio

import pytest
from structlog.testing import capture_logs

from deskchat.db import Database
from deskchat.errors import AuthError, ConstraintViolation, NotFound
from deskchat.rag.doc_parser import compute_file_hash
from deskchat.rag.manager import KnowledgeBaseManager
from deskchat.rag.models import DocumentStatus, RetrievalSettings

from conftest import FAKE_DIM, PARAGRAPHS, FakeEmbedder


def count_rows(database, table, kb_id):
    with database.reader() as conn:
        return conn.execute(f"SELECT COUNT(*) FROM {table} WHERE kb_id = ?", (kb_id,)).fetchone()[0]


class TestKnowledgeBaseCrud:
    def test_create_takes_dimension_from_embedder(self, manager):
        kb = manager.create_knowledge_base("Papers", "fake")

        assert kb.embedding_dim == FAKE_DIM
        assert kb.chunk_size == 1000
        assert kb.chunk_overlap == 200
        assert kb.document_count == 0
        assert manager.get_knowledge_base(kb.id) == kb

    @pytest.mark.parametrize("size,overlap", [(50, 50), (50, 80), (0, 0), (50, -1)])
    def test_overlap_must_be_below_size(self, manager, size, overlap):
        with pytest.raises(ConstraintViolation):
            manager.create_knowledge_base("Bad", "fake", chunk_size=size, chunk_overlap=overlap)

    def test_empty_name_rejected(self, manager):
        with pytest.raises(ConstraintViolation):
            manager.create_knowledge_base("  ", "fake")

    def test_list_most_recently_updated_first(self, manager):
        first = manager.create_knowledge_base("First", "fake")
        second = manager.create_knowledge_base("Second", "fake")
        manager.update_knowledge_base(first.id, description="touched")

        assert [kb.id for kb in manager.list_knowledge_bases()] == [first.id, second.id]

    def test_update_name_and_description(self, manager, kb):
        updated = manager.update_knowledge_base(kb.id, name="Renamed", description="new")

        assert updated.name == "Renamed"
        assert updated.description == "new"
        assert updated.chunk_size == kb.chunk_size
        assert manager.get_knowledge_base(kb.id).name == "Renamed"

    def test_get_missing(self, manager):
        with pytest.raises(NotFound):
            manager.get_knowledge_base("missing")
        with pytest.raises(NotFound):
            manager.get_document("missing")


def test_import_and_hybrid_retrieve(manager, kb, three_paragraphs):
    """Three short paragraphs become three chunks; the matching one ranks first."""
    document = asyncio.run(manager.import_document(kb.id, three_paragraphs))

    assert document.status is DocumentStatus.COMPLETED
    assert document.chunk_count == 3
    assert document.filename == "notes.txt"
    assert document.file_type == "txt"
    assert document.file_hash == compute_file_hash(three_paragraphs)
    assert document.content_preview.startswith(PARAGRAPHS[0])
    assert document.error_message is None

    chunks = manager.list_chunks(document.id)
    assert [c.chunk_index for c in chunks] == [0, 1, 2]
    assert all(len(c.content) <= 50 for c in chunks)
    assert chunks[0].content == PARAGRAPHS[0]
    assert manager.get_knowledge_base(kb.id).document_count == 1

    settings = RetrievalSettings(mode="hybrid", top_k=2, similarity_threshold=0.0)
    result = asyncio.run(manager.retrieve(kb.id, PARAGRAPHS[1], settings))

    assert len(result.chunks) == 2
    top = result.chunks[0]
    assert top.chunk_index == 1
    assert top.document_filename == "notes.txt"

    vector_only = asyncio.run(
        manager.retrieve(kb.id, PARAGRAPHS[1], mode="vector", top_k=3, similarity_threshold=0.0)
    )
    scores = {c.chunk_index: c.vector_score for c in vector_only.chunks}
    assert scores[1] > scores[0]
    assert scores[1] > scores[2]


def test_every_chunk_has_vector_and_keyword_entry(manager, kb, three_paragraphs):
    asyncio.run(manager.import_document(kb.id, three_paragraphs))

    assert count_rows(manager.database, "chunks", kb.id) == 3
    assert count_rows(manager.database, "vectors", kb.id) == 3
    if manager.database.fts_present:
        assert manager.database.fts_entry_count() == 3


def test_parse_failure_recorded_on_document(manager, kb, tmp_path):
    path = tmp_path / "broken.pdf"
    path.write_bytes(b"not a pdf at all")

    document = asyncio.run(manager.import_document(kb.id, path))

    assert document.status is DocumentStatus.ERROR
    assert "broken.pdf" in document.error_message
    assert document.chunk_count == 0
    assert manager.get_knowledge_base(kb.id).document_count == 1


def test_unsupported_and_missing_files_recorded(manager, kb, tmp_path):
    image = tmp_path / "photo.png"
    image.write_bytes(b"\x89PNG")

    unsupported = asyncio.run(manager.import_document(kb.id, image))
    missing = asyncio.run(manager.import_document(kb.id, tmp_path / "gone.txt"))

    assert unsupported.status is DocumentStatus.ERROR
    assert "Unsupported format" in unsupported.error_message
    assert missing.status is DocumentStatus.ERROR
    assert len(manager.list_documents(kb.id)) == 2


def test_embedding_failure_recorded_on_document(manager, kb, three_paragraphs, embedder):
    embedder.fail_with = AuthError("bad key")

    document = asyncio.run(manager.import_document(kb.id, three_paragraphs))

    assert document.status is DocumentStatus.ERROR
    assert document.error_message == "bad key"


def test_empty_document_completes_without_chunks(manager, kb, tmp_path):
    path = tmp_path / "empty.txt"
    path.write_text("   \n\n  ", encoding="utf-8")

    document = asyncio.run(manager.import_document(kb.id, path))

    assert document.status is DocumentStatus.COMPLETED
    assert document.chunk_count == 0


def test_failed_import_resumes_from_stored_chunks(manager, kb, three_paragraphs, embedder):
    """A retry of the same file only embeds the chunks that are missing."""
    embedder.max_batch_size = 1
    embedder.fail_on_call = 2

    failed = asyncio.run(manager.import_document(kb.id, three_paragraphs))
    assert failed.status is DocumentStatus.ERROR
    assert failed.chunk_count == 1
    assert embedder.embedded_texts == [PARAGRAPHS[0]]

    embedder.fail_on_call = None
    embedder.embedded_texts = []

    retried = asyncio.run(manager.import_document(kb.id, three_paragraphs))

    assert retried.status is DocumentStatus.COMPLETED
    assert retried.chunk_count == 3
    assert len(embedder.embedded_texts) == 2
    assert [c.chunk_index for c in manager.list_chunks(retried.id)] == [0, 1, 2]

    # The failed record was folded into the new one
    assert [d.id for d in manager.list_documents(kb.id)] == [retried.id]
    assert manager.get_knowledge_base(kb.id).document_count == 1
    assert count_rows(manager.database, "vectors", kb.id) == 3


def test_duplicate_import_is_allowed(manager, kb, three_paragraphs):
    first = asyncio.run(manager.import_document(kb.id, three_paragraphs))
    second = asyncio.run(manager.import_document(kb.id, three_paragraphs))

    assert second.status is DocumentStatus.COMPLETED
    duplicates = manager.find_documents_by_hash(kb.id, first.file_hash)
    assert {d.id for d in duplicates} == {first.id, second.id}
    assert manager.get_knowledge_base(kb.id).document_count == 2


def test_cancelled_import_drains_in_flight_batch(manager, kb, three_paragraphs, embedder):
    async def scenario():
        embedder.started = asyncio.Event()
        embedder.delay = 0.05
        task = asyncio.create_task(manager.import_document(kb.id, three_paragraphs))
        await embedder.started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    (document,) = manager.list_documents(kb.id)
    assert document.status is DocumentStatus.ERROR
    assert document.error_message == "Import cancelled"
    # The batch that was in flight was stored, not orphaned
    assert document.chunk_count == 3
    assert count_rows(manager.database, "vectors", kb.id) == 3


def test_imports_into_one_kb_are_serialized(manager, kb, tmp_path, embedder):
    embedder.delay = 0.01
    paths = []
    for i in range(3):
        path = tmp_path / f"doc{i}.txt"
        path.write_text(f"Document number {i} talks about topic {i}.", encoding="utf-8")
        paths.append(path)

    async def scenario():
        return await asyncio.gather(*(manager.import_document(kb.id, p) for p in paths))

    documents = asyncio.run(scenario())

    assert all(d.status is DocumentStatus.COMPLETED for d in documents)
    assert manager.get_knowledge_base(kb.id).document_count == 3


def test_delete_document_removes_chunks_vectors_and_index(manager, kb, three_paragraphs):
    document = asyncio.run(manager.import_document(kb.id, three_paragraphs))

    asyncio.run(manager.delete_document(document.id))

    assert manager.list_documents(kb.id) == []
    assert manager.get_knowledge_base(kb.id).document_count == 0
    for table in ("chunks", "vectors"):
        assert count_rows(manager.database, table, kb.id) == 0
    assert manager.database.fts_entry_count() == 0

    result = asyncio.run(manager.retrieve(kb.id, "yeast", mode="keyword", similarity_threshold=0.0))
    assert result.chunks == []


def test_delete_knowledge_base_cascades(manager, kb, three_paragraphs):
    other = manager.create_knowledge_base("Other", "fake", chunk_size=50, chunk_overlap=10)
    asyncio.run(manager.import_document(kb.id, three_paragraphs))
    asyncio.run(manager.import_document(other.id, three_paragraphs))

    asyncio.run(manager.delete_knowledge_base(kb.id))

    with pytest.raises(NotFound):
        manager.get_knowledge_base(kb.id)
    for table in ("documents", "chunks", "vectors"):
        assert count_rows(manager.database, table, kb.id) == 0
    # Only the other knowledge base is still indexed
    if manager.database.fts_present:
        assert manager.database.fts_entry_count() == 3

    # The other knowledge base is untouched
    assert count_rows(manager.database, "vectors", other.id) == 3
    assert manager.get_knowledge_base(other.id).document_count == 1


def test_delete_missing_knowledge_base(manager):
    with pytest.raises(NotFound):
        asyncio.run(manager.delete_knowledge_base("missing"))


def test_substring_fallback_end_to_end(tmp_path, three_paragraphs):
    embedder = FakeEmbedder()
    manager = KnowledgeBaseManager(
        database=Database(tmp_path / "nofts.sqlite", use_fts=False),
        embedder_resolver=lambda ref: embedder,
    )
    kb = manager.create_knowledge_base("No FTS", "fake", chunk_size=50, chunk_overlap=10)
    asyncio.run(manager.import_document(kb.id, three_paragraphs))

    assert manager.keyword_index.mode == "substring"
    result = asyncio.run(manager.retrieve(kb.id, "yeast", mode="keyword", similarity_threshold=0.0))
    assert [c.chunk_index for c in result.chunks] == [2]


def test_import_logs_chunk_stats(manager, kb, three_paragraphs):
    with capture_logs() as logs:
        asyncio.run(manager.import_document(kb.id, three_paragraphs))

    (chunked,) = [entry for entry in logs if entry["event"] == "document_chunked"]
    assert chunked["chunk_count"] == 3
    assert chunked["max_chunk_size"] <= 50


def test_manager_reused_across_event_loops(manager, kb, tmp_path, embedder):
    """Write locks contended in one asyncio.run don't break the next one."""
    embedder.delay = 0.01
    paths = []
    for i in range(4):
        path = tmp_path / f"doc{i}.txt"
        path.write_text(f"Document number {i} talks about topic {i}.", encoding="utf-8")
        paths.append(path)

    async def import_all(batch):
        return await asyncio.gather(*(manager.import_document(kb.id, p) for p in batch))

    first = asyncio.run(import_all(paths[:2]))
    second = asyncio.run(import_all(paths[2:]))

    assert all(d.status is DocumentStatus.COMPLETED for d in first + second)
    assert manager.get_knowledge_base(kb.id).document_count == 4


def make_manager(path, use_fts, embedder):
    return KnowledgeBaseManager(
        database=Database(path, use_fts=use_fts),
        embedder_resolver=lambda ref: embedder,
    )


def test_keyword_index_built_when_fts_enabled_later(tmp_path, three_paragraphs):
    embedder = FakeEmbedder()
    path = tmp_path / "kb.sqlite"
    before = make_manager(path, False, embedder)
    kb = before.create_knowledge_base("Later", "fake", chunk_size=50, chunk_overlap=10)
    asyncio.run(before.import_document(kb.id, three_paragraphs))

    after = make_manager(path, True, embedder)
    if after.keyword_index.mode != "fts5":
        pytest.skip("SQLite build lacks FTS5")

    assert after.database.fts_entry_count() == 3
    result = asyncio.run(after.retrieve(kb.id, "yeast", mode="keyword", similarity_threshold=0.0))
    assert [c.chunk_index for c in result.chunks] == [2]


def test_deletes_without_fts_search_keep_index_clean(tmp_path, three_paragraphs):
    embedder = FakeEmbedder()
    path = tmp_path / "kb.sqlite"
    with_fts = make_manager(path, True, embedder)
    if with_fts.keyword_index.mode != "fts5":
        pytest.skip("SQLite build lacks FTS5")
    kb = with_fts.create_knowledge_base("Both", "fake", chunk_size=50, chunk_overlap=10)
    document = asyncio.run(with_fts.import_document(kb.id, three_paragraphs))

    without_fts = make_manager(path, False, embedder)
    asyncio.run(without_fts.delete_document(document.id))
    assert without_fts.database.fts_entry_count() == 0

    reopened = make_manager(path, True, embedder)
    assert reopened.database.fts_entry_count() == 0
    result = asyncio.run(reopened.retrieve(kb.id, "yeast", mode="keyword", similarity_threshold=0.0))
    assert result.chunks == []
    assert result.total_chunks == 0
