"""Import pipeline for adding a document to a knowledge base.

Orchestrates:
- File hashing and duplicate detection
- Document parsing and chunking
- Embedding generation, one provider batch at a time
- Chunk, vector and keyword storage, written together per batch
- Resuming an earlier failed import of the same file
"""
import asyncio
import sqlite3
import uuid
from pathlib import Path
from typing import List, Optional, Set
import structlog

from deskchat import config
from deskchat.db import Database, utc_now
from deskchat.embedding_client import EmbedderResolver, get_embedding_client
from deskchat.errors import DimensionMismatch, EmbeddingError, NotFound, ParseError
from deskchat.rag.chunker import TextChunk, TextChunker
from deskchat.rag.doc_parser import DocumentParser, compute_file_hash, get_parser
from deskchat.rag.keyword_index import KeywordIndex
from deskchat.rag.models import Document, DocumentStatus, KnowledgeBase
from deskchat.rag.store_vector import VectorStore

logger = structlog.get_logger()

CANCELLED_MESSAGE = "Import cancelled"


def refresh_document_count(conn: sqlite3.Connection, kb_id: str) -> None:
    """Recompute a knowledge base's document_count and bump updated_at."""
    conn.execute(
        """
        UPDATE knowledge_bases
        SET document_count = (SELECT COUNT(*) FROM documents WHERE kb_id = ?),
            updated_at = ?
        WHERE id = ?
        """,
        (kb_id, utc_now(), kb_id),
    )


class IngestPipeline:
    """Pipeline that turns one file into stored, searchable chunks."""

    def __init__(
        self,
        database: Database,
        vector_store: VectorStore,
        keyword_index: KeywordIndex,
        parser: Optional[DocumentParser] = None,
        embedder_resolver: EmbedderResolver = None,
    ):
        self.database = database
        self.vector_store = vector_store
        self.keyword_index = keyword_index
        self.parser = parser or get_parser()
        self.embedder_resolver = embedder_resolver or get_embedding_client

    async def import_document(self, kb: KnowledgeBase, file_path: Path) -> Document:
        """Import a file into a knowledge base.

        The caller must hold the knowledge base's write lock.

        Parse and embedding failures are recorded on the returned Document
        (status=error). Chunks stored before a failure are kept and reused by
        the next import of the same file.

        Args:
            kb: Target knowledge base
            file_path: File to import

        Returns:
            The Document row after the import finished or failed

        Raises:
            StorageError: If the database fails (the document is marked error first)
            asyncio.CancelledError: If cancelled; the in-flight embedding batch
                is drained and stored before the document is marked error
        """
        file_path = Path(file_path)
        file_type = file_path.suffix.lower().lstrip(".")

        try:
            file_size = file_path.stat().st_size
            file_hash = await asyncio.to_thread(compute_file_hash, file_path)
        except OSError as e:
            # Recorded as a parse failure below
            logger.warning("file_hash_failed", path=str(file_path), error=str(e))
            file_size, file_hash = 0, ""

        document = await asyncio.to_thread(
            self._create_document, kb, file_path.name, file_type, file_size, file_hash
        )
        logger.info(
            "document_import_started",
            kb_id=kb.id,
            document_id=document.id,
            path=str(file_path),
            file_size=file_size,
        )

        try:
            chunk_count = await self._run(kb, document, file_path)
        except asyncio.CancelledError:
            self._mark_error(document.id, CANCELLED_MESSAGE)
            logger.warning("document_import_cancelled", kb_id=kb.id, document_id=document.id)
            raise
        except (ParseError, EmbeddingError) as e:
            self._mark_error(document.id, str(e))
            logger.error(
                "document_import_failed",
                kb_id=kb.id,
                document_id=document.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return self.get_document(document.id)
        except Exception as e:
            self._mark_error(document.id, str(e))
            logger.error(
                "document_import_aborted",
                kb_id=kb.id,
                document_id=document.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        await asyncio.to_thread(self._mark_completed, kb.id, document.id, chunk_count)
        logger.info(
            "document_imported",
            kb_id=kb.id,
            document_id=document.id,
            filename=document.filename,
            chunk_count=chunk_count,
        )
        return self.get_document(document.id)

    async def _run(self, kb: KnowledgeBase, document: Document, file_path: Path) -> int:
        parsed = await asyncio.to_thread(self.parser.parse, file_path)
        await asyncio.to_thread(
            self._set_preview, document.id, parsed.text[: config.CONTENT_PREVIEW_CHARS]
        )

        chunker = TextChunker(chunk_size=kb.chunk_size, chunk_overlap=kb.chunk_overlap)
        chunks = chunker.chunk_text(parsed.text)
        logger.info("document_chunked", document_id=document.id, **chunker.get_chunk_stats(chunks))
        if not chunks:
            logger.warning("no_chunks_created", document_id=document.id, path=str(file_path))
            return 0

        done = await asyncio.to_thread(self._stored_indexes, document.id)
        pending = [c for c in chunks if c.chunk_index not in done]
        if done:
            logger.info(
                "document_import_resumed",
                document_id=document.id,
                chunks_reused=len(done),
                chunks_pending=len(pending),
            )
        if not pending:
            return len(chunks)

        client = self.embedder_resolver(kb.embedding_config_ref)
        if client.dim != kb.embedding_dim:
            raise DimensionMismatch(expected=kb.embedding_dim, actual=client.dim)

        batch_size = max(1, client.max_batch_size)
        for i in range(0, len(pending), batch_size):
            batch = pending[i : i + batch_size]
            vectors = await self._embed_draining(client, kb, document.id, batch)
            await asyncio.to_thread(self._store_batch, kb, document.id, batch, vectors)

            logger.debug(
                "chunk_batch_stored",
                document_id=document.id,
                batch_size=len(batch),
                stored_so_far=len(done) + i + len(batch),
                total=len(chunks),
            )

        return len(chunks)

    async def _embed_draining(
        self, client, kb: KnowledgeBase, document_id: str, batch: List[TextChunk]
    ) -> List[List[float]]:
        """Embed a batch; if cancelled meanwhile, finish and store it, then re-raise."""
        task = asyncio.ensure_future(client.embed_batch([c.content for c in batch]))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            try:
                vectors = await task
            except EmbeddingError as e:
                logger.warning("cancelled_batch_embedding_failed", document_id=document_id, error=str(e))
            else:
                self._store_batch(kb, document_id, batch, vectors)
                logger.info("cancelled_batch_drained", document_id=document_id, batch_size=len(batch))
            raise

    def _create_document(
        self, kb: KnowledgeBase, filename: str, file_type: str, file_size: int, file_hash: str
    ) -> Document:
        """Insert the Document row, adopting chunks from an earlier failed import."""
        document = Document(
            id=str(uuid.uuid4()),
            kb_id=kb.id,
            filename=filename,
            file_type=file_type,
            file_size=file_size,
            file_hash=file_hash,
            status=DocumentStatus.PROCESSING,
            created_at=utc_now(),
        )

        with self.database.transaction() as conn:
            previous = []
            if file_hash:
                previous = conn.execute(
                    """
                    SELECT id, status FROM documents
                    WHERE kb_id = ? AND file_hash = ?
                    ORDER BY created_at DESC
                    """,
                    (kb.id, file_hash),
                ).fetchall()

            conn.execute(
                """
                INSERT INTO documents (
                    id, kb_id, filename, file_type, file_size, file_hash,
                    content_preview, chunk_count, status, error_message, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, '', 0, ?, NULL, ?)
                """,
                (
                    document.id,
                    kb.id,
                    filename,
                    file_type,
                    file_size,
                    file_hash,
                    document.status.value,
                    document.created_at,
                ),
            )

            for row in previous:
                if row["status"] == DocumentStatus.COMPLETED.value:
                    logger.warning(
                        "duplicate_document_import",
                        kb_id=kb.id,
                        existing_document_id=row["id"],
                        file_hash=file_hash,
                    )
                    break
                if row["status"] == DocumentStatus.ERROR.value:
                    # Move the stored chunks over and drop the failed record
                    conn.execute(
                        "UPDATE chunks SET document_id = ? WHERE document_id = ?",
                        (document.id, row["id"]),
                    )
                    conn.execute("DELETE FROM documents WHERE id = ?", (row["id"],))
                    logger.info(
                        "failed_import_adopted",
                        kb_id=kb.id,
                        previous_document_id=row["id"],
                        document_id=document.id,
                    )
                    break

            refresh_document_count(conn, kb.id)

        return document

    def _stored_indexes(self, document_id: str) -> Set[int]:
        with self.database.reader() as conn:
            rows = conn.execute(
                "SELECT chunk_index FROM chunks WHERE document_id = ?", (document_id,)
            ).fetchall()
        return {row["chunk_index"] for row in rows}

    def _store_batch(
        self,
        kb: KnowledgeBase,
        document_id: str,
        batch: List[TextChunk],
        vectors: List[List[float]],
    ) -> None:
        """Write chunk rows, vectors and keyword entries in one transaction."""
        if len(vectors) != len(batch):
            raise EmbeddingError(
                f"Embedder returned {len(vectors)} vectors for {len(batch)} chunks"
            )

        created_at = utc_now()
        with self.database.transaction() as conn:
            for chunk, vector in zip(batch, vectors):
                chunk_id = str(uuid.uuid4())
                conn.execute(
                    """
                    INSERT INTO chunks (
                        id, document_id, kb_id, content, chunk_index, token_count, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        chunk_id,
                        document_id,
                        kb.id,
                        chunk.content,
                        chunk.chunk_index,
                        chunk.token_count,
                        created_at,
                    ),
                )
                self.vector_store.insert(kb.id, chunk_id, vector, conn)
                self.keyword_index.index(chunk_id, chunk.content, conn)

    def _set_preview(self, document_id: str, preview: str) -> None:
        with self.database.transaction() as conn:
            conn.execute(
                "UPDATE documents SET content_preview = ? WHERE id = ?", (preview, document_id)
            )

    def _mark_completed(self, kb_id: str, document_id: str, chunk_count: int) -> None:
        with self.database.transaction() as conn:
            conn.execute(
                """
                UPDATE documents
                SET status = ?, chunk_count = ?, error_message = NULL
                WHERE id = ?
                """,
                (DocumentStatus.COMPLETED.value, chunk_count, document_id),
            )
            refresh_document_count(conn, kb_id)

    def _mark_error(self, document_id: str, message: str) -> None:
        """Record a failure on the document. Chunks already stored are kept."""
        with self.database.transaction() as conn:
            stored = conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE document_id = ?", (document_id,)
            ).fetchone()[0]
            conn.execute(
                """
                UPDATE documents
                SET status = ?, error_message = ?, chunk_count = ?
                WHERE id = ?
                """,
                (DocumentStatus.ERROR.value, message, stored, document_id),
            )

    def get_document(self, document_id: str) -> Document:
        """Fetch a Document row.

        Raises:
            NotFound: If no document has that id
        """
        with self.database.reader() as conn:
            row = conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
        if row is None:
            raise NotFound(f"Document not found: {document_id}")
        return Document.from_row(row)
