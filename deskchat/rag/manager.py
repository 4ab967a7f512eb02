"""Knowledge base manager.

Owns knowledge base, document and chunk records and is the entry point the
chat layer uses for imports and retrieval. Writes to one knowledge base are
serialized; writes to different knowledge bases and all reads run freely.
"""
import asyncio
import uuid
import weakref
from pathlib import Path
from typing import List, Optional
import structlog

from deskchat import config
from deskchat.db import Database, utc_now
from deskchat.embedding_client import EmbedderResolver, get_embedding_client
from deskchat.errors import ConstraintViolation, NotFound
from deskchat.rag.doc_parser import DocumentParser
from deskchat.rag.ingest import IngestPipeline, refresh_document_count
from deskchat.rag.keyword_index import KeywordIndex
from deskchat.rag.models import Chunk, Document, KnowledgeBase, RetrievalResult, RetrievalSettings
from deskchat.rag.retriever import Retriever
from deskchat.rag.store_vector import VectorStore

logger = structlog.get_logger()


class KnowledgeBaseManager:
    """CRUD and import/retrieve entry points for knowledge bases."""

    def __init__(
        self,
        database: Optional[Database] = None,
        embedder_resolver: EmbedderResolver = None,
        parser: Optional[DocumentParser] = None,
    ):
        """Initialize the manager.

        Args:
            database: Shared database (default: the configured DB_PATH)
            embedder_resolver: Maps an embedding_config_ref to an embedding
                client (default: clients built from embedding.yaml)
            parser: Document parser (default: the shared parser)
        """
        self.database = database or Database()
        self.embedder_resolver = embedder_resolver or get_embedding_client

        self.vector_store = VectorStore(self.database)
        self.keyword_index = KeywordIndex(self.database)
        self.pipeline = IngestPipeline(
            self.database,
            self.vector_store,
            self.keyword_index,
            parser=parser,
            embedder_resolver=self.embedder_resolver,
        )
        self.retriever = Retriever(
            self.database,
            self.vector_store,
            self.keyword_index,
            embedder_resolver=self.embedder_resolver,
        )

        # event loop -> {kb_id: Lock}; a contended asyncio.Lock is bound to its loop
        self._locks = weakref.WeakKeyDictionary()

    def _lock(self, kb_id: str) -> asyncio.Lock:
        locks = self._locks.setdefault(asyncio.get_running_loop(), {})
        if kb_id not in locks:
            locks[kb_id] = asyncio.Lock()
        return locks[kb_id]

    # Knowledge bases

    def create_knowledge_base(
        self,
        name: str,
        embedding_config_ref: str,
        description: str = "",
        chunk_size: int = None,
        chunk_overlap: int = None,
    ) -> KnowledgeBase:
        """Create an empty knowledge base.

        The embedding dimension is taken from the embedding config and is
        fixed, as are the chunking parameters.

        Args:
            name: Display name
            embedding_config_ref: Id of the embedding config to embed with
            description: Optional description
            chunk_size: Maximum chunk length in characters (default from config)
            chunk_overlap: Overlap between chunks (default from config)

        Returns:
            The created KnowledgeBase

        Raises:
            ConstraintViolation: Empty name, or overlap not in [0, chunk_size)
            ConfigError: Unknown embedding config
        """
        chunk_size = chunk_size if chunk_size is not None else config.CHUNK_SIZE
        chunk_overlap = chunk_overlap if chunk_overlap is not None else config.CHUNK_OVERLAP

        if not name or not name.strip():
            raise ConstraintViolation("Knowledge base name must not be empty")
        if chunk_size <= 0 or chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ConstraintViolation(
                f"Chunk overlap ({chunk_overlap}) must be non-negative and less than "
                f"chunk size ({chunk_size})"
            )

        embedding_dim = self.embedder_resolver(embedding_config_ref).dim
        now = utc_now()
        kb = KnowledgeBase(
            id=str(uuid.uuid4()),
            name=name.strip(),
            description=description or "",
            embedding_config_ref=embedding_config_ref,
            embedding_dim=embedding_dim,
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            created_at=now,
            updated_at=now,
            document_count=0,
        )

        with self.database.transaction() as conn:
            conn.execute(
                """
                INSERT INTO knowledge_bases (
                    id, name, description, embedding_config_ref, embedding_dim,
                    chunk_size, chunk_overlap, created_at, updated_at, document_count
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
                """,
                (
                    kb.id,
                    kb.name,
                    kb.description,
                    kb.embedding_config_ref,
                    kb.embedding_dim,
                    kb.chunk_size,
                    kb.chunk_overlap,
                    kb.created_at,
                    kb.updated_at,
                ),
            )

        logger.info(
            "knowledge_base_created",
            kb_id=kb.id,
            name=kb.name,
            embedding_config_ref=embedding_config_ref,
            embedding_dim=embedding_dim,
        )
        return kb

    def get_knowledge_base(self, kb_id: str) -> KnowledgeBase:
        """Fetch a knowledge base.

        Raises:
            NotFound: If no knowledge base has that id
        """
        with self.database.reader() as conn:
            row = conn.execute("SELECT * FROM knowledge_bases WHERE id = ?", (kb_id,)).fetchone()
        if row is None:
            raise NotFound(f"Knowledge base not found: {kb_id}")
        return KnowledgeBase.from_row(row)

    def list_knowledge_bases(self) -> List[KnowledgeBase]:
        """All knowledge bases, most recently updated first."""
        with self.database.reader() as conn:
            rows = conn.execute(
                "SELECT * FROM knowledge_bases ORDER BY updated_at DESC, rowid DESC"
            ).fetchall()
        return [KnowledgeBase.from_row(row) for row in rows]

    def update_knowledge_base(
        self,
        kb_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> KnowledgeBase:
        """Rename or re-describe a knowledge base.

        Embedding config and chunking parameters can't change; create a new
        knowledge base and re-import instead.

        Raises:
            NotFound: If no knowledge base has that id
            ConstraintViolation: If name is given but empty
        """
        kb = self.get_knowledge_base(kb_id)
        if name is not None:
            if not name.strip():
                raise ConstraintViolation("Knowledge base name must not be empty")
            kb.name = name.strip()
        if description is not None:
            kb.description = description
        kb.updated_at = utc_now()

        with self.database.transaction() as conn:
            conn.execute(
                "UPDATE knowledge_bases SET name = ?, description = ?, updated_at = ? WHERE id = ?",
                (kb.name, kb.description, kb.updated_at, kb_id),
            )

        logger.info("knowledge_base_updated", kb_id=kb_id, name=kb.name)
        return kb

    async def delete_knowledge_base(self, kb_id: str) -> None:
        """Delete a knowledge base with all its documents, chunks and vectors.

        Waits for any import into it to finish first.

        Raises:
            NotFound: If no knowledge base has that id
        """
        async with self._lock(kb_id):
            self.get_knowledge_base(kb_id)
            await asyncio.to_thread(self._delete_knowledge_base, kb_id)

        self._locks.get(asyncio.get_running_loop(), {}).pop(kb_id, None)
        logger.info("knowledge_base_deleted", kb_id=kb_id)

    def _delete_knowledge_base(self, kb_id: str) -> None:
        with self.database.transaction() as conn:
            self.keyword_index.delete_kb(kb_id, conn)
            self.vector_store.delete(kb_id, conn)
            # Documents and chunks go with it (ON DELETE CASCADE)
            conn.execute("DELETE FROM knowledge_bases WHERE id = ?", (kb_id,))

    # Documents

    async def import_document(self, kb_id: str, file_path: Path) -> Document:
        """Import a file into a knowledge base.

        Imports into the same knowledge base run one at a time.

        Args:
            kb_id: Target knowledge base
            file_path: File to import

        Returns:
            The resulting Document; status is completed or error

        Raises:
            NotFound: If no knowledge base has that id
            StorageError: If the database fails
        """
        async with self._lock(kb_id):
            kb = self.get_knowledge_base(kb_id)
            return await self.pipeline.import_document(kb, Path(file_path))

    def get_document(self, document_id: str) -> Document:
        """Fetch a document.

        Raises:
            NotFound: If no document has that id
        """
        return self.pipeline.get_document(document_id)

    def list_documents(self, kb_id: str) -> List[Document]:
        """Documents of a knowledge base, newest first."""
        with self.database.reader() as conn:
            rows = conn.execute(
                "SELECT * FROM documents WHERE kb_id = ? ORDER BY created_at DESC, rowid DESC",
                (kb_id,),
            ).fetchall()
        return [Document.from_row(row) for row in rows]

    def find_documents_by_hash(self, kb_id: str, file_hash: str) -> List[Document]:
        """Documents of a knowledge base with the given content hash."""
        with self.database.reader() as conn:
            rows = conn.execute(
                "SELECT * FROM documents WHERE kb_id = ? AND file_hash = ? ORDER BY created_at",
                (kb_id, file_hash),
            ).fetchall()
        return [Document.from_row(row) for row in rows]

    async def delete_document(self, document_id: str) -> None:
        """Delete a document with its chunks, vectors and keyword entries.

        Raises:
            NotFound: If no document has that id
        """
        document = self.get_document(document_id)
        async with self._lock(document.kb_id):
            await asyncio.to_thread(self._delete_document, document)

        logger.info("document_deleted", kb_id=document.kb_id, document_id=document_id)

    def _delete_document(self, document: Document) -> None:
        with self.database.transaction() as conn:
            self.keyword_index.delete_document(document.id, conn)
            self.vector_store.delete_document(document.id, conn)
            conn.execute("DELETE FROM documents WHERE id = ?", (document.id,))
            refresh_document_count(conn, document.kb_id)

    # Chunks

    def list_chunks(self, document_id: str) -> List[Chunk]:
        """Chunks of a document in chunk_index order."""
        with self.database.reader() as conn:
            rows = conn.execute(
                "SELECT * FROM chunks WHERE document_id = ? ORDER BY chunk_index",
                (document_id,),
            ).fetchall()
        return [Chunk.from_row(row) for row in rows]

    # Retrieval

    async def retrieve(
        self,
        kb_id: str,
        query: str,
        settings: Optional[RetrievalSettings] = None,
        **overrides,
    ) -> RetrievalResult:
        """Retrieve chunks relevant to a query.

        Args:
            kb_id: Knowledge base to search
            query: User query text
            settings: Retrieval settings (defaults from config)
            **overrides: mode, top_k or similarity_threshold, applied on top of settings

        Returns:
            RetrievalResult, best chunks first

        Raises:
            InvalidSettings: If an override is out of range
            NotFound: If no knowledge base has that id
            EmbeddingError: If the query can't be embedded outside hybrid mode
        """
        if overrides or settings is None:
            base = settings.model_dump() if settings is not None else {}
            base.update({k: v for k, v in overrides.items() if v is not None})
            settings = RetrievalSettings.build(**base)

        # Reads don't take the kb lock; chunks of an in-flight import may show up
        return await self.retriever.retrieve(kb_id, query, settings)


# Singleton instance for convenience
_manager_instance: Optional[KnowledgeBaseManager] = None


def get_manager() -> KnowledgeBaseManager:
    """Get a singleton manager over the configured database."""
    global _manager_instance
    if _manager_instance is None:
        _manager_instance = KnowledgeBaseManager()
    return _manager_instance
