"""Retriever for vector, keyword and hybrid search over a knowledge base.

Handles:
- Query embedding with the knowledge base's own embedding config
- Over-fetched vector and keyword candidate lists
- Reciprocal Rank Fusion for hybrid mode
- Similarity thresholding and top-K truncation
- Joining surviving chunks with their document metadata
- Formatting results into a context block for the LLM prompt
"""
import asyncio
from typing import Dict, List, Optional, Sequence, Tuple
import structlog

from deskchat import config
from deskchat.db import Database
from deskchat.embedding_client import EmbedderResolver, get_embedding_client
from deskchat.errors import DimensionMismatch, EmbeddingError, NotFound
from deskchat.rag.keyword_index import KeywordIndex
from deskchat.rag.models import (
    Chunk,
    KnowledgeBase,
    RetrievalMode,
    RetrievalResult,
    RetrievalSettings,
    RetrievedChunk,
)
from deskchat.rag.store_vector import VectorStore

logger = structlog.get_logger()


def reciprocal_rank_fusion(
    ranked_lists: Sequence[Sequence[str]], k: int = None
) -> List[Tuple[str, float]]:
    """Fuse ranked id lists with Reciprocal Rank Fusion.

    An id at 1-indexed rank r in a list contributes 1 / (k + r); contributions
    are summed over the lists it appears in.

    Args:
        ranked_lists: Lists of ids, best first
        k: RRF constant (default from config)

    Returns:
        (id, fused_score) pairs, best first. Equal scores keep the order in
        which ids first appeared.
    """
    k = config.RRF_K if k is None else k
    scores: Dict[str, float] = {}

    for ranked in ranked_lists:
        for rank, item_id in enumerate(ranked, 1):
            scores[item_id] = scores.get(item_id, 0.0) + 1.0 / (k + rank)

    # dicts keep insertion order and sorted() is stable
    return sorted(scores.items(), key=lambda item: -item[1])


class _Candidate:
    __slots__ = ("chunk_id", "score", "vector_score", "keyword_score")

    def __init__(self, chunk_id: str, score: float, vector_score=None, keyword_score=None):
        self.chunk_id = chunk_id
        self.score = score
        self.vector_score = vector_score
        self.keyword_score = keyword_score

    @property
    def threshold_score(self) -> float:
        return self.vector_score if self.vector_score is not None else self.score


class Retriever:
    """Hybrid retriever for the RAG pipeline."""

    def __init__(
        self,
        database: Database,
        vector_store: VectorStore,
        keyword_index: KeywordIndex,
        embedder_resolver: EmbedderResolver = None,
        overfetch_factor: int = None,
    ):
        """Initialize the retriever.

        Args:
            database: Shared database (knowledge base and chunk metadata)
            vector_store: Vector store to search
            keyword_index: Keyword index to search
            embedder_resolver: Maps an embedding_config_ref to a client
            overfetch_factor: Candidates per list = top_k * factor (default from config)
        """
        self.database = database
        self.vector_store = vector_store
        self.keyword_index = keyword_index
        self.embedder_resolver = embedder_resolver or get_embedding_client
        self.overfetch_factor = overfetch_factor or config.OVERFETCH_FACTOR

    def _get_knowledge_base(self, kb_id: str) -> KnowledgeBase:
        with self.database.reader() as conn:
            row = conn.execute("SELECT * FROM knowledge_bases WHERE id = ?", (kb_id,)).fetchone()
        if row is None:
            raise NotFound(f"Knowledge base not found: {kb_id}")
        return KnowledgeBase.from_row(row)

    async def retrieve(
        self,
        kb_id: str,
        query: str,
        settings: Optional[RetrievalSettings] = None,
    ) -> RetrievalResult:
        """Retrieve the chunks of a knowledge base most relevant to a query.

        Args:
            kb_id: Knowledge base to search
            query: User query text
            settings: Mode, top_k and similarity threshold (defaults from config)

        Returns:
            RetrievalResult with chunks best first. total_chunks is the number
            of candidates before threshold filtering.

        Raises:
            NotFound: If the knowledge base doesn't exist
            DimensionMismatch: If the query embedder doesn't match the kb dimension
            EmbeddingError: If the query can't be embedded (vector mode only;
                hybrid mode degrades to keyword search instead)
        """
        settings = settings or RetrievalSettings()
        kb = self._get_knowledge_base(kb_id)
        result = RetrievalResult(query=query)

        if not query or not query.strip():
            logger.warning("empty_query_provided", kb_id=kb_id)
            return result

        if self.database.get_chunk_count(kb_id) == 0:
            logger.info("empty_knowledge_base_no_results", kb_id=kb_id)
            return result

        candidate_k = settings.top_k * self.overfetch_factor
        mode = settings.mode

        logger.info(
            "retrieval_started",
            kb_id=kb_id,
            mode=mode.value,
            top_k=settings.top_k,
            threshold=settings.similarity_threshold,
            query_length=len(query),
        )

        vector_hits: Optional[List[Tuple[str, float]]] = None
        keyword_hits: Optional[List[Tuple[str, float]]] = None

        if mode in (RetrievalMode.VECTOR, RetrievalMode.HYBRID):
            try:
                vector_hits = await self._vector_search(kb, query, candidate_k)
            except DimensionMismatch:
                raise
            except EmbeddingError as e:
                if mode is not RetrievalMode.HYBRID:
                    logger.error("query_embedding_failed", kb_id=kb_id, error=str(e))
                    raise
                logger.warning(
                    "hybrid_retrieval_degraded_to_keyword",
                    kb_id=kb_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                result.degraded = True
                result.degraded_reason = f"Query embedding failed: {e}"

        if mode in (RetrievalMode.KEYWORD, RetrievalMode.HYBRID):
            keyword_hits = await asyncio.to_thread(
                self.keyword_index.search, kb_id, query, candidate_k
            )

        candidates = self._rank(vector_hits, keyword_hits)
        result.total_chunks = len(candidates)

        survivors = [
            c for c in candidates if c.threshold_score >= settings.similarity_threshold
        ]
        # Join before the top_k cut; chunks deleted since the search drop out here
        result.chunks = self._enrich(survivors)[: settings.top_k]

        logger.info(
            "retrieval_completed",
            kb_id=kb_id,
            mode=mode.value,
            candidates=result.total_chunks,
            results_returned=len(result.chunks),
            degraded=result.degraded,
            top_score=result.chunks[0].score if result.chunks else None,
        )
        return result

    async def _vector_search(
        self, kb: KnowledgeBase, query: str, candidate_k: int
    ) -> List[Tuple[str, float]]:
        client = self.embedder_resolver(kb.embedding_config_ref)

        # Reject a mismatched embedder before spending a request on it
        if client.dim != kb.embedding_dim:
            raise DimensionMismatch(expected=kb.embedding_dim, actual=client.dim)

        query_vector = await client.embed(query)
        logger.debug("query_embedded", kb_id=kb.id, dimension=len(query_vector))

        return await asyncio.to_thread(self.vector_store.search, kb.id, query_vector, candidate_k)

    def _rank(
        self,
        vector_hits: Optional[List[Tuple[str, float]]],
        keyword_hits: Optional[List[Tuple[str, float]]],
    ) -> List[_Candidate]:
        """Turn one or two ranked lists into scored candidates, best first."""
        if vector_hits is not None and keyword_hits is None:
            return [_Candidate(cid, score, vector_score=score) for cid, score in vector_hits]

        if keyword_hits is not None and vector_hits is None:
            return [_Candidate(cid, score, keyword_score=score) for cid, score in keyword_hits]

        vector_scores = dict(vector_hits or [])
        keyword_scores = dict(keyword_hits or [])
        fused = reciprocal_rank_fusion(
            [[cid for cid, _ in vector_hits], [cid for cid, _ in keyword_hits]]
        )
        return [
            _Candidate(
                cid,
                score,
                vector_score=vector_scores.get(cid),
                keyword_score=keyword_scores.get(cid),
            )
            for cid, score in fused
        ]

    def _enrich(self, candidates: List[_Candidate]) -> List[RetrievedChunk]:
        """Join candidates with chunk and document rows, keeping rank order."""
        if not candidates:
            return []

        ids = [c.chunk_id for c in candidates]
        placeholders = ",".join("?" for _ in ids)
        with self.database.reader() as conn:
            rows = conn.execute(
                f"""
                SELECT c.*, d.filename AS document_filename
                FROM chunks c
                JOIN documents d ON d.id = c.document_id
                WHERE c.id IN ({placeholders})
                """,
                ids,
            ).fetchall()

        by_id = {row["id"]: row for row in rows}
        retrieved = []
        for candidate in candidates:
            row = by_id.get(candidate.chunk_id)
            if row is None:
                # Deleted between search and join
                logger.warning("retrieved_chunk_missing", chunk_id=candidate.chunk_id)
                continue
            retrieved.append(
                RetrievedChunk(
                    chunk=Chunk.from_row(row),
                    score=candidate.score,
                    vector_score=candidate.vector_score,
                    keyword_score=candidate.keyword_score,
                    document_filename=row["document_filename"],
                )
            )
        return retrieved


def build_context(chunks: List[RetrievedChunk], query: str) -> str:
    """Prefix a user question with the retrieved reference documents.

    Returns the query unchanged when there is nothing to add.
    """
    if not chunks:
        return query

    parts = ["Answer the question using the following reference documents:", ""]
    for i, retrieved in enumerate(chunks, 1):
        parts.append(f"[Document {i}: {retrieved.document_filename}]\n{retrieved.chunk.content}")
        parts.append("")

    parts.extend(["---", "", f"Question: {query}"])
    return "\n".join(parts)


def format_context(result: RetrievalResult, max_chars: int = None) -> str:
    """Format retrieved chunks as a source-tagged context block.

    Args:
        result: Retrieval result to format
        max_chars: Maximum total characters of context (default from config)

    Returns:
        Context string ready for an LLM prompt, or "" if nothing was retrieved
    """
    max_chars = max_chars or config.MAX_CONTEXT_CHARS
    if not result.chunks:
        return ""

    context_parts = []
    total_chars = 0

    for i, retrieved in enumerate(result.chunks, 1):
        source = f"{retrieved.document_filename} #{retrieved.chunk_index}"
        chunk_text = f"[Source {i}: {source}]\n{retrieved.chunk.content.strip()}\n"

        if total_chars + len(chunk_text) > max_chars:
            remaining = max_chars - total_chars
            if remaining > 200:  # Only add if we have meaningful space
                context_parts.append(chunk_text[:remaining] + "...\n")
            break

        context_parts.append(chunk_text)
        total_chars += len(chunk_text)

    context = "\n".join(context_parts)

    logger.debug(
        "context_formatted",
        num_chunks=len(context_parts),
        total_chars=len(context),
    )
    return context
