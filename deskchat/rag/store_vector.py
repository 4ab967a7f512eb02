"""SQLite-backed vector store with brute-force cosine search.

Handles:
- Fixed-width float32 blob serialization per chunk
- Dimension validation against the knowledge base
- Full-scan cosine similarity top-K search
- Deletion by chunk, document and knowledge base

Exact search over every vector of a knowledge base is fine up to roughly
100k chunks. Beyond that an approximate index would have to replace
search() behind the same signature.
"""
import sqlite3
from typing import List, Optional, Sequence, Tuple
import numpy as np
import structlog

from deskchat.db import Database
from deskchat.errors import DimensionMismatch, NotFound

logger = structlog.get_logger()

VECTOR_DTYPE = np.dtype("<f4")


def vector_to_bytes(vector: Sequence[float]) -> bytes:
    """Serialize a vector as little-endian float32."""
    return np.asarray(vector, dtype=VECTOR_DTYPE).tobytes()


def bytes_to_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=VECTOR_DTYPE)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between a and b; 0.0 if either has zero magnitude.

    Raises:
        DimensionMismatch: If the vectors differ in length
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise DimensionMismatch(expected=a.shape[0], actual=b.shape[0])

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    score = float(np.dot(a, b) / (norm_a * norm_b))
    # Rounding can push |score| a hair past 1
    return max(-1.0, min(1.0, score))


def cosine_scores(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of every row of matrix against query, zero-safe."""
    matrix = matrix.astype(np.float64, copy=False)
    query = query.astype(np.float64, copy=False)

    row_norms = np.linalg.norm(matrix, axis=1)
    query_norm = np.linalg.norm(query)
    if query_norm == 0.0:
        return np.zeros(matrix.shape[0])

    denominators = row_norms * query_norm
    dots = matrix @ query
    scores = np.divide(dots, denominators, out=np.zeros_like(dots), where=denominators != 0)
    return np.clip(scores, -1.0, 1.0)


class VectorStore:
    """Vector store over the `vectors` table of the shared database."""

    def __init__(self, database: Database):
        self.database = database

    def get_dimension(self, kb_id: str, conn: Optional[sqlite3.Connection] = None) -> int:
        """Dimension declared by the knowledge base.

        Raises:
            NotFound: If the knowledge base doesn't exist
        """
        if conn is None:
            with self.database.reader() as conn:
                return self.get_dimension(kb_id, conn)

        row = conn.execute(
            "SELECT embedding_dim FROM knowledge_bases WHERE id = ?", (kb_id,)
        ).fetchone()
        if row is None:
            raise NotFound(f"Knowledge base not found: {kb_id}")
        return row["embedding_dim"]

    def insert(
        self,
        kb_id: str,
        chunk_id: str,
        vector: Sequence[float],
        conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        """Store one chunk's vector.

        Pass conn to write inside the caller's transaction (chunk row,
        vector and keyword entry are committed together).

        Raises:
            DimensionMismatch: If len(vector) differs from the kb dimension
        """
        if conn is None:
            with self.database.transaction() as conn:
                return self.insert(kb_id, chunk_id, vector, conn)

        dim = self.get_dimension(kb_id, conn)
        if len(vector) != dim:
            raise DimensionMismatch(expected=dim, actual=len(vector))

        conn.execute(
            """
            INSERT OR REPLACE INTO vectors (chunk_id, kb_id, dim, vector)
            VALUES (?, ?, ?, ?)
            """,
            (chunk_id, kb_id, dim, vector_to_bytes(vector)),
        )

    def search(
        self, kb_id: str, query_vector: Sequence[float], top_k: int
    ) -> List[Tuple[str, float]]:
        """Score every vector of the knowledge base against query_vector.

        Args:
            kb_id: Knowledge base to search
            query_vector: Query embedding
            top_k: Maximum number of results

        Returns:
            (chunk_id, cosine_score) pairs, best first; ties keep insertion order

        Raises:
            DimensionMismatch: If the query length differs from the kb dimension
            NotFound: If the knowledge base doesn't exist
        """
        with self.database.reader() as conn:
            dim = self.get_dimension(kb_id, conn)
            if len(query_vector) != dim:
                raise DimensionMismatch(expected=dim, actual=len(query_vector))

            if top_k <= 0:
                return []

            rows = conn.execute(
                "SELECT chunk_id, vector FROM vectors WHERE kb_id = ? ORDER BY rowid",
                (kb_id,),
            ).fetchall()

        if not rows:
            logger.info("vector_search_empty_kb", kb_id=kb_id)
            return []

        chunk_ids = [row["chunk_id"] for row in rows]
        matrix = np.vstack([bytes_to_vector(row["vector"]) for row in rows])
        scores = cosine_scores(matrix, np.asarray(query_vector, dtype=np.float64))

        # Stable sort on negated scores keeps insertion order among equal scores
        order = np.argsort(-scores, kind="stable")[:top_k]
        results = [(chunk_ids[i], float(scores[i])) for i in order]

        logger.info(
            "vector_search_completed",
            kb_id=kb_id,
            scanned=len(chunk_ids),
            top_k=top_k,
            results_found=len(results),
        )
        return results

    def count(self, kb_id: str) -> int:
        with self.database.reader() as conn:
            row = conn.execute("SELECT COUNT(*) FROM vectors WHERE kb_id = ?", (kb_id,)).fetchone()
            return row[0]

    def delete_chunk(self, chunk_id: str, conn: Optional[sqlite3.Connection] = None) -> None:
        """Remove one chunk's vector."""
        if conn is None:
            with self.database.transaction() as conn:
                return self.delete_chunk(chunk_id, conn)
        conn.execute("DELETE FROM vectors WHERE chunk_id = ?", (chunk_id,))

    def delete_document(self, document_id: str, conn: Optional[sqlite3.Connection] = None) -> None:
        """Remove the vectors of every chunk of a document."""
        if conn is None:
            with self.database.transaction() as conn:
                return self.delete_document(document_id, conn)
        conn.execute(
            "DELETE FROM vectors WHERE chunk_id IN (SELECT id FROM chunks WHERE document_id = ?)",
            (document_id,),
        )

    def delete(self, kb_id: str, conn: Optional[sqlite3.Connection] = None) -> None:
        """Remove every vector of a knowledge base."""
        if conn is None:
            with self.database.transaction() as conn:
                return self.delete(kb_id, conn)
        cursor = conn.execute("DELETE FROM vectors WHERE kb_id = ?", (kb_id,))
        logger.info("vectors_deleted", kb_id=kb_id, count=cursor.rowcount)
