"""Keyword search over chunk content.

Uses the SQLite FTS5 index (BM25 ranking) when the build supports it.
Otherwise falls back to counting query-term occurrences in chunk content,
which ignores stemming and term rarity.

The FTS5 table is external-content over `chunks` (FTS rowid = chunks.seq),
so every write and delete is a rowid lookup.
"""
import re
import sqlite3
from typing import List, Optional, Tuple
import structlog

from deskchat.db import Database
from deskchat.errors import ConstraintViolation, NotFound

logger = structlog.get_logger()

TERM_PATTERN = re.compile(r"\w+", re.UNICODE)


def query_terms(query: str) -> List[str]:
    """Lowercased word terms of a query, duplicates removed, order kept."""
    seen = []
    for term in TERM_PATTERN.findall(query.lower()):
        if term not in seen:
            seen.append(term)
    return seen


def build_match_expression(terms: List[str]) -> str:
    """FTS5 MATCH expression: any term, each quoted so syntax chars are literal."""
    return " OR ".join('"{}"'.format(term.replace('"', '""')) for term in terms)




def normalize_scores(results: List[Tuple[str, float]]) -> List[Tuple[str, float]]:
    """Scale best-first raw scores into (0, 1] relative to the best hit.

    BM25 and occurrence counts have no fixed upper bound; dividing by the top
    score puts both search paths on the same scale as similarity_threshold.
    """
    if not results:
        return []
    best = results[0][1]
    if best <= 0:
        return [(chunk_id, 1.0) for chunk_id, _ in results]
    return [(chunk_id, max(0.0, score) / best) for chunk_id, score in results]


class KeywordIndex:
    """Full-text index over chunks, scoped by knowledge base."""

    def __init__(self, database: Database, use_fts: Optional[bool] = None):
        """Initialize the keyword index.

        Args:
            database: Shared database
            use_fts: Force FTS5 search on/off (default: whatever the database supports)
        """
        self.database = database
        wanted = database.fts_available if use_fts is None else use_fts
        self.use_fts = bool(wanted and database.fts_available)
        # Writes go to the FTS table whenever it exists, even when searching by substring
        self.maintain_fts = database.fts_present

        if not self.use_fts:
            logger.warning("keyword_index_substring_fallback", fts_maintained=self.maintain_fts)

    @property
    def mode(self) -> str:
        return "fts5" if self.use_fts else "substring"

    def index(self, chunk_id: str, content: str, conn: Optional[sqlite3.Connection] = None) -> None:
        """Add a chunk to the full-text index.

        The chunk row must already exist and hold the same content: the index
        reads it back from the chunks table. Without an FTS table the chunks
        table itself is searched, so nothing is written.

        Raises:
            NotFound: If the chunk row doesn't exist
            ConstraintViolation: If content differs from the stored chunk
        """
        if not self.maintain_fts:
            return
        if conn is None:
            with self.database.transaction() as conn:
                return self.index(chunk_id, content, conn)

        row = conn.execute("SELECT seq, content FROM chunks WHERE id = ?", (chunk_id,)).fetchone()
        if row is None:
            raise NotFound(f"Chunk not found: {chunk_id}")
        if row["content"] != content:
            raise ConstraintViolation(f"Content does not match stored chunk: {chunk_id}")

        self._remove_entries(conn, "id = ?", (chunk_id,))
        conn.execute(
            "INSERT INTO chunks_fts (rowid, content) VALUES (?, ?)", (row["seq"], content)
        )

    def search(self, kb_id: str, query: str, top_k: int) -> List[Tuple[str, float]]:
        """Find chunks matching any query term.

        Args:
            kb_id: Knowledge base to search
            query: Free-text query
            top_k: Maximum number of results

        Returns:
            (chunk_id, relevance_score) pairs, best first. Scores are in
            (0, 1], the best hit scoring 1.0 (negated BM25 on the FTS5 path,
            term occurrence counts on the fallback, each divided by the best).
        """
        terms = query_terms(query)
        if not terms or top_k <= 0:
            return []

        if self.use_fts:
            results = self._search_fts(kb_id, terms, top_k)
        else:
            results = self._search_substring(kb_id, terms, top_k)

        logger.info(
            "keyword_search_completed",
            kb_id=kb_id,
            mode=self.mode,
            term_count=len(terms),
            results_found=len(results),
        )
        return normalize_scores(results)

    def _search_fts(self, kb_id: str, terms: List[str], top_k: int) -> List[Tuple[str, float]]:
        with self.database.reader() as conn:
            rows = conn.execute(
                """
                SELECT c.id AS chunk_id, bm25(chunks_fts) AS bm25_score
                FROM chunks_fts
                JOIN chunks c ON c.seq = chunks_fts.rowid
                WHERE chunks_fts MATCH ? AND c.kb_id = ?
                ORDER BY bm25_score, chunks_fts.rowid
                LIMIT ?
                """,
                (build_match_expression(terms), kb_id, top_k),
            ).fetchall()

        # bm25() is smaller for better matches
        return [(row["chunk_id"], -float(row["bm25_score"])) for row in rows]

    def _search_substring(self, kb_id: str, terms: List[str], top_k: int) -> List[Tuple[str, float]]:
        with self.database.reader() as conn:
            rows = conn.execute(
                "SELECT id, content FROM chunks WHERE kb_id = ? ORDER BY seq",
                (kb_id,),
            ).fetchall()

        scored = []
        for row in rows:
            content = row["content"].lower()
            score = sum(content.count(term) for term in terms)
            if score > 0:
                scored.append((row["id"], float(score)))

        # sorted() is stable, so equal scores keep insertion order
        scored.sort(key=lambda item: -item[1])
        return scored[:top_k]

    def _remove_entries(self, conn: sqlite3.Connection, where: str, params: tuple) -> None:
        # External-content deletes must replay the indexed values, and only
        # for rowids the index actually holds
        conn.execute(
            f"""
            INSERT INTO chunks_fts (chunks_fts, rowid, content)
            SELECT 'delete', seq, content FROM chunks
            WHERE {where} AND seq IN (SELECT id FROM chunks_fts_docsize)
            """,
            params,
        )

    def delete(self, chunk_id: str, conn: Optional[sqlite3.Connection] = None) -> None:
        """Remove a chunk from the index. Call before deleting the chunk row."""
        if not self.maintain_fts:
            return
        if conn is None:
            with self.database.transaction() as conn:
                return self.delete(chunk_id, conn)
        self._remove_entries(conn, "id = ?", (chunk_id,))

    def delete_document(self, document_id: str, conn: Optional[sqlite3.Connection] = None) -> None:
        """Remove every chunk of a document from the index."""
        if not self.maintain_fts:
            return
        if conn is None:
            with self.database.transaction() as conn:
                return self.delete_document(document_id, conn)
        self._remove_entries(conn, "document_id = ?", (document_id,))

    def delete_kb(self, kb_id: str, conn: Optional[sqlite3.Connection] = None) -> None:
        """Remove every entry of a knowledge base."""
        if not self.maintain_fts:
            return
        if conn is None:
            with self.database.transaction() as conn:
                return self.delete_kb(kb_id, conn)
        self._remove_entries(conn, "kb_id = ?", (kb_id,))
