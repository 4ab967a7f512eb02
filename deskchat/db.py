"""Database initialization and helpers for the knowledge base core.

SQLite database for storing:
- Knowledge bases, documents and text chunks
- Embedding vectors as fixed-width float32 blobs
- An FTS5 full-text index over chunk content (when the build supports it)
"""
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional
import structlog

from deskchat import config
from deskchat.errors import ConstraintViolation, IOFailure

logger = structlog.get_logger()


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS knowledge_bases (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        embedding_config_ref TEXT NOT NULL,
        embedding_dim INTEGER NOT NULL CHECK (embedding_dim > 0),
        chunk_size INTEGER NOT NULL CHECK (chunk_size > 0),
        chunk_overlap INTEGER NOT NULL CHECK (chunk_overlap >= 0),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        document_count INTEGER NOT NULL DEFAULT 0,
        CHECK (chunk_overlap < chunk_size)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS documents (
        id TEXT PRIMARY KEY,
        kb_id TEXT NOT NULL REFERENCES knowledge_bases(id) ON DELETE CASCADE,
        filename TEXT NOT NULL,
        file_type TEXT NOT NULL,
        file_size INTEGER NOT NULL DEFAULT 0,
        file_hash TEXT NOT NULL,
        content_preview TEXT NOT NULL DEFAULT '',
        chunk_count INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'processing'
            CHECK (status IN ('processing', 'completed', 'error')),
        error_message TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chunks (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
        kb_id TEXT NOT NULL REFERENCES knowledge_bases(id) ON DELETE CASCADE,
        content TEXT NOT NULL,
        chunk_index INTEGER NOT NULL,
        token_count INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        UNIQUE (document_id, chunk_index)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vectors (
        chunk_id TEXT PRIMARY KEY REFERENCES chunks(id) ON DELETE CASCADE,
        kb_id TEXT NOT NULL,
        dim INTEGER NOT NULL,
        vector BLOB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_kb_updated ON knowledge_bases(updated_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_doc_kb ON documents(kb_id)",
    "CREATE INDEX IF NOT EXISTS idx_doc_hash ON documents(kb_id, file_hash)",
    "CREATE INDEX IF NOT EXISTS idx_chunk_doc ON chunks(document_id)",
    "CREATE INDEX IF NOT EXISTS idx_chunk_kb ON chunks(kb_id)",
    "CREATE INDEX IF NOT EXISTS idx_vectors_kb ON vectors(kb_id)",
]

# External-content index over chunks; FTS rowid = chunks.seq
FTS_SCHEMA = """
    CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(
        content,
        content='chunks',
        content_rowid='seq',
        tokenize='porter unicode61'
    )
"""


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


class Database:
    """Owns the SQLite file and hands out short-lived connections."""

    def __init__(self, db_path: Path = None, use_fts: Optional[bool] = None):
        """Initialize the database.

        Args:
            db_path: Path to the SQLite file (default from config)
            use_fts: Try to create the FTS5 index (default from config)
        """
        self.db_path = Path(db_path or config.DB_PATH)
        self.use_fts = config.USE_FTS if use_fts is None else use_fts
        self.fts_available = False
        self.fts_present = False

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_schema()

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection to the SQLite database.

        Returns:
            sqlite3.Connection with row_factory set to sqlite3.Row and
            foreign keys enforced
        """
        try:
            conn = sqlite3.connect(self.db_path, timeout=30.0)
        except sqlite3.Error as e:
            raise IOFailure(f"Cannot open database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection; commit on success, roll back on any error.

        sqlite errors are translated into StorageError subclasses.
        """
        conn = self.get_connection()
        try:
            yield conn
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            logger.error("database_constraint_violation", error=str(e))
            raise ConstraintViolation(str(e)) from e
        except sqlite3.Error as e:
            conn.rollback()
            logger.error("database_operation_failed", error=str(e))
            raise IOFailure(str(e)) from e
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection for read-only queries."""
        conn = self.get_connection()
        try:
            yield conn
        except sqlite3.Error as e:
            logger.error("database_read_failed", error=str(e))
            raise IOFailure(str(e)) from e
        finally:
            conn.close()

    def init_schema(self) -> None:
        """Create tables and indexes if they don't exist.

        WAL journaling lets retrievals read while an import is writing.
        """
        with self.transaction() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            for statement in SCHEMA:
                conn.execute(statement)

        if self.use_fts:
            self.fts_available = self._init_fts()
        # An index left by an earlier FTS run is still maintained, or it goes stale
        self.fts_present = self.fts_available or self._fts_table_usable()

        logger.info(
            "database_initialized",
            db_path=str(self.db_path),
            fts_available=self.fts_available,
            fts_present=self.fts_present,
        )

    def _init_fts(self) -> bool:
        """Create the FTS5 table and sync it with chunks.

        Returns False when the build lacks FTS5.
        """
        conn = self.get_connection()
        try:
            conn.execute(FTS_SCHEMA)
            self._sync_fts(conn)
            conn.commit()
            return True
        except sqlite3.OperationalError as e:
            conn.rollback()
            logger.warning("fts5_unavailable", error=str(e))
            return False
        finally:
            conn.close()

    def _sync_fts(self, conn: sqlite3.Connection) -> None:
        """Rebuild the index if it doesn't cover exactly the rows of chunks.

        Happens when chunks were written while FTS was off, e.g. a database
        created without FTS5 and reopened with it.
        """
        missing = conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE seq NOT IN (SELECT id FROM chunks_fts_docsize)"
        ).fetchone()[0]
        stale = conn.execute(
            "SELECT COUNT(*) FROM chunks_fts_docsize WHERE id NOT IN (SELECT seq FROM chunks)"
        ).fetchone()[0]
        if missing or stale:
            conn.execute("INSERT INTO chunks_fts(chunks_fts) VALUES ('rebuild')")
            logger.warning("fts_index_rebuilt", missing_rows=missing, stale_rows=stale)

    def _fts_table_usable(self) -> bool:
        conn = self.get_connection()
        try:
            row = conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'chunks_fts'"
            ).fetchone()
            if row is None:
                return False
            conn.execute("SELECT rowid FROM chunks_fts LIMIT 0").fetchall()
            return True
        except sqlite3.OperationalError as e:
            logger.warning("fts_table_unreadable", error=str(e))
            return False
        finally:
            conn.close()

    def fts_entry_count(self) -> int:
        """Number of chunks held in the FTS index (0 when there is none)."""
        if not self.fts_present:
            return 0
        with self.reader() as conn:
            return conn.execute("SELECT COUNT(*) FROM chunks_fts_docsize").fetchone()[0]

    def get_chunk_count(self, kb_id: Optional[str] = None) -> int:
        """Get the number of chunks, optionally for one knowledge base."""
        with self.reader() as conn:
            if kb_id is None:
                row = conn.execute("SELECT COUNT(*) FROM chunks").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM chunks WHERE kb_id = ?", (kb_id,)
                ).fetchone()
            return row[0]
