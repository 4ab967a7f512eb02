"""Data models shared by the knowledge base components."""
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

from deskchat import config
from deskchat.errors import InvalidSettings


class DocumentStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class RetrievalMode(str, Enum):
    VECTOR = "vector"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


@dataclass
class KnowledgeBase:
    """A named collection of documents sharing one embedding space."""

    id: str
    name: str
    description: str
    embedding_config_ref: str
    embedding_dim: int
    chunk_size: int
    chunk_overlap: int
    created_at: str
    updated_at: str
    document_count: int = 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "KnowledgeBase":
        return cls(**{k: row[k] for k in row.keys()})


@dataclass
class Document:
    """An imported file and its processing state."""

    id: str
    kb_id: str
    filename: str
    file_type: str
    file_size: int
    file_hash: str
    content_preview: str = ""
    chunk_count: int = 0
    status: DocumentStatus = DocumentStatus.PROCESSING
    error_message: Optional[str] = None
    created_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Document":
        values = {k: row[k] for k in row.keys()}
        values["status"] = DocumentStatus(values["status"])
        return cls(**values)


@dataclass
class Chunk:
    """A bounded slice of a document, the unit of embedding and retrieval."""

    id: str
    document_id: str
    kb_id: str
    content: str
    chunk_index: int
    token_count: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Chunk":
        return cls(
            id=row["id"],
            document_id=row["document_id"],
            kb_id=row["kb_id"],
            content=row["content"],
            chunk_index=row["chunk_index"],
            token_count=row["token_count"],
        )


@dataclass
class RetrievedChunk:
    """A chunk returned by retrieval, with its scores and source file."""

    chunk: Chunk
    score: float
    vector_score: Optional[float] = None
    keyword_score: Optional[float] = None
    document_filename: str = ""

    @property
    def chunk_index(self) -> int:
        return self.chunk.chunk_index


@dataclass
class RetrievalResult:
    """Ranked chunks for a query.

    total_chunks counts candidates before threshold filtering. degraded is set
    when hybrid retrieval fell back to keyword-only because the query could
    not be embedded.
    """

    query: str
    chunks: List[RetrievedChunk] = field(default_factory=list)
    total_chunks: int = 0
    degraded: bool = False
    degraded_reason: Optional[str] = None


class RetrievalSettings(BaseModel):
    """Per-query retrieval knobs supplied by the chat layer."""

    mode: RetrievalMode = RetrievalMode(config.RETRIEVAL_MODE)
    top_k: int = Field(default=config.RETRIEVAL_TOP_K, ge=1, le=20)
    similarity_threshold: float = Field(default=config.SIMILARITY_THRESHOLD, ge=0.0, le=1.0)

    @classmethod
    def build(cls, **values) -> "RetrievalSettings":
        """Validate values, raising InvalidSettings instead of ValidationError."""
        try:
            return cls(**values)
        except ValidationError as e:
            raise InvalidSettings(str(e)) from e
