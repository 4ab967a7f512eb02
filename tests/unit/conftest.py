"""Pytest configuration and fixtures for unit tests."""
import asyncio
import re
import zlib
from typing import List, Optional

import pytest

from deskchat.db import Database, utc_now
from deskchat.errors import NetworkError
from deskchat.rag.manager import KnowledgeBaseManager


FAKE_DIM = 256
TOKEN = re.compile(r"\w+")

PARAGRAPHS = [
    "Cats sleep most of the day in warm sun.",
    "Rust compilers check ownership at build.",
    "Bread dough rises with active yeast.",
]


class FakeEmbedder:
    """Deterministic bag-of-words embedder: one hashed bucket per token.

    Texts sharing words get a positive cosine; identical word bags score 1.0.
    """

    def __init__(self, dim: int = FAKE_DIM, max_batch_size: int = 8):
        self.dim = dim
        self.max_batch_size = max_batch_size
        self.embedded_texts: List[str] = []
        self.calls = 0
        self.fail_with: Optional[Exception] = None
        self.fail_on_call: Optional[int] = None
        self.started: Optional[asyncio.Event] = None
        self.delay = 0.0

    def vector(self, text: str) -> List[float]:
        vector = [0.0] * self.dim
        for token in TOKEN.findall(text.lower()):
            vector[zlib.crc32(token.encode("utf-8")) % self.dim] += 1.0
        return vector

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.calls += 1
        if self.started is not None:
            self.started.set()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        if self.fail_on_call is not None and self.calls == self.fail_on_call:
            raise NetworkError("provider unavailable")

        self.embedded_texts.extend(texts)
        return [self.vector(text) for text in texts]

    async def embed(self, text: str) -> List[float]:
        return (await self.embed_batch([text]))[0]


@pytest.fixture
def database(tmp_path) -> Database:
    """Fresh SQLite database in a temp directory."""
    return Database(tmp_path / "knowledge.sqlite")


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def manager(database, embedder) -> KnowledgeBaseManager:
    """Manager whose every embedding config resolves to the fake embedder."""
    return KnowledgeBaseManager(database=database, embedder_resolver=lambda ref: embedder)


@pytest.fixture
def kb(manager):
    """Empty knowledge base with small chunks."""
    return manager.create_knowledge_base(
        "Test KB", "fake", description="unit tests", chunk_size=50, chunk_overlap=10
    )


@pytest.fixture
def three_paragraphs(tmp_path):
    """Plain-text file with three short paragraphs."""
    path = tmp_path / "notes.txt"
    path.write_text("\n\n".join(PARAGRAPHS), encoding="utf-8")
    return path


def insert_kb(database, kb_id="kb1", dim=3):
    """Insert a knowledge base row and one document row (<kb_id>-doc) directly."""
    now = utc_now()
    with database.transaction() as conn:
        conn.execute(
            """
            INSERT INTO knowledge_bases (
                id, name, description, embedding_config_ref, embedding_dim,
                chunk_size, chunk_overlap, created_at, updated_at
            ) VALUES (?, ?, '', 'fake', ?, 100, 10, ?, ?)
            """,
            (kb_id, kb_id, dim, now, now),
        )
        conn.execute(
            """
            INSERT INTO documents (id, kb_id, filename, file_type, file_hash, created_at)
            VALUES (?, ?, 'doc.txt', 'txt', 'hash', ?)
            """,
            (f"{kb_id}-doc", kb_id, now),
        )


def insert_chunk(database, kb_id, chunk_id, index, content=None):
    with database.transaction() as conn:
        conn.execute(
            """
            INSERT INTO chunks (id, document_id, kb_id, content, chunk_index, token_count, created_at)
            VALUES (?, ?, ?, ?, ?, 1, ?)
            """,
            (chunk_id, f"{kb_id}-doc", kb_id, content or f"chunk {chunk_id}", index, utc_now()),
        )
