"""Text chunking with overlap for the RAG pipeline.

Implements character-based chunking to avoid tokenizer dependencies.
Paragraphs are split on sentences only when too long, and sentences are
hard-cut only when a single sentence is still too long.
"""
import re
from dataclasses import dataclass
from typing import Iterator, List
import structlog

from deskchat import config

logger = structlog.get_logger()

PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
SENTENCE_BREAK = re.compile(r"(?<=[.!?。！？])\s+")


def estimate_tokens(text: str) -> int:
    """Approximate token count as the number of whitespace-separated words."""
    return len(text.split())


@dataclass
class TextChunk:
    """A chunk of text and how much of its head is copied from the previous chunk."""

    content: str
    chunk_index: int
    overlap_chars: int = 0

    @property
    def body(self) -> str:
        """The chunk without its overlap prefix."""
        return self.content[self.overlap_chars :]

    @property
    def token_count(self) -> int:
        return estimate_tokens(self.content)


class TextChunker:
    """Paragraph/sentence/hard-cut chunker with overlap support."""

    def __init__(
        self,
        chunk_size: int = None,
        chunk_overlap: int = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Maximum chunk length in characters (default from config)
            chunk_overlap: Characters carried over from the previous chunk (default from config)
        """
        self.chunk_size = chunk_size if chunk_size is not None else config.CHUNK_SIZE
        self.chunk_overlap = chunk_overlap if chunk_overlap is not None else config.CHUNK_OVERLAP

        # Validate parameters
        if self.chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {self.chunk_size}")
        if self.chunk_overlap < 0 or self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"Overlap ({self.chunk_overlap}) must be non-negative and less than "
                f"chunk size ({self.chunk_size})"
            )

    def chunk_text(self, text: str) -> List[TextChunk]:
        """Split text into overlapping chunks of at most chunk_size characters.

        The overlap is the tail of the previous chunk joined with a space. It is
        shortened when the unit it precedes leaves less room than chunk_overlap.

        Args:
            text: Text to chunk

        Returns:
            List of TextChunk objects in document order
        """
        if not text or not text.strip():
            return []

        chunks: List[TextChunk] = []

        for unit in self._units(text):
            content = unit
            if chunks and self.chunk_overlap:
                # One character is reserved for the joining space
                take = min(self.chunk_overlap, self.chunk_size - len(unit) - 1)
                tail = chunks[-1].content[-take:].lstrip() if take > 0 else ""
                if tail:
                    content = f"{tail} {unit}"

            chunks.append(
                TextChunk(
                    content=content,
                    chunk_index=len(chunks),
                    overlap_chars=len(content) - len(unit),
                )
            )

        logger.debug(
            "text_chunked",
            text_length=len(text),
            chunk_count=len(chunks),
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
        )

        return chunks

    def split(self, text: str) -> List[str]:
        """Chunk text and return only the chunk strings."""
        return [chunk.content for chunk in self.chunk_text(text)]

    def _units(self, text: str) -> Iterator[str]:
        """Yield non-empty pieces no longer than chunk_size, in order."""
        for paragraph in PARAGRAPH_BREAK.split(text):
            paragraph = paragraph.strip()
            if not paragraph:
                continue
            if len(paragraph) <= self.chunk_size:
                yield paragraph
            else:
                yield from self._split_sentences(paragraph)

    def _split_sentences(self, paragraph: str) -> Iterator[str]:
        """Greedily pack sentences into pieces of at most chunk_size."""
        current = ""
        for sentence in SENTENCE_BREAK.split(paragraph):
            sentence = sentence.strip()
            if not sentence:
                continue

            if len(sentence) > self.chunk_size:
                if current:
                    yield current
                    current = ""
                yield from self._hard_split(sentence)
                continue

            candidate = f"{current} {sentence}" if current else sentence
            if len(candidate) <= self.chunk_size:
                current = candidate
            else:
                yield current
                current = sentence

        if current:
            yield current

    def _hard_split(self, sentence: str) -> Iterator[str]:
        for start in range(0, len(sentence), self.chunk_size):
            piece = sentence[start : start + self.chunk_size].strip()
            if piece:
                yield piece

    def get_chunk_stats(self, chunks: List[TextChunk]) -> dict:
        """Summarize chunk lengths and how much of them is carried-over overlap."""
        sizes = [len(c.content) for c in chunks]
        return {
            "chunk_count": len(chunks),
            "total_chars": sum(sizes),
            "overlap_chars": sum(c.overlap_chars for c in chunks),
            "min_chunk_size": min(sizes, default=0),
            "max_chunk_size": max(sizes, default=0),
            "chunk_size_limit": self.chunk_size,
        }


def split_text(text: str, chunk_size: int, chunk_overlap: int) -> List[str]:
    """Chunk text with explicit parameters (convenience function)."""
    return TextChunker(chunk_size=chunk_size, chunk_overlap=chunk_overlap).split(text)
