"""Exception hierarchy for the knowledge base core.

Parse and embedding failures during an import are recorded on the Document
by the manager; everything else propagates to the caller.
"""
from typing import Optional


class KnowledgeBaseError(Exception):
    """Base class for all knowledge base errors."""


# Document parsing

class ParseError(KnowledgeBaseError):
    """A file could not be turned into plain text."""


class UnsupportedFormat(ParseError):
    """The file extension is not handled by any parser."""


class CorruptFile(ParseError):
    """The file container (PDF, OOXML zip) could not be opened."""


class EncodingError(ParseError):
    """The bytes could not be decoded as text, even lossily."""


# Embedding

class EmbeddingError(KnowledgeBaseError):
    """The embedding provider did not return usable vectors."""


class AuthError(EmbeddingError):
    """The provider rejected the API key."""


class RateLimited(EmbeddingError):
    """The provider asked us to slow down. Retrying is up to the caller."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class DimensionMismatch(EmbeddingError):
    """A vector's length differs from the knowledge base dimension."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class NetworkError(EmbeddingError):
    """The provider could not be reached or failed server-side."""


# Storage

class StorageError(KnowledgeBaseError):
    """The local database failed."""


class IOFailure(StorageError):
    pass


class NotFound(StorageError):
    pass


class ConstraintViolation(StorageError):
    pass


# Retrieval

class RetrievalError(KnowledgeBaseError):
    """A retrieval request could not be served."""


class InvalidSettings(RetrievalError):
    """top_k or similarity_threshold out of range, or unknown mode."""


# Configuration

class ConfigError(KnowledgeBaseError):
    """Provider catalog or embedding configuration is invalid."""
