"""RAG (Retrieval-Augmented Generation) knowledge base components.

This package contains modules for:
- Document parsing and text extraction
- Text chunking with overlap
- SQLite vector storage with cosine search
- Full-text keyword indexing
- Vector, keyword and hybrid retrieval
- Knowledge base management and document import
"""
