"""Errors raised by the embedding and vector memory adapters."""

from __future__ import annotations


class MemoryStoreError(RuntimeError):
    """Raised when a vector upsert or query cannot be completed."""


class EmbeddingError(RuntimeError):
    """Raised when text cannot be turned into a vector."""


class EmptyInputError(EmbeddingError, ValueError):
    """Raised for empty text, before the embedding backend is called."""
