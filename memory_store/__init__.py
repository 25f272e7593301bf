"""Per-user vector memory: text embedding plus namespaced FAISS storage."""

from .config import EmbeddingConfig, MemoryStoreConfig
from .embedding_client import EmbeddingClient
from .errors import EmbeddingError, EmptyInputError, MemoryStoreError
from .store import MemoryHit, NamespacedVectorStore

__all__ = [
    "EmbeddingClient",
    "EmbeddingConfig",
    "EmbeddingError",
    "EmptyInputError",
    "MemoryHit",
    "MemoryStoreConfig",
    "MemoryStoreError",
    "NamespacedVectorStore",
]
