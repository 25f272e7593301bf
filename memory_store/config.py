"""Configuration objects for the memory store package."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass
class EmbeddingConfig:
    """Embedding endpoint connection details."""

    endpoint: str = "http://localhost:8001/v1/embeddings"
    model: str = "all-mpnet-base-v2"
    request_timeout: int = 30
    dimension: Optional[int] = None
    model_kwargs: Dict[str, object] = field(default_factory=dict)


@dataclass
class MemoryStoreConfig:
    """Controls for the per-user vector memory."""

    namespace_root: str = "cohort-chat"
    top_k: int = 5
    persist_dir: Optional[str] = None
