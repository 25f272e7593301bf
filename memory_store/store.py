"""Per-user vector memory backed by in-process FAISS indexes.

Every user gets an isolated namespace holding its own
``IndexIDMap2(IndexFlatIP)``.  Records are keyed by the id of the turn
they were embedded from, so repeating an upsert for the same id replaces
the stored vector and metadata instead of adding a second record.
Vectors are L2-normalised on the way in, which makes the inner-product
score a cosine similarity.

Namespaces can be persisted to disk (``index.faiss`` plus
``metadata.json`` per namespace) and restored on startup.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

try:
    import faiss  # type: ignore
except ImportError as exc:  # pragma: no cover - runtime dependency
    raise RuntimeError(
        "The faiss library is required for the memory store. Install faiss-cpu via pip or conda."
    ) from exc

from .config import MemoryStoreConfig
from .errors import MemoryStoreError

logger = logging.getLogger(__name__)

USER_ID_FIELD = "userId"


@dataclass
class MemoryHit:
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class _Namespace:
    index: Any
    dimension: int
    ids: Dict[str, int] = field(default_factory=dict)
    records: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    next_id: int = 0


class NamespacedVectorStore:
    """Key-namespaced vector index with idempotent upsert and top-k query."""

    def __init__(self, config: Optional[MemoryStoreConfig] = None) -> None:
        self.config = config or MemoryStoreConfig()
        self._namespaces: Dict[str, _Namespace] = {}
        self._lock = threading.Lock()

    def _key(self, namespace: str) -> str:
        if not namespace or not str(namespace).strip():
            raise MemoryStoreError("namespace must not be empty")
        return f"{self.config.namespace_root}:{namespace}"

    @staticmethod
    def _as_matrix(vector: Sequence[float]) -> np.ndarray:
        try:
            matrix = np.array(vector, dtype="float32").reshape(1, -1)
        except (TypeError, ValueError) as exc:
            raise MemoryStoreError("vector must be a flat sequence of floats") from exc
        if matrix.shape[1] == 0:
            raise MemoryStoreError("vector must not be empty")
        faiss.normalize_L2(matrix)
        return matrix

    def upsert(
        self,
        namespace: str,
        record_id: str,
        vector: Sequence[float],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Insert or overwrite the record ``record_id`` under ``namespace``."""
        key = self._key(namespace)
        if not record_id:
            raise MemoryStoreError("record id must not be empty")
        matrix = self._as_matrix(vector)

        stored = dict(metadata or {})
        # The namespace owns the record; callers cannot file it under someone else.
        stored[USER_ID_FIELD] = namespace

        with self._lock:
            space = self._namespaces.get(key)
            if space is None:
                dimension = matrix.shape[1]
                space = _Namespace(index=faiss.IndexIDMap2(faiss.IndexFlatIP(dimension)), dimension=dimension)
                self._namespaces[key] = space
                logger.info("Created memory namespace %s (dimension=%d)", key, space.dimension)
            if matrix.shape[1] != space.dimension:
                raise MemoryStoreError(
                    f"Vector dimension {matrix.shape[1]} does not match namespace dimension {space.dimension}"
                )

            faiss_id = space.ids.get(record_id)
            if faiss_id is None:
                faiss_id = space.next_id
                space.next_id += 1
                space.ids[record_id] = faiss_id
            else:
                space.index.remove_ids(np.array([faiss_id], dtype="int64"))
                logger.debug("Overwriting memory record %s in %s", record_id, key)

            space.index.add_with_ids(matrix, np.array([faiss_id], dtype="int64"))
            space.records[faiss_id] = {"id": record_id, "metadata": stored}

    def query(self, namespace: str, vector: Sequence[float], top_k: int) -> List[MemoryHit]:
        """Return up to ``top_k`` hits from ``namespace``, best score first."""
        key = self._key(namespace)
        if top_k < 0:
            raise MemoryStoreError("top_k must not be negative")
        if top_k == 0:
            return []
        matrix = self._as_matrix(vector)

        start = time.perf_counter()
        with self._lock:
            space = self._namespaces.get(key)
            if space is None or space.index.ntotal == 0:
                return []
            if matrix.shape[1] != space.dimension:
                raise MemoryStoreError(
                    f"Query dimension {matrix.shape[1]} does not match namespace dimension {space.dimension}"
                )
            search_k = min(top_k, space.index.ntotal)
            scores, ids = space.index.search(matrix, search_k)
            records = [(space.records.get(int(idx)), float(score)) for idx, score in zip(ids[0], scores[0]) if idx >= 0]

        hits: List[MemoryHit] = []
        for record, score in records:
            if record is None or record["metadata"].get(USER_ID_FIELD) != namespace:
                continue
            hits.append(MemoryHit(id=record["id"], score=score, metadata=dict(record["metadata"])))
        logger.debug("Memory query on %s returned %d hit(s) in %.3f seconds", key, len(hits), time.perf_counter() - start)
        return hits

    def count(self, namespace: str) -> int:
        key = self._key(namespace)
        with self._lock:
            space = self._namespaces.get(key)
            return int(space.index.ntotal) if space else 0

    def save(self) -> None:
        """Write every namespace to ``persist_dir``."""
        if not self.config.persist_dir:
            logger.debug("No persist_dir configured; skipping memory save")
            return
        root = Path(self.config.persist_dir)
        with self._lock:
            for key, space in self._namespaces.items():
                target = root / hashlib.sha1(key.encode("utf-8")).hexdigest()
                target.mkdir(parents=True, exist_ok=True)
                faiss.write_index(space.index, str(target / "index.faiss"))
                payload = {
                    "namespace": key,
                    "dimension": space.dimension,
                    "next_id": space.next_id,
                    "records": [
                        {"faiss_id": faiss_id, "id": record["id"], "metadata": record["metadata"]}
                        for faiss_id, record in space.records.items()
                    ],
                }
                with (target / "metadata.json").open("w", encoding="utf-8") as f:
                    json.dump(payload, f)
            logger.info("Saved %d memory namespace(s) to %s", len(self._namespaces), root)

    def load(self) -> None:
        """Restore namespaces previously written by :meth:`save`."""
        if not self.config.persist_dir:
            return
        root = Path(self.config.persist_dir)
        if not root.exists():
            logger.info("Memory directory %s does not exist yet; starting empty", root)
            return

        loaded = 0
        with self._lock:
            for target in sorted(p for p in root.iterdir() if p.is_dir()):
                index_path = target / "index.faiss"
                metadata_path = target / "metadata.json"
                if not index_path.exists() or not metadata_path.exists():
                    logger.warning("Skipping incomplete memory namespace at %s", target)
                    continue
                with metadata_path.open("r", encoding="utf-8") as f:
                    payload = json.load(f)
                space = _Namespace(
                    index=faiss.read_index(str(index_path)),
                    dimension=int(payload["dimension"]),
                    next_id=int(payload["next_id"]),
                )
                for entry in payload.get("records", []):
                    faiss_id = int(entry["faiss_id"])
                    space.ids[entry["id"]] = faiss_id
                    space.records[faiss_id] = {"id": entry["id"], "metadata": entry["metadata"]}
                if space.index.ntotal != len(space.records):
                    logger.warning(
                        "Memory namespace %s mismatch: index has %d vectors, metadata contains %d entries",
                        payload["namespace"],
                        space.index.ntotal,
                        len(space.records),
                    )
                self._namespaces[payload["namespace"]] = space
                loaded += 1
        logger.info("Loaded %d memory namespace(s) from %s", loaded, root)
