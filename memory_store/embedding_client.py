"""Client wrapper for an OpenAI-compatible embeddings endpoint."""

from __future__ import annotations

import logging
from typing import Dict, List

import requests

from .config import EmbeddingConfig
from .errors import EmbeddingError, EmptyInputError

logger = logging.getLogger(__name__)


class EmbeddingClient:
    """Turn a piece of text into a fixed-length vector."""

    def __init__(self, config: EmbeddingConfig) -> None:
        self.config = config

    def embed(self, text: str) -> List[float]:
        """Return the embedding for ``text``.

        Empty or whitespace-only input is rejected before any request is made.
        """
        if not text or not text.strip():
            raise EmptyInputError("cannot embed empty text")

        payload: Dict[str, object] = {"model": self.config.model, "input": [text]}
        if self.config.model_kwargs:
            payload.update(self.config.model_kwargs)

        logger.debug("Requesting embedding for %d character(s)", len(text))
        try:
            response = requests.post(
                self.config.endpoint,
                json=payload,
                timeout=self.config.request_timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            raise EmbeddingError(f"embedding request failed: {exc}") from exc
        except ValueError as exc:
            raise EmbeddingError("embedding endpoint returned invalid JSON") from exc

        vector = self._extract_vector(data)
        if self.config.dimension and len(vector) != self.config.dimension:
            raise EmbeddingError(
                f"unexpected embedding length {len(vector)} (expected {self.config.dimension})"
            )
        return vector

    @staticmethod
    def _extract_vector(data: Dict[str, object]) -> List[float]:
        try:
            rows = data.get("data") or []
            vector = [float(value) for value in rows[0].get("embedding") or []]
        except (AttributeError, IndexError, TypeError, ValueError) as exc:
            raise EmbeddingError("embedding response missing vector") from exc
        if not vector:
            raise EmbeddingError("embedding endpoint returned an empty vector")
        return vector
