"""Client wrapper for chat-completions requests."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import requests

from .config import ChatLLMConfig
from .errors import GenerationError

logger = logging.getLogger(__name__)


class ChatLLMClient:
    """Thin, stateless wrapper around a chat-completions endpoint.

    The backend keeps no session: every call carries the full context.
    """

    def __init__(self, config: ChatLLMConfig) -> None:
        self.config = config

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def generate(
        self,
        messages: List[Dict[str, str]],
        *,
        model_kwargs: Optional[Dict[str, object]] = None,
    ) -> str:
        """Return the assistant text for ``messages`` or raise ``GenerationError``."""
        payload: Dict[str, object] = {
            "model": self.config.model,
            "messages": messages,
            "temperature": self.config.temperature,
            "stream": False,
        }
        if model_kwargs:
            payload.update(model_kwargs)

        logger.debug("Requesting completion for %d message(s) using model %s", len(messages), self.config.model)
        try:
            response = requests.post(
                self.config.endpoint,
                json=payload,
                headers=self._headers(),
                timeout=self.config.request_timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            raise GenerationError(f"completion request failed: {exc}") from exc
        except ValueError as exc:
            raise GenerationError("completion endpoint returned invalid JSON") from exc

        content = self._extract_content(data)
        if not content.strip():
            raise GenerationError("completion endpoint returned no content")
        return content

    @staticmethod
    def _extract_content(data: Dict[str, object]) -> str:
        try:
            choice = (data.get("choices") or [{}])[0]
            message = choice.get("message") or {}
            return str(message.get("content") or "")
        except (AttributeError, IndexError, TypeError) as exc:
            raise GenerationError("malformed completion response") from exc
