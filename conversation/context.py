"""Bounded prompt context built from the message log tail."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

from memory_store.store import MemoryHit

from .collaborators import MessageLog
from .config import ChatConfig

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 20


def normalize_role(role: str) -> str:
    return "assistant" if role in ("assistant", "model") else "user"


class ContextAssembler:
    """Turns the recent history of a chat into backend-ready messages.

    Output is a system preamble followed by the last ``window_size`` turns in
    chronological order.  Memory hits are only logged unless
    ``ChatConfig.inject_memory`` is set, in which case they are rendered as an
    extra system message ahead of the history.
    """

    def __init__(self, message_log: MessageLog, config: Optional[ChatConfig] = None) -> None:
        self.message_log = message_log
        self.config = config or ChatConfig()

    async def assemble(
        self,
        chat_id: str,
        memory_hits: Sequence[MemoryHit],
        window_size: int = DEFAULT_WINDOW_SIZE,
        *,
        display_name: Optional[str] = None,
    ) -> List[Dict[str, str]]:
        turns = await self.message_log.recent_tail(chat_id, window_size)
        turns = sorted(turns, key=lambda turn: turn.created_at)

        if memory_hits:
            logger.debug(
                "Chat %s has %d memory hit(s): %s",
                chat_id,
                len(memory_hits),
                ", ".join(f"{hit.id}={hit.score:.3f}" for hit in memory_hits),
            )

        prompt: List[Dict[str, str]] = [{"role": "system", "content": self.preamble(display_name)}]
        if memory_hits and self.config.inject_memory:
            in_window = {turn.id for turn in turns}
            recalled = [hit for hit in memory_hits if hit.id not in in_window]
            if recalled:
                prompt.append({"role": "system", "content": self._memory_block(recalled)})

        history = [{"role": normalize_role(turn.role), "content": turn.content} for turn in turns]
        history = self._enforce_prompt_budget(prompt, history, self.config.max_prompt_tokens)
        return prompt + history

    def preamble(self, display_name: Optional[str]) -> str:
        if not display_name:
            return self.config.system_prompt
        return (
            f"{self.config.system_prompt}\n"
            f'The user\'s name is "{display_name}". Use it naturally when appropriate, not every time, '
            "and never mention that you were given it."
        )

    @staticmethod
    def _memory_block(memory_hits: Sequence[MemoryHit]) -> str:
        lines = [str(hit.metadata.get("text", "")) for hit in memory_hits if hit.metadata.get("text")]
        return "Relevant past messages:\n\n" + "\n".join(lines)

    def _enforce_prompt_budget(
        self,
        prompt: List[Dict[str, str]],
        history: List[Dict[str, str]],
        max_tokens: int,
    ) -> List[Dict[str, str]]:
        """Drop the oldest history turns until the prompt fits the budget."""
        if max_tokens <= 0:
            return history

        fixed = sum(self._estimate_tokens(msg["content"]) for msg in prompt)
        sizes = [self._estimate_tokens(msg["content"]) for msg in history]
        start = 0
        # The latest turn is always kept.
        while start < len(history) - 1 and fixed + sum(sizes[start:]) > max_tokens:
            start += 1
        if start:
            logger.info("Dropped %d oldest turn(s) to fit the prompt budget of %d tokens", start, max_tokens)
        return history[start:]

    @staticmethod
    def _estimate_tokens(text: str) -> int:
        """Very rough token estimation (4 chars ~ 1 token)."""
        return max(1, len(text) // 4)
