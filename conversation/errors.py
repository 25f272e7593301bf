"""Error taxonomy for the conversation pipeline.

``AuthError`` closes the connection.  ``LogAppendError`` on the user turn
aborts that turn only.  Memory, embedding and generation errors never
reach the user; the orchestrator logs them and degrades.
"""

from __future__ import annotations

from memory_store.errors import EmbeddingError, EmptyInputError, MemoryStoreError

__all__ = [
    "AuthError",
    "ConversationError",
    "EmbeddingError",
    "EmptyInputError",
    "GenerationError",
    "InvalidCredentialError",
    "LogAppendError",
    "MemoryStoreError",
    "MissingCredentialError",
    "UserNotFound",
]


class ConversationError(Exception):
    """Base class for orchestrator-level failures."""


class AuthError(ConversationError):
    """Raised when a connection cannot be authenticated."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class MissingCredentialError(AuthError):
    def __init__(self, reason: str = "No auth token") -> None:
        super().__init__(reason)


class InvalidCredentialError(AuthError):
    def __init__(self, reason: str = "Invalid auth token") -> None:
        super().__init__(reason)


class GenerationError(ConversationError):
    """Raised when the generative backend fails or returns nothing usable."""


class LogAppendError(ConversationError):
    """Raised when a turn cannot be written to the message log."""


class UserNotFound(LookupError):
    """Raised by the user directory for unknown ids."""
