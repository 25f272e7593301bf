"""Real-time conversation orchestration with per-user vector memory.

A client opens a WebSocket, authenticates once with a signed token, and
then sends chat messages.  Each message is logged, embedded into the
user's memory namespace, answered by a chat-completions backend using the
recent chat history, and the reply is logged, embedded and sent back on
the same connection.  The primary entry points are
``conversation.api.create_app`` for running the service and
``conversation.service.ConversationOrchestrator`` for driving turns
directly from Python code.
"""

from .config import AuthConfig, ChatConfig, ChatLLMConfig
from .service import ConversationOrchestrator, Session, SessionState

__all__ = [
    "AuthConfig",
    "ChatConfig",
    "ChatLLMConfig",
    "ConversationOrchestrator",
    "Session",
    "SessionState",
]
