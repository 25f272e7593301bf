"""Per-connection conversation orchestration with memory and graceful degradation.

One :class:`Session` exists per physical connection.  Its lifecycle is

    CONNECTING -> AUTHENTICATED -> IDLE <-> PROCESSING -> CLOSED

and every inbound frame is handled to completion before the next one is
read, so turns on one connection never interleave.  A turn runs:

    (a) persist the user turn          (fatal to the turn on failure)
    (b) embed + upsert the user turn   (best effort)
    (c) query memory                   (best effort)
    (d) assemble context
    (e) generate                       (fallback text on failure)
    (f) persist the assistant turn
    (g) embed + upsert the assistant turn (best effort)
    (h) deliver the reply to the originating connection only
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Type, Union

from pydantic import BaseModel, Field, ValidationError, validator

from memory_store.embedding_client import EmbeddingClient
from memory_store.store import MemoryHit, NamespacedVectorStore

from .auth import SessionAuthenticator
from .collaborators import MessageLog, Turn
from .config import ChatConfig
from .context import ContextAssembler
from .errors import (
    AuthError,
    EmbeddingError,
    GenerationError,
    InvalidCredentialError,
    LogAppendError,
    MemoryStoreError,
)
from .llm_client import ChatLLMClient

logger = logging.getLogger(__name__)

SEND_MESSAGE = "send-message"
SAVE_FAILED_MESSAGE = "Your message could not be saved. Please try again."
INTERNAL_ERROR_MESSAGE = "Something went wrong while processing your message."


class SessionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    IDLE = "idle"
    PROCESSING = "processing"
    CLOSED = "closed"


@dataclass
class Session:
    connection_id: str
    user_id: Optional[str] = None
    display_name: str = ""
    authenticated: bool = False
    state: SessionState = SessionState.CONNECTING
    created_at: float = field(default_factory=time.time)


class SendMessageEvent(BaseModel):
    chat_id: str = Field(..., alias="chatId", description="Chat the message belongs to.")
    content: str = Field(..., description="User message text.")

    @validator("chat_id", "content")
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


class Connection(Protocol):
    """Outbound side of a client connection (a Starlette ``WebSocket`` fits)."""

    async def send_json(self, data: Any) -> None: ...


class ConversationOrchestrator:
    """Sequences authentication, memory, context and generation for each turn."""

    def __init__(
        self,
        config: Optional[ChatConfig] = None,
        *,
        authenticator: SessionAuthenticator,
        message_log: MessageLog,
        memory_store: NamespacedVectorStore,
        embedder: EmbeddingClient,
        llm_client: ChatLLMClient,
        assembler: Optional[ContextAssembler] = None,
    ) -> None:
        self.config = config or ChatConfig()
        self.authenticator = authenticator
        self.message_log = message_log
        self.memory_store = memory_store
        self.embedder = embedder
        self.llm_client = llm_client
        self.assembler = assembler or ContextAssembler(message_log, self.config)
        self.active_sessions: Dict[str, Session] = {}

    # ---------- Session lifecycle ----------
    async def open_session(self, connection_id: Optional[str], credential: Optional[str]) -> Session:
        """Authenticate a new connection and admit it to the active set."""
        session = Session(connection_id=connection_id or uuid.uuid4().hex)
        try:
            user = await self.authenticator.authenticate(credential)
        except AuthError as exc:
            session.state = SessionState.CLOSED
            logger.warning("Rejected connection %s: %s", session.connection_id, exc.reason)
            raise
        except Exception as exc:
            session.state = SessionState.CLOSED
            logger.exception("Authentication failed for connection %s", session.connection_id)
            raise InvalidCredentialError("authentication failed") from exc

        session.user_id = user.user_id
        session.display_name = user.display_name
        session.authenticated = True
        session.state = SessionState.AUTHENTICATED
        logger.info("Connection %s authenticated as user %s", session.connection_id, session.user_id)

        session.state = SessionState.IDLE
        self.active_sessions[session.connection_id] = session
        return session

    def close_session(self, session: Session) -> None:
        if session.state is not SessionState.CLOSED:
            logger.info("Closing connection %s (state=%s)", session.connection_id, session.state.value)
        session.state = SessionState.CLOSED
        self.active_sessions.pop(session.connection_id, None)

    async def run_session(
        self,
        session: Session,
        inbound: "asyncio.Queue[Optional[Union[str, Dict[str, Any]]]]",
        connection: Connection,
    ) -> None:
        """Consume ``inbound`` in order until it yields ``None`` or the session closes."""
        while session.state is not SessionState.CLOSED:
            raw = await inbound.get()
            if raw is None or session.state is SessionState.CLOSED:
                break
            try:
                await self.handle_event(session, raw, connection)
            except Exception:
                logger.exception("Unhandled failure on connection %s", session.connection_id)
                if session.state is SessionState.PROCESSING:
                    session.state = SessionState.IDLE
                await self._deliver(session, connection, {"type": "error", "message": INTERNAL_ERROR_MESSAGE})
        logger.debug("Session worker for %s finished", session.connection_id)

    # ---------- Ingestion ----------
    async def handle_event(
        self,
        session: Session,
        raw: Union[str, bytes, Dict[str, Any]],
        connection: Connection,
    ) -> Optional[str]:
        """Validate one inbound frame and dispatch it."""
        if not session.authenticated:
            logger.warning("Dropping frame on unauthenticated connection %s", session.connection_id)
            return None

        if isinstance(raw, (str, bytes)):
            try:
                payload = json.loads(raw)
            except ValueError:
                logger.warning("Ignoring non-JSON frame on connection %s", session.connection_id)
                return None
        else:
            payload = raw
        if not isinstance(payload, dict):
            logger.warning("Ignoring non-object frame on connection %s", session.connection_id)
            return None

        event_type = payload.get("type", SEND_MESSAGE)
        if event_type == "ping":
            await self._deliver(session, connection, {"type": "pong"})
            return None
        if event_type != SEND_MESSAGE:
            logger.warning("Ignoring unknown event type %r on connection %s", event_type, session.connection_id)
            return None

        try:
            event = SendMessageEvent(**{k: v for k, v in payload.items() if k != "type"})
        except ValidationError as exc:
            logger.warning(
                "Rejected malformed message on connection %s: %d validation error(s)",
                session.connection_id,
                len(exc.errors()),
            )
            return None
        return await self.process_turn(session, event, connection)

    # ---------- Turn pipeline ----------
    async def process_turn(self, session: Session, event: SendMessageEvent, connection: Connection) -> Optional[str]:
        """Run one full turn and return the delivered reply (``None`` if aborted)."""
        if not session.authenticated or session.state is SessionState.CLOSED:
            logger.warning("Refusing turn on connection %s in state %s", session.connection_id, session.state.value)
            return None

        session.state = SessionState.PROCESSING
        start = time.perf_counter()
        try:
            return await self._run_turn(session, event, connection)
        finally:
            if session.state is SessionState.PROCESSING:
                session.state = SessionState.IDLE
            logger.info(
                "Turn on chat %s for user %s finished in %.2f seconds",
                event.chat_id,
                session.user_id,
                time.perf_counter() - start,
            )

    async def _run_turn(self, session: Session, event: SendMessageEvent, connection: Connection) -> Optional[str]:
        chat_id = event.chat_id
        user_id = session.user_id

        try:
            user_turn = await self._append(chat_id, user_id, "user", event.content)
        except LogAppendError as exc:
            logger.error("Failed to persist user turn for chat %s: %s", chat_id, exc)
            await self._deliver(session, connection, {"type": "error", "message": SAVE_FAILED_MESSAGE})
            return None

        user_vector = await self._remember(session, user_turn)
        hits = await self._recall(session, user_vector, exclude_id=user_turn.id)

        try:
            messages = await asyncio.wait_for(
                self.assembler.assemble(chat_id, hits, self.config.window_size, display_name=session.display_name),
                self.config.log_timeout,
            )
        except Exception:
            logger.exception("Context assembly failed for chat %s; using the current message only", chat_id)
            messages = [
                {"role": "system", "content": self.assembler.preamble(session.display_name)},
                {"role": "user", "content": event.content},
            ]

        try:
            reply = await self._call(
                self.llm_client.generate,
                messages,
                timeout=self.config.generation_timeout,
                error=GenerationError,
                model_kwargs=self.config.model_kwargs,
            )
        except GenerationError as exc:
            logger.warning("Generation failed for chat %s, sending fallback: %s", chat_id, exc)
            reply = self.config.fallback_message
        except Exception:
            logger.exception("Generation crashed for chat %s, sending fallback", chat_id)
            reply = self.config.fallback_message

        try:
            assistant_turn: Optional[Turn] = await self._append(chat_id, user_id, "assistant", reply)
        except LogAppendError as exc:
            logger.error("Failed to persist assistant turn for chat %s: %s", chat_id, exc)
            assistant_turn = None

        if assistant_turn is not None:
            await self._remember(session, assistant_turn)

        await self._deliver(session, connection, {"type": "response", "chatId": chat_id, "content": reply})
        return reply

    # ---------- Steps ----------
    async def _append(self, chat_id: str, user_id: str, role: str, content: str) -> Turn:
        try:
            return await asyncio.wait_for(
                self.message_log.append(chat_id, user_id, role, content),
                self.config.log_timeout,
            )
        except LogAppendError:
            raise
        except asyncio.TimeoutError as exc:
            raise LogAppendError(f"message log append timed out after {self.config.log_timeout}s") from exc
        except Exception as exc:
            raise LogAppendError(str(exc) or exc.__class__.__name__) from exc

    async def _remember(self, session: Session, turn: Turn) -> Optional[List[float]]:
        """Embed ``turn`` and upsert it into the user's namespace; return the vector."""
        vector = await self._best_effort(
            f"Embedding of turn {turn.id}",
            self._call(self.embedder.embed, turn.content, timeout=self.config.embedding_timeout, error=EmbeddingError),
        )
        if vector is None:
            return None

        metadata = {"chatId": turn.chat_id, "userId": session.user_id, "role": turn.role, "text": turn.content}
        await self._best_effort(
            f"Memory upsert of turn {turn.id}",
            self._call(
                self.memory_store.upsert,
                session.user_id,
                turn.id,
                vector,
                metadata,
                timeout=self.config.memory_timeout,
                error=MemoryStoreError,
            ),
        )
        return vector

    async def _recall(
        self,
        session: Session,
        vector: Optional[Sequence[float]],
        *,
        exclude_id: Optional[str] = None,
    ) -> List[MemoryHit]:
        if vector is None:
            return []
        top_k = self.config.memory.top_k
        # one extra slot because the turn just upserted is its own best match
        hits = await self._best_effort(
            f"Memory query for user {session.user_id}",
            self._call(
                self.memory_store.query,
                session.user_id,
                vector,
                top_k + 1,
                timeout=self.config.memory_timeout,
                error=MemoryStoreError,
            ),
        )
        return [hit for hit in hits or [] if hit.id != exclude_id][:top_k]

    async def _call(
        self,
        func: Callable[..., Any],
        *args: Any,
        timeout: float,
        error: Type[Exception],
        **kwargs: Any,
    ) -> Any:
        """Run a blocking client call in the threadpool with a bounded timeout."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(functools.partial(func, *args, **kwargs)), timeout)
        except asyncio.TimeoutError as exc:
            raise error(f"{getattr(func, '__name__', 'call')} timed out after {timeout}s") from exc

    @staticmethod
    async def _best_effort(description: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except (EmbeddingError, MemoryStoreError) as exc:
            logger.warning("%s failed: %s", description, exc)
        except Exception:
            logger.exception("%s failed unexpectedly", description)
        return None

    async def _deliver(self, session: Session, connection: Connection, payload: Dict[str, Any]) -> bool:
        if session.state is SessionState.CLOSED:
            logger.info("Discarding %s event for closed connection %s", payload.get("type"), session.connection_id)
            return False
        try:
            await connection.send_json(payload)
        except Exception as exc:
            logger.warning("Failed to deliver %s event to %s: %s", payload.get("type"), session.connection_id, exc)
            return False
        return True
