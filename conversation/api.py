"""FastAPI entry point exposing the conversation orchestrator over WebSocket."""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, FastAPI, WebSocket

from memory_store.embedding_client import EmbeddingClient
from memory_store.store import NamespacedVectorStore

from .auth import SessionAuthenticator, TokenSigner
from .collaborators import InMemoryMessageLog, InMemoryUserDirectory, MessageLog, UserDirectory
from .config import ChatConfig
from .errors import AuthError
from .llm_client import ChatLLMClient
from .service import ConversationOrchestrator
from .utils import setup_logging

logger = logging.getLogger(__name__)

AUTH_CLOSE_CODE = 4003

router = APIRouter()


def extract_credential(websocket: WebSocket, cookie_name: str = "token") -> Optional[str]:
    """Find the signed token in the handshake: cookie, bearer header, then query string."""
    token = websocket.cookies.get(cookie_name)
    if token:
        return token
    authorization = websocket.headers.get("authorization", "")
    if authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip() or None
    return websocket.query_params.get("token") or None


def enqueue_frame(inbound: "asyncio.Queue[Optional[str]]", data: str, connection_id: str) -> bool:
    """Queue one inbound frame; frames beyond the queue limit are dropped."""
    try:
        inbound.put_nowait(data)
    except asyncio.QueueFull:
        logger.warning("Dropping frame on connection %s: %d message(s) already pending", connection_id, inbound.qsize())
        return False
    return True


def origin_allowed(origin: Optional[str], allowed: List[str]) -> bool:
    return not allowed or not origin or origin in allowed


@router.websocket("/ws/chat")
async def chat_socket(websocket: WebSocket) -> None:
    orchestrator: ConversationOrchestrator = websocket.app.state.orchestrator
    auth_config = orchestrator.config.auth
    connection_id = uuid.uuid4().hex

    await websocket.accept()

    origin = websocket.headers.get("origin")
    if not origin_allowed(origin, auth_config.allowed_origins):
        logger.warning("Rejected connection %s from origin %s", connection_id, origin)
        await websocket.close(code=AUTH_CLOSE_CODE, reason="origin not allowed")
        return

    try:
        session = await orchestrator.open_session(
            connection_id, extract_credential(websocket, auth_config.cookie_name)
        )
    except AuthError as exc:
        await websocket.close(code=AUTH_CLOSE_CODE, reason=exc.reason)
        return

    inbound: "asyncio.Queue[Optional[str]]" = asyncio.Queue(maxsize=orchestrator.config.max_pending_messages)
    worker = asyncio.create_task(orchestrator.run_session(session, inbound, websocket))
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info("Connection %s disconnected (code=%s)", connection_id, message.get("code"))
                break
            data = message.get("text")
            if data is None and message.get("bytes") is not None:
                data = message["bytes"].decode("utf-8", errors="replace")
            if data is not None:
                enqueue_frame(inbound, data, connection_id)
    finally:
        orchestrator.close_session(session)
        try:
            inbound.put_nowait(None)
        except asyncio.QueueFull:
            # the worker stops on its next frame because the session is closed
            logger.debug("Queue full while closing connection %s", connection_id)
        await worker


def build_orchestrator(
    config: ChatConfig,
    *,
    users: Optional[UserDirectory] = None,
    message_log: Optional[MessageLog] = None,
    memory_store: Optional[NamespacedVectorStore] = None,
) -> ConversationOrchestrator:
    """Wire the default clients and collaborators for ``config``."""
    authenticator = SessionAuthenticator(TokenSigner(config.auth.signing_secret), users or InMemoryUserDirectory())
    return ConversationOrchestrator(
        config,
        authenticator=authenticator,
        message_log=message_log or InMemoryMessageLog(),
        memory_store=memory_store or NamespacedVectorStore(config.memory),
        embedder=EmbeddingClient(config.embedding),
        llm_client=ChatLLMClient(config.llm),
    )


def create_app(
    chat_config: Optional[ChatConfig] = None,
    *,
    orchestrator: Optional[ConversationOrchestrator] = None,
    users: Optional[UserDirectory] = None,
    log_dir: Optional[str] = None,
) -> FastAPI:
    if log_dir:
        setup_logging(log_dir, logging.INFO)

    if orchestrator is None:
        orchestrator = build_orchestrator(chat_config or ChatConfig.from_env(), users=users)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.orchestrator.memory_store.load()
        yield
        app.state.orchestrator.memory_store.save()

    app = FastAPI(title="Conversation Orchestrator", version="0.1.0", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.include_router(router)

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    return app
