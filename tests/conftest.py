import hashlib
import time
from typing import Callable, Dict, List, Optional

import pytest

from conversation.auth import SessionAuthenticator, TokenSigner
from conversation.collaborators import InMemoryMessageLog, InMemoryUserDirectory, UserRecord
from conversation.config import AuthConfig, ChatConfig
from conversation.errors import EmbeddingError, EmptyInputError, GenerationError
from conversation.service import ConversationOrchestrator
from memory_store.config import MemoryStoreConfig
from memory_store.store import NamespacedVectorStore

TEST_SECRET = "test-secret-key-123"


def text_vector(text: str, dimension: int = 8) -> List[float]:
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [float(b) + 1.0 for b in digest[:dimension]]


class FakeEmbedder:
    def __init__(self) -> None:
        self.fail = False
        self.delay = 0.0
        self.calls: List[str] = []

    def embed(self, text: str) -> List[float]:
        if self.delay:
            time.sleep(self.delay)
        if not text or not text.strip():
            raise EmptyInputError("cannot embed empty text")
        if self.fail:
            raise EmbeddingError("embedding backend down")
        self.calls.append(text)
        return text_vector(text)


class FakeLLM:
    def __init__(self) -> None:
        self.fail = False
        self.delay = 0.0
        self.hook: Optional[Callable[[], None]] = None
        self.calls: List[List[Dict[str, str]]] = []

    def generate(self, messages, *, model_kwargs=None) -> str:
        self.calls.append(list(messages))
        if self.delay:
            time.sleep(self.delay)
        if self.hook:
            self.hook()
        if self.fail:
            raise GenerationError("quota exceeded")
        return f"echo: {messages[-1]['content']}"


class RecordingConnection:
    def __init__(self) -> None:
        self.sent: List[Dict[str, object]] = []

    async def send_json(self, data) -> None:
        self.sent.append(data)


@pytest.fixture
def signer():
    return TokenSigner(TEST_SECRET)


@pytest.fixture
def users():
    return InMemoryUserDirectory([UserRecord(id="u1", display_name="Asha"), UserRecord(id="u2", display_name="Ben")])


@pytest.fixture
def message_log():
    return InMemoryMessageLog()


@pytest.fixture
def memory_store():
    return NamespacedVectorStore(MemoryStoreConfig(namespace_root="test"))


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def chat_config():
    return ChatConfig(auth=AuthConfig(signing_secret=TEST_SECRET))


@pytest.fixture
def orchestrator(chat_config, signer, users, message_log, memory_store, embedder, llm):
    return ConversationOrchestrator(
        chat_config,
        authenticator=SessionAuthenticator(signer, users),
        message_log=message_log,
        memory_store=memory_store,
        embedder=embedder,
        llm_client=llm,
    )


@pytest.fixture
def connection():
    return RecordingConnection()
