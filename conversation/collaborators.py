"""Message log and user directory interfaces with in-memory implementations."""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Protocol

from .errors import LogAppendError, UserNotFound

ROLES = ("user", "assistant")


@dataclass(frozen=True)
class Turn:
    chat_id: str
    user_id: str
    role: str
    content: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class UserRecord:
    id: str
    display_name: str = ""


class MessageLog(Protocol):
    """Append-only, chat-scoped record of turns."""

    async def append(self, chat_id: str, user_id: str, role: str, content: str) -> Turn: ...
    async def recent_tail(self, chat_id: str, limit: int) -> List[Turn]: ...


class UserDirectory(Protocol):
    async def lookup_by_id(self, user_id: str) -> UserRecord: ...


class InMemoryMessageLog:
    """In-memory message log for dev/tests; safe to share between sessions."""

    def __init__(self) -> None:
        self._chats: Dict[str, List[Turn]] = {}
        self._lock = threading.Lock()

    async def append(self, chat_id: str, user_id: str, role: str, content: str) -> Turn:
        if role not in ROLES:
            raise LogAppendError(f"unknown role '{role}'")
        if not chat_id or not user_id:
            raise LogAppendError("chat_id and user_id are required")
        with self._lock:
            turns = self._chats.setdefault(chat_id, [])
            created_at = datetime.now(timezone.utc)
            if turns and created_at <= turns[-1].created_at:
                created_at = turns[-1].created_at + timedelta(microseconds=1)
            turn = Turn(chat_id=chat_id, user_id=user_id, role=role, content=content, created_at=created_at)
            turns.append(turn)
        return turn

    async def recent_tail(self, chat_id: str, limit: int) -> List[Turn]:
        """Return the last ``limit`` turns of ``chat_id``, oldest first."""
        if limit <= 0:
            return []
        with self._lock:
            return list(self._chats.get(chat_id, [])[-limit:])

    def turns(self, chat_id: str) -> List[Turn]:
        with self._lock:
            return list(self._chats.get(chat_id, []))


class InMemoryUserDirectory:
    def __init__(self, users: Optional[List[UserRecord]] = None) -> None:
        self._users: Dict[str, UserRecord] = {user.id: user for user in users or []}

    def add(self, user: UserRecord) -> UserRecord:
        self._users[user.id] = user
        return user

    def remove(self, user_id: str) -> None:
        self._users.pop(user_id, None)

    async def lookup_by_id(self, user_id: str) -> UserRecord:
        user = self._users.get(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user
