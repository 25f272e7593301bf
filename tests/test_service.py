import asyncio
import json
import time

import pytest

from conversation.auth import SessionAuthenticator
from conversation.collaborators import InMemoryMessageLog
from conversation.config import FALLBACK_MESSAGE
from conversation.errors import AuthError, LogAppendError, MemoryStoreError, MissingCredentialError
from conversation.service import (
    SAVE_FAILED_MESSAGE,
    ConversationOrchestrator,
    SendMessageEvent,
    Session,
    SessionState,
)


def _send(chat_id, content):
    return json.dumps({"type": "send-message", "chatId": chat_id, "content": content})


def _run_frames(orchestrator, token, frames, connection):
    async def run():
        session = await orchestrator.open_session("conn-1", token)
        inbound = asyncio.Queue()
        for frame in frames:
            inbound.put_nowait(frame)
        inbound.put_nowait(None)
        await orchestrator.run_session(session, inbound, connection)
        return session

    return asyncio.run(run())


def test_single_turn_logs_both_sides_and_replies_once(orchestrator, signer, message_log, memory_store, connection):
    session = _run_frames(orchestrator, signer.issue({"sub": "u1"}), [_send("c1", "hello")], connection)

    turns = message_log.turns("c1")
    assert [(t.role, t.content, t.user_id) for t in turns] == [
        ("user", "hello", "u1"),
        ("assistant", "echo: hello", "u1"),
    ]
    assert connection.sent == [{"type": "response", "chatId": "c1", "content": "echo: hello"}]
    assert memory_store.count("u1") == 2
    assert session.state is SessionState.IDLE


def test_context_sent_to_backend_has_preamble_and_history(orchestrator, signer, llm, connection):
    _run_frames(orchestrator, signer.issue({"sub": "u1"}), [_send("c1", "one"), _send("c1", "two")], connection)

    second_call = llm.calls[1]
    assert second_call[0]["role"] == "system"
    assert '"Asha"' in second_call[0]["content"]
    assert [(m["role"], m["content"]) for m in second_call[1:]] == [
        ("user", "one"),
        ("assistant", "echo: one"),
        ("user", "two"),
    ]


def test_back_to_back_messages_keep_send_order(orchestrator, signer, message_log, llm, connection):
    llm.delay = 0.05
    frames = [_send("c1", "first"), json.dumps({"chatId": "c1", "content": "second"})]

    _run_frames(orchestrator, signer.issue({"sub": "u1"}), frames, connection)

    assert [(t.role, t.content) for t in message_log.turns("c1")] == [
        ("user", "first"),
        ("assistant", "echo: first"),
        ("user", "second"),
        ("assistant", "echo: second"),
    ]
    assert [event["content"] for event in connection.sent] == ["echo: first", "echo: second"]


def test_generation_failure_sends_fallback_and_still_logs(orchestrator, signer, message_log, memory_store, llm, connection):
    llm.fail = True
    _run_frames(orchestrator, signer.issue({"sub": "u1"}), [_send("c1", "a"), _send("c1", "b")], connection)

    assert connection.sent == [
        {"type": "response", "chatId": "c1", "content": FALLBACK_MESSAGE},
        {"type": "response", "chatId": "c1", "content": FALLBACK_MESSAGE},
    ]
    assert [(t.role, t.content) for t in message_log.turns("c1")] == [
        ("user", "a"),
        ("assistant", FALLBACK_MESSAGE),
        ("user", "b"),
        ("assistant", FALLBACK_MESSAGE),
    ]
    assert memory_store.count("u1") == 4


def test_generation_timeout_is_treated_as_failure(orchestrator, chat_config, signer, llm, connection):
    chat_config.generation_timeout = 0.05
    llm.delay = 0.3
    _run_frames(orchestrator, signer.issue({"sub": "u1"}), [_send("c1", "slow")], connection)
    assert connection.sent == [{"type": "response", "chatId": "c1", "content": FALLBACK_MESSAGE}]


def test_embedding_failure_skips_memory_only(orchestrator, signer, message_log, memory_store, embedder, connection):
    embedder.fail = True
    _run_frames(orchestrator, signer.issue({"sub": "u1"}), [_send("c1", "hello")], connection)

    assert connection.sent == [{"type": "response", "chatId": "c1", "content": "echo: hello"}]
    assert len(message_log.turns("c1")) == 2
    assert memory_store.count("u1") == 0


def test_memory_store_failure_is_not_fatal(orchestrator, signer, memory_store, connection):
    def broken(*args, **kwargs):
        raise MemoryStoreError("index unavailable")

    memory_store.upsert = broken
    memory_store.query = broken
    _run_frames(orchestrator, signer.issue({"sub": "u1"}), [_send("c1", "hello")], connection)

    assert connection.sent == [{"type": "response", "chatId": "c1", "content": "echo: hello"}]


def test_user_turn_write_failure_aborts_turn_but_not_connection(
    chat_config, signer, users, memory_store, embedder, llm, connection
):
    class FlakyLog(InMemoryMessageLog):
        def __init__(self):
            super().__init__()
            self.failures = 1

        async def append(self, chat_id, user_id, role, content):
            if self.failures:
                self.failures -= 1
                raise LogAppendError("database unavailable")
            return await super().append(chat_id, user_id, role, content)

    log = FlakyLog()
    orchestrator = ConversationOrchestrator(
        chat_config,
        authenticator=SessionAuthenticator(signer, users),
        message_log=log,
        memory_store=memory_store,
        embedder=embedder,
        llm_client=llm,
    )

    session = _run_frames(orchestrator, signer.issue({"sub": "u1"}), [_send("c1", "lost"), _send("c1", "kept")], connection)

    assert connection.sent == [
        {"type": "error", "message": SAVE_FAILED_MESSAGE},
        {"type": "response", "chatId": "c1", "content": "echo: kept"},
    ]
    assert len(llm.calls) == 1
    assert [t.content for t in log.turns("c1")] == ["kept", "echo: kept"]
    assert session.state is SessionState.IDLE


def test_malformed_payloads_are_ignored(orchestrator, signer, message_log, llm, connection):
    frames = [
        "not json",
        json.dumps(["a", "list"]),
        json.dumps({"type": "send-message", "content": "no chat"}),
        json.dumps({"type": "send-message", "chatId": "c1", "content": "   "}),
        json.dumps({"type": "send-message", "chatId": 42, "content": "wrong type"}),
        json.dumps({"type": "rename-chat", "chatId": "c1"}),
        _send("c1", "valid"),
    ]
    session = _run_frames(orchestrator, signer.issue({"sub": "u1"}), frames, connection)

    assert len(llm.calls) == 1
    assert [t.content for t in message_log.turns("c1")] == ["valid", "echo: valid"]
    assert connection.sent == [{"type": "response", "chatId": "c1", "content": "echo: valid"}]
    assert session.state is SessionState.IDLE


def test_ping_gets_pong_without_a_turn(orchestrator, signer, message_log, connection):
    _run_frames(orchestrator, signer.issue({"sub": "u1"}), [json.dumps({"type": "ping"})], connection)
    assert connection.sent == [{"type": "pong"}]
    assert message_log.turns("c1") == []


def test_invalid_credentials_never_reach_the_log(orchestrator, signer, message_log):
    async def run(token):
        await orchestrator.open_session("conn-x", token)

    with pytest.raises(MissingCredentialError):
        asyncio.run(run(None))
    with pytest.raises(AuthError):
        asyncio.run(run(signer.issue({"sub": "u1"}, expires_in=-5)))
    assert orchestrator.active_sessions == {}
    assert message_log.turns("c1") == []


def test_unauthenticated_session_cannot_process_turns(orchestrator, message_log, connection):
    session = Session(connection_id="raw")
    event = SendMessageEvent(chatId="c1", content="sneaky")

    assert asyncio.run(orchestrator.process_turn(session, event, connection)) is None
    assert asyncio.run(orchestrator.handle_event(session, _send("c1", "sneaky"), connection)) is None
    assert message_log.turns("c1") == []
    assert connection.sent == []


def test_disconnect_mid_turn_discards_reply(orchestrator, signer, message_log, llm, connection):
    async def run():
        session = await orchestrator.open_session("conn-1", signer.issue({"sub": "u1"}))
        llm.hook = lambda: orchestrator.close_session(session)
        inbound = asyncio.Queue()
        inbound.put_nowait(_send("c1", "bye"))
        inbound.put_nowait(_send("c1", "never processed"))
        await orchestrator.run_session(session, inbound, connection)
        return session

    session = asyncio.run(run())

    assert connection.sent == []
    assert session.state is SessionState.CLOSED
    assert "conn-1" not in orchestrator.active_sessions
    assert [t.content for t in message_log.turns("c1")] == ["bye", "echo: bye"]


def test_memory_is_written_under_the_session_user(orchestrator, signer, memory_store, connection):
    _run_frames(orchestrator, signer.issue({"sub": "u2"}), [_send("c9", "ben's note")], connection)

    assert memory_store.count("u1") == 0
    assert memory_store.count("u2") == 2
    hits = memory_store.query("u2", [1.0] * 8, top_k=5)
    assert {hit.metadata["userId"] for hit in hits} == {"u2"}
    assert {hit.metadata["chatId"] for hit in hits} == {"c9"}


def test_current_turn_is_excluded_from_recalled_memory(orchestrator, signer, message_log, connection):
    captured = []
    original = orchestrator.assembler.assemble

    async def spy(chat_id, hits, window_size=20, **kwargs):
        captured.append([hit.id for hit in hits])
        return await original(chat_id, hits, window_size, **kwargs)

    orchestrator.assembler.assemble = spy
    _run_frames(orchestrator, signer.issue({"sub": "u1"}), [_send("c1", "first"), _send("c1", "second")], connection)

    first_user, first_reply, second_user, _ = message_log.turns("c1")
    assert captured[0] == []
    assert second_user.id not in captured[1]
    assert set(captured[1]) == {first_user.id, first_reply.id}


def test_unexpected_failure_reports_error_and_keeps_session(orchestrator, signer, connection):
    calls = {"count": 0}

    async def exploding_process_turn(session, event, conn):
        calls["count"] += 1
        raise RuntimeError("boom")

    orchestrator.process_turn = exploding_process_turn
    session = _run_frames(orchestrator, signer.issue({"sub": "u1"}), [_send("c1", "x"), _send("c1", "y")], connection)

    assert calls["count"] == 2
    assert [event["type"] for event in connection.sent] == ["error", "error"]
    assert session.state is SessionState.IDLE


def test_embedding_timeout_skips_memory_only(orchestrator, chat_config, signer, message_log, memory_store, embedder, connection):
    chat_config.embedding_timeout = 0.05
    embedder.delay = 0.3
    _run_frames(orchestrator, signer.issue({"sub": "u1"}), [_send("c1", "hi")], connection)

    assert connection.sent == [{"type": "response", "chatId": "c1", "content": "echo: hi"}]
    assert [t.content for t in message_log.turns("c1")] == ["hi", "echo: hi"]
    assert memory_store.count("u1") == 0


def test_memory_timeout_is_not_fatal(orchestrator, chat_config, signer, message_log, memory_store, connection):
    chat_config.memory_timeout = 0.05

    def slow(*args, **kwargs):
        time.sleep(0.3)
        return []

    memory_store.upsert = slow
    memory_store.query = slow
    _run_frames(orchestrator, signer.issue({"sub": "u1"}), [_send("c1", "hi")], connection)

    assert connection.sent == [{"type": "response", "chatId": "c1", "content": "echo: hi"}]
    assert [t.content for t in message_log.turns("c1")] == ["hi", "echo: hi"]


def test_user_turn_write_timeout_aborts_turn(orchestrator, chat_config, signer, message_log, llm, connection):
    chat_config.log_timeout = 0.05
    original = message_log.append

    async def slow_append(chat_id, user_id, role, content):
        await asyncio.sleep(0.3)
        return await original(chat_id, user_id, role, content)

    message_log.append = slow_append
    session = _run_frames(orchestrator, signer.issue({"sub": "u1"}), [_send("c1", "hi")], connection)

    assert connection.sent == [{"type": "error", "message": SAVE_FAILED_MESSAGE}]
    assert llm.calls == []
    assert message_log.turns("c1") == []
    assert session.state is SessionState.IDLE
