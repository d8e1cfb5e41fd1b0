from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from convoflow.errors import ConflictError, StoreUnavailableError
from convoflow.schemas import Message, MessageRole
from convoflow.services.session_store import SessionStore


def _user(seq: int, text: str = "hi") -> Message:
    return Message(role=MessageRole.USER, content=text, turn_seq=seq)


def _agent(seq: int, text: str = "hello") -> Message:
    return Message(role=MessageRole.AGENT, content=text, turn_seq=seq)


def test_load_missing_session_returns_empty_session(session_factory):
    store = SessionStore(session_factory())

    session = store.load("s-missing")

    assert session.session_id == "s-missing"
    assert session.messages == []
    assert session.context == {}
    assert session.is_new is True
    assert session.next_turn_seq == 1


def test_append_and_persist_round_trip(session_factory):
    store = SessionStore(session_factory())
    store.append_message("s1", _user(1, "where is my order?"))
    store.append_message("s1", _agent(2, "let me check"))
    store.persist("s1")

    reloaded = SessionStore(session_factory()).load("s1")

    assert [m.turn_seq for m in reloaded.messages] == [1, 2]
    assert [m.role for m in reloaded.messages] == [MessageRole.USER, MessageRole.AGENT]
    assert reloaded.messages[0].text == "where is my order?"
    assert reloaded.is_new is False
    assert reloaded.last_activity is not None
    assert reloaded.last_activity.tzinfo is not None


def test_tool_message_content_is_preserved(session_factory):
    store = SessionStore(session_factory())
    store.append_message(
        "s1",
        Message(
            role=MessageRole.TOOL,
            content={"action_id": "act_1", "status": "succeeded", "output": {"ticket_id": "T-1"}},
            turn_seq=1,
        ),
    )
    store.persist("s1")

    msg = SessionStore(session_factory()).load("s1").messages[0]

    assert msg.role == MessageRole.TOOL
    assert msg.content == {"action_id": "act_1", "status": "succeeded", "output": {"ticket_id": "T-1"}}


def test_staged_messages_are_visible_to_load_before_persist(session_factory):
    store = SessionStore(session_factory())
    store.append_message("s1", _user(1))

    session = store.load("s1")

    assert [m.turn_seq for m in session.messages] == [1]
    assert session.is_new is True


def test_duplicate_turn_seq_in_same_turn_conflicts(session_factory):
    store = SessionStore(session_factory())
    store.append_message("s1", _user(1))

    with pytest.raises(ConflictError):
        store.append_message("s1", _agent(1))


def test_duplicate_turn_seq_of_committed_message_conflicts(session_factory):
    first = SessionStore(session_factory())
    first.append_message("s1", _user(1))
    first.persist("s1")

    second = SessionStore(session_factory())
    with pytest.raises(ConflictError) as exc_info:
        second.append_message("s1", _user(1, "again"))
    assert exc_info.value.turn_seq == 1


def test_update_context_merges_shallowly(session_factory):
    store = SessionStore(session_factory())
    store.update_context("s1", {"customer": "c-42", "tier": "gold"})
    store.persist("s1")

    store = SessionStore(session_factory())
    store.update_context("s1", {"tier": "platinum", "locale": "en"})
    store.persist("s1")

    ctx = SessionStore(session_factory()).load("s1").context
    assert ctx == {"customer": "c-42", "tier": "platinum", "locale": "en"}


def test_concurrent_turns_only_one_commits(session_factory):
    a = SessionStore(session_factory())
    b = SessionStore(session_factory())
    assert a.load("s1").next_turn_seq == 1
    assert b.load("s1").next_turn_seq == 1

    a.append_message("s1", _user(1, "from a"))
    a.append_message("s1", _agent(2, "reply a"))
    b.append_message("s1", _user(1, "from b"))
    b.append_message("s1", _agent(2, "reply b"))

    a.persist("s1")
    with pytest.raises(ConflictError):
        b.persist("s1")

    messages = SessionStore(session_factory()).load("s1").messages
    assert [m.text for m in messages] == ["from a", "reply a"]


def test_concurrent_turns_on_existing_session(session_factory):
    seed = SessionStore(session_factory())
    seed.append_message("s1", _user(1))
    seed.append_message("s1", _agent(2))
    seed.persist("s1")

    a = SessionStore(session_factory())
    b = SessionStore(session_factory())
    seq = a.load("s1").next_turn_seq
    assert b.load("s1").next_turn_seq == seq == 3

    a.append_message("s1", _user(3, "a"))
    b.append_message("s1", _user(3, "b"))
    a.persist("s1")
    with pytest.raises(ConflictError):
        b.persist("s1")

    messages = SessionStore(session_factory()).load("s1").messages
    assert [m.turn_seq for m in messages] == [1, 2, 3]
    assert messages[-1].text == "a"


def test_discard_drops_staged_writes(session_factory):
    store = SessionStore(session_factory())
    store.append_message("s1", _user(1))
    store.update_context("s1", {"k": "v"})

    store.discard("s1")

    assert SessionStore(session_factory()).load("s1").is_new is True
    assert store.load("s1").messages == []


def test_persist_maps_database_outage_to_store_unavailable(session_factory, monkeypatch):
    db = session_factory()
    store = SessionStore(db)
    store.append_message("s1", _user(1))

    def _boom():
        raise OperationalError("COMMIT", {}, Exception("connection refused"))

    monkeypatch.setattr(db, "commit", _boom)

    with pytest.raises(StoreUnavailableError):
        store.persist("s1")

    assert SessionStore(session_factory()).load("s1").messages == []


def test_transcript_shape(session_factory):
    store = SessionStore(session_factory())
    store.append_message("s1", _user(1, "q"))
    store.append_message("s1", _agent(2, "a"))
    store.persist("s1")

    transcript = SessionStore(session_factory()).transcript("s1")
    dumped = [entry.model_dump(mode="json") for entry in transcript]

    assert [d["turn_seq"] for d in dumped] == [1, 2]
    assert dumped[0]["role"] == "user"
    assert dumped[0]["content"] == "q"
    assert set(dumped[0]) == {"role", "content", "turn_seq", "created_at"}
