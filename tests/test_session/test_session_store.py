import json
from pathlib import Path

import pytest

from burrow.exceptions import SessionNotFoundError
from burrow.session import Message, Role, Session, SessionManager
from burrow.store import SandboxStore
from burrow.tools.registry import ToolCall, ToolStatus


def test_session_round_trip_ignores_streaming_flag():
    session = Session(id="s1", name="Chat")
    session.add_message(Role.USER, "hi")
    call = ToolCall(name="read_file", parameters={"path": "a.md"}, result="x", status=ToolStatus.SUCCESS)
    session.add_message(Role.TOOL, "<result>\nx\n</result>", tool_calls=[call])
    session.add_message(Role.ASSISTANT, "partial", is_streaming=True)

    data = session.to_dict()
    restored = Session.from_dict(json.loads(json.dumps(data)))

    assert "is_streaming" not in data["messages"][2]
    assert "tool_calls" not in data["messages"][0]
    assert restored.messages[2].is_streaming is False
    assert restored.messages[1].tool_calls == [call]
    assert [m.content for m in restored.messages] == ["hi", "<result>\nx\n</result>", "partial"]
    assert restored.to_dict() == data


def test_updated_at_never_decreases():
    session = Session(id="s1", name="Chat", updated_at="2999-01-01T00:00:00+00:00")

    session.add_message(Role.USER, "hi")

    assert session.updated_at == "2999-01-01T00:00:00+00:00"

    fresh = Session(id="s2", name="Chat")
    stamps = []
    for i in range(5):
        fresh.add_message(Role.USER, str(i))
        stamps.append(fresh.updated_at)
    assert stamps == sorted(stamps)


def test_derived_properties_skip_system_messages():
    session = Session(id="s1", name="Chat")
    assert session.preview == "Empty chat"
    assert session.last_message is None

    session.add_message(Role.USER, "x" * 100)
    session.add_message(Role.SYSTEM, "warning")

    assert session.message_count == 1
    assert session.last_message is session.messages[0]
    assert session.preview == "x" * 80


def test_update_last_assistant_message_and_remove():
    session = Session(id="s1", name="Chat")
    first = session.add_message(Role.ASSISTANT, "one")
    session.add_message(Role.USER, "between")

    session.update_last_assistant_message("updated")

    assert first.content == "updated"
    assert session.remove_message(first.id) is True
    assert session.remove_message(first.id) is False
    assert [m.role for m in session.messages] == [Role.USER]


def test_message_from_dict_accepts_plain_role_strings():
    message = Message.from_dict({"id": "m1", "role": "tool", "content": "ok", "timestamp": "2026-10-18T00:00:00+00:00"})

    assert message.role is Role.TOOL
    assert message.tool_calls is None


@pytest.mark.asyncio
async def test_manager_creates_and_loads_session(tmp_path: Path):
    store = SandboxStore(tmp_path)
    manager = SessionManager(store)

    session = await manager.create_session()
    session.add_message(Role.USER, "remember this")
    await manager.save_session(session)

    record = json.loads((tmp_path / "chats" / f"{session.id}.json").read_text(encoding="utf-8"))
    loaded = await manager.load_session(session.id)

    assert record["name"] == "New Chat"
    assert set(record) == {"id", "name", "messages", "created_at", "updated_at", "pinned"}
    assert loaded is not None
    assert loaded.messages[0].content == "remember this"
    assert await manager.load_session("missing") is None


@pytest.mark.asyncio
async def test_list_sessions_orders_by_updated_at_and_skips_bad_files(tmp_path: Path):
    store = SandboxStore(tmp_path)
    manager = SessionManager(store)
    older = Session(id="older", name="Old", updated_at="2026-01-01T00:00:00+00:00")
    newer = Session(id="newer", name="New", updated_at="2026-06-01T00:00:00+00:00")
    await manager.save_session(older)
    await manager.save_session(newer)
    (tmp_path / "chats" / "broken.json").write_text("{not json", encoding="utf-8")

    sessions = await manager.list_sessions()

    assert [s.id for s in sessions] == ["newer", "older"]
    assert [s.id for s in await manager.list_sessions(limit=1)] == ["newer"]


@pytest.mark.asyncio
async def test_get_or_create_session(tmp_path: Path):
    manager = SessionManager(SandboxStore(tmp_path))

    created = await manager.get_or_create_session()
    again = await manager.get_or_create_session()
    named = await manager.get_or_create_session(name="Groceries")

    assert again.id == created.id
    assert named.id != created.id
    assert named.name == "Groceries"


@pytest.mark.asyncio
async def test_rename_pin_and_delete(tmp_path: Path):
    store = SandboxStore(tmp_path)
    manager = SessionManager(store, default_name="Untitled")
    session = await manager.create_session()

    renamed = await manager.rename_session(session.id, "Plans")
    pinned = await manager.set_pinned(session.id, True)

    assert renamed.name == "Plans"
    assert pinned.pinned is True
    assert (await manager.load_session(session.id)).name == "Plans"

    assert await manager.delete_session(session.id) is True
    assert not (tmp_path / "chats" / f"{session.id}.json").exists()
    assert await manager.delete_session(session.id) is False

    with pytest.raises(SessionNotFoundError):
        await manager.rename_session(session.id, "Gone")
