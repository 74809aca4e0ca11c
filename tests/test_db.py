import sqlite3
from pathlib import Path

import pytest

from workchat.db import Database
from workchat.schemas import UserIdentity


@pytest.mark.asyncio
async def test_db_init_creates_tables(tmp_path: Path):
    db = Database(str(tmp_path / "schema.db"))
    await db.init()
    await db.init()
    rows = await db.fetchall("SELECT name FROM sqlite_master WHERE type='table'")
    tables = {row["name"] for row in rows}
    assert {"users", "agents", "chats", "messages", "tool_calls", "documents", "projects", "tickets", "leave_requests"}.issubset(tables)


@pytest.mark.asyncio
async def test_ensure_user_keeps_known_fields(db):
    await db.ensure_user(UserIdentity(id="u1", email="sam@example.com", name="Sam"))
    row = await db.ensure_user(UserIdentity(id="u1", department="Engineering"))
    assert row["email"] == "sam@example.com"
    assert row["department"] == "Engineering"


@pytest.mark.asyncio
async def test_agent_round_trip_and_active_filter(db):
    agent = await db.upsert_agent(
        {"id": "a1", "name": "IT Helpdesk", "department": "IT", "system_prompt": "Help", "allowed_tools": ["raise_ticket"]}
    )
    assert agent.allowed_tools == ["raise_ticket"]
    assert agent.mode == "hybrid"
    await db.upsert_agent({"id": "a2", "name": "Retired", "is_active": False})
    assert [a.id for a in await db.list_agents()] == ["a1"]
    assert {a.id for a in await db.list_agents(active_only=False)} == {"a1", "a2"}
    updated = await db.upsert_agent({"id": "a1", "name": "IT Desk", "mode": "tools"})
    assert updated.name == "IT Desk"
    assert updated.mode == "tools"


@pytest.mark.asyncio
async def test_chat_ownership(db):
    chat = await db.create_or_get_chat(None, "u1", title="VPN issue")
    again = await db.create_or_get_chat(chat["id"], "u1")
    assert again["title"] == "VPN issue"
    with pytest.raises(PermissionError):
        await db.create_or_get_chat(chat["id"], "u2")
    fresh = await db.create_or_get_chat("client-chosen", "u2")
    assert fresh["id"] == "client-chosen"
    assert fresh["title"] == "New chat"


@pytest.mark.asyncio
async def test_messages_with_tool_calls_listed_in_order(db):
    chat = await db.create_or_get_chat(None, "u1")
    await db.save_user_message(chat["id"], "look at this", ["https://img.test/a.png"])
    message_id = await db.save_assistant_message(
        chat["id"],
        "Done.",
        images=[{"type": "image", "url": "/media/x.png"}],
        tool_calls=[
            {"id": "fc_1", "call_id": "call_1", "name": "search_tickets", "arguments": "{}", "status": "completed", "result": "[]"},
        ],
        model="small-model",
        response_id="resp_1",
    )
    messages = await db.list_messages(chat["id"])
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert messages[0]["message_type"] == "mixed"
    assert messages[0]["attachments"][0]["url"] == "https://img.test/a.png"
    assistant = messages[1]
    assert assistant["id"] == message_id
    assert assistant["message_type"] == "mixed"
    assert assistant["response_id"] == "resp_1"
    assert assistant["tool_calls"][0]["call_id"] == "call_1"


@pytest.mark.asyncio
async def test_assistant_message_rolls_back_with_bad_tool_call(db):
    chat = await db.create_or_get_chat(None, "u1")
    with pytest.raises(sqlite3.Error):
        await db.save_assistant_message(
            chat["id"],
            "partial",
            tool_calls=[{"id": "fc_1", "call_id": "call_1", "name": "x", "arguments": {"not": "bindable"}}],
        )
    assert await db.list_messages(chat["id"]) == []
    assert await db.fetchall("SELECT * FROM tool_calls") == []


@pytest.mark.asyncio
async def test_search_documents_ranks_by_term_hits(db):
    await db.add_document("Short", "vpn once", agent_id="a1")
    await db.add_document("Long", "vpn vpn vpn reset guide", agent_id="a1")
    await db.add_document("Unrelated", "printer toner", agent_id="a1")
    results = await db.search_documents("VPN reset", agent_id="a1")
    assert [r["name"] for r in results] == ["Long", "Short"]
    assert results[0]["score"] == 4
    assert await db.search_documents("a b", agent_id="a1") == []


@pytest.mark.asyncio
async def test_ticket_search_filters(db):
    await db.add_ticket("T-1", "IT", "Printer", "Jammed", "high", "sam@example.com", submitted=False)
    await db.add_ticket("T-2", "HR", "Payroll", "Wrong", "low", "sam@example.com", submitted=True)
    assert [t["id"] for t in await db.search_tickets(priority="low")] == ["T-2"]
    assert len(await db.search_tickets(status="open")) == 2


@pytest.mark.asyncio
async def test_upsert_agent_raises_when_row_cannot_be_read_back(db, monkeypatch):
    async def missing(agent_id):
        return None

    monkeypatch.setattr(db, "get_agent", missing)
    with pytest.raises(LookupError, match="ghost"):
        await db.upsert_agent({"id": "ghost", "name": "Ghost", "system_prompt": "x"})
