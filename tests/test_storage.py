"""
Tests for SQLite storage.
Uses a temp database for each test.
"""

import pytest

from switchboard.models import (
    AssistantMessage,
    Conversation,
    ElicitationCardMessage,
    OAuthStatus,
    TokenBundle,
    ToolCall,
    ToolResultMessage,
    ToolServer,
    UserMessage,
)
from switchboard.storage.base import MemoryStore
from switchboard.storage.sqlite_store import SQLiteStore


@pytest.fixture
def store(tmp_path):
    """Create a fresh SQLite store for each test."""
    return SQLiteStore(str(tmp_path / "data" / "test.db"))


def test_init_is_idempotent(tmp_path):
    """Opening the same file twice re-runs schema and migrations safely."""
    path = str(tmp_path / "again.db")
    SQLiteStore(path)
    store = SQLiteStore(path)
    assert store.list_servers() == []


# ---------------------------------------------------------------------------
# Servers
# ---------------------------------------------------------------------------

def test_add_and_get_server(store):
    server = ToolServer(
        id="docs", name="Docs", url="https://docs.example/mcp",
        headers={"X-Key": "1"}, oauth_scope="read",
    )
    store.add_server(server)

    loaded = store.get_server("docs")
    assert loaded.url == "https://docs.example/mcp"
    assert loaded.headers == {"X-Key": "1"}
    assert loaded.oauth_status is OAuthStatus.NONE
    assert loaded.oauth_scope == "read"
    assert loaded.tokens is None


def test_list_servers_keeps_registration_order(store):
    for name in ("b", "a", "c"):
        store.add_server(ToolServer(id=name, name=name, url=f"https://{name}.example"))
    store.add_server(ToolServer(id="off", name="off", url="https://off.example", enabled=False))

    assert [s.id for s in store.list_servers()] == ["b", "a", "c", "off"]
    assert [s.id for s in store.list_servers(enabled_only=True)] == ["b", "a", "c"]


def test_remove_server_drops_tokens_and_sessions(store):
    store.add_server(ToolServer(id="s1", name="s1", url="https://s1.example"))
    store.save_tokens("s1", TokenBundle(access_token="a"))
    store.save_session("conv1", "s1", "sess")

    assert store.remove_server("s1")
    assert store.get_server("s1") is None
    assert store.load_tokens("s1") is None
    assert store.load_session("conv1", "s1") is None
    assert not store.remove_server("s1")


def test_server_status(store):
    store.add_server(ToolServer(id="s1", name="s1", url="https://s1.example"))
    store.save_server_status("s1", OAuthStatus.REQUIRED)
    assert store.get_server("s1").oauth_status is OAuthStatus.REQUIRED


# ---------------------------------------------------------------------------
# Tokens and sessions
# ---------------------------------------------------------------------------

def test_tokens_round_trip(store):
    bundle = TokenBundle(access_token="a", refresh_token="r", expires_at=123.0, scope="read")
    store.save_tokens("s1", bundle)
    assert store.load_tokens("s1") == bundle

    store.save_tokens("s1", None)
    assert store.load_tokens("s1") is None


def test_sessions_are_per_conversation(store):
    """A session id belongs to one (conversation, server) pair."""
    store.save_session("conv1", "s1", "sess-a")
    store.save_session("conv2", "s1", "sess-b")

    assert store.load_session("conv1", "s1") == "sess-a"
    assert store.load_session("conv2", "s1") == "sess-b"

    store.save_session("conv1", "s1", None)
    assert store.load_session("conv1", "s1") is None
    assert store.load_session("conv2", "s1") == "sess-b"


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

def test_conversation_round_trip(store):
    """Messages come back in order with their variants intact."""
    conv = Conversation(title="demo", model="x/y", server_ids=["s1"])
    store.ensure_conversation(conv)

    msgs = [
        UserMessage(content="hi"),
        AssistantMessage(tool_calls=[ToolCall(id="c1", name="search", arguments='{"q": "a"}')]),
        ToolResultMessage(tool_call_id="c1", tool_name="search", content="found"),
        ElicitationCardMessage(server_id="s1", request_id="9", prompt="Name?", action="decline"),
        AssistantMessage(content="done"),
    ]
    for m in msgs:
        store.append_message(conv.id, m)

    loaded = store.load_conversation(conv.id)
    assert loaded.title == "demo"
    assert loaded.server_ids == ["s1"]
    assert [m.kind for m in loaded.messages] == ["user", "assistant", "tool", "elicitation", "assistant"]
    assert loaded.messages[1].tool_calls[0].arguments == '{"q": "a"}'
    assert loaded.to_wire()[-1] == {"role": "assistant", "content": "done"}


def test_load_missing_conversation(store):
    assert store.load_conversation("nope") is None


def test_recent_conversations_count_messages(store):
    conv = Conversation(title="one")
    store.ensure_conversation(conv)
    store.append_message(conv.id, UserMessage(content="a"))
    store.append_message(conv.id, AssistantMessage(content="b"))

    (row,) = store.get_recent_conversations()
    assert row["id"] == conv.id
    assert row["message_count"] == 2


def test_export_uses_wire_format(store):
    """Local-only messages are left out of the export."""
    conv = Conversation(model="m")
    store.ensure_conversation(conv)
    store.append_message(conv.id, UserMessage(content="a"))
    store.append_message(conv.id, ElicitationCardMessage(prompt="x", action="accept"))

    (exported,) = store.export_all_json()
    assert exported["conversation_id"] == conv.id
    assert exported["messages"] == [{"role": "user", "content": "a"}]


# ---------------------------------------------------------------------------
# Memory store
# ---------------------------------------------------------------------------

def test_memory_store_contract():
    store = MemoryStore()
    store.save_session("c", "s", "sess")
    assert store.load_session("c", "s") == "sess"
    store.save_session("c", "s", None)
    assert store.load_session("c", "s") is None

    store.save_tokens("s", TokenBundle(access_token="a"))
    assert store.load_tokens("s").access_token == "a"
    store.save_server_status("s", OAuthStatus.AUTHENTICATED)
    assert store.statuses["s"] is OAuthStatus.AUTHENTICATED
