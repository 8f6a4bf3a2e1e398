"""
SQLite storage for tool servers, protocol sessions, tokens and conversations.
Single portable file. Query with SQL. Export to JSON.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from switchboard.models import (
    Conversation,
    Message,
    OAuthStatus,
    TokenBundle,
    ToolServer,
    message_from_dict,
    message_to_dict,
)
from switchboard.storage.base import SessionStore

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS servers (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    url TEXT NOT NULL,
    headers TEXT NOT NULL DEFAULT '{}',
    enabled BOOLEAN NOT NULL DEFAULT 1,
    oauth_status TEXT NOT NULL DEFAULT 'none',
    oauth_client_id TEXT DEFAULT NULL,
    oauth_client_secret TEXT DEFAULT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS oauth_tokens (
    server_id TEXT PRIMARY KEY,
    tokens TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS mcp_sessions (
    conversation_id TEXT NOT NULL,
    server_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (conversation_id, server_id)
);

CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    model TEXT NOT NULL DEFAULT '',
    server_ids TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    kind TEXT NOT NULL,
    payload TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id)
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id, seq);
"""

MIGRATIONS = [
    "ALTER TABLE servers ADD COLUMN oauth_scope TEXT DEFAULT NULL",
]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteStore(SessionStore):
    """SQLite-backed store. Each call opens its own connection."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
            # Safe to re-run: columns that already exist are skipped
            for migration in MIGRATIONS:
                try:
                    conn.execute(migration)
                except sqlite3.OperationalError as e:
                    if "duplicate column" not in str(e).lower():
                        logger.warning("Migration skipped: %s", e)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Servers
    # ------------------------------------------------------------------

    def add_server(self, server: ToolServer):
        with self._connect() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO servers
                   (id, name, url, headers, enabled, oauth_status,
                    oauth_client_id, oauth_client_secret, oauth_scope, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (server.id, server.name, server.url, json.dumps(server.headers),
                 int(server.enabled), server.oauth_status.value,
                 server.oauth_client_id, server.oauth_client_secret,
                 server.oauth_scope, _now()),
            )
        logger.debug("Stored server %s (%s)", server.id, server.url)

    def _row_to_server(self, row) -> ToolServer:
        return ToolServer(
            id=row["id"],
            name=row["name"],
            url=row["url"],
            headers=json.loads(row["headers"] or "{}"),
            enabled=bool(row["enabled"]),
            oauth_status=OAuthStatus(row["oauth_status"]),
            tokens=self.load_tokens(row["id"]),
            oauth_client_id=row["oauth_client_id"],
            oauth_client_secret=row["oauth_client_secret"],
            oauth_scope=row["oauth_scope"],
        )

    def get_server(self, server_id: str) -> ToolServer | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM servers WHERE id = ?", (server_id,)).fetchone()
        return self._row_to_server(row) if row else None

    def list_servers(self, enabled_only: bool = False) -> list[ToolServer]:
        query = "SELECT * FROM servers"
        if enabled_only:
            query += " WHERE enabled = 1"
        query += " ORDER BY created_at, rowid"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_server(r) for r in rows]

    def remove_server(self, server_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM servers WHERE id = ?", (server_id,))
            conn.execute("DELETE FROM oauth_tokens WHERE server_id = ?", (server_id,))
            conn.execute("DELETE FROM mcp_sessions WHERE server_id = ?", (server_id,))
        return cur.rowcount > 0

    def save_server_status(self, server_id: str, status: OAuthStatus):
        with self._connect() as conn:
            conn.execute(
                "UPDATE servers SET oauth_status = ? WHERE id = ?",
                (status.value, server_id),
            )

    # ------------------------------------------------------------------
    # Tokens and sessions
    # ------------------------------------------------------------------

    def load_tokens(self, server_id: str) -> TokenBundle | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT tokens FROM oauth_tokens WHERE server_id = ?", (server_id,)
            ).fetchone()
        return TokenBundle.from_dict(json.loads(row["tokens"])) if row else None

    def save_tokens(self, server_id: str, bundle: TokenBundle | None):
        with self._connect() as conn:
            if bundle is None:
                conn.execute("DELETE FROM oauth_tokens WHERE server_id = ?", (server_id,))
            else:
                conn.execute(
                    "INSERT OR REPLACE INTO oauth_tokens (server_id, tokens, updated_at) VALUES (?, ?, ?)",
                    (server_id, json.dumps(bundle.to_dict()), _now()),
                )

    def load_session(self, conversation_id: str, server_id: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT session_id FROM mcp_sessions WHERE conversation_id = ? AND server_id = ?",
                (conversation_id, server_id),
            ).fetchone()
        return row["session_id"] if row else None

    def save_session(self, conversation_id: str, server_id: str, session_id: str | None):
        with self._connect() as conn:
            if session_id is None:
                conn.execute(
                    "DELETE FROM mcp_sessions WHERE conversation_id = ? AND server_id = ?",
                    (conversation_id, server_id),
                )
            else:
                conn.execute(
                    """INSERT OR REPLACE INTO mcp_sessions
                       (conversation_id, server_id, session_id, updated_at)
                       VALUES (?, ?, ?, ?)""",
                    (conversation_id, server_id, session_id, _now()),
                )

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def ensure_conversation(self, conv: Conversation):
        """Create or update the conversation record (not its messages)."""
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO conversations (id, title, model, server_ids, created_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       title = excluded.title,
                       model = excluded.model,
                       server_ids = excluded.server_ids""",
                (conv.id, conv.title, conv.model, json.dumps(conv.server_ids), conv.created_at),
            )

    def append_message(self, conversation_id: str, message: Message):
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(seq), -1) + 1 AS next FROM messages WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
            conn.execute(
                """INSERT OR REPLACE INTO messages
                   (id, conversation_id, seq, kind, payload, timestamp)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (message.id, conversation_id, row["next"], message.kind,
                 json.dumps(message_to_dict(message), ensure_ascii=False), message.timestamp),
            )
        logger.debug("Stored %s message %s (conv=%s)", message.kind, message.id, conversation_id)

    def load_conversation(self, conversation_id: str) -> Conversation | None:
        with self._connect() as conn:
            conv = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
            if conv is None:
                return None
            rows = conn.execute(
                "SELECT payload FROM messages WHERE conversation_id = ? ORDER BY seq",
                (conversation_id,),
            ).fetchall()
        return Conversation(
            id=conv["id"],
            title=conv["title"],
            model=conv["model"],
            server_ids=json.loads(conv["server_ids"] or "[]"),
            messages=[message_from_dict(json.loads(r["payload"])) for r in rows],
            created_at=conv["created_at"],
        )

    def get_recent_conversations(self, limit: int = 20) -> list[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT c.id, c.title, c.model, c.created_at,
                          (SELECT COUNT(*) FROM messages m
                           WHERE m.conversation_id = c.id) as message_count
                   FROM conversations c
                   ORDER BY c.created_at DESC
                   LIMIT ?""",
                (limit,),
            ).fetchall()
        return [dict(r) for r in rows]

    def export_all_json(self) -> list[dict]:
        """Export all conversations in OpenAI-compatible wire format."""
        with self._connect() as conn:
            ids = [r["id"] for r in conn.execute(
                "SELECT id FROM conversations ORDER BY created_at"
            ).fetchall()]
        result = []
        for conv_id in ids:
            conv = self.load_conversation(conv_id)
            result.append({
                "conversation_id": conv.id,
                "title": conv.title,
                "model": conv.model,
                "messages": conv.to_wire(),
            })
        return result
