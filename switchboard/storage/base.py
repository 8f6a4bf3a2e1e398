"""
Persistence contract used by the engine.

The engine only ever reads and writes session ids and token state through
this interface. MemoryStore is the zero-config implementation; SQLiteStore
(sqlite_store.py) is the durable one.
"""

from __future__ import annotations

import abc

from switchboard.models import OAuthStatus, TokenBundle


class SessionStore(abc.ABC):

    @abc.abstractmethod
    def load_session(self, conversation_id: str, server_id: str) -> str | None:
        ...

    @abc.abstractmethod
    def save_session(self, conversation_id: str, server_id: str, session_id: str | None):
        ...

    @abc.abstractmethod
    def load_tokens(self, server_id: str) -> TokenBundle | None:
        ...

    @abc.abstractmethod
    def save_tokens(self, server_id: str, bundle: TokenBundle | None):
        ...

    @abc.abstractmethod
    def save_server_status(self, server_id: str, status: OAuthStatus):
        ...


class MemoryStore(SessionStore):
    """Dict-backed store. Nothing survives the process."""

    def __init__(self):
        self.sessions: dict[tuple[str, str], str] = {}
        self.tokens: dict[str, dict] = {}
        self.statuses: dict[str, OAuthStatus] = {}

    def load_session(self, conversation_id, server_id):
        return self.sessions.get((conversation_id, server_id))

    def save_session(self, conversation_id, server_id, session_id):
        if session_id is None:
            self.sessions.pop((conversation_id, server_id), None)
        else:
            self.sessions[(conversation_id, server_id)] = session_id

    def load_tokens(self, server_id):
        data = self.tokens.get(server_id)
        return TokenBundle.from_dict(data) if data else None

    def save_tokens(self, server_id, bundle):
        if bundle is None:
            self.tokens.pop(server_id, None)
        else:
            self.tokens[server_id] = bundle.to_dict()

    def save_server_status(self, server_id, status):
        self.statuses[server_id] = status
