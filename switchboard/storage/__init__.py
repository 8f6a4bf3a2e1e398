from switchboard.storage.base import MemoryStore, SessionStore
from switchboard.storage.sqlite_store import SQLiteStore

__all__ = ["MemoryStore", "SessionStore", "SQLiteStore"]
