"""
Pending server-initiated requests (sampling and elicitation).

Each request is keyed by "<server_id>:<request_id>" and resolves exactly
once. The UI (or any other resolver) answers through the table; whoever
awaits the request is woken with the value or the exception.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from switchboard.errors import DoubleResolutionError

logger = logging.getLogger(__name__)


def pending_key(server_id: str, request_id) -> str:
    return f"{server_id}:{request_id}"


@dataclass
class PendingRequest:
    key: str
    kind: str  # "sampling" | "elicitation"
    payload: dict = field(default_factory=dict)
    future: asyncio.Future = field(default=None)
    consumed: bool = False

    def __post_init__(self):
        if self.future is None:
            self.future = asyncio.get_running_loop().create_future()

    def resolve(self, value):
        if self.consumed:
            raise DoubleResolutionError(f"Pending request {self.key} already resolved")
        self.consumed = True
        if not self.future.done():
            self.future.set_result(value)

    def reject(self, exc: BaseException):
        if self.consumed:
            raise DoubleResolutionError(f"Pending request {self.key} already resolved")
        self.consumed = True
        if not self.future.done():
            self.future.set_exception(exc)

    async def wait(self):
        return await self.future


class PendingRequestTable:
    """Live pending requests for one chat session."""

    def __init__(self):
        self._items: dict[str, PendingRequest] = {}

    def open(self, key: str, kind: str, payload: dict | None = None) -> PendingRequest:
        existing = self._items.get(key)
        if existing is not None and not existing.consumed:
            raise DoubleResolutionError(f"Pending request {key} is already open")
        pending = PendingRequest(key=key, kind=kind, payload=payload or {})
        self._items[key] = pending
        logger.debug("Opened pending %s request %s", kind, key)
        return pending

    def get(self, key: str) -> PendingRequest | None:
        return self._items.get(key)

    def resolve(self, key: str, value):
        pending = self._items.get(key)
        if pending is None:
            raise KeyError(f"No pending request {key}")
        pending.resolve(value)

    def reject(self, key: str, exc: BaseException):
        pending = self._items.get(key)
        if pending is None:
            raise KeyError(f"No pending request {key}")
        pending.reject(exc)

    def discard(self, key: str):
        self._items.pop(key, None)

    def open_requests(self, kind: str | None = None) -> list[PendingRequest]:
        return [
            p for p in self._items.values()
            if not p.consumed and (kind is None or p.kind == kind)
        ]

    def __len__(self) -> int:
        return len(self._items)
