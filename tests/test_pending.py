"""
Tests for the pending-request table used by sampling and elicitation.
"""

import asyncio

import pytest

from switchboard.errors import DoubleResolutionError, UserRejectedError
from switchboard.mcp.pending import PendingRequestTable, pending_key


def test_pending_key_format():
    assert pending_key("docs", 7) == "docs:7"


@pytest.mark.asyncio
async def test_resolve_wakes_waiter():
    table = PendingRequestTable()
    pending = table.open("s:1", "sampling", {"x": 1})

    waiter = asyncio.create_task(pending.wait())
    await asyncio.sleep(0)
    table.resolve("s:1", "approved")

    assert await waiter == "approved"
    assert table.open_requests() == []


@pytest.mark.asyncio
async def test_second_resolution_is_rejected():
    """A request resolves exactly once."""
    table = PendingRequestTable()
    table.open("s:1", "elicitation")
    table.resolve("s:1", {"action": "accept"})

    with pytest.raises(DoubleResolutionError):
        table.resolve("s:1", {"action": "decline"})
    with pytest.raises(DoubleResolutionError):
        table.reject("s:1", UserRejectedError("late"))


@pytest.mark.asyncio
async def test_reject_raises_in_waiter():
    table = PendingRequestTable()
    pending = table.open("s:2", "sampling")
    table.reject("s:2", UserRejectedError("no"))
    with pytest.raises(UserRejectedError):
        await pending.wait()


@pytest.mark.asyncio
async def test_open_twice_while_live_fails():
    table = PendingRequestTable()
    table.open("s:3", "sampling")
    with pytest.raises(DoubleResolutionError):
        table.open("s:3", "sampling")


@pytest.mark.asyncio
async def test_unknown_key_and_kind_filter():
    table = PendingRequestTable()
    table.open("a:1", "sampling")
    table.open("a:2", "elicitation")

    assert [p.key for p in table.open_requests("elicitation")] == ["a:2"]
    assert len(table) == 2

    with pytest.raises(KeyError):
        table.resolve("missing", None)

    table.discard("a:1")
    assert table.get("a:1") is None
