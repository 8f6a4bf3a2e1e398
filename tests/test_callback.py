"""
Tests for the loopback OAuth redirect receiver.
"""

from unittest.mock import AsyncMock, MagicMock

from fastapi.testclient import TestClient

from switchboard.auth.callback import create_callback_app
from switchboard.errors import OAuthError
from switchboard.models import ToolServer


def make_client(handle_callback):
    manager = MagicMock()
    manager.handle_callback = handle_callback
    return TestClient(create_callback_app(manager)), manager


def test_successful_callback_passes_query_params():
    server = ToolServer(id="files", name="Files", url="https://tools.example/mcp")
    client, manager = make_client(AsyncMock(return_value=server))

    resp = client.get("/oauth/callback", params={"code": "abc", "state": "xyz"})

    assert resp.status_code == 200
    assert "authorized for Files" in resp.text
    manager.handle_callback.assert_awaited_once_with({"code": "abc", "state": "xyz"})


def test_failed_callback_is_400_and_escaped():
    client, _ = make_client(AsyncMock(side_effect=OAuthError("<denied>", code="access_denied")))

    resp = client.get("/oauth/callback", params={"error": "access_denied", "state": "xyz"})

    assert resp.status_code == 400
    assert "Authorization failed" in resp.text
    assert "&lt;denied&gt;" in resp.text


def test_health():
    client, _ = make_client(AsyncMock())
    assert client.get("/health").json() == {"ok": True}
