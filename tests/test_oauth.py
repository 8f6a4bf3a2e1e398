"""
Tests for the token lifecycle manager against a fake authorization server.
Run with: pytest tests/test_oauth.py
"""

import asyncio
from urllib.parse import parse_qsl

import httpx
import pytest

from switchboard.auth.oauth import (
    PENDING_STATE_TTL,
    TokenLifecycleManager,
    code_challenge,
    generate_code_verifier,
    parse_token_response,
    parse_www_authenticate,
)
from switchboard.errors import AuthRequiredError, OAuthError
from switchboard.models import OAuthStatus, TokenBundle, ToolServer
from switchboard.storage.base import MemoryStore

MCP_URL = "https://tools.example/mcp"
RESOURCE_META = "https://tools.example/.well-known/oauth-protected-resource/mcp"
AS_META = "https://auth.example/.well-known/oauth-authorization-server"


class FakeAuth:
    """Tool server + authorization server in one MockTransport handler."""

    def __init__(self):
        self.requires_auth = True
        self.advertise_metadata_url = True
        self.pkce_methods = ["S256"]
        self.token_forms: list[dict] = []
        self.token_status = 200
        self.token_body = None
        self.gets: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if request.method == "POST" and url == MCP_URL:
            if not self.requires_auth:
                return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {}})
            challenge = 'Bearer scope="files:read"'
            if self.advertise_metadata_url:
                challenge += f', resource_metadata="{RESOURCE_META}"'
            return httpx.Response(401, headers={"www-authenticate": challenge})

        if request.method == "GET":
            self.gets.append(url)
            if url == RESOURCE_META:
                return httpx.Response(200, json={
                    "resource": MCP_URL,
                    "authorization_servers": ["https://auth.example"],
                    "scopes_supported": ["files:read", "files:write"],
                })
            if url == AS_META:
                return httpx.Response(200, json={
                    "issuer": "https://auth.example",
                    "authorization_endpoint": "https://auth.example/authorize",
                    "token_endpoint": "https://auth.example/token",
                    "code_challenge_methods_supported": self.pkce_methods,
                })
            return httpx.Response(404)

        if request.method == "POST" and url == "https://auth.example/token":
            form = dict(parse_qsl(request.content.decode()))
            self.token_forms.append(form)
            if self.token_body is not None:
                return httpx.Response(self.token_status, json=self.token_body)
            body = {"access_token": f"at-{len(self.token_forms)}", "expires_in": 3600}
            if form["grant_type"] == "authorization_code":
                body["refresh_token"] = "rt-1"
            return httpx.Response(200, json=body)

        return httpx.Response(404)


@pytest.fixture
def fake():
    return FakeAuth()


@pytest.fixture
def clock():
    now = {"t": 1_000_000.0}

    def _clock():
        return now["t"]
    _clock.now = now
    return _clock


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def manager(fake, clock, store):
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake))
    return TokenLifecycleManager(store=store, http_client=http, clock=clock)


@pytest.fixture
def server():
    return ToolServer(id="files", name="Files", url=MCP_URL)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def test_code_challenge_known_vector():
    """RFC 7636 appendix B."""
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_code_verifier_shape():
    verifier = generate_code_verifier()
    assert len(verifier) == 128
    assert set(verifier) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~")


def test_parse_www_authenticate():
    params = parse_www_authenticate('Bearer error="invalid_token", resource_metadata="https://x/y"')
    assert params == {"error": "invalid_token", "resource_metadata": "https://x/y"}
    assert parse_www_authenticate(None) == {}


def test_parse_token_response_accepts_form_encoding():
    assert parse_token_response("access_token=abc&token_type=bearer") == {
        "access_token": "abc", "token_type": "bearer",
    }
    assert parse_token_response("") == {}


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_discover_returns_none_without_401(manager, fake):
    fake.requires_auth = False
    assert await manager.discover(MCP_URL) is None
    assert fake.gets == []


@pytest.mark.asyncio
async def test_discover_follows_challenge(manager, fake):
    metadata = await manager.discover(MCP_URL)
    assert metadata.token_endpoint == "https://auth.example/token"
    assert metadata.challenge_scope == "files:read"
    assert metadata.resource.authorization_servers == ["https://auth.example"]
    assert fake.gets == [RESOURCE_META, AS_META]


@pytest.mark.asyncio
async def test_discover_falls_back_to_well_known_path(manager, fake):
    """Without resource_metadata in the challenge the path-suffixed well-known URL is tried."""
    fake.advertise_metadata_url = False
    metadata = await manager.discover(MCP_URL)
    assert metadata.issuer == "https://auth.example"
    assert fake.gets[0] == RESOURCE_META


@pytest.mark.asyncio
async def test_discover_rejects_server_without_pkce(manager, fake):
    fake.pkce_methods = ["plain"]
    with pytest.raises(OAuthError) as exc:
        await manager.discover(MCP_URL)
    assert exc.value.code == "pkce_not_supported"


# ---------------------------------------------------------------------------
# Authorization code flow
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_begin_authorization_builds_pkce_url(manager, server, store):
    metadata = await manager.discover(MCP_URL)
    url, pending = await manager.begin_authorization(server, metadata)

    params = dict(httpx.URL(url).params)
    assert url.startswith("https://auth.example/authorize?")
    assert params["response_type"] == "code"
    assert params["code_challenge_method"] == "S256"
    assert params["code_challenge"] == code_challenge(pending.code_verifier)
    assert params["state"] == pending.state
    assert params["scope"] == "files:read"
    assert params["redirect_uri"] == manager.redirect_uri
    assert server.oauth_status is OAuthStatus.PENDING
    assert store.statuses["files"] is OAuthStatus.PENDING


@pytest.mark.asyncio
async def test_callback_exchanges_code_and_wakes_waiter(manager, server, store, fake):
    _, pending = await manager.begin_authorization(server)
    waiter = asyncio.create_task(manager.wait_for_callback(pending.state, timeout=1))
    await asyncio.sleep(0)

    result = await manager.handle_callback({"code": "auth-code", "state": pending.state})

    assert result is server
    assert await waiter is server
    form = fake.token_forms[0]
    assert form["grant_type"] == "authorization_code"
    assert form["code"] == "auth-code"
    assert form["code_verifier"] == pending.code_verifier
    assert server.tokens.access_token == "at-1"
    assert store.load_tokens("files").refresh_token == "rt-1"
    assert server.oauth_status is OAuthStatus.AUTHENTICATED
    assert manager.get_pending(pending.state) is None


@pytest.mark.asyncio
async def test_state_is_single_use_and_expires(manager, server, clock):
    _, pending = await manager.begin_authorization(server)
    clock.now["t"] += PENDING_STATE_TTL + 1

    with pytest.raises(OAuthError) as exc:
        await manager.exchange_code(pending.state, "code")
    assert exc.value.code == "state_expired"

    with pytest.raises(OAuthError) as exc:
        await manager.exchange_code(pending.state, "code")
    assert exc.value.code == "invalid_state"


@pytest.mark.asyncio
async def test_callback_error_marks_failed(manager, server):
    _, pending = await manager.begin_authorization(server)
    waiter = asyncio.create_task(manager.wait_for_callback(pending.state, timeout=1))
    await asyncio.sleep(0)

    with pytest.raises(OAuthError) as exc:
        await manager.handle_callback({"error": "access_denied", "state": pending.state})
    assert exc.value.code == "access_denied"
    assert server.oauth_status is OAuthStatus.FAILED
    with pytest.raises(OAuthError):
        await waiter


@pytest.mark.asyncio
async def test_token_endpoint_error(manager, server, fake):
    fake.token_status = 400
    fake.token_body = {"error": "invalid_grant", "error_description": "Code already used"}
    _, pending = await manager.begin_authorization(server)

    with pytest.raises(OAuthError) as exc:
        await manager.handle_callback({"code": "c", "state": pending.state})
    assert exc.value.code == "invalid_grant"
    assert exc.value.http_status == 400
    assert "Code already used" in str(exc.value)


@pytest.mark.asyncio
async def test_cleanup_expired(manager, server, clock):
    await manager.begin_authorization(server)
    assert manager.cleanup_expired() == 0
    clock.now["t"] += PENDING_STATE_TTL
    assert manager.cleanup_expired() == 1


# ---------------------------------------------------------------------------
# Freshness
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_fresh_token_needs_no_network(manager, server, clock, fake):
    server.tokens = TokenBundle(access_token="live", expires_at=clock() + 3600)
    assert await manager.access_token(server) == "live"
    assert fake.token_forms == []


@pytest.mark.asyncio
async def test_tokens_loaded_from_store(manager, server, store, clock):
    store.save_tokens("files", TokenBundle(access_token="stored", expires_at=clock() + 3600))
    assert await manager.access_token(server) == "stored"


@pytest.mark.asyncio
async def test_no_tokens_means_no_header(manager, server):
    assert await manager.access_token(server) is None


@pytest.mark.asyncio
async def test_concurrent_refresh_is_single_flight(manager, server, clock, fake):
    """Three callers, one refresh; everyone gets the same new token."""
    server.tokens = TokenBundle(access_token="old", refresh_token="rt-keep", expires_at=clock() + 10)

    tokens = await asyncio.gather(*(manager.access_token(server) for _ in range(3)))

    assert tokens == ["at-1", "at-1", "at-1"]
    assert len(fake.token_forms) == 1
    assert fake.token_forms[0]["grant_type"] == "refresh_token"
    assert fake.token_forms[0]["refresh_token"] == "rt-keep"
    # Response carried no refresh_token: the previous one is kept
    assert server.tokens.refresh_token == "rt-keep"


@pytest.mark.asyncio
async def test_expired_without_refresh_token(manager, server, clock):
    server.tokens = TokenBundle(access_token="old", expires_at=clock() - 1)
    with pytest.raises(AuthRequiredError):
        await manager.ensure_fresh(server)
    assert server.oauth_status is OAuthStatus.EXPIRED


@pytest.mark.asyncio
async def test_refresh_failure_clears_tokens(manager, server, store, clock, fake):
    fake.token_status = 400
    fake.token_body = {"error": "invalid_grant"}
    server.tokens = TokenBundle(access_token="old", refresh_token="rt", expires_at=clock())
    store.save_tokens("files", server.tokens)

    with pytest.raises(AuthRequiredError):
        await manager.ensure_fresh(server)

    assert server.tokens is None
    assert store.load_tokens("files") is None
    assert server.oauth_status is OAuthStatus.FAILED
