"""
Token Lifecycle Manager — OAuth 2.1 authorization code + PKCE for tool servers.

Flow:
  1. discover(): probe the server unauthenticated. Only a 401 means auth is
     needed; its WWW-Authenticate header may point at the protected-resource
     metadata. From there, find the authorization server and its metadata.
  2. begin_authorization(): build the authorization URL and remember the
     verifier under a random state for ten minutes.
  3. exchange_code(): trade the code from the redirect for tokens.
  4. ensure_fresh(): before every request, refresh tokens that are within
     30 s of expiry. One refresh per server at a time; everyone else waits
     for the same result.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import re
import secrets
import time
from dataclasses import dataclass, field, replace
from urllib.parse import parse_qsl

import httpx

from switchboard.errors import AuthRequiredError, OAuthError, TransportError
from switchboard.models import OAuthStatus, TokenBundle, ToolServer

logger = logging.getLogger(__name__)

PENDING_STATE_TTL = 600  # seconds
VERIFIER_LENGTH = 128
_VERIFIER_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"
_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


# ---------------------------------------------------------------------------
# PKCE and header helpers
# ---------------------------------------------------------------------------

def generate_code_verifier(length: int = VERIFIER_LENGTH) -> str:
    return "".join(secrets.choice(_VERIFIER_ALPHABET) for _ in range(length))


def code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_state() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("ascii").rstrip("=")


def parse_www_authenticate(header: str | None) -> dict[str, str]:
    """Pull key="value" pairs out of a Bearer challenge."""
    if not header:
        return {}
    if header.lower().startswith("bearer "):
        header = header[7:]
    return {m.group(1): m.group(2) for m in _CHALLENGE_PARAM.finditer(header)}


def parse_token_response(text: str) -> dict:
    """Token endpoints answer JSON, but some answer form-encoded. Accept both."""
    text = text.strip()
    if not text:
        return {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return dict(parse_qsl(text))
    if not isinstance(data, dict):
        raise OAuthError(f"Unexpected token response: {text[:200]}", code="invalid_response")
    return data


def _origin(url: httpx.URL) -> str:
    port = f":{url.port}" if url.port else ""
    return f"{url.scheme}://{url.host}{port}"


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

@dataclass
class ProtectedResourceMetadata:
    resource: str = ""
    authorization_servers: list[str] = field(default_factory=list)
    scopes_supported: list[str] | None = None

    @classmethod
    def from_dict(cls, data: dict) -> ProtectedResourceMetadata:
        return cls(
            resource=data.get("resource") or "",
            authorization_servers=list(data.get("authorization_servers") or []),
            scopes_supported=data.get("scopes_supported"),
        )


@dataclass
class AuthServerMetadata:
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str | None = None
    scopes_supported: list[str] | None = None
    code_challenge_methods_supported: list[str] | None = None
    resource: ProtectedResourceMetadata | None = None
    challenge_scope: str | None = None

    @property
    def supports_pkce(self) -> bool:
        return "S256" in (self.code_challenge_methods_supported or [])

    @classmethod
    def from_dict(cls, data: dict) -> AuthServerMetadata:
        return cls(
            issuer=data.get("issuer") or "",
            authorization_endpoint=data.get("authorization_endpoint") or "",
            token_endpoint=data.get("token_endpoint") or "",
            registration_endpoint=data.get("registration_endpoint"),
            scopes_supported=data.get("scopes_supported"),
            code_challenge_methods_supported=data.get("code_challenge_methods_supported"),
        )


@dataclass
class PendingAuthorization:
    state: str
    code_verifier: str
    server_id: str
    resource_url: str
    token_endpoint: str
    client_id: str
    redirect_uri: str
    client_secret: str | None = None
    scope: str | None = None
    created_at: float = field(default_factory=time.time)

    def is_expired(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.created_at + PENDING_STATE_TTL


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class TokenLifecycleManager:
    """
    Owns discovery caches, pending authorizations and token freshness for
    every tool server. Token state is persisted through the session store.
    """

    def __init__(
        self,
        store=None,
        client_id: str = "switchboard",
        redirect_uri: str = "http://127.0.0.1:8765/oauth/callback",
        timeout: float = 30,
        http_client: httpx.AsyncClient | None = None,
        clock=time.time,
    ):
        self.store = store
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.clock = clock
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http_client is None
        self._resource_cache: dict[str, ProtectedResourceMetadata] = {}
        self._as_cache: dict[str, AuthServerMetadata] = {}
        self._server_meta: dict[str, AuthServerMetadata] = {}
        self._pending: dict[str, PendingAuthorization] = {}
        self._servers: dict[str, ToolServer] = {}
        self._waiters: dict[str, asyncio.Future] = {}
        self._inflight: dict[str, asyncio.Task] = {}

    async def close(self):
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def check_auth_required(self, server_url: str) -> dict | None:
        """Unauthenticated ping. Returns the challenge params on 401, else None."""
        try:
            resp = await self._http.post(
                server_url,
                json={"jsonrpc": "2.0", "id": 1, "method": "ping"},
                headers={"Accept": "application/json, text/event-stream"},
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Auth probe to {server_url} failed: {e}") from e
        if resp.status_code != 401:
            return None
        return parse_www_authenticate(resp.headers.get("www-authenticate"))

    async def discover(self, server_url: str) -> AuthServerMetadata | None:
        """Metadata for the server's authorization server, or None when no auth is required."""
        challenge = await self.check_auth_required(server_url)
        if challenge is None:
            logger.info("Server %s does not require authorization", server_url)
            return None
        metadata = await self._resolve_metadata(server_url, challenge.get("resource_metadata"))
        metadata = replace(metadata, challenge_scope=challenge.get("scope"))
        self._server_meta[server_url] = metadata
        return metadata

    async def _resolve_metadata(self, server_url: str, resource_metadata_url: str | None = None) -> AuthServerMetadata:
        cached = self._server_meta.get(server_url)
        if cached is not None:
            return cached
        resource = await self.discover_protected_resource(server_url, resource_metadata_url)
        if not resource.authorization_servers:
            raise OAuthError(f"No authorization servers found for {server_url}", code="no_authorization_server")
        metadata = await self.discover_auth_server(resource.authorization_servers[0])
        metadata = replace(metadata, resource=resource)
        self._server_meta[server_url] = metadata
        return metadata

    async def discover_protected_resource(
        self, server_url: str, metadata_url: str | None = None
    ) -> ProtectedResourceMetadata:
        if server_url in self._resource_cache:
            return self._resource_cache[server_url]

        url = httpx.URL(server_url)
        origin = _origin(url)
        candidates = []
        if metadata_url:
            candidates.append(metadata_url)
        if url.path and url.path != "/":
            candidates.append(f"{origin}/.well-known/oauth-protected-resource{url.path}")
        candidates.append(f"{origin}/.well-known/oauth-protected-resource")

        for candidate in candidates:
            data = await self._get_json(candidate)
            if data is not None:
                metadata = ProtectedResourceMetadata.from_dict(data)
                self._resource_cache[server_url] = metadata
                return metadata

        raise OAuthError(
            f"Could not discover protected resource metadata for {server_url}",
            code="discovery_failed",
        )

    async def discover_auth_server(self, auth_server_url: str) -> AuthServerMetadata:
        if auth_server_url in self._as_cache:
            return self._as_cache[auth_server_url]

        url = httpx.URL(auth_server_url)
        origin = _origin(url)
        path = url.path.rstrip("/")
        if path:
            candidates = [
                f"{origin}/.well-known/oauth-authorization-server{path}",
                f"{origin}/.well-known/openid-configuration{path}",
                f"{auth_server_url.rstrip('/')}/.well-known/openid-configuration",
            ]
        else:
            candidates = [
                f"{origin}/.well-known/oauth-authorization-server",
                f"{origin}/.well-known/openid-configuration",
            ]

        for candidate in candidates:
            data = await self._get_json(candidate)
            if data is None:
                continue
            metadata = AuthServerMetadata.from_dict(data)
            if not metadata.supports_pkce:
                raise OAuthError(
                    "Authorization server does not support PKCE (S256)",
                    code="pkce_not_supported",
                )
            self._as_cache[auth_server_url] = metadata
            return metadata

        raise OAuthError(
            f"Could not discover authorization server metadata for {auth_server_url}",
            code="discovery_failed",
        )

    async def _get_json(self, url: str) -> dict | None:
        try:
            resp = await self._http.get(url, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            logger.debug("Metadata fetch %s failed: %s", url, e)
            return None
        if resp.status_code != 200:
            return None
        try:
            data = resp.json()
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def begin_authorization(
        self,
        server: ToolServer,
        metadata: AuthServerMetadata | None = None,
        client_id: str | None = None,
        scope: str | None = None,
    ) -> tuple[str, PendingAuthorization]:
        """Build the authorization URL. The caller opens it in a browser."""
        if metadata is None:
            metadata = await self._resolve_metadata(server.url)

        verifier = generate_code_verifier()
        state = generate_state()
        resource_scopes = metadata.resource.scopes_supported if metadata.resource else None
        scope = (
            scope
            or server.oauth_scope
            or metadata.challenge_scope
            or (" ".join(resource_scopes) if resource_scopes else None)
            or (" ".join(metadata.scopes_supported) if metadata.scopes_supported else None)
        )
        pending = PendingAuthorization(
            state=state,
            code_verifier=verifier,
            server_id=server.id,
            resource_url=server.url,
            token_endpoint=metadata.token_endpoint,
            client_id=client_id or server.oauth_client_id or self.client_id,
            client_secret=server.oauth_client_secret,
            redirect_uri=self.redirect_uri,
            scope=scope,
            created_at=self.clock(),
        )
        self._pending[state] = pending
        self._servers[server.id] = server
        self._set_status(server, OAuthStatus.PENDING)

        params = {
            "response_type": "code",
            "client_id": pending.client_id,
            "redirect_uri": pending.redirect_uri,
            "state": state,
            "code_challenge": code_challenge(verifier),
            "code_challenge_method": "S256",
        }
        if scope:
            params["scope"] = scope
        url = httpx.URL(metadata.authorization_endpoint).copy_merge_params(params)
        logger.info("Authorization started for '%s'", server.name)
        return str(url), pending

    def get_pending(self, state: str) -> PendingAuthorization | None:
        return self._pending.get(state)

    async def exchange_code(self, state: str, code: str) -> TokenBundle:
        pending = self._pending.pop(state, None)
        if pending is None:
            raise OAuthError("Unknown or expired state parameter", code="invalid_state")
        if pending.is_expired(self.clock()):
            raise OAuthError("Authorization state has expired", code="state_expired")

        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": pending.redirect_uri,
            "client_id": pending.client_id,
            "code_verifier": pending.code_verifier,
        }
        if pending.client_secret:
            form["client_secret"] = pending.client_secret

        bundle = await self._token_request(pending.token_endpoint, form, "Token exchange")
        server = self._servers.get(pending.server_id)
        if server is not None:
            self._store_tokens(server, bundle)
        return bundle

    async def refresh(self, server: ToolServer, bundle: TokenBundle) -> TokenBundle:
        if not bundle.refresh_token:
            raise OAuthError("No refresh token available", code="no_refresh_token")
        metadata = await self._resolve_metadata(server.url)
        form = {
            "grant_type": "refresh_token",
            "refresh_token": bundle.refresh_token,
            "client_id": server.oauth_client_id or self.client_id,
        }
        if server.oauth_client_secret:
            form["client_secret"] = server.oauth_client_secret
        return await self._token_request(
            metadata.token_endpoint, form, "Token refresh",
            previous_refresh_token=bundle.refresh_token,
        )

    async def _token_request(
        self, endpoint: str, form: dict, what: str, previous_refresh_token: str | None = None
    ) -> TokenBundle:
        try:
            resp = await self._http.post(
                endpoint,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise OAuthError(f"{what} failed: {e}", code="transport_error") from e

        raw = resp.text
        data = parse_token_response(raw)
        if resp.status_code != 200:
            error = data.get("error")
            description = data.get("error_description")
            raise OAuthError(
                f"{what} failed: {description or error or 'Unknown error'}",
                code=error or "token_error",
                http_status=resp.status_code,
            )
        if not data.get("access_token"):
            raise OAuthError(f"{what} response missing access_token", code="invalid_response")
        return TokenBundle.from_token_response(
            data, now=self.clock(), previous_refresh_token=previous_refresh_token,
        )

    # ------------------------------------------------------------------
    # Redirect handling
    # ------------------------------------------------------------------

    async def handle_callback(self, params: dict) -> ToolServer | None:
        """
        Consume the query parameters of the redirect. Returns the server that
        is now authenticated. Raises OAuthError on any failure.
        """
        state = params.get("state")
        error = params.get("error")
        if error:
            pending = self._pending.pop(state, None) if state else None
            server = self._servers.get(pending.server_id) if pending else None
            if server is not None:
                self._set_status(server, OAuthStatus.FAILED)
            exc = OAuthError(params.get("error_description") or error, code=error)
            self._wake(state, exc=exc)
            raise exc

        code = params.get("code")
        if not code or not state:
            raise OAuthError("Callback missing code or state", code="invalid_request")

        pending = self._pending.get(state)
        try:
            await self.exchange_code(state, code)
        except OAuthError as e:
            server = self._servers.get(pending.server_id) if pending else None
            if server is not None:
                self._set_status(server, OAuthStatus.FAILED)
            self._wake(state, exc=e)
            raise
        server = self._servers.get(pending.server_id) if pending else None
        self._wake(state, server=server)
        return server

    async def wait_for_callback(self, state: str, timeout: float = PENDING_STATE_TTL) -> ToolServer | None:
        """Block until handle_callback() sees this state."""
        future = self._waiters.setdefault(state, asyncio.get_running_loop().create_future())
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            self._waiters.pop(state, None)

    def _wake(self, state: str | None, server: ToolServer | None = None, exc: Exception | None = None):
        future = self._waiters.get(state) if state else None
        if future is None or future.done():
            return
        if exc is not None:
            future.set_exception(exc)
        else:
            future.set_result(server)

    def cleanup_expired(self) -> int:
        now = self.clock()
        expired = [s for s, p in self._pending.items() if p.is_expired(now)]
        for s in expired:
            del self._pending[s]
        return len(expired)

    # ------------------------------------------------------------------
    # Freshness
    # ------------------------------------------------------------------

    async def ensure_fresh(self, server: ToolServer) -> TokenBundle | None:
        """
        Current tokens for the server, refreshed if they are about to expire.
        None when the server has no tokens at all.
        """
        bundle = server.tokens
        if bundle is None and self.store is not None:
            bundle = self.store.load_tokens(server.id)
            server.tokens = bundle
        if bundle is None:
            return None
        if not bundle.is_expired(self.clock()):
            return bundle

        if not bundle.refresh_token:
            logger.info("Tokens for '%s' expired and cannot be refreshed", server.name)
            self._set_status(server, OAuthStatus.EXPIRED)
            raise AuthRequiredError(server.id, server.url)

        task = self._inflight.get(server.id)
        if task is None:
            task = asyncio.ensure_future(self._refresh_and_store(server, bundle))
            self._inflight[server.id] = task
            task.add_done_callback(lambda t, sid=server.id: self._forget_inflight(sid, t))
        return await asyncio.shield(task)

    def _forget_inflight(self, server_id: str, task: asyncio.Task):
        if self._inflight.get(server_id) is task:
            del self._inflight[server_id]

    async def _refresh_and_store(self, server: ToolServer, bundle: TokenBundle) -> TokenBundle:
        logger.info("Refreshing tokens for '%s'", server.name)
        try:
            fresh = await self.refresh(server, bundle)
        except OAuthError as e:
            logger.warning("Token refresh for '%s' failed: %s", server.name, e)
            server.tokens = None
            if self.store is not None:
                self.store.save_tokens(server.id, None)
            self._set_status(server, OAuthStatus.FAILED)
            raise AuthRequiredError(server.id, server.url) from e
        self._store_tokens(server, fresh)
        return fresh

    async def access_token(self, server: ToolServer) -> str | None:
        """Token provider for ToolProtocolClient."""
        bundle = await self.ensure_fresh(server)
        return bundle.access_token if bundle else None

    def _store_tokens(self, server: ToolServer, bundle: TokenBundle):
        server.tokens = bundle
        if self.store is not None:
            self.store.save_tokens(server.id, bundle)
        self._set_status(server, OAuthStatus.AUTHENTICATED)

    def _set_status(self, server: ToolServer, status: OAuthStatus):
        server.oauth_status = status
        if self.store is not None:
            self.store.save_server_status(server.id, status)
