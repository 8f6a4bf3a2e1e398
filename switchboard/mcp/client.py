"""
Tool Protocol Client — one JSON-RPC session with one remote tool server.

Transport is "streamable HTTP": every client message is a POST to the
server URL; the reply is either a JSON document or an SSE stream. While an
SSE reply is open the server may interleave notifications and its own
requests (sampling, elicitation, ping) before our response arrives. Those
are handled inline, in arrival order, and our answer is POSTed back before
reading continues.

Lifecycle:
    disconnected → initializing → ready
    ready → degraded_needs_auth   (HTTP 401, until reset())
    ready → reconnecting → ready  (session lost, one re-initialize)
"""

from __future__ import annotations

import asyncio
import contextvars
import inspect
import logging
import time
from enum import Enum
from typing import Awaitable, Callable

import httpx

from switchboard.auth.oauth import parse_www_authenticate
from switchboard.errors import (
    AuthRequiredError,
    ConversationIntegrityError,
    DoubleResolutionError,
    ElicitationRequiredError,
    ProtocolError,
    SessionLostError,
    ToolTimeoutError,
    TransportError,
    UserRejectedError,
)
from switchboard.mcp import jsonrpc
from switchboard.mcp.elicitation import parse_url_elicitations
from switchboard.models import ToolDescriptor, ToolResult, ToolServer

logger = logging.getLogger(__name__)

CLIENT_INFO = {"name": "switchboard", "version": "0.4.0"}
DEFAULT_PROTOCOL_VERSION = "2025-06-18"

# Clients whose lock is held by the current task (or the task that spawned it).
# Inbound-request handlers run inside an exchange and may call back into the
# same client; those calls skip the lock instead of deadlocking. Child tasks
# inherit the set too, so calls a handler runs concurrently through one client
# are not serialized against each other: handlers must issue them one at a time
# (SamplingProcessor._execute does).
_held_locks: contextvars.ContextVar[frozenset] = contextvars.ContextVar(
    "switchboard_held_locks", default=frozenset()
)


class ClientState(str, Enum):
    DISCONNECTED = "disconnected"
    INITIALIZING = "initializing"
    READY = "ready"
    DEGRADED_NEEDS_AUTH = "degraded_needs_auth"
    RECONNECTING = "reconnecting"


def _is_session_error(text: str) -> bool:
    text = text.lower()
    return "session" in text and any(
        marker in text for marker in ("no valid", "invalid", "not found", "unknown", "expired")
    )


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class _CallDeadline:
    """
    Wall-clock budget for one tools/call. The clock stops while an inbound
    sampling or elicitation handler waits on the user.
    """

    def __init__(self, seconds: float):
        self.seconds = seconds
        self.started = time.monotonic()
        self.paused = 0.0
        self._pause_started: float | None = None

    def pause(self):
        if self._pause_started is None:
            self._pause_started = time.monotonic()

    def resume(self):
        if self._pause_started is not None:
            self.paused += time.monotonic() - self._pause_started
            self._pause_started = None

    @property
    def paused_now(self) -> bool:
        return self._pause_started is not None

    def remaining(self) -> float:
        now = time.monotonic()
        held = self.paused
        if self._pause_started is not None:
            held += now - self._pause_started
        return self.seconds - (now - self.started - held)


class ToolProtocolClient:
    """
    Client for one (conversation, server) pair.

    Callbacks (all optional, assign after construction):
        on_notification(server, method, params)
        on_sampling(server, request_id, params) -> result dict
        on_elicitation(server, request_id, params) -> result dict
        on_auth_required(server, params)
        on_session_established(server, session_id)
    token_provider(server) -> access token or None; may raise AuthRequiredError.
    """

    def __init__(
        self,
        server: ToolServer,
        session_id: str | None = None,
        token_provider: Callable[[ToolServer], Awaitable[str | None]] | None = None,
        protocol_version: str = DEFAULT_PROTOCOL_VERSION,
        request_timeout: float = 30,
        tool_timeout: float = 120,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.server = server
        self.session_id = session_id
        self.token_provider = token_provider
        self.requested_protocol_version = protocol_version
        self.protocol_version: str | None = None
        self.request_timeout = request_timeout
        self.tool_timeout = tool_timeout
        self.state = ClientState.DISCONNECTED
        self.server_info: dict = {}
        self.capabilities: dict = {}

        self.on_notification = None
        self.on_sampling = None
        self.on_elicitation = None
        self.on_auth_required = None
        self.on_session_established = None

        self._tools: list[ToolDescriptor] | None = None
        self._tools_stale = True
        self._auth_notified = False
        self._response_session_id: str | None = None
        self._lock = asyncio.Lock()
        self._http = http_client or httpx.AsyncClient(timeout=request_timeout)
        self._owns_http = http_client is None
        self._progress_seq = 0
        self._deadline: _CallDeadline | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def tools_stale(self) -> bool:
        return self._tools is None or self._tools_stale

    @property
    def cached_tools(self) -> list[ToolDescriptor]:
        return list(self._tools or [])

    async def connect(self) -> list[ToolDescriptor]:
        """Run the initialize handshake (resuming a stored session when possible)."""
        return await self._locked(self._connect_unlocked)

    async def list_tools(self, refresh: bool = False) -> list[ToolDescriptor]:
        """
        Tools advertised by the server. Cached until a tools/list_changed
        notification, a re-initialize, or refresh=True.
        """
        if self.state is not ClientState.READY:
            return await self.connect()
        if self._tools is not None and not self._tools_stale and not refresh:
            return list(self._tools)
        return await self._locked(self._with_session, self._refresh_tools)

    async def call_tool(self, name: str, arguments: dict, timeout: float | None = None) -> ToolResult:
        timeout = timeout or self.tool_timeout
        self._progress_seq += 1
        params = {
            "name": name,
            "arguments": arguments,
            "_meta": {"progressToken": f"{self.server.id}-{self._progress_seq}"},
        }
        result = await self._locked(self._with_session, self._send, "tools/call", params, timeout)
        return ToolResult.from_dict(result)

    async def list_prompts(self) -> list[dict]:
        result = await self._locked(self._with_session, self._send, "prompts/list", {}, None)
        return list(result.get("prompts") or [])

    async def get_prompt(self, name: str, arguments: dict | None = None) -> dict:
        params = {"name": name, "arguments": {k: str(v) for k, v in (arguments or {}).items()}}
        return await self._locked(self._with_session, self._send, "prompts/get", params, None)

    async def request(self, method: str, params: dict | None = None, timeout: float | None = None) -> dict:
        """Issue an arbitrary JSON-RPC request and return its result."""
        return await self._locked(self._with_session, self._send, method, params or {}, timeout)

    def reset(self):
        """Leave degraded_needs_auth after the user has authorized."""
        self.state = ClientState.DISCONNECTED
        self._auth_notified = False

    async def close(self, terminate: bool = False):
        """
        Release the HTTP client. With terminate=True the session is ended on
        the server (DELETE); otherwise the session id stays valid for resumption.
        """
        if terminate and self.session_id:
            try:
                headers = await self._headers()
                await self._http.delete(self.server.url, headers=headers, timeout=5)
            except (httpx.HTTPError, AuthRequiredError) as e:
                logger.debug("Session DELETE for '%s' failed: %s", self.server.name, e)
            self.session_id = None
        if self._owns_http:
            await self._http.aclose()
        self.state = ClientState.DISCONNECTED

    # ------------------------------------------------------------------
    # Serialization and session recovery
    # ------------------------------------------------------------------

    async def _locked(self, fn, *args):
        if id(self) in _held_locks.get():
            return await fn(*args)
        async with self._lock:
            token = _held_locks.set(_held_locks.get() | {id(self)})
            try:
                return await fn(*args)
            finally:
                _held_locks.reset(token)

    async def _with_session(self, fn, *args):
        """Run fn on a ready session; on session loss re-initialize once and retry."""
        self._ensure_usable()
        if self.state is not ClientState.READY:
            await self._connect_unlocked()
        try:
            return await fn(*args)
        except SessionLostError:
            logger.warning("Session for '%s' lost, re-initializing", self.server.name)
            self.state = ClientState.RECONNECTING
            self.session_id = None
            await self._initialize(resume=False)
            try:
                return await fn(*args)
            except SessionLostError as e:
                self.state = ClientState.DISCONNECTED
                raise ProtocolError(
                    f"Session for '{self.server.name}' lost again after re-initialize"
                ) from e

    def _ensure_usable(self):
        if self.state is ClientState.DEGRADED_NEEDS_AUTH:
            raise AuthRequiredError(self.server.id, self.server.url)

    def _degrade(self, exc: AuthRequiredError):
        self.state = ClientState.DEGRADED_NEEDS_AUTH
        if self._auth_notified:
            return
        self._auth_notified = True
        logger.info("Server '%s' requires authorization", self.server.name)
        if self.on_auth_required:
            self.on_auth_required(self.server, exc.params)

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    async def _connect_unlocked(self) -> list[ToolDescriptor]:
        self._ensure_usable()
        await self._initialize(resume=True)
        return list(self._tools or [])

    async def _initialize(self, resume: bool = True):
        hint = self.session_id if resume else None
        self.state = ClientState.INITIALIZING
        try:
            try:
                await self._handshake(hint)
            except (SessionLostError, ProtocolError) as e:
                if hint is None:
                    raise
                logger.info(
                    "Server '%s' rejected session %s (%s), starting fresh",
                    self.server.name, hint, e,
                )
                await self._handshake(None)
            if "tools" in self.capabilities or not self.capabilities:
                self._tools_stale = True
                await self._refresh_tools()
            else:
                self._tools = []
                self._tools_stale = False
        except Exception:
            if self.state is ClientState.INITIALIZING:
                self.state = ClientState.DISCONNECTED
            raise

    async def _handshake(self, session_hint: str | None):
        previous = self.session_id
        self.session_id = session_hint
        self.protocol_version = None
        self._response_session_id = None

        result = await self._send("initialize", {
            "protocolVersion": self.requested_protocol_version,
            "capabilities": {"tools": {}, "sampling": {}, "elicitation": {}},
            "clientInfo": CLIENT_INFO,
        })

        self.session_id = self._response_session_id or session_hint
        self.protocol_version = result.get("protocolVersion") or self.requested_protocol_version
        self.server_info = result.get("serverInfo") or {}
        self.capabilities = result.get("capabilities") or {}

        await self._exchange(jsonrpc.notification("notifications/initialized"))
        self.state = ClientState.READY
        logger.info(
            "Connected to '%s' (%s, protocol %s, session %s)",
            self.server.name, self.server_info.get("name", "?"),
            self.protocol_version, self.session_id,
        )
        if self.session_id and self.session_id != previous and self.on_session_established:
            await _maybe_await(self.on_session_established(self.server, self.session_id))

    async def _refresh_tools(self) -> list[ToolDescriptor]:
        tools: list[ToolDescriptor] = []
        cursor = None
        while True:
            result = await self._send("tools/list", {"cursor": cursor} if cursor else {})
            try:
                tools.extend(
                    ToolDescriptor.from_dict(t, server_id=self.server.id)
                    for t in result.get("tools") or []
                )
            except (KeyError, TypeError, AttributeError) as e:
                raise ProtocolError(f"Malformed tools/list result from '{self.server.name}': {e}") from e
            cursor = result.get("nextCursor")
            if not cursor:
                break
        self._tools = tools
        self._tools_stale = False
        logger.debug("Server '%s' offers %d tools", self.server.name, len(tools))
        return list(tools)

    # ------------------------------------------------------------------
    # Wire
    # ------------------------------------------------------------------

    async def _headers(self) -> dict:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            **self.server.headers,
        }
        if self.session_id:
            headers["Mcp-Session-Id"] = self.session_id
        if self.protocol_version:
            headers["MCP-Protocol-Version"] = self.protocol_version
        if self.token_provider:
            token = await self.token_provider(self.server)
            if token:
                headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _send(self, method: str, params: dict | None = None, timeout: float | None = None) -> dict:
        """One request/response round trip with error mapping. Connect errors retry once."""
        message = jsonrpc.request(method, params)
        reply = None
        for attempt in range(2):
            try:
                if method == "tools/call" and (timeout or self.tool_timeout):
                    reply = await self._bounded(message, timeout or self.tool_timeout)
                else:
                    reply = await self._exchange(message, timeout)
                break
            except AuthRequiredError as e:
                self._degrade(e)
                raise
            except httpx.ConnectError as e:
                if attempt == 0:
                    logger.warning("Connect to '%s' failed, retrying once: %s", self.server.name, e)
                    continue
                raise TransportError(f"Cannot reach '{self.server.name}': {e}") from e
            except httpx.TimeoutException as e:
                if method == "tools/call":
                    raise ToolTimeoutError((params or {}).get("name", "?"), timeout or self.tool_timeout) from e
                raise TransportError(f"{method} to '{self.server.name}' timed out") from e
            except httpx.HTTPError as e:
                raise TransportError(f"{method} to '{self.server.name}' failed: {e}") from e

        if reply is None:
            raise ProtocolError(f"No response to {method} from '{self.server.name}'")

        if "error" in reply:
            err = reply["error"] if isinstance(reply["error"], dict) else {"message": str(reply["error"])}
            code = err.get("code")
            text = err.get("message", "")
            if code == jsonrpc.URL_ELICITATION_REQUIRED:
                raise ElicitationRequiredError(
                    text or "URL elicitation required",
                    parse_url_elicitations(err),
                    data=err.get("data"),
                )
            if _is_session_error(text):
                raise SessionLostError(text)
            raise ProtocolError(f"{method} error {code}: {text}", code=code, data=err.get("data"))

        result = reply.get("result")
        if not isinstance(result, dict):
            raise ProtocolError(f"{method} returned a non-object result from '{self.server.name}'")
        return result

    async def _bounded(self, message: dict, timeout: float) -> dict | None:
        """Exchange under an overall deadline; raises ToolTimeoutError once it passes."""
        deadline, outer = _CallDeadline(timeout), self._deadline
        self._deadline = deadline
        task = asyncio.ensure_future(self._exchange(message, timeout))
        try:
            while True:
                remaining = deadline.remaining()
                if remaining <= 0:
                    task.cancel()
                    await asyncio.wait({task})
                    name = (message.get("params") or {}).get("name", "?")
                    logger.warning("Tool '%s' on '%s' exceeded %ss", name, self.server.name, timeout)
                    raise ToolTimeoutError(name, timeout)
                # Frozen while a handler waits on the user; wake up to notice the resume
                wait = 0.1 if deadline.paused_now else remaining
                done, _ = await asyncio.wait({task}, timeout=wait)
                if done:
                    return task.result()
        except BaseException:
            task.cancel()
            raise
        finally:
            self._deadline = outer

    async def _exchange(self, message: dict, timeout: float | None = None) -> dict | None:
        """
        POST one message. Returns the response matching its id, or None for
        notifications and responses (the server answers 202 Accepted).
        """
        headers = await self._headers()
        expect_id = message.get("id") if jsonrpc.is_request(message) else None
        async with self._http.stream(
            "POST",
            self.server.url,
            json=message,
            headers=headers,
            timeout=timeout or self.request_timeout,
        ) as resp:
            await self._check_status(resp)
            sid = resp.headers.get("mcp-session-id")
            if sid:
                self._response_session_id = sid
            if expect_id is None:
                return None

            content_type = resp.headers.get("content-type", "")
            if "text/event-stream" in content_type:
                decoder = jsonrpc.SSEDecoder()
                async for line in resp.aiter_lines():
                    data = decoder.feed(line)
                    if not data:
                        continue
                    for incoming in jsonrpc.decode(data):
                        reply = await self._dispatch_incoming(incoming, expect_id)
                        if reply is not None:
                            return reply
                data = decoder.flush()
                if data:
                    for incoming in jsonrpc.decode(data):
                        reply = await self._dispatch_incoming(incoming, expect_id)
                        if reply is not None:
                            return reply
                return None

            body = (await resp.aread()).decode("utf-8", errors="replace")
            for incoming in jsonrpc.parse_body(body, content_type):
                reply = await self._dispatch_incoming(incoming, expect_id)
                if reply is not None:
                    return reply
            return None

    async def _check_status(self, resp: httpx.Response):
        if resp.status_code < 400:
            return
        body = (await resp.aread()).decode("utf-8", errors="replace")
        if resp.status_code == 401:
            params = parse_www_authenticate(resp.headers.get("www-authenticate", ""))
            raise AuthRequiredError(self.server.id, self.server.url, params)
        if resp.status_code == 404 and self.session_id:
            raise SessionLostError(f"Session {self.session_id} not found on '{self.server.name}'")
        if resp.status_code == 400 and _is_session_error(body):
            raise SessionLostError(body[:200])
        raise ProtocolError(f"HTTP {resp.status_code} from '{self.server.name}': {body[:200]}")

    # ------------------------------------------------------------------
    # Server-initiated traffic
    # ------------------------------------------------------------------

    async def _dispatch_incoming(self, msg: dict, expect_id) -> dict | None:
        if jsonrpc.is_response(msg):
            if msg.get("id") == expect_id:
                return msg
            logger.debug("Ignoring response for unknown id %r from '%s'", msg.get("id"), self.server.name)
        elif jsonrpc.is_notification(msg):
            await self._handle_notification(msg["method"], msg.get("params") or {})
        elif jsonrpc.is_request(msg):
            await self._handle_request(msg)
        else:
            raise ProtocolError(f"Unrecognized message from '{self.server.name}': {str(msg)[:200]}")
        return None

    async def _handle_notification(self, method: str, params: dict):
        if method == "notifications/tools/list_changed":
            self._tools_stale = True
        logger.debug("Notification %s from '%s'", method, self.server.name)
        if self.on_notification:
            await _maybe_await(self.on_notification(self.server, method, params))

    async def _handle_request(self, msg: dict):
        method = msg["method"]
        id_ = msg["id"]
        params = msg.get("params") or {}
        deadline = self._deadline
        if deadline is not None:
            deadline.pause()
        try:
            if method == "ping":
                reply = jsonrpc.result(id_, {})
            elif method == "sampling/createMessage" and self.on_sampling:
                reply = jsonrpc.result(id_, await self.on_sampling(self.server, id_, params))
            elif method == "elicitation/create" and self.on_elicitation:
                reply = jsonrpc.result(id_, await self.on_elicitation(self.server, id_, params))
            else:
                reply = jsonrpc.error(id_, jsonrpc.METHOD_NOT_FOUND, f"Method not found: {method}")
        except UserRejectedError as e:
            reply = jsonrpc.error(id_, jsonrpc.USER_REJECTED, str(e) or "User rejected the request")
        except (ConversationIntegrityError, DoubleResolutionError):
            raise
        except Exception as e:
            logger.error("Handler for %s from '%s' failed: %s", method, self.server.name, e)
            reply = jsonrpc.error(id_, jsonrpc.INTERNAL_ERROR, str(e))
        finally:
            if deadline is not None:
                deadline.resume()
        await self._exchange(reply)

    def __repr__(self) -> str:
        return f"<ToolProtocolClient server={self.server.name!r} state={self.state.value}>"
