"""
ChatSession — everything one conversation needs, wired explicitly.

Owns the tool router, the dispatcher, the agentic loop, the sampling
processor and the pending-request table. Server-initiated requests are
parked in the table and surfaced as events; whoever drives the UI answers
them with resolve_sampling() / resolve_elicitation().
"""

from __future__ import annotations

import logging

from switchboard.agents.dispatch import ToolDispatcher
from switchboard.agents.loop import AgenticLoop, RunState
from switchboard.agents.sampling import SamplingDecision, SamplingProcessor
from switchboard.config import get_config
from switchboard.events import EventStream, EventType
from switchboard.mcp.client import ToolProtocolClient
from switchboard.mcp.elicitation import (
    ElicitationAction,
    ElicitationMode,
    ElicitationRequest,
    ElicitationResponse,
)
from switchboard.mcp.pending import PendingRequestTable, pending_key
from switchboard.mcp.router import ToolRouter
from switchboard.models import (
    AssistantMessage,
    Conversation,
    ElicitationCardMessage,
    Message,
    OAuthStatus,
    ToolServer,
    UserMessage,
)
from switchboard.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)


class ChatSession:
    def __init__(
        self,
        conversation: Conversation,
        servers: list[ToolServer],
        backend,
        store=None,
        token_manager=None,
        cfg: dict | None = None,
        events: EventStream | None = None,
        client_factory=ToolProtocolClient,
    ):
        cfg = cfg or get_config()
        mcp_cfg = cfg.get("mcp", {})
        loop_cfg = cfg.get("loop", {})
        sampling_cfg = cfg.get("sampling", {})

        self.conversation = conversation
        self.store = store
        self.token_manager = token_manager
        self.events = events or EventStream()
        self.pending = PendingRequestTable()
        self._elicitations: dict[str, ElicitationRequest] = {}

        if not conversation.model:
            conversation.model = cfg.get("backend", {}).get("default_model", "")
        if isinstance(store, SQLiteStore):
            store.ensure_conversation(conversation)

        self.router = ToolRouter(
            conversation.id,
            [s for s in servers if not conversation.server_ids or s.id in conversation.server_ids],
            store=store,
            token_manager=token_manager,
            mcp_config=mcp_cfg,
            client_factory=client_factory,
        )
        self.dispatcher = ToolDispatcher(
            self.router,
            events=self.events,
            elicitation_handler=self.handle_elicitation,
            max_elicitation_rounds=mcp_cfg.get("max_elicitation_rounds", 3),
        )
        self.sampling = SamplingProcessor(
            backend,
            dispatcher=self.dispatcher,
            approver=self._approve_sampling,
            preferred_model=conversation.model,
            default_model=sampling_cfg.get("default_model", "deepseek/deepseek-v3.2"),
            max_iterations=sampling_cfg.get("max_iterations", 10),
        )
        self.loop = AgenticLoop(
            conversation,
            backend,
            self.router,
            self.dispatcher,
            self.events,
            model=conversation.model,
            system_prompt=loop_cfg.get("system_prompt", ""),
            max_iterations=loop_cfg.get("max_iterations", 10),
            on_message=self._persist,
        )

        for client in self.router.clients.values():
            client.on_notification = self.loop.on_notification
            client.on_sampling = self.sampling.handle
            client.on_elicitation = self.handle_elicitation
            client.on_auth_required = self._on_auth_required

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def connect(self) -> dict[str, Exception | None]:
        return await self.router.connect_all()

    async def reconnect(self, server_id: str) -> Exception | None:
        """Call after the user finished authorizing a degraded server."""
        return await self.router.reconnect(server_id)

    async def close(self):
        await self.router.close()
        self.events.close()

    # ── Conversation ──────────────────────────────────────────────────────────

    async def send(self, text: str) -> RunState:
        self._record(UserMessage(content=text))
        return await self.loop.run()

    async def resume(self) -> RunState:
        """Keep going after run_max_iterations."""
        return await self.loop.run(continue_=True)

    def cancel(self) -> bool:
        return self.loop.cancel()

    async def apply_prompt(self, server_id: str, name: str, arguments: dict | None = None) -> list[Message]:
        """Fetch a server prompt and append its messages to the conversation."""
        client = self.router.get(server_id)
        if client is None:
            raise KeyError(f"Server '{server_id}' is not part of this conversation")
        prompt = await client.get_prompt(name, arguments)
        added: list[Message] = []
        for entry in prompt.get("messages") or []:
            content = entry.get("content") or {}
            text = content.get("text", "") if isinstance(content, dict) else str(content)
            if entry.get("role") == "assistant":
                message = AssistantMessage(content=text)
            else:
                message = UserMessage(content=text)
            added.append(self._record(message))
        return added

    def _record(self, message: Message) -> Message:
        self.conversation.append(message)
        self._persist(message)
        return message

    def _persist(self, message: Message):
        if isinstance(self.store, SQLiteStore):
            self.store.append_message(self.conversation.id, message)

    # ── Server-initiated requests ─────────────────────────────────────────────

    async def _approve_sampling(self, server: ToolServer, request_id, params: dict) -> SamplingDecision:
        key = pending_key(server.id, request_id)
        pending = self.pending.open(key, "sampling", params)
        self.events.emit(
            EventType.SAMPLING_REQUEST_PENDING,
            key=key, server_id=server.id, server_name=server.name,
            request_id=request_id, params=params,
        )
        try:
            return await pending.wait()
        finally:
            self.pending.discard(key)

    def resolve_sampling(self, key: str, decision: SamplingDecision):
        self.pending.resolve(key, decision)

    async def handle_elicitation(self, server: ToolServer, request_id, params: dict) -> dict:
        request = ElicitationRequest.from_params(request_id, params)
        key = pending_key(server.id, request_id)
        pending = self.pending.open(key, "elicitation", params)
        self._elicitations[key] = request
        self.events.emit(
            EventType.ELICITATION_REQUEST_PENDING,
            key=key, server_id=server.id, server_name=server.name,
            request_id=request.id, mode=request.mode.value, message=request.message,
            url=request.url, requested_schema=request.requested_schema,
        )
        try:
            response: ElicitationResponse = await pending.wait()
        finally:
            self.pending.discard(key)
            self._elicitations.pop(key, None)

        self._record(ElicitationCardMessage(
            server_id=server.id,
            request_id=request.id,
            prompt=request.message,
            action=response.action.value,
        ))
        logger.info("Elicitation %s from '%s': %s", request.id, server.name, response.action.value)
        return response.to_result()

    def resolve_elicitation(self, key: str, response: ElicitationResponse):
        """
        Answer an elicitation. Accepted form content is validated first; a
        ValueError carrying the field errors leaves the request open.
        """
        request = self._elicitations.get(key)
        if (
            request is not None
            and request.mode is ElicitationMode.FORM
            and response.action is ElicitationAction.ACCEPT
        ):
            errors = request.form().validate_all(response.content or {})
            if errors:
                raise ValueError(errors)
        self.pending.resolve(key, response)

    def _on_auth_required(self, server: ToolServer, params: dict):
        server.oauth_status = OAuthStatus.REQUIRED
        if self.store is not None:
            self.store.save_server_status(server.id, OAuthStatus.REQUIRED)
        self.events.emit(
            EventType.AUTH_REQUIRED,
            server_id=server.id, server_name=server.name, server_url=server.url, params=params,
        )
