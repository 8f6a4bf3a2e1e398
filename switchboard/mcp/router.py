"""
Tool Router — the set of tool-server clients bound to one conversation.

Clients are kept in server registration order. When two servers advertise
the same tool name, the first registered server wins and the duplicate is
logged and hidden from the model.
"""

from __future__ import annotations

import asyncio
import logging

from switchboard.errors import AuthRequiredError, ProtocolError, TransportError
from switchboard.mcp.client import ClientState, ToolProtocolClient
from switchboard.models import ToolDescriptor, ToolServer

logger = logging.getLogger(__name__)


class ToolRouter:
    """Owns one ToolProtocolClient per enabled server of a conversation."""

    def __init__(
        self,
        conversation_id: str,
        servers: list[ToolServer],
        store=None,
        token_manager=None,
        mcp_config: dict | None = None,
        client_factory=ToolProtocolClient,
    ):
        self.conversation_id = conversation_id
        self.store = store
        cfg = mcp_config or {}
        self.clients: dict[str, ToolProtocolClient] = {}
        self._shadowed_logged: set[tuple[str, str]] = set()

        for server in servers:
            if not server.enabled:
                continue
            session_id = store.load_session(conversation_id, server.id) if store is not None else None
            client = client_factory(
                server,
                session_id=session_id,
                token_provider=token_manager.access_token if token_manager is not None else None,
                protocol_version=cfg.get("protocol_version", "2025-06-18"),
                request_timeout=cfg.get("request_timeout", 30),
                tool_timeout=cfg.get("tool_timeout", 120),
            )
            client.on_session_established = self._remember_session
            self.clients[server.id] = client

        logger.info(
            "Tool router for %s: %s",
            conversation_id, " → ".join(self.clients) or "(no servers)",
        )

    def get(self, server_id: str) -> ToolProtocolClient | None:
        return self.clients.get(server_id)

    def _remember_session(self, server: ToolServer, session_id: str):
        if self.store is not None:
            self.store.save_session(self.conversation_id, server.id, session_id)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect_all(self) -> dict[str, Exception | None]:
        """Connect every client concurrently. Failures are reported, not raised."""
        ids = list(self.clients)
        outcomes = await asyncio.gather(*(self._connect(self.clients[i]) for i in ids))
        return dict(zip(ids, outcomes))

    async def _connect(self, client: ToolProtocolClient) -> Exception | None:
        try:
            await client.connect()
        except AuthRequiredError as e:
            logger.info("Server '%s' connected in degraded state: needs auth", client.server.name)
            return e
        except (TransportError, ProtocolError) as e:
            logger.warning("Server '%s' failed to connect: %s", client.server.name, e)
            return e
        return None

    async def reconnect(self, server_id: str) -> Exception | None:
        """Reconnect one server, e.g. after the user finished authorizing it."""
        client = self.clients[server_id]
        client.reset()
        return await self._connect(client)

    async def refresh_stale(self):
        """Refetch tool lists invalidated by list_changed notifications."""
        stale = [
            c for c in self.clients.values()
            if c.state is ClientState.READY and c.tools_stale
        ]
        for client in stale:
            try:
                await client.list_tools(refresh=True)
            except (AuthRequiredError, TransportError, ProtocolError) as e:
                logger.warning("Tool refresh for '%s' failed: %s", client.server.name, e)

    async def close(self):
        await asyncio.gather(*(c.close() for c in self.clients.values()))

    # ------------------------------------------------------------------
    # Tool lookup
    # ------------------------------------------------------------------

    def tool_index(self) -> dict[str, tuple[ToolProtocolClient, ToolDescriptor]]:
        index: dict[str, tuple[ToolProtocolClient, ToolDescriptor]] = {}
        for client in self.clients.values():
            for tool in client.cached_tools:
                if tool.name in index:
                    winner = index[tool.name][0].server.id
                    key = (tool.name, client.server.id)
                    if key not in self._shadowed_logged:
                        self._shadowed_logged.add(key)
                        logger.warning(
                            "Tool '%s' from '%s' is shadowed by '%s'",
                            tool.name, client.server.id, winner,
                        )
                    continue
                index[tool.name] = (client, tool)
        return index

    def client_for(self, tool_name: str) -> ToolProtocolClient | None:
        entry = self.tool_index().get(tool_name)
        return entry[0] if entry else None

    def tools(self) -> list[ToolDescriptor]:
        return [descriptor for _, descriptor in self.tool_index().values()]

    def openai_tools(self) -> list[dict]:
        return [t.to_openai_tool() for t in self.tools()]
