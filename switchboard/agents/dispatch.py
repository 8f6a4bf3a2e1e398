"""
Tool dispatcher — the single tool-execution primitive.

Used by the agentic loop and by the sampling processor. Local failures
(unknown tool, bad arguments, timeouts, transport and protocol errors,
missing authorization) become failed tool results so the model can see and
react to them. So does any other exception a tool raises; only the fatal
integrity and double-resolution errors propagate.
"""

from __future__ import annotations

import logging
import time

from switchboard.errors import (
    AuthRequiredError,
    ConversationIntegrityError,
    DoubleResolutionError,
    ElicitationRequiredError,
    ProtocolError,
    ToolTimeoutError,
    TransportError,
)
from switchboard.events import EventStream, EventType
from switchboard.mcp.elicitation import ElicitationAction, ElicitationRequest
from switchboard.models import ToolCall, ToolResult, ToolResultMessage, ToolServer

logger = logging.getLogger(__name__)


class ToolDispatcher:
    """
    elicitation_handler(server, request_id, params) -> result dict is the
    same callable the clients use for elicitation/create; URL elicitations
    demanded by a -32042 error go through it before the call is retried.
    """

    def __init__(
        self,
        router,
        events: EventStream | None = None,
        elicitation_handler=None,
        max_elicitation_rounds: int = 3,
        tool_timeout: float | None = None,
    ):
        self.router = router
        self.events = events
        self.elicitation_handler = elicitation_handler
        self.max_elicitation_rounds = max_elicitation_rounds
        self.tool_timeout = tool_timeout

    def _emit(self, type_: EventType, **kw):
        if self.events is not None:
            self.events.emit(type_, **kw)

    async def execute(self, call: ToolCall, origin: str = "loop") -> ToolResultMessage:
        self._emit(
            EventType.TOOL_CALL_STARTED,
            call_id=call.id, name=call.name, arguments=call.arguments, origin=origin,
        )
        t0 = time.monotonic()
        try:
            result = await self._execute(call)
            content = result.text
        except (ConversationIntegrityError, DoubleResolutionError):
            raise
        except Exception as e:
            logger.exception("Tool '%s' raised unexpectedly", call.name)
            result = ToolResult.error(f"Tool '{call.name}' failed: {e}")
            content = result.text
        latency_ms = round((time.monotonic() - t0) * 1000, 1)
        message = ToolResultMessage(
            tool_call_id=call.id,
            tool_name=call.name,
            content=content,
            is_error=result.is_error,
        )
        self._emit(
            EventType.TOOL_CALL_FINISHED,
            call_id=call.id, name=call.name, is_error=result.is_error,
            content=message.content, latency_ms=latency_ms, origin=origin,
        )
        return message

    async def _execute(self, call: ToolCall) -> ToolResult:
        client = self.router.client_for(call.name)
        if client is None:
            return ToolResult.error(f"Tool '{call.name}' not found")
        try:
            arguments = call.parsed_arguments()
        except ValueError as e:
            return ToolResult.error(f"Invalid arguments for tool '{call.name}': {e}")

        rounds = 0
        while True:
            try:
                return await client.call_tool(call.name, arguments, timeout=self.tool_timeout)
            except ElicitationRequiredError as e:
                rounds += 1
                if self.elicitation_handler is None or rounds > self.max_elicitation_rounds:
                    return ToolResult.error(f"Tool '{call.name}' requires user action: {e}")
                if not await self._run_elicitations(client.server, e.elicitations):
                    return ToolResult.error(f"Tool '{call.name}' was not run: the user declined the request")
                logger.info("Retrying '%s' after elicitation round %d", call.name, rounds)
            except ToolTimeoutError as e:
                return ToolResult.error(str(e))
            except AuthRequiredError:
                return ToolResult.error(
                    f"Tool '{call.name}' is unavailable: server '{client.server.name}' requires authorization"
                )
            except (TransportError, ProtocolError) as e:
                logger.warning("Tool '%s' failed: %s", call.name, e)
                return ToolResult.error(f"Tool '{call.name}' failed: {e}")

    async def _run_elicitations(self, server: ToolServer, elicitations: list[ElicitationRequest]) -> bool:
        for el in elicitations:
            params = {"mode": el.mode.value, "message": el.message}
            if el.url:
                params["url"] = el.url
            if el.elicitation_id:
                params["elicitationId"] = el.elicitation_id
            if el.requested_schema:
                params["requestedSchema"] = el.requested_schema
            result = await self.elicitation_handler(server, el.id, params)
            if ElicitationAction.parse(result.get("action", "")) is not ElicitationAction.ACCEPT:
                return False
        return True
