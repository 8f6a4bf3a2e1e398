"""
AgenticLoop — drives LLM completion and tool execution until the task converges.

Each iteration:
  1. Materializes the conversation for the backend (system prompt first,
     local-only messages dropped, notifications included as context)
  2. Streams a completion, emitting content/reasoning deltas as they arrive
  3. Finalizes the assistant message, then flushes notifications that arrived
     while it was streaming
  4. No tool calls → run_complete. Otherwise every call is dispatched
     concurrently and all results are gathered before the next iteration.
     Notifications arriving during dispatch are held until every result is
     appended, so tool results always follow their assistant message.

The loop stops after max_iterations dispatch cycles with run_max_iterations,
which is not a failure: run(continue_=True) picks up from there.

Usage:

    loop = AgenticLoop(conversation, backend, router, dispatcher, events, model="x/y")
    conversation.append(UserMessage(content="What's the weather in Oslo?"))
    state = await loop.run()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum

from switchboard.backends.streaming import StreamAccumulator
from switchboard.errors import ProtocolError, TransportError
from switchboard.events import EventStream, EventType
from switchboard.models import (
    AssistantMessage,
    Conversation,
    Message,
    NotificationMessage,
    ToolCall,
    ToolResultMessage,
    ToolServer,
)

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 10

CANCELLED_RESULT = "Tool call cancelled by user"
ABORTED_RESULT = "Tool call aborted: the run failed"


class RunState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_DISPATCH = "tool_dispatch"
    COMPLETE = "complete"
    MAX_ITERATIONS = "max_iterations"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class _Notification:
    server: ToolServer
    method: str
    params: dict = field(default_factory=dict)

    @property
    def kind(self) -> str:
        if self.method == "notifications/progress":
            return "progress"
        if self.method == "notifications/tools/list_changed":
            return "tools_changed"
        if self.method == "notifications/resources/list_changed":
            return "resources_changed"
        return "generic"


class AgenticLoop:
    """
    One loop per conversation. on_message(message) is called for every
    message appended to the conversation (persistence hook).
    """

    def __init__(
        self,
        conversation: Conversation,
        backend,
        router,
        dispatcher,
        events: EventStream,
        model: str | None = None,
        system_prompt: str = "",
        max_iterations: int = MAX_ITERATIONS,
        on_message=None,
    ):
        self.conversation = conversation
        self.backend = backend
        self.router = router
        self.dispatcher = dispatcher
        self.events = events
        self.model = model or conversation.model
        self.system_prompt = system_prompt
        self.max_iterations = max_iterations
        self.on_message = on_message

        self.state = RunState.IDLE
        self.iterations = 0
        self._task: asyncio.Task | None = None
        self._acc: StreamAccumulator | None = None
        self._buffer: list[_Notification] = []

    # ── Public entry points ───────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self, continue_: bool = False) -> RunState:
        """
        Run until a terminal state and return it.
        continue_=True resumes after run_max_iterations without a new user
        message; the run gets a fresh budget of max_iterations cycles.
        """
        if self.running:
            raise RuntimeError("a run is already in progress for this conversation")
        self.iterations = 0
        self._task = asyncio.create_task(self._run(continue_))
        return await self._task

    def cancel(self) -> bool:
        """Cancel the in-flight run. Returns False when nothing is running."""
        if not self.running:
            return False
        logger.info("Cancelling run for conversation %s", self.conversation.id)
        self._task.cancel()
        return True

    async def on_notification(self, server: ToolServer, method: str, params: dict):
        """Client callback. Buffered while streaming or dispatching, delivered at once otherwise."""
        note = _Notification(server, method, params or {})
        if self.state in (RunState.STREAMING, RunState.TOOL_DISPATCH):
            self._buffer.append(note)
            return
        self._deliver(note)

    # ── Run ───────────────────────────────────────────────────────────────────

    async def _run(self, continue_: bool) -> RunState:
        self.events.emit(
            EventType.RUN_STARTED,
            conversation_id=self.conversation.id, model=self.model, continued=continue_,
        )
        pending_calls: list[ToolCall] = []
        dispatch: list[asyncio.Task] = []
        try:
            while True:
                await self.router.refresh_stale()

                self.state = RunState.STREAMING
                acc = self._acc = StreamAccumulator()
                await self._stream(acc)

                message = AssistantMessage(
                    content=acc.content, reasoning=acc.reasoning, tool_calls=acc.tool_calls,
                )
                self._acc = None
                self._append(message)
                self.events.emit(
                    EventType.MESSAGE_FINALIZED,
                    message_id=message.id, content=message.content, reasoning=message.reasoning,
                    tool_calls=[tc.to_wire() for tc in message.tool_calls],
                    finish_reason=acc.finish_reason,
                )
                self.state = RunState.IDLE
                self._flush()

                if not message.tool_calls:
                    return self._finish(RunState.COMPLETE, EventType.RUN_COMPLETE)

                self.state = RunState.TOOL_DISPATCH
                self.iterations += 1
                pending_calls = message.tool_calls
                dispatch = [
                    asyncio.create_task(self.dispatcher.execute(call)) for call in pending_calls
                ]
                results = await asyncio.gather(*dispatch)
                for result in results:
                    self._append(result)
                pending_calls, dispatch = [], []
                self.state = RunState.IDLE
                self._flush()

                if self.iterations >= self.max_iterations:
                    logger.info(
                        "Conversation %s hit %d iterations", self.conversation.id, self.iterations,
                    )
                    return self._finish(
                        RunState.MAX_ITERATIONS, EventType.RUN_MAX_ITERATIONS,
                        max_iterations=self.max_iterations,
                    )

        except asyncio.CancelledError:
            self._finalize_cancelled(pending_calls, dispatch)
            return self._finish(RunState.CANCELLED, EventType.RUN_CANCELLED)

        except (TransportError, ProtocolError) as e:
            logger.warning("Backend failure in conversation %s: %s", self.conversation.id, e)
            self._acc = None
            self._flush()
            return self._finish(RunState.ERROR, EventType.RUN_ERROR, error=str(e), fatal=False)

        except Exception as e:
            # Programming-contract violations: stop loudly
            for task in dispatch:
                task.cancel()
            self._acc = None
            self._settle(pending_calls, ABORTED_RESULT)
            self._flush()
            self.state = RunState.ERROR
            self.events.emit(
                EventType.RUN_ERROR,
                conversation_id=self.conversation.id, error=str(e), fatal=True,
            )
            raise

    async def _stream(self, acc: StreamAccumulator):
        body = {
            "model": self.model,
            "messages": self.conversation.to_wire(self.system_prompt),
            "stream": True,
        }
        tools = self.router.openai_tools()
        if tools:
            body["tools"] = tools

        async for line in self.backend.forward_stream(body):
            delta = acc.feed(line)
            if delta is not None:
                if delta.reasoning:
                    self.events.emit(EventType.REASONING_DELTA, text=delta.reasoning)
                if delta.content:
                    self.events.emit(EventType.CONTENT_DELTA, text=delta.content)
            if acc.done:
                break

    def _finalize_cancelled(self, pending_calls: list[ToolCall], dispatch: list[asyncio.Task]):
        acc, self._acc = self._acc, None
        if acc is not None and (acc.content or acc.reasoning):
            # Partial tool calls are dropped: nothing was dispatched for them
            message = AssistantMessage(content=acc.content, reasoning=acc.reasoning)
            self._append(message)
            self.events.emit(
                EventType.MESSAGE_FINALIZED,
                message_id=message.id, content=message.content, reasoning=message.reasoning,
                tool_calls=[], finish_reason="cancelled",
            )

        self._settle(pending_calls, CANCELLED_RESULT, dispatch)
        self.state = RunState.IDLE
        self._flush()

    def _settle(self, pending_calls: list[ToolCall], content: str, dispatch: list[asyncio.Task] | None = None):
        """
        Give every declared call still lacking a result one, in call order.
        Finished dispatch tasks contribute their real result; the rest get
        a failed result carrying content.
        """
        answered = {
            m.tool_call_id for m in self.conversation.messages if isinstance(m, ToolResultMessage)
        }
        for i, call in enumerate(pending_calls):
            if call.id in answered:
                continue
            task = dispatch[i] if dispatch else None
            if task is not None and task.done() and not task.cancelled() and task.exception() is None:
                self._append(task.result())
                continue
            if task is not None:
                task.cancel()
            self._append(ToolResultMessage(
                tool_call_id=call.id, tool_name=call.name, content=content, is_error=True,
            ))

    def _finish(self, state: RunState, event: EventType, **kw) -> RunState:
        self.state = state
        self.events.emit(
            event, conversation_id=self.conversation.id, iterations=self.iterations, **kw,
        )
        return state

    def _append(self, message: Message):
        self.conversation.append(message)
        if self.on_message is not None:
            self.on_message(message)

    # ── Notifications ─────────────────────────────────────────────────────────

    def _flush(self):
        buffered, self._buffer = self._buffer, []
        for note in buffered:
            self._deliver(note)

    def _deliver(self, note: _Notification):
        if note.kind == "generic":
            self._append(NotificationMessage(
                server_id=note.server.id,
                server_name=note.server.name,
                method=note.method,
                params=note.params,
            ))
        self.events.emit(
            EventType.NOTIFICATION_FLUSHED,
            server_id=note.server.id, server_name=note.server.name,
            method=note.method, params=note.params, kind=note.kind,
        )
