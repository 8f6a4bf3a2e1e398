"""
Sampling Processor — answers sampling/createMessage requests from tool servers.

A server asks us to run an LLM completion on its behalf. The user approves
(optionally editing the request) or rejects it first. The completion runs
as a bounded, non-streaming loop: if the model calls tools, they are
executed through the shared dispatcher and fed back, up to the iteration
cap, after which the pending tool calls are handed back to the server.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from switchboard.errors import SwitchboardError, TransportError, UserRejectedError
from switchboard.models import ToolCall, ToolServer

logger = logging.getLogger(__name__)

DEFAULT_SAMPLING_MODEL = "deepseek/deepseek-v3.2"
MAX_SAMPLING_ITERATIONS = 10

FINISH_REASONS = {
    "stop": "endTurn",
    "length": "maxTokens",
    "tool_calls": "toolUse",
}


def map_finish_reason(reason: str | None) -> str:
    return FINISH_REASONS.get(reason or "", "endTurn")


@dataclass
class SamplingDecision:
    approved: bool
    params: dict | None = None  # edited request, when the user changed it

    @classmethod
    def approve(cls, params: dict | None = None) -> SamplingDecision:
        return cls(True, params)

    @classmethod
    def reject(cls) -> SamplingDecision:
        return cls(False)


# ---------------------------------------------------------------------------
# Request conversion
# ---------------------------------------------------------------------------

def _tool_result_text(block: dict) -> str:
    content = block.get("content") or []
    if isinstance(content, str):
        return content
    return "\n".join(c.get("text", "") for c in content if isinstance(c, dict) and c.get("type") == "text")


def convert_messages(messages: list) -> list[dict]:
    """Sampling messages → chat-completions messages. Non-text media is skipped."""
    out: list[dict] = []
    for message in messages:
        role = message.get("role", "user")
        content = message.get("content")

        if isinstance(content, str):
            out.append({"role": role, "content": content})
            continue
        if isinstance(content, dict):
            content = [content]
        if not isinstance(content, list):
            continue

        blocks = [b for b in content if isinstance(b, dict)]
        tool_uses = [b for b in blocks if b.get("type") == "tool_use"]
        tool_results = [b for b in blocks if b.get("type") == "tool_result"]
        text = "\n".join(b.get("text", "") for b in blocks if b.get("type") == "text")

        if role == "assistant" and tool_uses:
            wire = {
                "role": "assistant",
                "tool_calls": [
                    {
                        "id": b.get("id"),
                        "type": "function",
                        "function": {"name": b.get("name"), "arguments": json.dumps(b.get("input") or {})},
                    }
                    for b in tool_uses
                ],
            }
            if text:
                wire["content"] = text
            out.append(wire)
        elif role == "user" and tool_results:
            for b in tool_results:
                out.append({
                    "role": "tool",
                    "tool_call_id": b.get("toolUseId"),
                    "content": _tool_result_text(b),
                })
        elif text:
            out.append({"role": role, "content": text})
    return out


def convert_tool_choice(choice: dict | None):
    if not choice:
        return None
    mode = choice.get("type") or choice.get("mode")
    if mode in ("none", "auto", "required"):
        return mode
    if mode == "tool" or (mode is not None and "name" in choice):
        return {"type": "function", "function": {"name": choice.get("name")}}
    return None


def convert_tools(tools: list | None) -> list[dict]:
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description") or "",
                "parameters": t.get("inputSchema") or {},
            },
        }
        for t in tools or []
    ]


def _tool_use_blocks(tool_calls: list[dict]) -> list[dict]:
    blocks = []
    for tc in tool_calls:
        fn = tc.get("function") or {}
        try:
            arguments = json.loads(fn.get("arguments") or "{}")
        except json.JSONDecodeError:
            arguments = {}
        blocks.append({"type": "tool_use", "id": tc.get("id"), "name": fn.get("name"), "input": arguments})
    return blocks


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------

class SamplingProcessor:
    """
    approver(server, request_id, params) -> SamplingDecision
    preferred_model: model to use when the request carries no usable hint
    (usually the conversation's model).
    """

    def __init__(
        self,
        backend,
        dispatcher=None,
        approver=None,
        preferred_model: str | None = None,
        default_model: str = DEFAULT_SAMPLING_MODEL,
        max_iterations: int = MAX_SAMPLING_ITERATIONS,
    ):
        self.backend = backend
        self.dispatcher = dispatcher
        self.approver = approver
        self.preferred_model = preferred_model
        self.default_model = default_model
        self.max_iterations = max_iterations

    def select_model(self, preferences: dict | None) -> str:
        hints = (preferences or {}).get("hints") or []
        if hints and isinstance(hints[0], dict):
            name = hints[0].get("name") or ""
            if "/" in name:
                return name
        return self.preferred_model or self.default_model

    def build_body(self, params: dict) -> dict:
        messages: list[dict] = []
        if params.get("systemPrompt"):
            messages.append({"role": "system", "content": params["systemPrompt"]})
        messages.extend(convert_messages(params.get("messages") or []))

        body = {
            "model": self.select_model(params.get("modelPreferences")),
            "messages": messages,
            "stream": False,
        }
        if params.get("maxTokens"):
            body["max_tokens"] = params["maxTokens"]
        if params.get("temperature") is not None:
            body["temperature"] = params["temperature"]
        if params.get("stopSequences"):
            body["stop"] = params["stopSequences"]
        tools = convert_tools(params.get("tools"))
        if tools:
            body["tools"] = tools
            tool_choice = convert_tool_choice(params.get("toolChoice"))
            if tool_choice is not None:
                body["tool_choice"] = tool_choice
        return body

    async def handle(self, server: ToolServer, request_id, params: dict) -> dict:
        """Entry point wired to ToolProtocolClient.on_sampling."""
        if self.approver is not None:
            decision = await self.approver(server, request_id, params)
            if not decision.approved:
                logger.info("User rejected sampling request %s from '%s'", request_id, server.name)
                raise UserRejectedError("User rejected sampling request")
            if decision.params is not None:
                params = decision.params
        return await self.process(params)

    async def process(self, params: dict) -> dict:
        body = self.build_body(params)
        model = body["model"]
        logger.info("Sampling with %s (%d messages)", model, len(body["messages"]))

        for iteration in range(1, self.max_iterations + 1):
            response = await self.backend.forward(body)
            if not response.ok:
                raise TransportError(f"Sampling completion failed: {response.error}")

            tool_calls = response.tool_calls
            if not tool_calls:
                return {
                    "role": "assistant",
                    "content": {"type": "text", "text": response.content},
                    "model": model,
                    "stopReason": map_finish_reason(response.finish_reason),
                }

            if iteration >= self.max_iterations:
                logger.info("Sampling hit %d iterations, returning tool calls to server", iteration)
                return {
                    "role": "assistant",
                    "content": _tool_use_blocks(tool_calls),
                    "model": model,
                    "stopReason": "toolUse",
                }

            try:
                results = await self._execute(tool_calls)
            except SwitchboardError as e:
                return {
                    "role": "assistant",
                    "content": {"type": "text", "text": f"Error during tool execution: {e}"},
                    "model": model,
                    "stopReason": "endTurn",
                }
            body["messages"].append({"role": "assistant", "tool_calls": tool_calls})
            body["messages"].extend(results)

        return {
            "role": "assistant",
            "content": {"type": "text", "text": "Error: Maximum sampling iterations exceeded"},
            "model": model,
            "stopReason": "endTurn",
        }

    async def _execute(self, tool_calls: list[dict]) -> list[dict]:
        if self.dispatcher is None:
            raise SwitchboardError("no tool executor available")
        results = []
        # One at a time: these run inside the requesting client's call lock
        for raw in tool_calls:
            call = ToolCall.from_wire(raw)
            message = await self.dispatcher.execute(call, origin="sampling")
            results.append({
                "role": "tool",
                "tool_call_id": message.tool_call_id,
                "content": message.content,
            })
        return results
