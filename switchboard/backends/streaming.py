"""
Chat-completions SSE parsing.

Each backend yields raw lines; StreamAccumulator turns them into content and
reasoning deltas and stitches tool-call fragments together by index.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from uuid import uuid4

from switchboard.errors import ProtocolError
from switchboard.models import ToolCall

logger = logging.getLogger(__name__)


@dataclass
class StreamDelta:
    content: str = ""
    reasoning: str = ""


def parse_sse_line(line: str) -> dict | str | None:
    """
    Decode one SSE line from a chat-completions stream.
    Returns the JSON chunk, the string "[DONE]", or None for lines to skip
    (comments, keep-alives, other fields).
    """
    line = line.strip()
    if not line or line.startswith(":") or not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if payload == "[DONE]":
        return "[DONE]"
    try:
        chunk = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("Skipping undecodable stream line: %s", payload[:200])
        return None
    return chunk if isinstance(chunk, dict) else None


class StreamAccumulator:
    """Accumulates one streamed completion."""

    def __init__(self):
        self.content = ""
        self.reasoning = ""
        self.finish_reason: str | None = None
        self.done = False
        self._tool_calls: dict[int, dict] = {}

    def feed(self, line: str) -> StreamDelta | None:
        chunk = parse_sse_line(line)
        if chunk is None:
            return None
        if chunk == "[DONE]":
            self.done = True
            return None

        if "error" in chunk:
            err = chunk["error"]
            message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            raise ProtocolError(f"Backend stream error: {message}")

        choices = chunk.get("choices") or []
        if not choices:
            return None
        choice = choices[0]
        if choice.get("finish_reason"):
            self.finish_reason = choice["finish_reason"]

        delta = choice.get("delta") or {}
        out = StreamDelta(
            content=delta.get("content") or "",
            reasoning=delta.get("reasoning") or delta.get("reasoning_content") or "",
        )
        self.content += out.content
        self.reasoning += out.reasoning

        for fragment in delta.get("tool_calls") or []:
            self._merge_tool_call(fragment)

        if out.content or out.reasoning:
            return out
        return None

    def _merge_tool_call(self, fragment: dict):
        index = fragment.get("index", len(self._tool_calls))
        slot = self._tool_calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
        if fragment.get("id"):
            slot["id"] = fragment["id"]
        fn = fragment.get("function") or {}
        if fn.get("name"):
            slot["name"] = fn["name"]
        if fn.get("arguments"):
            slot["arguments"] += fn["arguments"]

    @property
    def tool_calls(self) -> list[ToolCall]:
        calls = []
        for index in sorted(self._tool_calls):
            slot = self._tool_calls[index]
            if not slot["name"]:
                continue
            calls.append(ToolCall(
                id=slot["id"] or f"call_{uuid4().hex[:12]}",
                name=slot["name"],
                arguments=slot["arguments"] or "{}",
            ))
        return calls
