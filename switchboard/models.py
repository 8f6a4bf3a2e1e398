"""
Data models for conversations, tool servers and tokens.

Message is a closed set of variants. Every variant is converted to the LLM
wire format by exactly one function, to_wire(); local-only variants map to
None and are never sent upstream.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from switchboard.errors import ConversationIntegrityError, ProtocolError

# Tokens are treated as expired this many seconds before their real expiry
EXPIRY_SKEW_SECONDS = 30


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------

@dataclass
class ToolCall:
    """A tool invocation requested by the model. arguments is the raw JSON text."""
    id: str
    name: str
    arguments: str = "{}"

    def parsed_arguments(self) -> dict:
        """Decode arguments. Raises ValueError when they are not a JSON object."""
        raw = self.arguments.strip() if self.arguments else ""
        if not raw:
            return {}
        value = json.loads(raw)
        if not isinstance(value, dict):
            raise ValueError(f"arguments must be a JSON object, got {type(value).__name__}")
        return value

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_wire(cls, data: dict) -> ToolCall:
        fn = data.get("function", {})
        return cls(id=data.get("id", ""), name=fn.get("name", ""), arguments=fn.get("arguments") or "{}")


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

@dataclass
class Message:
    """Common fields shared by every message variant."""
    id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: str = field(default_factory=_now_iso)

    kind = "message"


@dataclass
class UserMessage(Message):
    content: str = ""

    kind = "user"


@dataclass
class SystemMessage(Message):
    content: str = ""

    kind = "system"


@dataclass
class AssistantMessage(Message):
    content: str = ""
    reasoning: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)

    kind = "assistant"


@dataclass
class ToolResultMessage(Message):
    tool_call_id: str = ""
    tool_name: str = ""
    content: str = ""
    is_error: bool = False

    kind = "tool"


@dataclass
class NotificationMessage(Message):
    """A server notification that is shown to the model on the next turn."""
    server_id: str = ""
    server_name: str = ""
    method: str = ""
    params: dict = field(default_factory=dict)

    kind = "notification"


@dataclass
class ElicitationCardMessage(Message):
    """Local-only record of an elicitation the user answered."""
    server_id: str = ""
    request_id: str = ""
    prompt: str = ""
    action: str = ""

    kind = "elicitation"


MESSAGE_TYPES: dict[str, type[Message]] = {
    cls.kind: cls
    for cls in (
        UserMessage, SystemMessage, AssistantMessage,
        ToolResultMessage, NotificationMessage, ElicitationCardMessage,
    )
}


def to_wire(message: Message) -> dict | None:
    """
    Convert a message to the OpenAI chat format.
    Returns None for local-only variants. Unknown variants are a programming
    error and raise TypeError.
    """
    if isinstance(message, UserMessage):
        return {"role": "user", "content": message.content}
    if isinstance(message, SystemMessage):
        return {"role": "system", "content": message.content}
    if isinstance(message, AssistantMessage):
        wire: dict = {"role": "assistant", "content": message.content}
        if message.tool_calls:
            wire["tool_calls"] = [tc.to_wire() for tc in message.tool_calls]
            if not message.content:
                wire["content"] = None
        return wire
    if isinstance(message, ToolResultMessage):
        return {
            "role": "tool",
            "tool_call_id": message.tool_call_id,
            "name": message.tool_name,
            "content": message.content,
        }
    if isinstance(message, NotificationMessage):
        params = json.dumps(message.params, ensure_ascii=False)
        return {
            "role": "user",
            "content": (
                f'[Notification from MCP server "{message.server_name}"]\n'
                f"Method: {message.method}\n"
                f"Params: {params}"
            ),
        }
    if isinstance(message, ElicitationCardMessage):
        return None
    raise TypeError(f"No wire format for message type {type(message).__name__}")


def message_to_dict(message: Message) -> dict:
    """Flatten a message for storage. The 'kind' key selects the variant on load."""
    data = {k: v for k, v in message.__dict__.items()}
    if isinstance(message, AssistantMessage):
        data["tool_calls"] = [tc.to_wire() for tc in message.tool_calls]
    data["kind"] = message.kind
    return data


def message_from_dict(data: dict) -> Message:
    data = dict(data)
    kind = data.pop("kind", "")
    cls = MESSAGE_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"Unknown message kind: {kind!r}")
    if cls is AssistantMessage:
        data["tool_calls"] = [ToolCall.from_wire(tc) for tc in data.get("tool_calls") or []]
    return cls(**data)


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

@dataclass
class Conversation:
    """An ordered, append-only message history bound to a model and tool servers."""
    id: str = field(default_factory=lambda: uuid4().hex)
    title: str = ""
    model: str = ""
    server_ids: list[str] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)
    created_at: str = field(default_factory=_now_iso)

    def declared_call_ids(self) -> set[str]:
        ids: set[str] = set()
        for m in self.messages:
            if isinstance(m, AssistantMessage):
                ids.update(tc.id for tc in m.tool_calls)
        return ids

    def append(self, message: Message) -> Message:
        if isinstance(message, ToolResultMessage):
            if message.tool_call_id not in self.declared_call_ids():
                raise ConversationIntegrityError(
                    f"Tool result for undeclared call id {message.tool_call_id!r}"
                )
        self.messages.append(message)
        return message

    def to_wire(self, system_prompt: str = "") -> list[dict]:
        """Materialize the history for the backend, system prompt first."""
        wire: list[dict] = []
        if system_prompt:
            wire.append({"role": "system", "content": system_prompt})
        for m in self.messages:
            converted = to_wire(m)
            if converted is not None:
                wire.append(converted)
        return wire


# ---------------------------------------------------------------------------
# Tool servers and tokens
# ---------------------------------------------------------------------------

class OAuthStatus(str, Enum):
    NONE = "none"
    REQUIRED = "required"
    PENDING = "pending"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
    FAILED = "failed"


@dataclass
class TokenBundle:
    access_token: str
    refresh_token: str | None = None
    expires_at: float | None = None  # epoch seconds
    token_type: str = "Bearer"
    scope: str | None = None

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        now = time.time() if now is None else now
        return now >= self.expires_at - EXPIRY_SKEW_SECONDS

    @classmethod
    def from_token_response(
        cls,
        data: dict,
        now: float | None = None,
        previous_refresh_token: str | None = None,
    ) -> TokenBundle:
        """Build a bundle from an OAuth token endpoint response body."""
        now = time.time() if now is None else now
        expires_at = None
        expires_in = data.get("expires_in")
        if expires_in not in (None, ""):
            try:
                expires_at = now + float(expires_in)
            except (TypeError, ValueError):
                expires_at = None
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            expires_at=expires_at,
            token_type=data.get("token_type") or "Bearer",
            scope=data.get("scope"),
        )

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "token_type": self.token_type,
            "scope": self.scope,
        }

    @classmethod
    def from_dict(cls, data: dict) -> TokenBundle:
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=data.get("expires_at"),
            token_type=data.get("token_type") or "Bearer",
            scope=data.get("scope"),
        )


@dataclass
class ToolServer:
    """A configured remote tool server."""
    id: str
    name: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    enabled: bool = True
    oauth_status: OAuthStatus = OAuthStatus.NONE
    tokens: TokenBundle | None = None
    oauth_client_id: str | None = None
    oauth_client_secret: str | None = None
    oauth_scope: str | None = None

    @classmethod
    def from_config(cls, cfg: dict) -> ToolServer:
        name = cfg.get("name") or cfg["url"]
        return cls(
            id=cfg.get("id") or name,
            name=name,
            url=cfg["url"],
            headers=dict(cfg.get("headers") or {}),
            enabled=cfg.get("enabled", True),
            oauth_client_id=cfg.get("oauth_client_id"),
            oauth_client_secret=cfg.get("oauth_client_secret"),
            oauth_scope=cfg.get("oauth_scope"),
        )


# ---------------------------------------------------------------------------
# Tool descriptors and results
# ---------------------------------------------------------------------------

@dataclass
class ToolDescriptor:
    name: str
    description: str = ""
    input_schema: dict = field(default_factory=lambda: {"type": "object", "properties": {}})
    server_id: str = ""

    @classmethod
    def from_dict(cls, data: dict, server_id: str = "") -> ToolDescriptor:
        return cls(
            name=data["name"],
            description=data.get("description") or "",
            input_schema=data.get("inputSchema") or {"type": "object", "properties": {}},
            server_id=server_id,
        )

    def to_openai_tool(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


@dataclass
class ToolResult:
    content: list[dict] = field(default_factory=list)
    is_error: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> ToolResult:
        """Raises ProtocolError when a content block is not a typed object."""
        content = data.get("content")
        if not isinstance(content, list):
            content = []
        for block in content:
            if not isinstance(block, dict) or not isinstance(block.get("type"), str):
                raise ProtocolError(f"Malformed tool result content block: {block!r:.100}")
        return cls(content=content, is_error=bool(data.get("isError", False)))

    @classmethod
    def error(cls, message: str) -> ToolResult:
        return cls(content=[{"type": "text", "text": message}], is_error=True)

    @property
    def text(self) -> str:
        parts: list[str] = []
        for block in self.content:
            kind = block.get("type")
            if kind == "text":
                parts.append(block.get("text", ""))
            elif kind in ("image", "audio"):
                parts.append(f"[{kind}: {block.get('mimeType', 'unknown')}]")
            elif kind == "resource":
                resource = block.get("resource", {})
                parts.append(resource.get("text") or f"[resource: {resource.get('uri', '')}]")
            elif kind == "resource_link":
                parts.append(f"[resource: {block.get('uri', '')}]")
        return "\n".join(parts)
