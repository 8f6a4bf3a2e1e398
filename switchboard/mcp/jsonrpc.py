"""
JSON-RPC 2.0 framing for the tool protocol.

Builders for outgoing messages, and parsers for incoming bodies. A POST
response is either a single JSON document or a text/event-stream whose
``data:`` fields each carry one JSON-RPC message.
"""

from __future__ import annotations

import itertools
import json

from switchboard.errors import ProtocolError

# Standard error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
URL_ELICITATION_REQUIRED = -32042
USER_REJECTED = -1

_ids = itertools.count(1)


def next_id() -> int:
    return next(_ids)


def request(method: str, params: dict | None = None, id_: int | str | None = None) -> dict:
    msg = {"jsonrpc": "2.0", "id": next_id() if id_ is None else id_, "method": method}
    if params is not None:
        msg["params"] = params
    return msg


def notification(method: str, params: dict | None = None) -> dict:
    msg = {"jsonrpc": "2.0", "method": method}
    if params is not None:
        msg["params"] = params
    return msg


def result(id_, result_: dict) -> dict:
    return {"jsonrpc": "2.0", "id": id_, "result": result_}


def error(id_, code: int, message: str, data=None) -> dict:
    err = {"code": code, "message": message}
    if data is not None:
        err["data"] = data
    return {"jsonrpc": "2.0", "id": id_, "error": err}


def is_request(msg: dict) -> bool:
    return "method" in msg and "id" in msg


def is_notification(msg: dict) -> bool:
    return "method" in msg and "id" not in msg


def is_response(msg: dict) -> bool:
    return "method" not in msg and ("result" in msg or "error" in msg)


def decode(raw: str) -> list[dict]:
    """Decode a JSON body into a list of messages (batches are flattened)."""
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON from server: {e}", code=PARSE_ERROR) from e
    items = value if isinstance(value, list) else [value]
    for item in items:
        if not isinstance(item, dict) or item.get("jsonrpc") != "2.0":
            raise ProtocolError(f"Not a JSON-RPC 2.0 message: {str(item)[:200]}", code=INVALID_REQUEST)
    return items


class SSEDecoder:
    """
    Incremental text/event-stream decoder.
    Feed it lines; it returns the data of each completed event.
    """

    def __init__(self):
        self._data: list[str] = []
        self.last_event_id: str | None = None

    def feed(self, line: str) -> str | None:
        line = line.rstrip("\r")
        if line == "":
            return self.flush()
        if line.startswith(":"):
            return None
        field_, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field_ == "data":
            self._data.append(value)
        elif field_ == "id":
            self.last_event_id = value
        return None

    def flush(self) -> str | None:
        if not self._data:
            return None
        data = "\n".join(self._data)
        self._data = []
        return data


def parse_body(body: str, content_type: str = "") -> list[dict]:
    """Parse a complete response body, JSON or SSE, into JSON-RPC messages."""
    if "text/event-stream" in content_type or (
        not content_type and body.lstrip().startswith(("data:", "event:", "id:", ":"))
    ):
        decoder = SSEDecoder()
        messages: list[dict] = []
        for line in body.splitlines() + [""]:
            data = decoder.feed(line)
            if data:
                messages.extend(decode(data))
        return messages
    if not body.strip():
        return []
    return decode(body)
