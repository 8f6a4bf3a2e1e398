"""
Error taxonomy for switchboard.

Recoverable kinds (transport, protocol, auth, session loss, elicitation
required, user rejection) are caught at the boundaries that know how to
recover. Fatal kinds (integrity, double resolution) always propagate.
"""

from __future__ import annotations


class SwitchboardError(Exception):
    """Root of every error raised by this package."""


class TransportError(SwitchboardError):
    """Network failure talking to a backend or tool server."""


class ToolTimeoutError(TransportError):
    """A tool call exceeded its deadline. Never retried automatically."""

    def __init__(self, tool_name: str, timeout: float):
        super().__init__(f"Tool '{tool_name}' timed out after {timeout:.1f}s")
        self.tool_name = tool_name
        self.timeout = timeout


class ProtocolError(SwitchboardError):
    """Malformed payload or a JSON-RPC error response."""

    def __init__(self, message: str, code: int | None = None, data=None):
        super().__init__(message)
        self.code = code
        self.data = data


class AuthRequiredError(SwitchboardError):
    """The tool server rejected the request until the user authorizes."""

    def __init__(self, server_id: str, server_url: str = "", params: dict | None = None):
        super().__init__(f"Server '{server_id}' requires authorization")
        self.server_id = server_id
        self.server_url = server_url
        self.params = params or {}


class SessionLostError(SwitchboardError):
    """The server no longer recognizes our session id."""


class ElicitationRequiredError(ProtocolError):
    """Server error -32042: the call needs the user to visit one or more URLs first."""

    def __init__(self, message: str, elicitations: list, data=None):
        super().__init__(message, code=-32042, data=data)
        self.elicitations = elicitations


class UserRejectedError(SwitchboardError):
    """The user declined a sampling request."""


class OAuthError(SwitchboardError):
    """Failure somewhere in the OAuth discovery / exchange / refresh flow."""

    def __init__(self, message: str, code: str = "oauth_error", http_status: int | None = None):
        super().__init__(message)
        self.code = code
        self.http_status = http_status


class ConversationIntegrityError(SwitchboardError):
    """A tool result referenced a call id no assistant message declared."""


class DoubleResolutionError(SwitchboardError):
    """A pending sampling/elicitation request was resolved twice."""
