"""
Tool protocol (MCP over streamable HTTP): client, routing, pending requests
and elicitation forms.
"""
