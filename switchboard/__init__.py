"""
Switchboard — an agentic loop that patches an LLM through to remote tool servers.
"""

__version__ = "0.4.0"
