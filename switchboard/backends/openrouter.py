"""
OpenRouter backend — hosted models behind one OpenAI-compatible API.

Adds the attribution headers OpenRouter asks for, resolves ${VAR} API keys
and copies the reported request cost onto the response.
"""

from __future__ import annotations

import logging
import os

from switchboard.backends.base import BackendResponse
from switchboard.backends.openai_compat import OpenAICompatibleBackend

logger = logging.getLogger(__name__)

OPENROUTER_URL = "https://openrouter.ai/api/v1"


class OpenRouterBackend(OpenAICompatibleBackend):
    """OpenAI-compatible backend that refuses to run without a key."""

    def __init__(
        self,
        name: str,
        url: str = OPENROUTER_URL,
        api_key: str = "",
        timeout: int = 120,
    ):
        super().__init__(name, url, timeout=timeout, api_key=self._resolve_env(api_key))

    @staticmethod
    def _resolve_env(value: str) -> str:
        if value and value.startswith("${") and value.endswith("}"):
            return os.environ.get(value[2:-1], "")
        return value

    def _headers(self) -> dict:
        headers = super()._headers()
        headers["HTTP-Referer"] = "https://github.com/switchboard-mcp/switchboard"
        headers["X-Title"] = "Switchboard"
        return headers

    @staticmethod
    def _extract_cost(data: dict) -> float | None:
        """Cost is either top-level cost_usd or usage.cost, if OpenRouter reports it."""
        usage = data.get("usage") or {}
        for raw in (data.get("cost_usd"), usage.get("cost")):
            if raw is None:
                continue
            try:
                return float(raw)
            except (ValueError, TypeError):
                logger.debug("Ignoring unparseable cost %r", raw)
        return None

    def _to_response(self, resp, latency: float) -> BackendResponse:
        response = super()._to_response(resp, latency)
        if response.ok:
            response.cost_usd = self._extract_cost(response.data)
        return response

    async def forward(self, body: dict) -> BackendResponse:
        if not self.api_key:
            return BackendResponse(
                ok=False, status_code=401, backend_name=self.name,
                error="No API key configured for OpenRouter",
            )
        return await super().forward(body)

    async def forward_stream(self, body: dict):
        if not self.api_key:
            raise RuntimeError("No API key configured for OpenRouter")
        async for line in super().forward_stream(body):
            yield line

    async def health_check(self) -> bool:
        if not self.api_key:
            return False
        return await super().health_check()
