"""
Generic OpenAI-compatible backend.

Supports any endpoint that speaks the OpenAI chat-completions format with
tool calling (llama.cpp server, vLLM, LocalAI, Ollama's /v1 shim, ...).
The configured url is the API root, e.g. http://localhost:11434/v1.
"""

from __future__ import annotations

import logging
import time

import httpx

from switchboard.backends.base import BaseBackend, BackendResponse

logger = logging.getLogger(__name__)


class OpenAICompatibleBackend(BaseBackend):
    """
    Generic backend for OpenAI-compatible endpoints.

    Works with any service that implements /chat/completions and /models.
    """

    def __init__(
        self,
        name: str,
        url: str,
        timeout: int = 120,
        api_key: str = "",
    ):
        super().__init__(name, url, timeout)
        self.api_key = api_key

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def forward(self, body: dict) -> BackendResponse:
        """Forward a non-streaming request."""
        t0 = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.url}/chat/completions",
                    json=body,
                    headers=self._headers(),
                )
                latency = (time.monotonic() - t0) * 1000
                return self._to_response(resp, latency)
        except httpx.TimeoutException:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("Backend '%s' timed out after %.0fms", self.name, latency)
            return BackendResponse(
                ok=False,
                status_code=504,
                backend_name=self.name,
                latency_ms=latency,
                error=f"Timeout after {self.timeout}s",
            )
        except httpx.HTTPError as e:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("Backend '%s' failed: %s", self.name, e)
            return BackendResponse(
                ok=False,
                status_code=503,
                backend_name=self.name,
                latency_ms=latency,
                error=str(e),
            )

    def _to_response(self, resp: httpx.Response, latency: float) -> BackendResponse:
        """Turn an HTTP reply into a BackendResponse. An error object without choices is a failure."""
        if resp.status_code >= 400:
            return BackendResponse(
                ok=False,
                status_code=resp.status_code,
                backend_name=self.name,
                latency_ms=latency,
                error=f"HTTP {resp.status_code}: {resp.text[:200]}",
            )

        data = resp.json()
        if "error" in data and not data.get("choices"):
            err = data["error"]
            return BackendResponse(
                ok=False,
                status_code=resp.status_code,
                backend_name=self.name,
                latency_ms=latency,
                error=err.get("message", str(err)) if isinstance(err, dict) else str(err),
            )
        return BackendResponse(
            ok=True,
            status_code=resp.status_code,
            data=data,
            backend_name=self.name,
            latency_ms=latency,
        )

    async def forward_stream(self, body: dict):
        """Forward a streaming request, yielding SSE lines."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream(
                    "POST",
                    f"{self.url}/chat/completions",
                    json=body,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                    resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        if line:
                            yield line
        except httpx.TimeoutException:
            logger.warning("Backend '%s' stream timed out", self.name)
            raise
        except httpx.HTTPError as e:
            logger.warning("Backend '%s' stream failed: %s", self.name, e)
            raise

    async def health_check(self) -> bool:
        """Check endpoint is reachable."""
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.get(f"{self.url}/models", headers=self._headers())
                return resp.status_code == 200
        except httpx.HTTPError:
            return False
