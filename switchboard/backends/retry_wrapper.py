"""
Retry wrapper for backends with exponential backoff.

Wraps any backend to add retry logic for transient errors:
- 429: Rate limited
- 5xx: Server errors
- connection failures before the first streamed line

Non-retried errors (permanent):
- 401, 403: Auth/permission errors
- 400: Bad request
- anything after the stream has started producing output
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

import httpx

from switchboard.backends.base import BaseBackend, BackendResponse
from switchboard.errors import TransportError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = (429, 500, 502, 503, 504)


class RetryableBackendWrapper:
    """
    Wraps any backend with exponential backoff retry logic.

    Exhausted streaming retries raise TransportError instead of yielding
    a fake chunk, so the caller can surface a run error.
    """

    def __init__(
        self,
        backend: BaseBackend,
        max_retries: int = 1,
        backoff_base: float = 1.5,
        backoff_max: float = 10.0,
    ):
        self.backend = backend
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

        self.name = backend.name
        self.url = backend.url
        self.timeout = backend.timeout

    def _is_retryable(self, status_code: int) -> bool:
        return status_code in RETRYABLE_STATUS

    def _is_retryable_exc(self, exc: Exception) -> bool:
        if isinstance(exc, httpx.HTTPStatusError):
            return self._is_retryable(exc.response.status_code)
        return isinstance(exc, httpx.TransportError)

    def _backoff_seconds(self, attempt: int) -> float:
        """Calculate backoff time for attempt N (exponential)."""
        delay = self.backoff_base ** attempt
        return min(delay, self.backoff_max)

    async def forward(self, body: dict) -> BackendResponse:
        """Forward with retry on transient errors."""
        model = body.get("model", "")

        for attempt in range(self.max_retries + 1):
            response = await self.backend.forward(body)

            if response.ok:
                return response

            if not self._is_retryable(response.status_code):
                logger.debug(
                    "Backend '%s' returned non-retryable %d for '%s': %s",
                    self.name,
                    response.status_code,
                    model,
                    response.error,
                )
                return response

            if attempt < self.max_retries:
                backoff = self._backoff_seconds(attempt + 1)
                logger.warning(
                    "Backend '%s' transient %d for '%s', retry in %.1fs (%d/%d)",
                    self.name,
                    response.status_code,
                    model,
                    backoff,
                    attempt + 1,
                    self.max_retries,
                )
                await asyncio.sleep(backoff)
                continue

            logger.error(
                "Backend '%s' exhausted retries for '%s' (last: %s)",
                self.name,
                model,
                response.error,
            )
        return response

    async def forward_stream(self, body: dict) -> AsyncIterator[str]:
        """Stream with retry on connection errors (never mid-stream)."""
        model = body.get("model", "")

        for attempt in range(self.max_retries + 1):
            started = False
            try:
                async for line in self.backend.forward_stream(body):
                    started = True
                    yield line
                return
            except (httpx.HTTPError, RuntimeError) as e:
                if started or not self._is_retryable_exc(e) or attempt >= self.max_retries:
                    logger.error(
                        "Backend '%s' stream failed for '%s': %s",
                        self.name,
                        model,
                        e,
                    )
                    raise TransportError(f"{self.name}: {e}") from e

                backoff = self._backoff_seconds(attempt + 1)
                logger.warning(
                    "Backend '%s' stream error for '%s', retry in %.1fs: %s",
                    self.name,
                    model,
                    backoff,
                    e,
                )
                await asyncio.sleep(backoff)

    async def health_check(self) -> bool:
        """Delegate to wrapped backend."""
        return await self.backend.health_check()
