"""
LLM backends for switchboard.
OpenRouter and any OpenAI-compatible endpoint, wrapped with retry logic.
"""

from __future__ import annotations

import logging

from switchboard.backends.base import BaseBackend, BackendResponse
from switchboard.backends.openai_compat import OpenAICompatibleBackend
from switchboard.backends.openrouter import OpenRouterBackend
from switchboard.backends.retry_wrapper import RetryableBackendWrapper

logger = logging.getLogger(__name__)

# Provider name → backend class
PROVIDERS: dict[str, type[BaseBackend]] = {
    "openrouter": OpenRouterBackend,
    "openai_compat": OpenAICompatibleBackend,
}


def create_backend(cfg: dict) -> RetryableBackendWrapper:
    """Instantiate the configured backend, wrapped with retry logic."""
    provider = cfg.get("provider", "openrouter")
    cls = PROVIDERS.get(provider)
    if not cls:
        raise ValueError(f"Unknown backend provider '{provider}'")

    kwargs = {
        "name": cfg.get("name", provider),
        "api_key": cfg.get("api_key", ""),
        "timeout": cfg.get("timeout", 120),
    }
    if cfg.get("url"):
        kwargs["url"] = cfg["url"]
    elif provider != "openrouter":
        raise ValueError(f"Backend '{kwargs['name']}' has no url")

    backend = cls(**kwargs)
    logger.info("Backend initialized: %r", backend)
    return RetryableBackendWrapper(
        backend,
        max_retries=cfg.get("max_retries", 1),
        backoff_base=cfg.get("backoff_base", 1.5),
        backoff_max=cfg.get("backoff_max", 10.0),
    )


__all__ = [
    "BaseBackend",
    "BackendResponse",
    "OpenRouterBackend",
    "OpenAICompatibleBackend",
    "RetryableBackendWrapper",
    "create_backend",
]
