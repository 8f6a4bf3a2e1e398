"""
Config loader for switchboard.
Reads config.yaml once and caches it. All other modules import from here.
${ENV_VAR} references anywhere in the file are resolved from the
environment (after .env has been loaded).
"""

import copy
import os
import re
import yaml
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

_config: dict | None = None

DEFAULTS: dict = {
    "backend": {
        "provider": "openrouter",
        "url": "https://openrouter.ai/api/v1",
        "api_key": "",
        "default_model": "deepseek/deepseek-v3.2",
        "timeout": 120,
        "max_retries": 1,
        "backoff_base": 1.5,
        "backoff_max": 10.0,
    },
    "loop": {
        "max_iterations": 10,
        "system_prompt": "",
    },
    "sampling": {
        "max_iterations": 10,
        "default_model": "deepseek/deepseek-v3.2",
    },
    "mcp": {
        "protocol_version": "2025-06-18",
        "request_timeout": 30,
        "tool_timeout": 120,
        "max_elicitation_rounds": 3,
        "servers": [],
    },
    "oauth": {
        "client_id": "switchboard",
        "client_secret": "",
        "redirect_uri": "http://127.0.0.1:8765/oauth/callback",
        "callback_host": "127.0.0.1",
        "callback_port": 8765,
        "http_timeout": 30,
    },
    "storage": {
        "sqlite_path": "./data/switchboard.db",
    },
    "wiretap": {
        "enabled": True,
        "path": "./data/wire.jsonl",
    },
    "logging": {
        "level": "INFO",
        "file": "",
    },
}


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def _merge(base: dict, override: dict) -> dict:
    """Deep-merge override into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Path | None = None) -> dict:
    """Load and cache config from YAML file, layered over DEFAULTS."""
    global _config
    if _config is not None and path is None:
        return _config

    config_path = Path(path) if path else _CONFIG_PATH
    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    _config = _walk_and_resolve(_merge(DEFAULTS, raw))
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary. Falls back to DEFAULTS without a file."""
    global _config
    if _config is None:
        if not _CONFIG_PATH.exists():
            _config = _walk_and_resolve(copy.deepcopy(DEFAULTS))
            return _config
        return load_config()
    return _config


def reset_config():
    """Drop the cached config (tests, or after editing config.yaml)."""
    global _config
    _config = None
