from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

DEFAULT_HEARTBEAT_INTERVAL = 60.0
DEFAULT_COMMAND_INTERVAL = 10.0
DEFAULT_MAX_OUTPUT_LINES = 500
DEFAULT_COMMAND_TIMEOUT = 60.0
DEFAULT_REQUEST_TIMEOUT = 60.0
DEFAULT_PING_COUNT = 1
DEFAULT_WOL_BROADCAST = "255.255.255.255"


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class NodeConfig:
    api_base: str
    api_key: str
    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    command_interval: float = DEFAULT_COMMAND_INTERVAL
    max_output_lines: int = DEFAULT_MAX_OUTPUT_LINES
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    ping_count: int = DEFAULT_PING_COUNT
    wol_broadcast: str = DEFAULT_WOL_BROADCAST


CONFIG_KEYS = frozenset(f.name for f in fields(NodeConfig))


def load_config_file(path: str | os.PathLike[str]) -> dict[str, Any]:
    """Load configuration overrides from a YAML file.

    A missing file yields an empty mapping. Unknown keys are dropped so that a
    shared file can carry settings for other tools.
    """
    p = Path(path).expanduser()
    if not p.exists():
        return {}

    try:
        obj = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {p}: {e}") from e
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise ConfigError(f"Config root must be a mapping: {p}")
    return {k: v for k, v in obj.items() if k in CONFIG_KEYS}


def build_config(values: dict[str, Any], overrides: dict[str, Any] | None = None) -> NodeConfig:
    """Merge CLI/env values with file overrides and validate the result."""
    merged = {k: v for k, v in values.items() if k in CONFIG_KEYS and v is not None}
    for k, v in (overrides or {}).items():
        if k in CONFIG_KEYS and v is not None:
            merged[k] = v

    api_base = str(merged.get("api_base") or "").strip().rstrip("/")
    if not api_base:
        raise ConfigError("API base URL is required. Pass --api-base or set NODE_API_BASE.")
    if not api_base.startswith(("http://", "https://")):
        raise ConfigError(f"API base URL must start with http:// or https://: {api_base}")

    api_key = str(merged.get("api_key") or "").strip()
    if not api_key:
        raise ConfigError("API key is required. Pass --api-key or set NODE_API_KEY.")

    try:
        cfg = NodeConfig(
            api_base=api_base,
            api_key=api_key,
            heartbeat_interval=float(merged.get("heartbeat_interval", DEFAULT_HEARTBEAT_INTERVAL)),
            command_interval=float(merged.get("command_interval", DEFAULT_COMMAND_INTERVAL)),
            max_output_lines=int(merged.get("max_output_lines", DEFAULT_MAX_OUTPUT_LINES)),
            command_timeout=float(merged.get("command_timeout", DEFAULT_COMMAND_TIMEOUT)),
            request_timeout=float(merged.get("request_timeout", DEFAULT_REQUEST_TIMEOUT)),
            ping_count=int(merged.get("ping_count", DEFAULT_PING_COUNT)),
            wol_broadcast=str(merged.get("wol_broadcast") or DEFAULT_WOL_BROADCAST),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid config value: {e}") from e

    for name in ("heartbeat_interval", "command_interval", "command_timeout", "request_timeout"):
        if getattr(cfg, name) <= 0:
            raise ConfigError(f"{name} must be greater than zero")
    if cfg.max_output_lines < 0:
        raise ConfigError("max_output_lines may not be negative")
    if cfg.ping_count < 1:
        raise ConfigError("ping_count must be at least 1")

    return cfg
