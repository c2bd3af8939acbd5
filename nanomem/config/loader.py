"""Configuration file loading with camelCase <-> snake_case conversion."""

import json
import re
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from nanomem.config.schema import Config

# Keys whose children are user data (HTTP header names) and keep their casing.
_PRESERVE_CHILD_KEYS = {"extra_headers"}


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return Path.home() / ".nanomem" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from file, falling back to defaults and env vars."""
    path = config_path or get_config_path()
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return Config(**convert_keys(data))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            logger.warning("Using default configuration.")
    return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Save configuration to file using camelCase keys."""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = convert_to_camel(config.model_dump())
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")


def convert_keys(data: Any) -> Any:
    """Convert camelCase keys to snake_case recursively."""
    if isinstance(data, dict):
        out = {}
        for key, value in data.items():
            snake = camel_to_snake(key)
            out[snake] = value if snake in _PRESERVE_CHILD_KEYS else convert_keys(value)
        return out
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any) -> Any:
    """Convert snake_case keys to camelCase recursively."""
    if isinstance(data, dict):
        out = {}
        for key, value in data.items():
            out[snake_to_camel(key)] = value if key in _PRESERVE_CHILD_KEYS else convert_to_camel(value)
        return out
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    return re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", name).lower()


def snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)
