"""Configuration module for nanomem."""

from nanomem.config.loader import get_config_path, load_config, save_config
from nanomem.config.schema import Config

__all__ = ["Config", "get_config_path", "load_config", "save_config"]
