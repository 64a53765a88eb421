"""Configuration module for devicecore."""

from devicecore.config.loader import get_config_path, load_config
from devicecore.config.schema import Config

__all__ = ["Config", "load_config", "get_config_path"]
