"""Configuration loading utilities."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from devicecore.config.schema import Config
from devicecore.utils.helpers import camel_to_snake, get_data_path, snake_to_camel

# Keys whose values are passed through untouched.
_OPAQUE_KEYS = {"driver"}


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return get_data_path() / "config.json"


def load_raw_config(path: Path) -> dict[str, Any]:
    """Read a JSON or YAML config file into a dict."""
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in {".yaml", ".yml"}:
        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping at the top level")
    return data


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file or create default.

    Args:
        config_path: Optional path to config file. Uses default if not provided.

    Returns:
        Loaded configuration object.
    """
    path = config_path or get_config_path()
    if path.exists():
        try:
            return Config.model_validate(convert_keys(load_raw_config(path)))
        except (json.JSONDecodeError, yaml.YAMLError, ValueError) as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            logger.warning("Using default configuration.")
    return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Save configuration to file as camelCase JSON."""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = convert_to_camel(config.model_dump())
    with path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def convert_keys(data: Any) -> Any:
    """Convert PascalCase/camelCase keys to snake_case for Pydantic."""
    if isinstance(data, dict):
        converted: dict[str, Any] = {}
        for key, value in data.items():
            name = camel_to_snake(key)
            converted[name] = value if name in _OPAQUE_KEYS else convert_keys(value)
        return converted
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any) -> Any:
    """Convert snake_case keys to camelCase."""
    if isinstance(data, dict):
        converted: dict[str, Any] = {}
        for key, value in data.items():
            name = snake_to_camel(key)
            converted[name] = value if key in _OPAQUE_KEYS else convert_to_camel(value)
        return converted
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data
